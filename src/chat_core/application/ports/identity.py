from __future__ import annotations

from typing import Protocol


class IdentityProvider(Protocol):
    @property
    def user_id(self) -> str: ...

    @property
    def user_name(self) -> str: ...

    def auth_token(self) -> str | None: ...

    def is_expired(self) -> bool: ...
