"""Seed the environment from ``.env.test`` before ``chat_core.config`` is imported.

``QUEUE_STORAGE=memory`` keeps the client factory away from Redis, and
``API_BASE_URL``/``WS_URL`` point at a port nothing listens on, so a test
that forgets to inject a fake transport fails fast instead of reaching a
real server. Values already set in the environment win.
"""
from __future__ import annotations

import os
from pathlib import Path


def _load_test_env(path: Path) -> None:
    if not path.exists():
        return
    for raw in path.read_text().splitlines():
        entry = raw.strip()
        if not entry or entry.startswith("#") or "=" not in entry:
            continue
        key, _, value = entry.partition("=")
        os.environ.setdefault(key.strip(), value.strip().strip("\"'"))


_load_test_env(Path(__file__).resolve().parent / ".env.test")
