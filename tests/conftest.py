"""Pytest configuration for test isolation.

The workspace packages are not necessarily installed when tests run from a
checkout, so ``packages/`` and ``libs/db/src`` are put at the front of
``sys.path``. Settings are read from the environment (``STATEMENT_ENGINE_*``,
``DATABASE_URL``, ``OPENAI_API_KEY``); a developer's shell or ``.env`` must
not leak into tests, so an autouse fixture clears them for every test.
"""

from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parents[1]
_PATHS = [_ROOT / "packages", _ROOT / "libs" / "db" / "src", _ROOT]
sys.path[:0] = [str(p) for p in _PATHS if str(p) not in sys.path]

from db.client import dispose_engines  # noqa: E402

_ENV_VARS = (
    "DATABASE_URL",
    "OPENAI_API_KEY",
    "STATEMENT_ENGINE_AI_DELAY_MS",
    "STATEMENT_ENGINE_PREVIOUS_BALANCE_MARKERS",
    "STATEMENT_ENGINE_OPENAI_MODEL",
    "STATEMENT_ENGINE_EXTRACTION_MODEL",
    "STATEMENT_ENGINE_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _isolate_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Clear engine-related variables and run each test in its own directory.

    Changing into ``tmp_path`` keeps the CLI from loading a ``.env`` that
    happens to sit in the repository root. Cached engines are disposed
    afterwards so SQLite files are released.
    """

    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    yield
    dispose_engines()
