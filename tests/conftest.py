from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from analytics_backfill.app.dependencies import reset_cached_dependencies
from analytics_backfill.app.repositories.database import Database


@pytest.fixture(autouse=True)
def _backfill_env_defaults(  # pyright: ignore[reportUnusedFunction]
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> Iterator[None]:
    data_dir = tmp_path / "runtime-data"
    monkeypatch.setenv("YT_BACKFILL_DATA_DIR", str(data_dir))
    monkeypatch.setenv("YT_BACKFILL_GOOGLE_CLIENT_ID", "test-client-id")
    monkeypatch.setenv("YT_BACKFILL_GOOGLE_CLIENT_SECRET", "test-client-secret")
    monkeypatch.setenv("YT_BACKFILL_INTER_CALL_DELAY_SECONDS", "0")
    monkeypatch.setenv("YT_BACKFILL_INTER_FAMILY_DELAY_SECONDS", "0")
    monkeypatch.setenv("YT_BACKFILL_TELEMETRY_ENABLED", "0")
    monkeypatch.delenv("YT_BACKFILL_DB_PATH", raising=False)
    monkeypatch.delenv("YT_BACKFILL_LOG_DIR", raising=False)
    reset_cached_dependencies()
    yield
    # Handlers may point at streams owned by a finished CliRunner invocation.
    for name in ("analytics_backfill", "analytics_backfill.telemetry"):
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()


@pytest.fixture
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "backfill-test.db")
    db.initialize()
    return db
