from __future__ import annotations

import logging
from pathlib import Path

import pytest

import replica_sync


@pytest.fixture(autouse=True)
def _reset_logger():
    logger = logging.getLogger("replica_sync")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
    yield logger
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def sync_log(tmp_path: Path) -> replica_sync.SyncLog:
    return replica_sync.SyncLog(tmp_path / "sync.log")
