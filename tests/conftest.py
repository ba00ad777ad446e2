"""Pytest configuration for paneherd tests."""

import logging
from pathlib import Path

import pytest

_UNIT_DIR = Path(__file__).parent / "unit"


@pytest.fixture(autouse=True)
def _isolated_log_file(tmp_path, monkeypatch):
    """Point `setup_logging` at a temp file and drop its handler afterwards."""
    monkeypatch.setenv("PANEHERD_LOG_FILE", str(tmp_path / "paneherd.log"))
    monkeypatch.delenv("PANEHERD_LOG_LEVEL", raising=False)
    logger = logging.getLogger("paneherd")
    yield
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


def pytest_collection_modifyitems(config, items):
    """Mark tests under tests/unit as `unit`, then set per-marker timeouts: unit=1s, integration=5s."""
    for item in items:
        if _UNIT_DIR in Path(str(item.fspath)).parents:
            item.add_marker(pytest.mark.unit)
        if "unit" in item.keywords:
            item.add_marker(pytest.mark.timeout(1))
        elif "integration" in item.keywords:
            item.add_marker(pytest.mark.timeout(5))
