import os

import pytest

from shelfkeeper.library import Library
from shelfkeeper.ui_helpers import OUTPUT_MODE_ENV


@pytest.fixture
def db_file(tmp_path, request):
    # One database file per test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def lib(db_file, monkeypatch):
    # CLI commands resolve the database from the environment
    monkeypatch.setenv("SHELFKEEPER_DB_FILE", db_file)
    # --output writes the mode into os.environ; restored on teardown
    monkeypatch.delenv(OUTPUT_MODE_ENV, raising=False)
    lib = Library(db_file=db_file)
    yield lib
    lib.close()
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(db_file + suffix):
            try:
                os.remove(db_file + suffix)
            except OSError:
                pass


@pytest.fixture
def set_today(monkeypatch):
    """Pin the date the circulation rules see as today."""
    def _set(iso_date: str) -> None:
        monkeypatch.setattr("shelfkeeper.circulation.today_iso", lambda: iso_date)
    return _set
