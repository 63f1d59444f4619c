"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from diarist.diary import DiaryStore, app


@pytest.fixture(scope="session")
def _upload_dir(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp directory for every uploaded image of the session."""
    return tmp_path_factory.mktemp("uploads")


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_upload_dir: Path) -> None:
    """
    Configure the Flask app *once* before the first test runs.
    """
    app.config.update(
        TESTING=True,
        UPLOAD_DIR=str(_upload_dir),
        DIARIST_TIMEZONE="UTC",
    )


@pytest.fixture
def store() -> DiaryStore:
    """A brand-new, empty store installed on the app for this test only."""
    fresh = DiaryStore()
    app.extensions["diarist.store"] = fresh
    return fresh


@pytest.fixture
def client(store: DiaryStore) -> Generator[FlaskClient, None, None]:
    """
    Test client bound to an empty store.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture(autouse=True, scope="session")
def _ticking_clock():
    """
    Patch diarist.diary.utc_now for the whole session so every call returns
    an ever-increasing timestamp.  No need for time.sleep().
    """
    from diarist import diary  # import here to avoid early import

    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(diary, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end
