from __future__ import annotations

import pytest

from fakes import FakeBackend, FakeTransport
from promptclock.db import Database


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "promptclock.db")
    database.initialize()
    return database


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def transport():
    return FakeTransport()
