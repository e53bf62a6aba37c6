"""Shared fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio

from folio.config import settings
from folio.notification_service import set_dispatcher
from tests.helpers import Journal, memory_db


@pytest_asyncio.fixture()
async def db():
    conn = await memory_db()
    try:
        yield conn
    finally:
        await conn.close()


@pytest.fixture()
def journal(db) -> Journal:
    return Journal(db)


@pytest.fixture(autouse=True)
def _default_dispatcher():
    yield
    set_dispatcher(None)


@pytest.fixture()
def data_dir(tmp_path: Path):
    """Point the file-backed database at a temporary directory."""
    original = settings.data_dir
    settings.data_dir = tmp_path
    try:
        yield tmp_path
    finally:
        settings.data_dir = original
