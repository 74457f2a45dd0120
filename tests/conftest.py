import logging
from collections import Counter

import pytest
from sqlalchemy import event

import batchwise

from .schema import metadata


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'batchwise.db'}"


@pytest.fixture
async def db(db_url):
    """Two presets, a writer "w" and a reader "r", on the same SQLite file."""
    registry = await batchwise.connect(
        {"w": db_url, "r": db_url}, metadata=metadata, create_tables=True
    )
    yield registry
    await batchwise.disconnect()


def _track_transactions(engine):
    counts = Counter()
    listeners = [
        (name, lambda conn, _name=name: counts.update([_name]))
        for name in ("begin", "commit", "rollback")
    ]
    for name, listener in listeners:
        event.listen(engine.sync_engine, name, listener)
    return counts, listeners


@pytest.fixture
def w_transactions(db):
    """Counts of begin/commit/rollback on the "w" preset from here on."""
    engine = db.get_engine("w")
    counts, listeners = _track_transactions(engine)
    yield counts
    for name, listener in listeners:
        event.remove(engine.sync_engine, name, listener)


@pytest.fixture
def r_transactions(db):
    engine = db.get_engine("r")
    counts, listeners = _track_transactions(engine)
    yield counts
    for name, listener in listeners:
        event.remove(engine.sync_engine, name, listener)


@pytest.fixture
def batchwise_log(caplog):
    """The batchwise logger does not propagate, so attach caplog to it directly."""
    logger = logging.getLogger("batchwise")
    logger.addHandler(caplog.handler)
    yield caplog
    logger.removeHandler(caplog.handler)
