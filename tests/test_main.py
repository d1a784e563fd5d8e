"""Tests for the process entry point."""

import mongomock
import pytest
from pymongo.errors import AutoReconnect

from config.settings import MongoSettings, RelaySettings, Settings
from streamrelay import main as main_module
from streamrelay.connectors.cdc import CURSOR_FIELD


@pytest.fixture
def settings():
    return Settings(
        mongo=MongoSettings(connection_string="mongodb://localhost:27017"),
        relay=RelaySettings(batch_size=10)
    )


@pytest.fixture
def wired(monkeypatch, fake_source, make_change, settings):
    """Route main.run() to a mongomock client and a scripted source."""
    client = mongomock.MongoClient()
    source = fake_source([make_change(i) for i in range(1, 4)])
    real_get_collection = main_module.get_collection

    def get_collection(c, database, name):
        if name == settings.relay.source_collection:
            return source
        return real_get_collection(c, database, name)

    monkeypatch.setattr(main_module, "get_client", lambda mongo: client)
    monkeypatch.setattr(main_module, "get_collection", get_collection)
    return client, source


def test_run_relays_and_exits_cleanly(wired, settings):
    client, source = wired

    status = main_module.run(settings, once=True, handle_signals=False)

    db = client[settings.mongo.database]
    assert status == 0
    assert db[settings.relay.sink_collection].count_documents({}) == 3
    tokens = [r[CURSOR_FIELD] for r in db[settings.relay.token_collection].find()]
    assert tokens == [source.events[-1]["_id"]]


def test_run_returns_nonzero_on_feed_failure(wired, settings):
    client, source = wired
    source.fail_with = AutoReconnect("connection reset")

    status = main_module.run(settings, once=True, handle_signals=False)

    assert status == 1


def test_run_returns_nonzero_when_stream_closes(wired, settings):
    """Test a server-closed stream outside --once exits non-zero so a supervisor restarts it."""
    client, source = wired
    source.closes_when_drained = True

    status = main_module.run(settings, once=False, handle_signals=False)

    assert status == 1
    assert source.streams[0].alive is False
    db = client[settings.mongo.database]
    assert db[settings.relay.sink_collection].count_documents({}) == 3


def test_parser_flags():
    args = main_module.build_parser().parse_args(["--once", "--log-level", "DEBUG"])
    assert args.once is True
    assert args.log_level == "DEBUG"
    assert args.env_file is None
