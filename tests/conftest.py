"""Shared fixtures: mongomock collections and a scripted change stream."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from typing import Any, Dict, List, Optional

import mongomock
import pytest
from pymongo.errors import PyMongoError

from streamrelay.connectors.cdc import TokenManager
from streamrelay.destinations import SinkWriter


class FakeChangeStream:
    """
    Stand-in for pymongo's ChangeStream (mongomock has no change streams).

    `script` is consumed by try_next(); a None entry means "nothing pending
    right now". Once the script runs out try_next() keeps returning None,
    unless closes_when_drained is set: then it reports "nothing pending" once
    and the server side closes the stream, as after an invalidate.
    """

    def __init__(self, script: List[Optional[Dict[str, Any]]], fail_with: Optional[Exception] = None,
                 closes_when_drained: bool = False):
        self.script = list(script)
        self.fail_with = fail_with
        self.closes_when_drained = closes_when_drained
        self.alive = True
        self.closed = False
        self._drained = False

    def try_next(self):
        if not self.script:
            if self.fail_with is not None:
                raise self.fail_with
            if self._drained and self.closes_when_drained:
                self.alive = False
            self._drained = True
            return None
        return self.script.pop(0)

    def close(self):
        self.alive = False
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class FakeSource:
    """Watchable source collection replaying a fixed change log.

    watch(resume_after=token) replays strictly after the event carrying that
    token; start_at_operation_time replays the whole log.
    """

    def __init__(self, events: List[Dict[str, Any]], name: str = "inputChangeStream"):
        self.events = list(events)
        self.name = name
        self.watch_calls: List[Dict[str, Any]] = []
        self.fail_with: Optional[Exception] = None
        self.watch_error: Optional[Exception] = None
        self.closes_when_drained = False
        self.streams: List[FakeChangeStream] = []

    def watch(self, pipeline=None, **options):
        self.watch_calls.append({"pipeline": pipeline, **options})
        if self.watch_error is not None:
            raise self.watch_error

        start = 0
        token = options.get("resume_after")
        if token is not None:
            positions = [i for i, change in enumerate(self.events) if change.get("_id") == token]
            if not positions:
                raise PyMongoError("resume token not found in change log")
            start = positions[0] + 1

        stream = FakeChangeStream(self.events[start:], fail_with=self.fail_with,
                                  closes_when_drained=self.closes_when_drained)
        self.streams.append(stream)
        return stream


def _make_change(seq: int, operation: str = "insert", document: Any = "default",
                 coll: str = "inputChangeStream") -> Dict[str, Any]:
    change = {
        "_id": {"_data": f"82{seq:08d}"},
        "operationType": operation,
        "ns": {"db": "db1", "coll": coll},
        "documentKey": {"_id": seq},
    }
    if operation != "delete":
        change["fullDocument"] = {"_id": seq, "value": f"doc-{seq}"} if document == "default" else document
    return change


@pytest.fixture
def make_change():
    """Factory for change events with increasing resume tokens."""
    return _make_change


@pytest.fixture
def fake_source():
    """Factory for a FakeSource over a list of change events."""
    return FakeSource


@pytest.fixture
def mongo_db():
    """In-memory database."""
    client = mongomock.MongoClient()
    yield client["db1"]
    client.close()


@pytest.fixture
def token_collection(mongo_db):
    return mongo_db["changeStreamTokens"]


@pytest.fixture
def sink_collection(mongo_db):
    return mongo_db["outputChangeStream"]


@pytest.fixture
def token_manager(token_collection):
    return TokenManager(token_collection)


@pytest.fixture
def sink_writer(sink_collection):
    return SinkWriter(sink_collection)
