"""Tests for SinkWriter."""

import pytest
from unittest.mock import Mock

from pymongo.errors import NetworkTimeout

from streamrelay.connectors.cdc import SinkError
from streamrelay.destinations import SinkWriter


def test_insert_mode_appends(sink_collection):
    writer = SinkWriter(sink_collection)

    writer.forward({"_id": 1, "status": "new"})
    writer.forward({"_id": 2, "status": "new"})

    assert sink_collection.count_documents({}) == 2


def test_insert_mode_rejects_redelivery(sink_collection):
    """Insert mode does not deduplicate; a second copy of the same _id fails loudly."""
    writer = SinkWriter(sink_collection)
    writer.forward({"_id": 1, "status": "new"})

    with pytest.raises(SinkError):
        writer.forward({"_id": 1, "status": "new"})


def test_upsert_mode_replaces_by_id(sink_collection):
    writer = SinkWriter(sink_collection, mode="upsert")

    writer.forward({"_id": 1, "status": "new"})
    writer.forward({"_id": 1, "status": "shipped"})

    assert list(sink_collection.find()) == [{"_id": 1, "status": "shipped"}]


def test_upsert_without_id_falls_back_to_insert(sink_collection):
    writer = SinkWriter(sink_collection, mode="upsert")
    writer.forward({"status": "new"})
    assert sink_collection.count_documents({"status": "new"}) == 1


def test_invalid_mode():
    collection = Mock()
    collection.name = "outputChangeStream"
    with pytest.raises(ValueError, match="mode must be one of"):
        SinkWriter(collection, mode="merge")


def test_write_error_wrapped():
    collection = Mock()
    collection.name = "outputChangeStream"
    collection.insert_one.side_effect = NetworkTimeout("timed out")
    writer = SinkWriter(collection)

    with pytest.raises(SinkError) as exc_info:
        writer.forward({"_id": 1})

    assert isinstance(exc_info.value.__cause__, NetworkTimeout)
    assert collection.insert_one.call_count == 1
