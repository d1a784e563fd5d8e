"""
Sink writer for forwarded change stream documents.
"""

from typing import Any, Dict
from pymongo.collection import Collection
from pymongo.errors import PyMongoError
from prometheus_client import Counter
import logging

from ..connectors.cdc.mongo_changestream import SinkError

logger = logging.getLogger(__name__)

SINK_MODES = ("insert", "upsert")

sink_writes_total = Counter(
    'streamrelay_sink_writes_total',
    'Documents written to the sink collection',
    ['collection', 'mode', 'status']
)


class SinkWriter:
    """Write the current state of a source document into the sink collection."""

    def __init__(self, collection: Collection, mode: str = "insert"):
        """
        Initialize sink writer.

        Args:
            collection: Destination collection
            mode: "insert" appends every forwarded document (a redelivered
                  event is written again, or rejected if its _id is taken);
                  "upsert" replaces the sink document with the same _id

        Raises:
            ValueError: If mode is unknown
        """
        if mode not in SINK_MODES:
            raise ValueError(f"mode must be one of {SINK_MODES}")
        self.collection = collection
        self.collection_name = collection.name
        self.mode = mode

    def forward(self, document: Dict[str, Any]) -> None:
        """
        Write one document to the sink.

        In upsert mode a document without an _id falls back to an insert.

        Raises:
            SinkError: If the write fails
        """
        try:
            if self.mode == "upsert" and "_id" in document:
                self.collection.replace_one({"_id": document["_id"]}, document, upsert=True)
            else:
                self.collection.insert_one(document)
        except PyMongoError as e:
            sink_writes_total.labels(
                collection=self.collection_name, mode=self.mode, status='error'
            ).inc()
            logger.error(
                f"Failed to write document to sink: {e}",
                extra={
                    "collection": self.collection_name,
                    "mode": self.mode,
                    "document_id": document.get("_id")
                }
            )
            raise SinkError(f"Sink write failed: {e}") from e

        sink_writes_total.labels(
            collection=self.collection_name, mode=self.mode, status='success'
        ).inc()
