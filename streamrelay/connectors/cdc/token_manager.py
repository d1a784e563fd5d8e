"""
MongoDB-backed cursor store for change stream resume tokens.

Each record has the shape ``{"_id": ObjectId, "resumeToken": <token>}``. The
newest record by ``_id`` is the resume point. Records are never updated: the
relay inserts a record for every forwarded event and then deletes the one it
supersedes, matching it by token value.
"""

from bson import ObjectId
from pymongo import DESCENDING
from pymongo.collection import Collection
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional, Union
import logging
from prometheus_client import Counter
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .mongo_changestream import CursorStoreError, ResumeTokenError

logger = logging.getLogger(__name__)

CURSOR_FIELD = "resumeToken"

cursor_saves_total = Counter(
    'streamrelay_cursor_saves_total',
    'Total cursor record inserts',
    ['status']
)

cursor_deletes_total = Counter(
    'streamrelay_cursor_deletes_total',
    'Total cursor record deletes',
    ['status']
)

cursor_loads_total = Counter(
    'streamrelay_cursor_loads_total',
    'Total cursor loads at startup',
    ['status']
)

# ConnectionFailure covers AutoReconnect and NetworkTimeout
_retry_transient = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(ConnectionFailure),
    reraise=True
)


@dataclass(frozen=True)
class CursorRecord:
    """Handle on a saved cursor record."""
    record_id: ObjectId
    token: Dict[str, Any]


def _validate_resume_token(token: Any) -> bool:
    """Resume tokens are non-empty documents (usually ``{"_data": ...}``)."""
    return isinstance(token, dict) and len(token) > 0


class TokenManager:
    """
    Load, save and delete resume token records.

    Features:
    - Newest-record lookup by ``_id`` ordering
    - Client-generated ``_id`` so a retried insert never duplicates a record
    - Idempotent delete by token value
    - Automatic retry on transient connection failures

    Thread Safety: pymongo collections are thread-safe, but the relay relies on
    being the only writer of this collection.

    Example:
        >>> manager = TokenManager(db['changeStreamTokens'])
        >>> record = manager.save_cursor(change['_id'])
        >>> token = manager.load_latest_cursor()
    """

    def __init__(self, collection: Collection):
        """
        Initialize the token manager.

        Args:
            collection: Collection holding the cursor records
        """
        self.collection = collection
        self.collection_name = collection.name

    def load_latest_cursor(self) -> Optional[Dict[str, Any]]:
        """
        Return the token of the most recently created record.

        Returns:
            Token of the newest record holding a valid resume token, None if
            there is no such record. Newer records with an unusable token are
            skipped (and removed later as stale).

        Raises:
            CursorStoreError: If the query fails after retries
        """
        try:
            record = self._find_latest()
            while record is not None and not _validate_resume_token(record.get(CURSOR_FIELD)):
                logger.warning(
                    "Skipping cursor record with an invalid resume token",
                    extra={"collection": self.collection_name, "record_id": record.get("_id")}
                )
                cursor_loads_total.labels(status='invalid').inc()
                record = self._find_latest(before=record["_id"])
        except PyMongoError as e:
            logger.error(
                f"Database error loading cursor: {e}",
                extra={"collection": self.collection_name}
            )
            cursor_loads_total.labels(status='error').inc()
            raise CursorStoreError(f"Failed to load cursor: {e}") from e

        if record is None:
            cursor_loads_total.labels(status='not_found').inc()
            logger.debug(
                "No cursor record found",
                extra={"collection": self.collection_name}
            )
            return None

        token = record.get(CURSOR_FIELD)

        cursor_loads_total.labels(status='success').inc()
        logger.debug(
            "Loaded cursor record",
            extra={"collection": self.collection_name, "record_id": record.get("_id")}
        )
        return token

    def list_stale_cursors(self, latest_token: Dict[str, Any]) -> Iterator[Any]:
        """
        Yield the stored value of every record other than `latest_token`.

        Only an interrupted run (or a corrupted write) leaves these behind. The
        relay deletes them at startup, right after loading `latest_token`.
        """
        try:
            records = list(self.collection.find(
                {CURSOR_FIELD: {"$ne": latest_token}}
            ).sort("_id", DESCENDING))
        except PyMongoError as e:
            raise CursorStoreError(f"Failed to list cursors: {e}") from e

        for record in records:
            yield record.get(CURSOR_FIELD)

    def save_cursor(self, token: Dict[str, Any]) -> CursorRecord:
        """
        Durably insert a record for `token`.

        Must return before the superseded record is deleted.

        Args:
            token: Resume token of the event just forwarded

        Returns:
            CursorRecord handle

        Raises:
            ResumeTokenError: If the token is not a non-empty document
            CursorStoreError: If the insert fails after retries
        """
        if not _validate_resume_token(token):
            raise ResumeTokenError("Invalid resume token structure")

        record_id = ObjectId()
        try:
            self._insert({"_id": record_id, CURSOR_FIELD: token})
        except DuplicateKeyError:
            # An earlier attempt was applied but its acknowledgement was lost
            logger.debug(
                "Cursor record already written by a previous attempt",
                extra={"collection": self.collection_name, "record_id": record_id}
            )
        except PyMongoError as e:
            logger.error(
                f"Database error saving cursor: {e}",
                extra={"collection": self.collection_name}
            )
            cursor_saves_total.labels(status='error').inc()
            raise CursorStoreError(f"Failed to save cursor: {e}") from e

        cursor_saves_total.labels(status='success').inc()
        logger.debug(
            "Saved cursor record",
            extra={"collection": self.collection_name, "record_id": record_id}
        )
        return CursorRecord(record_id=record_id, token=token)

    def delete_cursor(self, handle: Union[CursorRecord, Dict[str, Any]]) -> int:
        """
        Delete the record wrapping a token, matched by token value.

        Deleting a record that is already gone is a no-op.

        Args:
            handle: CursorRecord or the bare resume token

        Returns:
            Number of records deleted (0 or 1)

        Raises:
            CursorStoreError: If the delete fails after retries
        """
        token = handle.token if isinstance(handle, CursorRecord) else handle
        try:
            deleted = self._delete({CURSOR_FIELD: token})
        except PyMongoError as e:
            logger.error(
                f"Database error deleting cursor: {e}",
                extra={"collection": self.collection_name}
            )
            cursor_deletes_total.labels(status='error').inc()
            raise CursorStoreError(f"Failed to delete cursor: {e}") from e

        if deleted:
            cursor_deletes_total.labels(status='success').inc()
        else:
            cursor_deletes_total.labels(status='not_found').inc()
            logger.debug(
                "No cursor record to delete",
                extra={"collection": self.collection_name}
            )
        return deleted

    def count_cursors(self) -> int:
        """Number of cursor records currently stored."""
        return self.collection.count_documents({})

    @_retry_transient
    def _find_latest(self, before: Optional[ObjectId] = None) -> Optional[Dict[str, Any]]:
        query = {"_id": {"$lt": before}} if before is not None else {}
        return self.collection.find_one(query, sort=[("_id", DESCENDING)])

    @_retry_transient
    def _insert(self, record: Dict[str, Any]) -> None:
        self.collection.insert_one(record)

    @_retry_transient
    def _delete(self, match: Dict[str, Any]) -> int:
        return self.collection.delete_one(match).deleted_count
