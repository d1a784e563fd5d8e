"""
MongoDB change stream relay with crash recovery.

Tails the change stream of a source collection, forwards the current full
document of every insert/update/replace to a sink collection and keeps a
resume token in a token collection so a restarted process picks up right
after the last event it confirmed.

Cursor records are never updated in place. For every forwarded event a new
record is inserted first and the superseded one is deleted afterwards, so a
crash between the two leaves two records behind and a restart loads the newest.
Delivery is at-least-once: a crash after the sink write but before the token
insert re-forwards that event.
"""

from pymongo.errors import PyMongoError
from pymongo.collection import Collection
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
import logging
import signal
import time

from bson import Timestamp
from prometheus_client import Counter, Gauge, Histogram
from prometheus_client import Enum as EnumMetric

logger = logging.getLogger(__name__)

QUALIFYING_OPERATIONS = ("insert", "update", "replace")

# Prometheus metrics
relay_events_forwarded = Counter(
    'streamrelay_events_forwarded_total',
    'Change events forwarded to the sink',
    ['collection', 'operation']
)

relay_events_discarded = Counter(
    'streamrelay_events_discarded_total',
    'Change events ignored because of their operation type',
    ['collection', 'operation']
)

relay_events_dropped = Counter(
    'streamrelay_events_dropped_total',
    'Qualifying change events dropped without forwarding',
    ['collection', 'reason']
)

relay_lag_seconds = Gauge(
    'streamrelay_lag_seconds',
    'Lag between the change clusterTime and processing',
    ['collection']
)

relay_batch_duration = Histogram(
    'streamrelay_batch_seconds',
    'Time to process one batch read from the change stream',
    ['collection']
)

relay_errors_total = Counter(
    'streamrelay_errors_total',
    'Fatal relay errors',
    ['collection', 'error_type']
)

relay_phase_metric = EnumMetric(
    'streamrelay_phase',
    'Current relay phase',
    ['collection'],
    states=['starting', 'catching_up_from_saved_token', 'catching_up_from_horizon', 'streaming']
)


class CDCError(Exception):
    """Base exception for relay errors."""
    pass


class FeedError(CDCError):
    """Opening or reading the change stream failed."""
    pass


class CursorStoreError(CDCError):
    """Reading, saving or deleting a cursor record failed."""
    pass


class SinkError(CDCError):
    """Writing a document to the sink collection failed."""
    pass


class MalformedEventError(CDCError):
    """Qualifying event without a full document (raised under the 'fail' policy)."""
    pass


class ResumeTokenError(CDCError):
    """Resume token is missing or has an invalid structure."""
    pass


def describe_change(change: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """Compact, log-friendly view of a change event (no document body)."""
    ns = change.get("ns") or {}
    key = change.get("documentKey") or {}
    return {
        "operation": change.get("operationType"),
        "namespace": f"{ns.get('db')}.{ns.get('coll')}" if ns else None,
        "document_key": str(key.get("_id")) if "_id" in key else None,
    }


class RelayPhase(str, Enum):
    STARTING = "starting"
    CATCHING_UP_FROM_SAVED_TOKEN = "catching_up_from_saved_token"
    CATCHING_UP_FROM_HORIZON = "catching_up_from_horizon"
    STREAMING = "streaming"


@dataclass
class RelayConfig:
    """Configuration for the change stream relay."""
    horizon_days: int = 100  # Look-back window when no token is saved
    batch_size: int = 100  # Max events read per batch
    max_await_time_ms: int = 1000
    malformed_event_policy: str = "skip"  # "skip" or "fail"
    stop_when_caught_up: bool = False

    def __post_init__(self):
        """Validate configuration values."""
        if self.horizon_days <= 0:
            raise ValueError("horizon_days must be positive")
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if self.max_await_time_ms <= 0:
            raise ValueError("max_await_time_ms must be positive")
        if self.malformed_event_policy not in ("skip", "fail"):
            raise ValueError("malformed_event_policy must be 'skip' or 'fail'")

    @classmethod
    def from_settings(cls, relay_settings, stop_when_caught_up: bool = False) -> "RelayConfig":
        return cls(
            horizon_days=relay_settings.horizon_days,
            batch_size=relay_settings.batch_size,
            max_await_time_ms=relay_settings.max_await_time_ms,
            malformed_event_policy=relay_settings.malformed_event_policy,
            stop_when_caught_up=stop_when_caught_up,
        )


@dataclass(frozen=True)
class RelayState:
    """
    Everything the relay carries from one event to the next.

    pending_delete_token is the record loaded at startup; it is deleted after
    the first successful forward of the run.
    last_processed_token is the record saved for the previous forwarded event.
    """
    phase: RelayPhase = RelayPhase.STARTING
    pending_delete_token: Optional[Dict[str, Any]] = None
    last_processed_token: Optional[Dict[str, Any]] = None
    forwarded: int = 0
    discarded: int = 0
    dropped: int = 0


def advance(
    state: RelayState,
    change: Dict[str, Any],
    *,
    forward: Callable[[Dict[str, Any]], None],
    save: Callable[[Dict[str, Any]], Any],
    delete: Callable[[Dict[str, Any]], Any],
    malformed_event_policy: str = "skip"
) -> RelayState:
    """
    Apply one change event and return the next relay state.

    Steps for a qualifying event:
    1. Forward fullDocument to the sink
    2. Save a cursor record for the event's resume token
    3. Delete the superseded record (the startup token once, then the
       previous event's token)

    Non-qualifying operations are discarded. A qualifying event with an empty
    fullDocument is dropped under the "skip" policy without touching the
    cursor records, or raises MalformedEventError under "fail".

    Args:
        state: State after the previous event
        change: Change stream document
        forward: Sink write, called with the full document
        save: Durable cursor insert, called with the resume token
        delete: Cursor delete by token value
        malformed_event_policy: "skip" or "fail"

    Returns:
        New RelayState (the input state is never mutated)
    """
    operation = change.get("operationType")
    collection = (change.get("ns") or {}).get("coll", "unknown")

    if operation not in QUALIFYING_OPERATIONS:
        relay_events_discarded.labels(collection=collection, operation=str(operation)).inc()
        logger.debug(
            f"Discarding {operation} event",
            extra=describe_change(change)
        )
        return replace(state, discarded=state.discarded + 1)

    document = change.get("fullDocument")
    if not document:
        if malformed_event_policy == "fail":
            raise MalformedEventError(
                f"{operation} event without fullDocument: {describe_change(change)}"
            )
        relay_events_dropped.labels(collection=collection, reason="empty_document").inc()
        logger.warning(
            "Dropping change event without fullDocument",
            extra=describe_change(change)
        )
        return replace(state, dropped=state.dropped + 1)

    token = change.get("_id")
    if not isinstance(token, dict) or not token:
        raise ResumeTokenError(f"Change event has no resume token: {describe_change(change)}")

    forward(document)
    save(token)

    if state.pending_delete_token is not None:
        delete(state.pending_delete_token)
        state = replace(state, pending_delete_token=None)
    elif state.last_processed_token is not None:
        delete(state.last_processed_token)

    logger.debug("Forwarded change event", extra=describe_change(change))
    relay_events_forwarded.labels(collection=collection, operation=operation).inc()
    return replace(state, last_processed_token=token, forwarded=state.forwarded + 1)


def horizon_timestamp(horizon_days: int, now: Optional[datetime] = None) -> Timestamp:
    """Operation time `horizon_days` before `now`, used when no token is saved."""
    now = now or datetime.now(timezone.utc)
    start = now - timedelta(days=horizon_days)
    return Timestamp(int(start.timestamp()), 1)


class ChangeStreamRelay:
    """
    Relay change stream events from a source collection into a sink.

    Features:
    - Resume after the newest saved token, or from a bounded look-back
      horizon on first run
    - Insert-then-delete cursor records (crash safe, at most two records)
    - Strictly sequential, single-threaded processing in feed order
    - Stop flag checked between batches (optionally wired to SIGTERM/SIGINT)

    Thread Safety: NOT thread-safe. Run one instance per token collection.

    Example:
        >>> relay = ChangeStreamRelay(
        ...     source=db['inputChangeStream'],
        ...     token_manager=TokenManager(db['changeStreamTokens']),
        ...     sink_writer=SinkWriter(db['outputChangeStream']),
        ...     config=RelayConfig(horizon_days=100)
        ... )
        >>> relay.start()
    """

    def __init__(
        self,
        source: Collection,
        token_manager: 'TokenManager',
        sink_writer: 'SinkWriter',
        config: RelayConfig
    ):
        """
        Initialize the relay.

        Args:
            source: Collection to watch
            token_manager: Cursor record persistence
            sink_writer: Destination for forwarded documents
            config: Relay configuration

        Raises:
            TypeError: If a collaborator lacks the expected operations
        """
        if not hasattr(source, 'watch'):
            raise TypeError("source must be a collection supporting watch()")

        if not hasattr(token_manager, 'load_latest_cursor'):
            raise TypeError("token_manager must be a TokenManager instance")

        if not hasattr(sink_writer, 'forward'):
            raise TypeError("sink_writer must be a SinkWriter instance")

        self.source = source
        self.token_manager = token_manager
        self.sink_writer = sink_writer
        self.config = config
        self.collection_name = source.name

        self.state = RelayState()
        self.stop_requested: bool = False

        # Signal handlers
        self._original_sigterm = None
        self._original_sigint = None

        logger.info(
            f"Initialized ChangeStreamRelay for collection {self.collection_name}",
            extra={
                "collection": self.collection_name,
                "batch_size": self.config.batch_size,
                "horizon_days": self.config.horizon_days,
                "malformed_event_policy": self.config.malformed_event_policy
            }
        )

    def start(self, handle_signals: bool = False) -> RelayState:
        """
        Run the relay (blocking call).

        This method:
        1. Loads the newest resume token from the token collection
        2. Opens the change stream after that token, or at the horizon
        3. Reads batches and applies every event in feed order
        4. Returns when stopped, or once caught up if stop_when_caught_up is set

        Args:
            handle_signals: Install SIGTERM/SIGINT handlers that call stop()

        Returns:
            Final RelayState

        Raises:
            FeedError: The change stream could not be opened or read, or the
                server closed it
            CursorStoreError: The token collection failed after retries
            SinkError: The sink write failed
        """
        self.stop_requested = False
        if handle_signals:
            self._setup_signal_handlers()

        try:
            self.state = self.resume_state()
            pipeline = self.build_pipeline()
            options = self.stream_options(self.state)

            logger.info(
                f"Opening changestream for collection {self.collection_name}",
                extra={
                    "collection": self.collection_name,
                    "phase": self.state.phase.value,
                    "has_resume_token": "resume_after" in options
                }
            )

            try:
                stream = self.source.watch(pipeline=pipeline, **options)
            except PyMongoError as e:
                self._record_error(e)
                raise FeedError(f"Failed to open change stream: {e}") from e

            with stream:
                self._consume(stream)
        finally:
            if handle_signals:
                self._restore_signal_handlers()

        logger.info(
            f"Relay stopped for collection {self.collection_name}",
            extra={
                "collection": self.collection_name,
                "forwarded": self.state.forwarded,
                "discarded": self.state.discarded,
                "dropped": self.state.dropped
            }
        )
        return self.state

    def resume_state(self) -> RelayState:
        """Build the startup state from the token collection."""
        self._set_phase(RelayPhase.STARTING)
        token = self.token_manager.load_latest_cursor()

        if token is None:
            logger.info(
                f"No resume token saved, starting {self.config.horizon_days} days back",
                extra={"collection": self.collection_name}
            )
            phase = RelayPhase.CATCHING_UP_FROM_HORIZON
            self._set_phase(phase)
            return RelayState(phase=phase)

        # Older than the loaded record, so never a resume point again
        orphans = list(self.token_manager.list_stale_cursors(token))
        if orphans:
            logger.warning(
                f"Deleting {len(orphans)} orphaned cursor records from an interrupted run",
                extra={"collection": self.collection_name, "orphans": len(orphans)}
            )
            for orphan in orphans:
                self.token_manager.delete_cursor(orphan)

        logger.info(
            f"Resuming from saved token for collection {self.collection_name}",
            extra={"collection": self.collection_name}
        )
        phase = RelayPhase.CATCHING_UP_FROM_SAVED_TOKEN
        self._set_phase(phase)
        return RelayState(phase=phase, pending_delete_token=token)

    def stream_options(self, state: RelayState, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Keyword arguments for Collection.watch() given the startup state."""
        options: Dict[str, Any] = {
            "full_document": "updateLookup",
            "batch_size": self.config.batch_size,
            "max_await_time_ms": self.config.max_await_time_ms
        }
        if state.pending_delete_token is not None:
            options["resume_after"] = state.pending_delete_token
        else:
            options["start_at_operation_time"] = horizon_timestamp(self.config.horizon_days, now)
        return options

    @staticmethod
    def build_pipeline() -> List[Dict[str, Any]]:
        """Server-side filter and projection applied to the change stream."""
        return [
            {"$match": {"operationType": {"$in": list(QUALIFYING_OPERATIONS)}}},
            {"$project": {
                "_id": 1,
                "operationType": 1,
                "fullDocument": 1,
                "ns": 1,
                "documentKey": 1,
                "clusterTime": 1
            }}
        ]

    def process_batch(self, state: RelayState, batch: List[Dict[str, Any]]) -> RelayState:
        """Apply a batch of change events in feed order."""
        batch_start_time = time.time()

        for change in batch:
            state = advance(
                state,
                change,
                forward=self.sink_writer.forward,
                save=self.token_manager.save_cursor,
                delete=self.token_manager.delete_cursor,
                malformed_event_policy=self.config.malformed_event_policy
            )
            if 'clusterTime' in change:
                relay_lag_seconds.labels(collection=self.collection_name).set(
                    self._calculate_lag(change['clusterTime'])
                )

        batch_duration = time.time() - batch_start_time
        relay_batch_duration.labels(collection=self.collection_name).observe(batch_duration)

        logger.info(
            f"Processed batch of {len(batch)} events",
            extra={
                "collection": self.collection_name,
                "batch_size": len(batch),
                "duration_seconds": batch_duration,
                "total_forwarded": state.forwarded,
                "total_discarded": state.discarded,
                "total_dropped": state.dropped
            }
        )
        return state

    def stop(self) -> None:
        """Ask the relay to return after the current batch."""
        logger.info(
            f"Stopping relay for collection {self.collection_name}",
            extra={"collection": self.collection_name}
        )
        self.stop_requested = True

    def _consume(self, stream) -> None:
        while not self.stop_requested:
            if not stream.alive:
                # Closed by the server (e.g. invalidate); only a restart reopens it
                error = FeedError("change stream closed")
                self._record_error(error)
                raise error

            batch = self._read_batch(stream)

            if not batch:
                if self.state.phase != RelayPhase.STREAMING:
                    logger.info(
                        "Caught up with the change stream",
                        extra={
                            "collection": self.collection_name,
                            "from_phase": self.state.phase.value,
                            "forwarded": self.state.forwarded
                        }
                    )
                    self.state = replace(self.state, phase=RelayPhase.STREAMING)
                    self._set_phase(RelayPhase.STREAMING)
                if self.config.stop_when_caught_up:
                    return
                continue

            try:
                self.state = self.process_batch(self.state, batch)
            except CDCError as e:
                self._record_error(e)
                raise

    def _read_batch(self, stream) -> List[Dict[str, Any]]:
        """Drain up to batch_size events that are available right now."""
        batch: List[Dict[str, Any]] = []
        try:
            while len(batch) < self.config.batch_size:
                change = stream.try_next()
                if change is None:
                    break
                batch.append(change)
        except PyMongoError as e:
            self._record_error(e)
            raise FeedError(f"Failed to read change stream: {e}") from e
        return batch

    def _record_error(self, error: Exception) -> None:
        logger.error(
            f"Relay error: {error}",
            extra={
                "collection": self.collection_name,
                "error": str(error),
                "error_type": type(error).__name__,
                "phase": self.state.phase.value
            }
        )
        relay_errors_total.labels(
            collection=self.collection_name,
            error_type=type(error).__name__
        ).inc()

    def _set_phase(self, phase: RelayPhase) -> None:
        relay_phase_metric.labels(collection=self.collection_name).state(phase.value)

    def _calculate_lag(self, cluster_time: Timestamp) -> float:
        """
        Calculate lag between the change's cluster time and now.

        Args:
            cluster_time: MongoDB cluster time from change event

        Returns:
            Lag in seconds, never negative
        """
        if not isinstance(cluster_time, Timestamp):
            return 0.0
        lag = time.time() - cluster_time.time
        return max(0.0, lag)

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers that stop the relay after the current batch."""
        def signal_handler(signum, frame):
            logger.info(
                f"Received shutdown signal {signum}",
                extra={"collection": self.collection_name}
            )
            self.stop()

        self._original_sigterm = signal.signal(signal.SIGTERM, signal_handler)
        self._original_sigint = signal.signal(signal.SIGINT, signal_handler)

    def _restore_signal_handlers(self) -> None:
        """Restore original signal handlers."""
        if self._original_sigterm is not None:
            signal.signal(signal.SIGTERM, self._original_sigterm)
        if self._original_sigint is not None:
            signal.signal(signal.SIGINT, self._original_sigint)
