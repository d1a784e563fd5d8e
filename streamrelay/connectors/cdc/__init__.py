"""
CDC (Change Data Capture) module for MongoDB change stream relaying.
"""

from .mongo_changestream import (
    ChangeStreamRelay,
    RelayConfig,
    RelayPhase,
    RelayState,
    advance,
    describe_change,
    horizon_timestamp,
    CDCError,
    FeedError,
    CursorStoreError,
    SinkError,
    MalformedEventError,
    ResumeTokenError,
)
from .token_manager import TokenManager, CursorRecord, CURSOR_FIELD

__all__ = [
    "ChangeStreamRelay",
    "RelayConfig",
    "RelayPhase",
    "RelayState",
    "advance",
    "describe_change",
    "horizon_timestamp",
    "CDCError",
    "FeedError",
    "CursorStoreError",
    "SinkError",
    "MalformedEventError",
    "ResumeTokenError",
    "TokenManager",
    "CursorRecord",
    "CURSOR_FIELD",
]
