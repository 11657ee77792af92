"""External calendar integration enums."""

from enum import Enum


class CalendarProvider(str, Enum):
    GOOGLE = "google"


class SyncMode(str, Enum):
    FULL_SYNC = "full_sync"
    INCREMENTAL_SYNC = "incremental_sync"


class SyncOperationStatus(str, Enum):
    """Status of a recorded sync pass."""

    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


class SyncErrorType(str, Enum):
    """Categorised sync failure, drives retry/backoff decisions."""

    RATE_LIMIT = "rate_limit"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_INVALID = "token_invalid"
    AUTH_FAILED = "auth_failed"
    INVALID_GRANT = "invalid_grant"
    CALENDAR_NOT_FOUND = "calendar_not_found"
    PERMISSION_DENIED = "permission_denied"
    UNKNOWN = "unknown"
