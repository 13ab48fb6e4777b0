"""Exceptions raised while processing the stream queue.

Every failure a cache item can hit is a :class:`CacheError` subclass carrying a
:class:`FailureKind` tag. :data:`FAILURE_POLICIES` is the single table deciding,
per kind, whether the item stays pending for a retry, is dropped from the
post's cache, or is silently left alone.
"""

from enum import Enum
from typing import Dict, NamedTuple


class FailureKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_ORIGIN = "invalid_origin"
    INVALID_RESOURCE = "invalid_resource"
    REQUEST_CONTENT = "request_content"
    REQUEST_NETWORK = "request_network"
    RESULT_NOT_JSON = "result_not_json"
    RESULT_SIZE = "result_size"
    REQUEST_SERVER = "request_server"
    MALFORMED = "malformed"
    ITEM_UNKNOWN = "item_unknown"
    REDUNDANCY_LIMIT = "redundancy_limit"
    APP_CONFIG = "app_config"


class Policy(str, Enum):
    RETRY = "retry"
    DROP = "drop"
    IGNORE = "ignore"


class FailurePolicy(NamedTuple):
    policy: Policy
    log: bool


FAILURE_POLICIES: Dict[FailureKind, FailurePolicy] = {
    FailureKind.NOT_FOUND: FailurePolicy(Policy.RETRY, True),
    FailureKind.INVALID_ORIGIN: FailurePolicy(Policy.DROP, True),
    FailureKind.INVALID_RESOURCE: FailurePolicy(Policy.DROP, True),
    FailureKind.REQUEST_CONTENT: FailurePolicy(Policy.RETRY, True),
    FailureKind.REQUEST_NETWORK: FailurePolicy(Policy.RETRY, True),
    FailureKind.RESULT_NOT_JSON: FailurePolicy(Policy.RETRY, True),
    FailureKind.RESULT_SIZE: FailurePolicy(Policy.DROP, True),
    FailureKind.REQUEST_SERVER: FailurePolicy(Policy.RETRY, True),
    FailureKind.MALFORMED: FailurePolicy(Policy.DROP, False),
    FailureKind.ITEM_UNKNOWN: FailurePolicy(Policy.DROP, True),
    FailureKind.REDUNDANCY_LIMIT: FailurePolicy(Policy.DROP, True),
    FailureKind.APP_CONFIG: FailurePolicy(Policy.IGNORE, False),
}


class StreamQueueError(Exception):
    """Base class for every error raised by streamqueue."""


class QueueStatusError(StreamQueueError):
    """A status transition was requested from the wrong state."""


class CacheError(StreamQueueError):
    kind: FailureKind

    @property
    def policy(self) -> FailurePolicy:
        return FAILURE_POLICIES[self.kind]


class NoteNotFoundError(CacheError):
    kind = FailureKind.NOT_FOUND


class InvalidOriginError(CacheError):
    kind = FailureKind.INVALID_ORIGIN


class InvalidResourceError(CacheError):
    kind = FailureKind.INVALID_RESOURCE


class RequestContentError(CacheError):
    kind = FailureKind.REQUEST_CONTENT


class RequestNetworkError(CacheError):
    kind = FailureKind.REQUEST_NETWORK


class RequestResultNotJsonError(CacheError):
    kind = FailureKind.RESULT_NOT_JSON


class RequestResultSizeError(CacheError):
    kind = FailureKind.RESULT_SIZE


class RequestServerError(CacheError):
    kind = FailureKind.REQUEST_SERVER


class MalformedStructureError(CacheError):
    kind = FailureKind.MALFORMED


class ItemUnknownError(CacheError):
    kind = FailureKind.ITEM_UNKNOWN


class RedundancyLimitError(CacheError):
    kind = FailureKind.REDUNDANCY_LIMIT


class AppConfigError(CacheError):
    kind = FailureKind.APP_CONFIG
