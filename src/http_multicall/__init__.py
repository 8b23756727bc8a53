"""
http_multicall - Concurrent HTTP calls with lifecycle tracking

An HTTP client layer that issues individual and batched requests,
tracks per-call state and timing, and executes many requests
concurrently over a shared multiplexed transport.
"""

__version__ = "0.1.0"
__author__ = "Developer"
__email__ = "dev@example.com"

# Import main components for easy access
from .messages import (
    Cookie,
    HeaderMap,
    HttpVerb,
    Message,
    RequestMessage,
    ResponseMessage,
    parse_set_cookie,
)
from .calls import Call, CallState, CallStatistics, TransferCall
from .multicall import MultiCall, ParallelMultiCall
from .executor import (
    AFTER_FLUSH,
    BEFORE_FLUSH,
    CALL_COMPLETED,
    BufferedExecutor,
    CallEvent,
)
from .exceptions import (
    EmptyBodyError,
    HTTPCallError,
    HttpResponseError,
    InvalidStateTransition,
    MalformedResponseError,
    MultiplexerError,
    TransferError,
    UnsupportedRequestObjectError,
)
from .transfer import (
    MockResponse,
    MockTransferEngine,
    MultiStatus,
    SocketTransferEngine,
    TransferEngine,
    TransferErrorCode,
)

__all__ = [
    "Message",
    "RequestMessage",
    "ResponseMessage",
    "HeaderMap",
    "Cookie",
    "HttpVerb",
    "parse_set_cookie",
    "Call",
    "CallState",
    "CallStatistics",
    "TransferCall",
    "MultiCall",
    "ParallelMultiCall",
    "BufferedExecutor",
    "CallEvent",
    "BEFORE_FLUSH",
    "AFTER_FLUSH",
    "CALL_COMPLETED",
    "HTTPCallError",
    "InvalidStateTransition",
    "TransferError",
    "HttpResponseError",
    "MalformedResponseError",
    "EmptyBodyError",
    "UnsupportedRequestObjectError",
    "MultiplexerError",
    "TransferEngine",
    "SocketTransferEngine",
    "MockTransferEngine",
    "MockResponse",
    "MultiStatus",
    "TransferErrorCode",
]
