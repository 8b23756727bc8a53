"""
Transfer layer for http_multicall.

This module provides the transport abstraction used by calls: engines
that open transfer handles and multiplexers that drive many of them at
once, with a socket implementation and a mock for testing.
"""

from .engine import (
    Multiplexer,
    MultiStatus,
    TransferEngine,
    TransferErrorCode,
    TransferHandle,
    TransferInfo,
    TransferRequest,
    arun_until_complete,
    pump,
    run_until_complete,
)
from .mock import MockMultiplexer, MockResponse, MockTransferEngine, MockTransferHandle
from .socket_engine import SocketMultiplexer, SocketTransferEngine, SocketTransferHandle

__all__ = [
    # Interfaces
    "TransferEngine",
    "Multiplexer",
    "TransferHandle",
    "TransferRequest",
    "TransferInfo",
    "MultiStatus",
    "TransferErrorCode",
    # Pump loops
    "pump",
    "run_until_complete",
    "arun_until_complete",
    # Implementations
    "SocketTransferEngine",
    "SocketMultiplexer",
    "SocketTransferHandle",
    "MockTransferEngine",
    "MockMultiplexer",
    "MockTransferHandle",
    "MockResponse",
]
