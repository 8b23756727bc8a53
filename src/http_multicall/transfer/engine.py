"""
Transfer engine interface for http_multicall.

This module defines the contract between calls and the transport that
moves their bytes: a TransferEngine opens transfer handles and
multiplexers, a Multiplexer drives many handles at once through
non-blocking pump steps and bounded readiness waits.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


HeaderCallback = Callable[[str], Any]
BodyCallback = Callable[[bytes], Any]


class MultiStatus(IntEnum):
    """Status reported by a multiplexer pump step."""
    CALL_MULTI_PERFORM = -1  # Progress is possible right away, pump again
    OK = 0
    BAD_HANDLE = 1
    BAD_EASY_HANDLE = 2
    OUT_OF_MEMORY = 3
    INTERNAL_ERROR = 4


class TransferErrorCode(IntEnum):
    """Per-transfer error codes. Numbers follow libcurl's."""
    OK = 0
    UNSUPPORTED_PROTOCOL = 1
    URL_MALFORMAT = 3
    COULDNT_RESOLVE_HOST = 6
    COULDNT_CONNECT = 7
    WEIRD_SERVER_REPLY = 8
    PARTIAL_FILE = 18
    OPERATION_TIMEDOUT = 28
    SSL_CONNECT_ERROR = 35
    ABORTED_BY_CALLBACK = 42
    BAD_FUNCTION_ARGUMENT = 43
    GOT_NOTHING = 52
    SEND_ERROR = 55
    RECV_ERROR = 56


@dataclass
class TransferRequest:
    """Everything a transport needs to perform one HTTP exchange."""
    verb: str
    url: str
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: Optional[bytes] = None
    timeout: Optional[float] = None
    on_header: Optional[HeaderCallback] = None
    on_body: Optional[BodyCallback] = None
    debug: bool = False


@dataclass(frozen=True)
class TransferInfo:
    """Final metadata of a transfer."""
    url: str
    status_code: Optional[int]
    total_seconds: float
    connect_seconds: Optional[float]
    bytes_sent: int
    bytes_received: int


class TransferHandle:
    """
    Transport-level state of one in-flight HTTP exchange.

    Engines subclass it to keep their own connection state. The handle
    reports received header lines and body chunks through the callbacks
    of its request and records the outcome once the transfer is done.
    """

    def __init__(self, request: TransferRequest) -> None:
        self.request = request
        self.done = False
        self.released = False
        self.error_code = TransferErrorCode.OK
        self.error_message = ""
        self.status_code: Optional[int] = None
        self.started_at: Optional[float] = None
        self.connected_at: Optional[float] = None
        self.finished_at: Optional[float] = None
        self.bytes_sent = 0
        self.bytes_received = 0
        self.trace: List[str] = []

    def start(self) -> None:
        self.started_at = time.perf_counter()

    @property
    def deadline(self) -> Optional[float]:
        if self.started_at is None or not self.request.timeout:
            return None
        return self.started_at + self.request.timeout

    def is_expired(self, now: Optional[float] = None) -> bool:
        deadline = self.deadline
        if deadline is None or self.done:
            return False
        return (now if now is not None else time.perf_counter()) >= deadline

    def mark_connected(self) -> None:
        self.connected_at = time.perf_counter()

    def finish(
        self,
        error_code: TransferErrorCode = TransferErrorCode.OK,
        error_message: str = "",
    ) -> None:
        """Mark the transfer done. Only the first outcome is kept."""
        if self.done:
            return
        self.done = True
        self.error_code = error_code
        self.error_message = error_message
        self.finished_at = time.perf_counter()
        if error_code:
            self.log("*", f"Transfer failed: {error_message} (code {int(error_code)})")

    def expire(self) -> None:
        elapsed = time.perf_counter() - (self.started_at or time.perf_counter())
        self.finish(
            TransferErrorCode.OPERATION_TIMEDOUT,
            f"Operation timed out after {int(elapsed * 1000)} milliseconds",
        )

    def emit_header(self, line: str) -> None:
        """Report one raw header line, line ending included."""
        if line[:4].upper() == "HTTP" and ":" not in line:
            parts = line.split(" ")
            if len(parts) > 1 and parts[1].strip().isdigit():
                self.status_code = int(parts[1])
        self.log("<", line.rstrip("\r\n"))
        self._invoke(self.request.on_header, line)

    def emit_body(self, chunk: bytes) -> None:
        """Report one body chunk."""
        self._invoke(self.request.on_body, chunk)

    def _invoke(self, callback: Optional[Callable[[Any], Any]], value: Any) -> None:
        if callback is None or self.done:
            return
        try:
            callback(value)
        except Exception as e:
            logger.warning(f"Transfer callback failed for {self.request.url}: {e}")
            self.finish(TransferErrorCode.ABORTED_BY_CALLBACK, f"Callback aborted: {e}")

    def log(self, direction: str, text: str) -> None:
        """Record a trace line when the request asked for debugging."""
        if self.request.debug:
            self.trace.append(f"{direction} {text}")

    def debug_info(self) -> Optional[str]:
        if not self.request.debug:
            return None
        return "\n".join(self.trace)

    @property
    def total_seconds(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at if self.finished_at is not None else time.perf_counter()
        return end - self.started_at

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.request.verb} {self.request.url} done={self.done}>"


class Multiplexer(ABC):
    """
    Drives several transfer handles concurrently on one thread.

    A multiplexer instance is owned by a single caller for its lifetime.
    """

    @abstractmethod
    def add_handle(self, handle: TransferHandle) -> None:
        """
        Register a handle and start its transfer.

        Raises:
            ValueError: If the handle does not belong to this engine
        """
        pass

    @abstractmethod
    def remove_handle(self, handle: TransferHandle) -> None:
        """Deregister a handle. Unfinished transfers are aborted."""
        pass

    @abstractmethod
    def perform(self) -> Tuple[MultiStatus, int]:
        """
        Pump every registered transfer once without blocking.

        Returns:
            Tuple of (status, number of transfers still in flight).
            CALL_MULTI_PERFORM means pump again right away.
        """
        pass

    @abstractmethod
    def select(self, timeout: float) -> int:
        """
        Wait until any registered handle is ready for I/O.

        Args:
            timeout: Maximum wait in seconds

        Returns:
            Number of ready handles, or -1 when no readiness
            primitive is available
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Release the multiplexer."""
        pass

    @property
    @abstractmethod
    def handles(self) -> Set[TransferHandle]:
        pass


class TransferEngine(ABC):
    """
    Interface for transport implementations.

    An engine opens transfer handles for requests, creates the
    multiplexers that drive them, and finalizes them once done.
    """

    @abstractmethod
    def open_transfer(self, request: TransferRequest) -> TransferHandle:
        """Create a handle for request. The transfer starts once the handle is added."""
        pass

    @abstractmethod
    def open_multiplexer(self) -> Multiplexer:
        """Create a new multiplexer for handles of this engine."""
        pass

    def close_transfer(self, handle: TransferHandle) -> Tuple[int, str]:
        """
        Finalize a handle and release its resources.

        Returns:
            Tuple of (error code, error message). Code 0 means success.
        """
        if not handle.done:
            handle.finish(TransferErrorCode.ABORTED_BY_CALLBACK, "Transfer closed before completion")
        handle.released = True
        return int(handle.error_code), handle.error_message

    def get_info(self, handle: TransferHandle) -> TransferInfo:
        connect_seconds = None
        if handle.connected_at is not None and handle.started_at is not None:
            connect_seconds = handle.connected_at - handle.started_at
        return TransferInfo(
            url=handle.request.url,
            status_code=handle.status_code,
            total_seconds=handle.total_seconds,
            connect_seconds=connect_seconds,
            bytes_sent=handle.bytes_sent,
            bytes_received=handle.bytes_received,
        )

    def execute(
        self,
        handle: TransferHandle,
        select_timeout: float = 1.0,
        fallback_sleep: float = 0.01,
    ) -> MultiStatus:
        """Drive a single handle to completion on a private multiplexer."""
        multiplexer = self.open_multiplexer()
        try:
            multiplexer.add_handle(handle)
            status = run_until_complete(multiplexer, select_timeout, fallback_sleep)
            multiplexer.remove_handle(handle)
        finally:
            multiplexer.close()
        return status


def pump(multiplexer: Multiplexer) -> Tuple[MultiStatus, int]:
    """Perform until the multiplexer stops asking to be called again."""
    while True:
        status, running = multiplexer.perform()
        if status != MultiStatus.CALL_MULTI_PERFORM:
            return status, running


def run_until_complete(
    multiplexer: Multiplexer,
    select_timeout: float = 1.0,
    fallback_sleep: float = 0.01,
) -> MultiStatus:
    """
    Drive a multiplexer until no transfer remains in flight.

    Between pump steps the loop blocks in select() for at most
    select_timeout seconds. Multiplexers without a readiness primitive
    get a fixed fallback_sleep between pumps instead.

    Returns:
        The final multiplexer status
    """
    status, running = pump(multiplexer)
    degraded = False

    while running and status == MultiStatus.OK:
        if multiplexer.select(select_timeout) == -1:
            if not degraded:
                degraded = True
                logger.debug(
                    f"No readiness wait available, polling every {fallback_sleep:.3f}s"
                )
            time.sleep(fallback_sleep)
        status, running = pump(multiplexer)

    return status


async def arun_until_complete(
    multiplexer: Multiplexer,
    select_timeout: float = 1.0,
    fallback_sleep: float = 0.01,
) -> MultiStatus:
    """
    Async variant of run_until_complete().

    Readiness waits run in a worker thread so the event loop stays
    responsive. Pumping still happens on the loop thread, one step at
    a time, so the multiplexer is never touched concurrently.

    When cancelled during a readiness wait, the wait is allowed to
    return before the cancellation propagates, so callers can close
    the multiplexer without racing the worker thread.
    """
    status, running = pump(multiplexer)
    degraded = False

    while running and status == MultiStatus.OK:
        wait = asyncio.ensure_future(asyncio.to_thread(multiplexer.select, select_timeout))
        try:
            ready = await asyncio.shield(wait)
        except asyncio.CancelledError:
            logger.debug("Cancelled during readiness wait, letting the wait return")
            await asyncio.wait([wait])
            raise
        if ready == -1:
            if not degraded:
                degraded = True
                logger.debug(
                    f"No readiness wait available, polling every {fallback_sleep:.3f}s"
                )
            await asyncio.sleep(fallback_sleep)
        status, running = pump(multiplexer)

    return status
