"""
Mock transfer engine for testing.

This module provides an in-memory transfer engine that replays scripted
responses, so calls, multi-calls and executors can be tested without
actual network connections. Responses are delivered a few chunks per
pump in a seeded random order to exercise out-of-order completion.
"""

import random
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

from .engine import (
    Multiplexer,
    MultiStatus,
    TransferEngine,
    TransferErrorCode,
    TransferHandle,
    TransferRequest,
)


@dataclass
class MockResponse:
    """
    Scripted outcome of a mock transfer.

    A non-zero error_code makes the transfer fail without delivering
    anything. A hanging response never progresses, so only its
    timeout can complete it.
    """
    status_code: int = 200
    reason: str = "OK"
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    chunk_size: int = 16
    http_version: str = "1.1"
    error_code: int = 0
    error_message: str = ""
    hang: bool = False

    def steps(self) -> List[Tuple[str, object]]:
        """Break the response into the events delivered one per step."""
        if self.error_code:
            return [("error", None)]

        status_line = f"HTTP/{self.http_version} {self.status_code} {self.reason}".rstrip()
        steps: List[Tuple[str, object]] = [("header", status_line + "\r\n")]
        steps.extend(("header", f"{name}: {value}\r\n") for name, value in self.headers)
        steps.append(("header", "\r\n"))

        size = max(1, self.chunk_size)
        steps.extend(
            ("body", self.body[i:i + size]) for i in range(0, len(self.body), size)
        )
        steps.append(("end", None))
        return steps


ResponseSource = Union[MockResponse, Callable[[TransferRequest], MockResponse]]


class MockTransferHandle(TransferHandle):
    """Transfer handle replaying a scripted response."""

    def __init__(self, request: TransferRequest, engine: "MockTransferEngine") -> None:
        super().__init__(request)
        self.engine = engine
        self.response: Optional[MockResponse] = None
        self.steps: List[Tuple[str, object]] = []
        self.position = 0

    @property
    def stalled(self) -> bool:
        return self.done or self.response is None or self.response.hang


class MockTransferEngine(TransferEngine):
    """
    Mock transfer engine for testing.

    Responses are looked up by URL, falling back to the default
    response. Unknown URLs fail with COULDNT_RESOLVE_HOST. The engine
    records every request it was asked to perform, the order in which
    transfers completed and the largest number of transfers in flight.
    """

    def __init__(
        self,
        responses: Optional[Mapping[str, ResponseSource]] = None,
        default: Optional[ResponseSource] = None,
        seed: Optional[int] = None,
        supports_select: bool = True,
        fail_status: Optional[MultiStatus] = None,
        fail_after: int = 0,
    ) -> None:
        """
        Initialize the mock engine.

        Args:
            responses: URL to scripted response (or factory of the request)
            default: Response used for URLs not in responses
            seed: Seed of the random delivery order
            supports_select: When False, select() reports -1
            fail_status: Fatal status reported by perform() once fail_after pumps ran
            fail_after: Number of successful pumps before fail_status is reported
        """
        self._responses: Dict[str, ResponseSource] = dict(responses or {})
        self._default = default
        self.random = random.Random(seed)
        self.supports_select = supports_select
        self.fail_status = fail_status
        self.fail_after = fail_after

        self.requests: List[TransferRequest] = []
        self.completion_order: List[str] = []
        self.max_in_flight = 0
        self.multiplexers_opened = 0

    def add_response(self, url: str, response: ResponseSource) -> None:
        self._responses[url] = response

    def resolve(self, request: TransferRequest) -> MockResponse:
        source = self._responses.get(request.url, self._default)
        if source is None:
            return MockResponse(
                error_code=TransferErrorCode.COULDNT_RESOLVE_HOST,
                error_message=f"Could not resolve host: {request.url}",
            )
        if callable(source):
            return source(request)
        return source

    def open_transfer(self, request: TransferRequest) -> MockTransferHandle:
        return MockTransferHandle(request, self)

    def open_multiplexer(self) -> "MockMultiplexer":
        self.multiplexers_opened += 1
        return MockMultiplexer(self)

    def start(self, handle: MockTransferHandle) -> None:
        handle.start()
        self.requests.append(handle.request)
        handle.response = self.resolve(handle.request)
        handle.steps = handle.response.steps()

        handle.log(">", f"{handle.request.verb} {handle.request.url} HTTP/1.1")
        for name, value in handle.request.headers:
            handle.log(">", f"{name}: {value}")

    def step(self, handle: MockTransferHandle) -> None:
        """Deliver the next scripted event of handle."""
        kind, value = handle.steps[handle.position]
        handle.position += 1

        if kind == "header":
            if handle.connected_at is None:
                handle.mark_connected()
            handle.bytes_received += len(value)
            handle.emit_header(value)
        elif kind == "body":
            handle.bytes_received += len(value)
            handle.emit_body(value)
        elif kind == "end":
            handle.finish()
        else:
            response = handle.response
            handle.finish(response.error_code, response.error_message or "Scripted failure")

        if handle.done:
            self.record_completion(handle)

    def record_completion(self, handle: MockTransferHandle) -> None:
        self.completion_order.append(handle.request.url)


class MockMultiplexer(Multiplexer):
    """Multiplexer advancing mock handles in a random order."""

    def __init__(self, engine: MockTransferEngine) -> None:
        self._engine = engine
        self._handles: Set[MockTransferHandle] = set()
        self._pumps = 0
        self.closed = False

    @property
    def handles(self) -> Set[TransferHandle]:
        return set(self._handles)

    def add_handle(self, handle: TransferHandle) -> None:
        if not isinstance(handle, MockTransferHandle) or handle.engine is not self._engine:
            raise ValueError(f"Handle {handle!r} does not belong to this engine")
        if handle in self._handles:
            raise ValueError(f"Handle {handle!r} already added")
        self._handles.add(handle)
        self._engine.start(handle)

    def remove_handle(self, handle: TransferHandle) -> None:
        if handle not in self._handles:
            return
        self._handles.discard(handle)
        if not handle.done:
            handle.finish(TransferErrorCode.ABORTED_BY_CALLBACK, "Transfer aborted")

    def perform(self) -> Tuple[MultiStatus, int]:
        if self.closed:
            return MultiStatus.BAD_HANDLE, 0

        engine = self._engine
        if engine.fail_status is not None and self._pumps >= engine.fail_after:
            return engine.fail_status, self._running()
        self._pumps += 1

        active = [handle for handle in self._handles if not handle.done]
        engine.max_in_flight = max(engine.max_in_flight, len(active))
        active.sort(key=lambda handle: handle.request.url)
        engine.random.shuffle(active)

        now = time.perf_counter()
        progressed = False
        ready: List[MockTransferHandle] = []

        for handle in active:
            if handle.is_expired(now):
                handle.expire()
                engine.record_completion(handle)
                progressed = True
            elif not handle.stalled:
                ready.append(handle)

        for handle in ready:
            # Stall some transfers at random so completions interleave
            if engine.random.random() < 0.5:
                engine.step(handle)
                progressed = True

        if ready and not progressed:
            engine.step(ready[0])
            progressed = True

        running = self._running()
        if progressed and running and engine.random.random() < 0.3:
            return MultiStatus.CALL_MULTI_PERFORM, running
        return MultiStatus.OK, running

    def select(self, timeout: float) -> int:
        if not self._engine.supports_select:
            return -1

        pending = [handle for handle in self._handles if not handle.done]
        ready = [handle for handle in pending if not handle.stalled]
        if ready or not pending:
            return len(ready)

        # Only hanging transfers left: wait for the nearest deadline
        deadlines = [handle.deadline for handle in pending if handle.deadline is not None]
        if deadlines:
            timeout = min(timeout, min(deadlines) - time.perf_counter())
        time.sleep(max(0.0, timeout))
        return 0

    def close(self) -> None:
        self.closed = True

    def _running(self) -> int:
        return sum(1 for handle in self._handles if not handle.done)
