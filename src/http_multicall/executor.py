"""
Buffered call executor for http_multicall.

Calls are submitted one at a time and executed in batches: once enough
calls are pending, the whole queue is flushed through a
ParallelMultiCall. Listeners are notified before and after every flush
and once per executed call.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .calls import CallStatistics, TransferCall
from .multicall import ParallelMultiCall
from .transfer.engine import TransferEngine
from .transfer.socket_engine import SocketTransferEngine

logger = logging.getLogger(__name__)


# Event names
BEFORE_FLUSH = "before-flush"
AFTER_FLUSH = "after-flush"
CALL_COMPLETED = "call-completed"

EVENTS = (BEFORE_FLUSH, AFTER_FLUSH, CALL_COMPLETED)


@dataclass
class CallEvent:
    """Notification passed to executor listeners."""
    sender: "BufferedExecutor"
    call: Optional[TransferCall] = None
    params: Dict[str, Any] = field(default_factory=dict)


Listener = Callable[[CallEvent], Any]


class BufferedExecutor:
    """
    Executes submitted calls in concurrent batches.

    Example:
        >>> executor = BufferedExecutor(buffer_size=3)
        >>> executor.on("call-completed", lambda event: print(event.call.response.status_code))
        >>> for request in requests:
        ...     executor.submit(request.create_call())
        >>> executor.invoke_all()  # flush the remainder

    Calls left pending are never flushed implicitly; call invoke_all()
    once no more calls will be submitted.
    """

    # Default configuration
    DEFAULT_BUFFER_SIZE = 10

    def __init__(
        self,
        buffer_size: Optional[int] = None,
        engine: Optional[TransferEngine] = None,
        statistics: Optional[CallStatistics] = None,
    ) -> None:
        """
        Initialize the executor.

        Args:
            buffer_size: Number of pending calls that triggers a flush
            engine: Engine driving every batch
            statistics: Accumulator attached to submitted calls without one

        Raises:
            ValueError: If buffer_size is smaller than 1
        """
        if buffer_size is None:
            buffer_size = self.DEFAULT_BUFFER_SIZE
        if buffer_size < 1:
            raise ValueError(f"buffer_size must be at least 1, got {buffer_size}")

        self.buffer_size = buffer_size
        self.engine = engine if engine is not None else SocketTransferEngine()
        self.statistics = statistics if statistics is not None else CallStatistics()

        self._pending: List[TransferCall] = []
        self._listeners: Dict[str, List[Listener]] = {name: [] for name in EVENTS}
        self._total_executed_call_count = 0
        self._total_call_execution_seconds = 0.0

    def submit(self, call: TransferCall) -> List[TransferCall]:
        """
        Queue a call for execution.

        Returns:
            The executed calls if this submission filled the buffer,
            otherwise an empty list
        """
        if call.statistics is None:
            call.statistics = self.statistics
        self._pending.append(call)

        if len(self._pending) >= self.buffer_size:
            return self.invoke_all()
        return []

    def invoke_all(self) -> List[TransferCall]:
        """
        Execute every pending call concurrently.

        Returns:
            The executed calls in submission order
        """
        if not self._pending:
            return []

        self._dispatch(BEFORE_FLUSH, CallEvent(self))

        multi_call = ParallelMultiCall(self._pending, engine=self.engine)
        try:
            executed = list(multi_call.exec().calls.values())
        finally:
            # Calls are completed even when the batch failed
            self._pending = []

        for call in executed:
            self._dispatch(CALL_COMPLETED, CallEvent(self, call, {"call": call}))

        self._total_executed_call_count += len(executed)
        self._total_call_execution_seconds += multi_call.execution_seconds

        logger.debug(
            f"Flushed {len(executed)} calls in {multi_call.execution_seconds:.3f}s"
        )

        self._dispatch(AFTER_FLUSH, CallEvent(self))
        return executed

    def on(self, event_name: str, listener: Listener) -> "BufferedExecutor":
        """Register a listener for an event."""
        self._listeners_for(event_name).append(listener)
        return self

    def off(self, event_name: str, listener: Listener) -> "BufferedExecutor":
        """Unregister a listener. Unknown listeners are ignored."""
        listeners = self._listeners_for(event_name)
        if listener in listeners:
            listeners.remove(listener)
        return self

    def has_listener(self, event_name: str) -> bool:
        return bool(self._listeners_for(event_name))

    def _listeners_for(self, event_name: str) -> List[Listener]:
        try:
            return self._listeners[event_name]
        except KeyError:
            raise ValueError(f"Unknown event: {event_name!r}") from None

    def _dispatch(self, event_name: str, event: CallEvent) -> None:
        for listener in list(self._listeners[event_name]):
            listener(event)

    @property
    def pending_calls(self) -> List[TransferCall]:
        return list(self._pending)

    @property
    def total_executed_call_count(self) -> int:
        return self._total_executed_call_count

    @property
    def total_call_execution_seconds(self) -> float:
        return self._total_call_execution_seconds

    @property
    def mean_throughput(self) -> float:
        """Mean number of calls executed per second, 0 before any time was recorded."""
        if not self._total_call_execution_seconds:
            return 0.0
        return self._total_executed_call_count / self._total_call_execution_seconds

    def get_mean_throughput(self) -> float:
        return self.mean_throughput
