"""
Multi-calls for http_multicall.

A multi-call executes a keyed group of calls together. ParallelMultiCall
drives every transfer of the group concurrently on one multiplexer and
finalizes each call with its own outcome.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Hashable, List, Mapping, Optional, Sequence, Tuple, Union

from .calls import CallStatistics, TransferCall
from .exceptions import MultiplexerError, UnsupportedRequestObjectError
from .messages import RequestMessage
from .transfer.engine import (
    Multiplexer,
    MultiStatus,
    TransferEngine,
    TransferHandle,
    arun_until_complete,
    run_until_complete,
)
from .transfer.socket_engine import SocketTransferEngine

logger = logging.getLogger(__name__)


RequestObject = Union[RequestMessage, TransferCall]
RequestObjects = Union[Mapping[Hashable, RequestObject], Sequence[RequestObject]]


class MultiCall(ABC):
    """
    Base class of multi-calls.

    Holds the calls keyed by caller-supplied keys, the final error code
    of the batch and the batch timing.
    """

    def __init__(self) -> None:
        self._calls: Dict[Hashable, Any] = {}
        self._error_code = 0
        self._start_timestamp: Optional[float] = None
        self._started_at: Optional[float] = None
        self._execution_seconds = 0.0

    def set_call(self, key: Hashable, call: Any) -> "MultiCall":
        self._calls[key] = call
        return self

    @property
    def calls(self) -> Dict[Hashable, Any]:
        return self._calls

    @property
    def error_code(self) -> int:
        return self._error_code

    @property
    def start_timestamp(self) -> Optional[float]:
        return self._start_timestamp

    @property
    def execution_seconds(self) -> float:
        return self._execution_seconds

    def _start_timer(self) -> None:
        self._start_timestamp = time.time()
        self._started_at = time.perf_counter()

    def _stop_timer(self) -> None:
        self._execution_seconds = time.perf_counter() - self._started_at

    @abstractmethod
    def exec(self) -> "MultiCall":
        """Execute every call of the group."""
        pass

    def __len__(self) -> int:
        return len(self._calls)


class ParallelMultiCall(MultiCall):
    """
    Executes a group of transfer calls concurrently.

    Every call's transfer is opened with the multi-call's engine and
    added to one multiplexer, which is pumped until no transfer remains
    in flight. Failures of individual transfers are recorded on their
    calls; only a fatal multiplexer status raises.

    Prepared TransferCalls are run on the multi-call's engine as well,
    whatever engine they were built with. Pass the same engine to both
    when a call must use a specific transport.
    """

    # Default configuration
    DEFAULT_SELECT_TIMEOUT = 1.0  # Longest single readiness wait
    DEFAULT_FALLBACK_SLEEP = 0.01  # Pause between pumps without readiness wait

    def __init__(
        self,
        request_objects: RequestObjects,
        engine: Optional[TransferEngine] = None,
        statistics: Optional[CallStatistics] = None,
        select_timeout: Optional[float] = None,
        fallback_sleep: Optional[float] = None,
    ) -> None:
        """
        Initialize the multi-call.

        Args:
            request_objects: Mapping of key to request or call, or a
                             sequence keyed by position
            engine: Engine driving every transfer of the group
            statistics: Accumulator given to calls created from requests
            select_timeout: Longest single readiness wait in seconds
            fallback_sleep: Pause between pumps when the multiplexer
                            cannot wait for readiness

        Raises:
            UnsupportedRequestObjectError: For inputs that are neither
                                           RequestMessage nor TransferCall
        """
        super().__init__()
        self.engine = engine if engine is not None else SocketTransferEngine()
        self.statistics = statistics
        self._select_timeout = select_timeout or self.DEFAULT_SELECT_TIMEOUT
        self._fallback_sleep = fallback_sleep or self.DEFAULT_FALLBACK_SLEEP

        if isinstance(request_objects, Mapping):
            items = list(request_objects.items())
        else:
            items = list(enumerate(request_objects))

        for key, request_object in items:
            self.set_call(key, self._to_call(request_object))

    def _to_call(self, request_object: Any) -> TransferCall:
        if isinstance(request_object, TransferCall):
            if request_object.engine is not self.engine:
                logger.debug(
                    f"Call {request_object.request.verb} {request_object.request.uri} "
                    f"will run on the multi-call engine instead of its own"
                )
            return request_object
        if isinstance(request_object, RequestMessage):
            return TransferCall(request_object, statistics=self.statistics, engine=self.engine)
        raise UnsupportedRequestObjectError(request_object)

    def exec(self) -> "ParallelMultiCall":
        """
        Execute every call concurrently.

        Returns:
            self, with every call COMPLETED

        Raises:
            MultiplexerError: If the multiplexer reported a fatal status
        """
        multiplexer, handles = self._open()
        try:
            self._start_timer()
            status = run_until_complete(multiplexer, self._select_timeout, self._fallback_sleep)
            self._stop_timer()
        finally:
            self._close(multiplexer, handles)

        return self._finish(status)

    async def aexec(self) -> "ParallelMultiCall":
        """Async variant of exec() for callers running an event loop."""
        multiplexer, handles = self._open()
        try:
            self._start_timer()
            status = await arun_until_complete(
                multiplexer, self._select_timeout, self._fallback_sleep
            )
            self._stop_timer()
        finally:
            self._close(multiplexer, handles)

        return self._finish(status)

    def _open(self) -> Tuple[Multiplexer, List[Tuple[TransferCall, TransferHandle]]]:
        multiplexer = self.engine.open_multiplexer()
        handles: List[Tuple[TransferCall, TransferHandle]] = []

        try:
            for call in self._calls.values():
                handle = call.open_transfer(self.engine)
                handles.append((call, handle))
                multiplexer.add_handle(handle)
        except BaseException:
            self._close(multiplexer, handles)
            raise

        logger.debug(f"Opened {len(handles)} transfers")
        return multiplexer, handles

    def _close(
        self,
        multiplexer: Multiplexer,
        handles: List[Tuple[TransferCall, TransferHandle]],
    ) -> None:
        try:
            for call, handle in handles:
                multiplexer.remove_handle(handle)
                call.close_transfer(handle)
        finally:
            multiplexer.close()

    def _finish(self, status: MultiStatus) -> "ParallelMultiCall":
        self._error_code = int(status)

        logger.debug(
            f"Executed {len(self._calls)} calls in {self._execution_seconds:.3f}s "
            f"(status {self._error_code})"
        )

        if status != MultiStatus.OK:
            raise MultiplexerError(status)
        return self
