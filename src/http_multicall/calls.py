"""
Calls for http_multicall.

A call pairs one request message with one response message and tracks
the lifecycle of executing it: state, timing and transfer errors.
TransferCall performs the exchange through a transfer engine, either on
its own or as part of a parallel multi-call.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from .encoding import compile_request_body, compile_request_headers
from .exceptions import InvalidStateTransition, TransferError
from .messages import HttpVerb, RequestMessage, ResponseMessage
from .transfer.engine import TransferEngine, TransferHandle, TransferInfo, TransferRequest
from .transfer.socket_engine import SocketTransferEngine

logger = logging.getLogger(__name__)


class CallState(Enum):
    """States of a call."""
    CREATED = 1    # Call built, not yet started
    RUNNING = 2    # Transfer in progress
    COMPLETED = 3  # Transfer finalized, successful or not

    @property
    def title(self) -> str:
        return self.name.capitalize()


@dataclass
class CallStatistics:
    """
    Aggregate statistics shared by a group of calls.

    Calls count themselves when they start running and add their
    execution time when they complete. The owner of the accumulator
    (usually a BufferedExecutor) decides which calls report to it.
    """
    call_count: int = 0
    total_execution_seconds: float = 0.0

    def record_start(self) -> None:
        self.call_count += 1

    def record_completion(self, seconds: float) -> None:
        self.total_execution_seconds += seconds

    @property
    def mean_execution_seconds(self) -> float:
        if not self.call_count:
            return 0.0
        return self.total_execution_seconds / self.call_count

    def reset(self) -> None:
        self.call_count = 0
        self.total_execution_seconds = 0.0


class Call(ABC):
    """
    Base class of HTTP calls.

    A call moves from CREATED to RUNNING to COMPLETED exactly once; any
    other transition raises InvalidStateTransition. Its timer runs while
    it is RUNNING.
    """

    # Default configuration
    DEFAULT_TIMEOUT_SECONDS = 1.0

    def __init__(
        self,
        request: RequestMessage,
        response: Optional[ResponseMessage] = None,
        timeout_seconds: Optional[float] = None,
        debug_mode: bool = False,
        statistics: Optional[CallStatistics] = None,
    ) -> None:
        """
        Initialize the call.

        Args:
            request: Request to execute
            response: Response to populate, a new one if None
            timeout_seconds: Transfer timeout (default: 1.0)
            debug_mode: Capture a transfer trace
            statistics: Accumulator the call reports its timing to
        """
        self.request = request
        self.response = response if response is not None else ResponseMessage()
        self.statistics = statistics

        self._timeout_seconds = timeout_seconds or self.DEFAULT_TIMEOUT_SECONDS
        self._debug_mode = debug_mode
        self._state = CallState.CREATED
        self._start_timestamp: Optional[float] = None
        self._started_at: Optional[float] = None
        self._execution_seconds = 0.0
        self._error_code = 0
        self._error_message = ""

    @classmethod
    def create(
        cls,
        request_or_verb: Union[RequestMessage, str, HttpVerb] = HttpVerb.GET,
        uri: Optional[str] = None,
        **kwargs: Any,
    ) -> "Call":
        """
        Create a call of this class.

        Args:
            request_or_verb: Request message, or the verb of a new one
            uri: URI of the new request when a verb is given
            **kwargs: Passed to the constructor

        Returns:
            New call
        """
        if isinstance(request_or_verb, RequestMessage):
            request = request_or_verb
        else:
            request = RequestMessage(verb=request_or_verb, uri=uri or "")
        return cls(request, **kwargs)

    @abstractmethod
    def exec(self) -> ResponseMessage:
        """Execute the call and return its response."""
        pass

    @abstractmethod
    def get_debug_info(self) -> Optional[str]:
        """Return diagnostic output captured in debug mode."""
        pass

    def set_state(self, state: CallState) -> "Call":
        """
        Move the call to a new state.

        Raises:
            InvalidStateTransition: Unless moving CREATED to RUNNING
                                    or RUNNING to COMPLETED
        """
        if state is CallState.RUNNING and self._state is CallState.CREATED:
            self._start_timer()
        elif state is CallState.COMPLETED and self._state is CallState.RUNNING:
            self._stop_timer()
        else:
            raise InvalidStateTransition(self._state, state)

        self._state = state
        return self

    def _start_timer(self) -> None:
        self._start_timestamp = time.time()
        self._started_at = time.perf_counter()
        if self.statistics is not None:
            self.statistics.record_start()

    def _stop_timer(self) -> None:
        self._execution_seconds = time.perf_counter() - self._started_at
        if self.statistics is not None:
            self.statistics.record_completion(self._execution_seconds)
        logger.debug(
            f"Call {self.request.verb} {self.request.uri} completed "
            f"in {self._execution_seconds:.3f}s"
        )

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def start_timestamp(self) -> Optional[float]:
        """Wall-clock time the call started running, None before."""
        return self._start_timestamp

    @property
    def execution_seconds(self) -> float:
        return self._execution_seconds

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    def set_timeout_seconds(self, timeout_seconds: float) -> "Call":
        self._timeout_seconds = timeout_seconds
        return self

    @property
    def debug_mode(self) -> bool:
        return self._debug_mode

    def set_debug_mode(self, debug_mode: bool = True) -> "Call":
        self._debug_mode = debug_mode
        return self

    @property
    def error_code(self) -> int:
        return self._error_code

    @property
    def error_message(self) -> str:
        return self._error_message

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.request.verb} {self.request.uri} {self._state.title}>"


class TransferCall(Call):
    """
    Call executed through a transfer engine.

    The request is compiled into a transfer whose header and body
    callbacks populate the response message as data arrives.
    """

    def __init__(
        self,
        request: RequestMessage,
        response: Optional[ResponseMessage] = None,
        timeout_seconds: Optional[float] = None,
        debug_mode: bool = False,
        statistics: Optional[CallStatistics] = None,
        engine: Optional[TransferEngine] = None,
    ) -> None:
        super().__init__(
            request,
            response=response,
            timeout_seconds=timeout_seconds,
            debug_mode=debug_mode,
            statistics=statistics,
        )
        self.engine = engine if engine is not None else SocketTransferEngine()
        self._debug_info: Optional[str] = None
        self._transfer_info: Optional[TransferInfo] = None
        self._active_engine: Optional[TransferEngine] = None

    def open_transfer(self, engine: Optional[TransferEngine] = None) -> TransferHandle:
        """
        Compile the request and open its transfer.

        Args:
            engine: Engine to open the transfer with, the call's own if None

        Returns:
            Handle ready to be added to a multiplexer of that engine

        Raises:
            InvalidStateTransition: If the call already ran
        """
        if self.state is not CallState.CREATED:
            raise InvalidStateTransition(self.state, CallState.RUNNING)

        engine = engine if engine is not None else self.engine
        request = self.request
        self.response.reset()

        body, content_type = compile_request_body(request)
        transfer_request = TransferRequest(
            verb=request.verb,
            url=request.effective_url,
            headers=compile_request_headers(request, content_type),
            body=body,
            timeout=self._timeout_seconds,
            on_header=self.response.parse_header_line,
            on_body=self.response.append_body_chunk,
            debug=self._debug_mode,
        )

        handle = engine.open_transfer(transfer_request)
        self.set_state(CallState.RUNNING)
        self._active_engine = engine

        logger.debug(f"Opened transfer {transfer_request.verb} {transfer_request.url}")
        return handle

    def close_transfer(self, handle: TransferHandle) -> "TransferCall":
        """Finalize the transfer: complete the call and capture its outcome."""
        engine = self._active_engine or self.engine

        self.set_state(CallState.COMPLETED)
        self._debug_info = handle.debug_info()
        self._error_code, self._error_message = engine.close_transfer(handle)
        self._transfer_info = engine.get_info(handle)
        self._active_engine = None

        if self._error_code:
            logger.debug(
                f"Transfer {handle.request.url} failed: "
                f"{self._error_message} (code {self._error_code})"
            )
        return self

    def exec(self) -> ResponseMessage:
        """
        Execute the call on its own.

        Returns:
            The populated response message

        Raises:
            TransferError: If the transfer failed before any body arrived
        """
        handle = self.open_transfer()
        try:
            self.engine.execute(handle)
        finally:
            self.close_transfer(handle)

        if self.response.raw_body is None and self._error_code:
            raise TransferError(self._error_message, self._error_code)

        return self.response

    def get_debug_info(self) -> Optional[str]:
        return self._debug_info

    @property
    def transfer_info(self) -> Optional[TransferInfo]:
        return self._transfer_info
