"""
Tests for the parallel multi-call driver.

Tests concurrent execution over the mock engine: attribution of
out-of-order completions, isolation of failures, degraded polling,
fatal multiplexer statuses and the async driver.
"""

import asyncio

import pytest

from http_multicall.calls import CallState, CallStatistics, TransferCall
from http_multicall.exceptions import (
    InvalidStateTransition,
    MultiplexerError,
    UnsupportedRequestObjectError,
)
from http_multicall.messages import RequestMessage
from http_multicall.multicall import ParallelMultiCall
from http_multicall.transfer.engine import MultiStatus, TransferErrorCode
from http_multicall.transfer.mock import MockMultiplexer, MockResponse, MockTransferEngine


def make_requests(count: int):
    return {
        f"call-{i}": RequestMessage.create("GET", f"http://example.com/items/{i}")
        for i in range(count)
    }


class TestParallelMultiCallInputs:
    """Test building multi-calls from inputs."""

    def test_mapping_keys_kept(self, echo_engine: MockTransferEngine) -> None:
        """Test caller keys address the calls."""
        multi_call = ParallelMultiCall(make_requests(3), engine=echo_engine)
        assert list(multi_call.calls) == ["call-0", "call-1", "call-2"]
        assert all(isinstance(call, TransferCall) for call in multi_call.calls.values())
        assert len(multi_call) == 3

    def test_sequence_keyed_by_position(self, echo_engine: MockTransferEngine) -> None:
        """Test sequences are keyed by index."""
        requests = list(make_requests(2).values())
        multi_call = ParallelMultiCall(requests, engine=echo_engine)
        assert list(multi_call.calls) == [0, 1]
        assert multi_call.calls[1].request is requests[1]

    def test_existing_calls_kept(self, echo_engine: MockTransferEngine) -> None:
        """Test prepared calls are used as-is."""
        call = TransferCall(RequestMessage.create("GET", "http://example.com/"), debug_mode=True)
        multi_call = ParallelMultiCall({"prepared": call}, engine=echo_engine)
        assert multi_call.calls["prepared"] is call

    def test_prepared_call_engine_replaced(
        self, echo_engine: MockTransferEngine, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test a call built with another engine runs on the multi-call's."""
        own_engine = MockTransferEngine()
        call = TransferCall(RequestMessage.create("GET", "http://example.com/own"), engine=own_engine)

        with caplog.at_level("DEBUG", logger="http_multicall.multicall"):
            ParallelMultiCall([call], engine=echo_engine).exec()

        assert "will run on the multi-call engine" in caplog.text
        assert call.response.raw_body == b"http://example.com/own"
        assert own_engine.requests == []

    def test_unsupported_input(self, echo_engine: MockTransferEngine) -> None:
        """Test unknown inputs are rejected before anything runs."""
        with pytest.raises(UnsupportedRequestObjectError):
            ParallelMultiCall(
                [RequestMessage.create("GET", "http://example.com/"), "http://example.com/"],
                engine=echo_engine,
            )
        assert echo_engine.requests == []

    def test_statistics_given_to_new_calls(self, echo_engine: MockTransferEngine) -> None:
        """Test calls created from requests report to the accumulator."""
        statistics = CallStatistics()
        ParallelMultiCall(make_requests(4), engine=echo_engine, statistics=statistics).exec()
        assert statistics.call_count == 4


class TestParallelMultiCallExec:
    """Test concurrent execution."""

    def test_all_completed(self, echo_engine: MockTransferEngine) -> None:
        """Test every call completes with its own response."""
        multi_call = ParallelMultiCall(make_requests(10), engine=echo_engine).exec()

        assert multi_call.error_code == MultiStatus.OK
        assert multi_call.start_timestamp is not None
        assert multi_call.execution_seconds >= 0.0
        for key, call in multi_call.calls.items():
            assert call.state is CallState.COMPLETED
            assert call.error_code == 0
            assert call.response.status_code == 200
            assert call.response.raw_body == call.request.uri.encode("utf-8")
            assert call.response.get_header("x-url") == call.request.uri

    @pytest.mark.parametrize("seed", [1, 2, 3, 4, 5])
    def test_attribution_with_random_completion(self, seed: int) -> None:
        """Test out-of-order completions land on the right calls."""
        def respond(request):
            return MockResponse(body=request.url.encode("utf-8") * 20, chunk_size=3)

        engine = MockTransferEngine(default=respond, seed=seed)
        requests = make_requests(8)
        multi_call = ParallelMultiCall(requests, engine=engine).exec()

        for key, request in requests.items():
            call = multi_call.calls[key]
            assert call.request is request
            assert call.response.raw_body == request.uri.encode("utf-8") * 20

        assert sorted(engine.completion_order) == sorted(r.uri for r in requests.values())

    def test_transfers_run_concurrently(self, echo_engine: MockTransferEngine) -> None:
        """Test every transfer is in flight at once on one multiplexer."""
        ParallelMultiCall(make_requests(6), engine=echo_engine).exec()
        assert echo_engine.max_in_flight == 6
        assert echo_engine.multiplexers_opened == 1

    def test_failures_isolated(self) -> None:
        """Test one failing transfer does not affect the others."""
        engine = MockTransferEngine(
            responses={
                "http://example.com/ok": MockResponse(body=b"fine"),
                "http://example.com/broken": MockResponse(
                    error_code=TransferErrorCode.COULDNT_CONNECT,
                    error_message="Failed to connect",
                ),
            },
            seed=3,
        )
        multi_call = ParallelMultiCall(
            {
                "ok": RequestMessage.create("GET", "http://example.com/ok"),
                "broken": RequestMessage.create("GET", "http://example.com/broken"),
            },
            engine=engine,
        ).exec()

        ok = multi_call.calls["ok"]
        broken = multi_call.calls["broken"]
        assert multi_call.error_code == 0
        assert ok.error_code == 0
        assert ok.response.raw_body == b"fine"
        assert broken.state is CallState.COMPLETED
        assert broken.error_code == TransferErrorCode.COULDNT_CONNECT
        assert broken.error_message == "Failed to connect"
        assert broken.response.raw_body is None

    def test_timeout_isolated(self) -> None:
        """Test a hanging transfer times out while the others finish."""
        engine = MockTransferEngine(
            responses={
                "http://example.com/fast": MockResponse(body=b"fast"),
                "http://example.com/hang": MockResponse(hang=True),
            },
        )
        hanging = TransferCall(
            RequestMessage.create("GET", "http://example.com/hang"), timeout_seconds=0.05
        )
        multi_call = ParallelMultiCall(
            {"fast": RequestMessage.create("GET", "http://example.com/fast"), "hang": hanging},
            engine=engine,
        ).exec()

        assert multi_call.calls["fast"].response.raw_body == b"fast"
        assert hanging.error_code == TransferErrorCode.OPERATION_TIMEDOUT
        assert engine.completion_order[-1] == "http://example.com/hang"

    def test_degraded_polling(self) -> None:
        """Test batches complete without a readiness wait."""
        engine = MockTransferEngine(default=MockResponse(body=b"x" * 64), supports_select=False)
        multi_call = ParallelMultiCall(
            make_requests(5), engine=engine, fallback_sleep=0.001
        ).exec()

        assert all(call.response.raw_body == b"x" * 64 for call in multi_call.calls.values())

    def test_empty(self, echo_engine: MockTransferEngine) -> None:
        """Test a multi-call without calls."""
        multi_call = ParallelMultiCall({}, engine=echo_engine).exec()
        assert multi_call.error_code == 0
        assert multi_call.calls == {}

    def test_multiplexer_failure(self) -> None:
        """Test a fatal status raises after every call was finalized."""
        engine = MockTransferEngine(
            default=MockResponse(body=b"x" * 100, chunk_size=1),
            fail_status=MultiStatus.INTERNAL_ERROR,
            fail_after=2,
        )
        multi_call = ParallelMultiCall(make_requests(3), engine=engine)

        with pytest.raises(MultiplexerError) as exc_info:
            multi_call.exec()

        assert exc_info.value.status == MultiStatus.INTERNAL_ERROR
        assert multi_call.error_code == MultiStatus.INTERNAL_ERROR
        for call in multi_call.calls.values():
            assert call.state is CallState.COMPLETED
            assert call.error_code == TransferErrorCode.ABORTED_BY_CALLBACK

    def test_calls_cannot_rerun(self, echo_engine: MockTransferEngine) -> None:
        """Test executing the same calls twice."""
        multi_call = ParallelMultiCall(make_requests(2), engine=echo_engine).exec()
        with pytest.raises(InvalidStateTransition):
            ParallelMultiCall(list(multi_call.calls.values()), engine=echo_engine).exec()


class TestParallelMultiCallAsync:
    """Test the async driver."""

    @pytest.mark.asyncio
    async def test_aexec(self, echo_engine: MockTransferEngine) -> None:
        """Test the async driver completes every call."""
        multi_call = await ParallelMultiCall(make_requests(5), engine=echo_engine).aexec()

        assert multi_call.error_code == 0
        for call in multi_call.calls.values():
            assert call.state is CallState.COMPLETED
            assert call.response.raw_body == call.request.uri.encode("utf-8")

    @pytest.mark.asyncio
    async def test_aexec_degraded(self) -> None:
        """Test the async driver falls back to sleeping between pumps."""
        engine = MockTransferEngine(default=MockResponse(body=b"ok"), supports_select=False)
        multi_call = await ParallelMultiCall(
            make_requests(3), engine=engine, fallback_sleep=0.001
        ).aexec()
        assert all(call.response.raw_body == b"ok" for call in multi_call.calls.values())

    @pytest.mark.asyncio
    async def test_aexec_cancelled_during_wait(self) -> None:
        """Test cancellation lets the readiness wait return before closing."""
        class WatchedMultiplexer(MockMultiplexer):
            selecting = False
            closed_while_selecting = None

            def select(self, timeout: float) -> int:
                self.selecting = True
                try:
                    return super().select(timeout)
                finally:
                    self.selecting = False

            def close(self) -> None:
                self.closed_while_selecting = self.selecting
                super().close()

        class WatchedEngine(MockTransferEngine):
            def open_multiplexer(self) -> WatchedMultiplexer:
                self.multiplexers_opened += 1
                self.multiplexer = WatchedMultiplexer(self)
                return self.multiplexer

        engine = WatchedEngine(default=MockResponse(hang=True))
        call = TransferCall(
            RequestMessage.create("GET", "http://example.com/hang"), timeout_seconds=0.3
        )
        task = asyncio.create_task(ParallelMultiCall([call], engine=engine).aexec())

        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert engine.multiplexer.closed_while_selecting is False
        assert engine.multiplexer.closed
        assert call.state is CallState.COMPLETED
        assert call.error_code == TransferErrorCode.ABORTED_BY_CALLBACK
