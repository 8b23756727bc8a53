"""
Parallel HTTP calls example using http_multicall.

This example demonstrates single calls, parallel multi-calls and the
buffered executor against httpbin.org.
"""

import asyncio
import logging

from http_multicall import (
    AFTER_FLUSH,
    CALL_COMPLETED,
    BufferedExecutor,
    HTTPCallError,
    ParallelMultiCall,
    RequestMessage,
    SocketTransferEngine,
    TransferCall,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def single_call():
    """Demonstrate a single GET call."""
    logger.info("Making single GET call...")

    request = RequestMessage.create("GET", "http://httpbin.org/get").set_get_param("demo", "1")
    call = TransferCall(request, timeout_seconds=10.0, debug_mode=True)

    response = call.exec().validate_status()
    logger.info(f"Response status: {response.status_code} {response.reason_phrase}")
    logger.info(f"Echoed args: {response.get_body_as_json()['args']}")
    logger.info(f"Executed in {call.execution_seconds:.3f}s")
    logger.info(f"Trace:\n{call.get_debug_info()}")


def parallel_calls():
    """Demonstrate a keyed multi-call."""
    logger.info("Making parallel calls...")

    engine = SocketTransferEngine()
    requests = {
        "json": RequestMessage.create("GET", "http://httpbin.org/json"),
        "xml": RequestMessage.create("GET", "http://httpbin.org/xml"),
        "delayed": RequestMessage.create("GET", "http://httpbin.org/delay/1"),
        "missing": RequestMessage.create("GET", "http://httpbin.org/status/404"),
    }
    for request in requests.values():
        request.set_header("Accept", "*/*")

    multi_call = ParallelMultiCall(requests, engine=engine)
    for call in multi_call.calls.values():
        call.set_timeout_seconds(10.0)
    multi_call.exec()

    for key, call in multi_call.calls.items():
        if call.error_code:
            logger.info(f"{key}: transfer failed ({call.error_message})")
            continue
        logger.info(
            f"{key}: {call.response.status_code} in {call.execution_seconds:.3f}s, "
            f"{len(call.response.raw_body or b'')} bytes"
        )

    logger.info(f"Batch took {multi_call.execution_seconds:.3f}s")

    try:
        multi_call.calls["missing"].response.validate_status()
    except HTTPCallError as e:
        logger.info(f"Validation failed as expected: {e}")


def buffered_execution():
    """Demonstrate the buffered executor with listeners."""
    logger.info("Running buffered executor...")

    executor = BufferedExecutor(buffer_size=3)
    executor.on(
        CALL_COMPLETED,
        lambda event: logger.info(
            f"Completed {event.call.request.uri}: {event.call.response.status_code}"
        ),
    )
    executor.on(
        AFTER_FLUSH,
        lambda event: logger.info(f"Flushed, {event.sender.total_executed_call_count} calls so far"),
    )

    for i in range(7):
        request = RequestMessage.create("POST", "http://httpbin.org/post")
        request.set_post_params({"index": i}).set_user_field("index", i)
        executor.submit(TransferCall(request, timeout_seconds=10.0))

    # Flush what is left below the threshold
    executor.invoke_all()

    logger.info(f"Mean throughput: {executor.mean_throughput:.2f} calls/s")


async def async_parallel_calls():
    """Demonstrate the multi-call inside an event loop."""
    logger.info("Making parallel calls from asyncio...")

    requests = [RequestMessage.create("GET", f"http://httpbin.org/anything/{i}") for i in range(5)]
    multi_call = await ParallelMultiCall(requests).aexec()

    for index, call in multi_call.calls.items():
        logger.info(f"#{index}: {call.response.status_code}")


def main():
    """Run all examples."""
    logger.info("Starting http_multicall examples...")

    try:
        single_call()
        print()

        parallel_calls()
        print()

        buffered_execution()
        print()

        asyncio.run(async_parallel_calls())

    except Exception as e:
        logger.error(f"Example failed: {e}")
        raise

    logger.info("All examples completed successfully!")


if __name__ == "__main__":
    main()
