"""
Socket transfer engine for http_multicall.

This module implements the transfer engine over non-blocking sockets.
Requests are serialized and responses parsed with h11, while a
selectors-based multiplexer waits for readiness on every in-flight
socket so that many transfers progress on a single thread.
"""

import errno
import logging
import os
import selectors
import socket
import ssl
import time
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

import h11

from .engine import (
    Multiplexer,
    MultiStatus,
    TransferEngine,
    TransferErrorCode,
    TransferHandle,
    TransferRequest,
)
from .utils import (
    CONNECT_IN_PROGRESS,
    SUPPORTED_SCHEMES,
    URLTarget,
    create_socket,
    create_ssl_context,
    format_host_header,
    get_socket_error,
    parse_url,
)

logger = logging.getLogger(__name__)


class TransferPhase(Enum):
    """Progress of a socket transfer."""
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    SENDING = "sending"
    RECEIVING = "receiving"


class SocketTransferHandle(TransferHandle):
    """Transfer handle owning one socket and one h11 client connection."""

    def __init__(self, request: TransferRequest, engine: "SocketTransferEngine") -> None:
        super().__init__(request)
        self.engine = engine
        self.target: Optional[URLTarget] = None
        self.sock: Optional[socket.socket] = None
        self.fd = -1
        self.phase = TransferPhase.CONNECTING
        self.events = selectors.EVENT_WRITE
        self.connection = h11.Connection(h11.CLIENT)
        self.outgoing = b""
        self.response_started = False
        self.addresses: List[Tuple] = []
        self.attempt = 0


class SocketTransferEngine(TransferEngine):
    """
    Transfer engine over non-blocking TCP sockets.

    Each handle resolves its host, connects, optionally performs a TLS
    handshake, writes the h11-serialized request and feeds received bytes
    back into h11. Nothing here blocks except name resolution.
    """

    # Default configuration
    DEFAULT_READ_SIZE = 65536  # 64KB chunks
    DEFAULT_USER_AGENT = "http_multicall"

    def __init__(
        self,
        read_size: Optional[int] = None,
        user_agent: Optional[str] = None,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        """
        Initialize the engine.

        Args:
            read_size: Maximum bytes read from a socket per pump
            user_agent: User-Agent sent unless the request sets one
            ssl_context: TLS context for https URLs, default context if None
        """
        self._read_size = read_size or self.DEFAULT_READ_SIZE
        self._user_agent = user_agent or self.DEFAULT_USER_AGENT
        self._ssl_context = ssl_context

    @property
    def ssl_context(self) -> ssl.SSLContext:
        if self._ssl_context is None:
            self._ssl_context = create_ssl_context()
        return self._ssl_context

    def open_transfer(self, request: TransferRequest) -> SocketTransferHandle:
        return SocketTransferHandle(request, self)

    def open_multiplexer(self) -> "SocketMultiplexer":
        return SocketMultiplexer(self)

    def close_transfer(self, handle: TransferHandle) -> Tuple[int, str]:
        if isinstance(handle, SocketTransferHandle) and handle.sock is not None:
            try:
                handle.sock.close()
            except OSError as e:
                logger.warning(f"Error closing socket for {handle.request.url}: {e}")
            handle.sock = None
        return super().close_transfer(handle)

    def start(self, handle: SocketTransferHandle) -> None:
        """Resolve, serialize the request and begin connecting."""
        handle.start()

        try:
            handle.target = parse_url(handle.request.url)
        except ValueError as e:
            handle.finish(TransferErrorCode.URL_MALFORMAT, f"URL rejected: {e}")
            return

        target = handle.target
        if target.scheme not in SUPPORTED_SCHEMES:
            handle.finish(
                TransferErrorCode.UNSUPPORTED_PROTOCOL,
                f'Protocol "{target.scheme}" not supported',
            )
            return

        try:
            handle.outgoing = self._serialize_request(handle)
        except (h11.LocalProtocolError, UnicodeError) as e:
            handle.finish(TransferErrorCode.BAD_FUNCTION_ARGUMENT, f"Invalid request: {e}")
            return

        try:
            addresses = socket.getaddrinfo(target.host, target.port, type=socket.SOCK_STREAM)
        except (socket.gaierror, UnicodeError):
            handle.finish(
                TransferErrorCode.COULDNT_RESOLVE_HOST,
                f"Could not resolve host: {target.host}",
            )
            return

        handle.addresses = list(addresses)
        self._connect_next(handle, "No address available")

    def advance(self, handle: SocketTransferHandle) -> bool:
        """
        Move a transfer forward as far as possible without blocking.

        Returns:
            True if any progress was made
        """
        if handle.done:
            return False
        if handle.phase is TransferPhase.CONNECTING:
            return self._complete_connect(handle)
        if handle.phase is TransferPhase.HANDSHAKING:
            return self._handshake(handle)
        if handle.phase is TransferPhase.SENDING:
            return self._send(handle)
        return self._receive(handle)

    def _serialize_request(self, handle: SocketTransferHandle) -> bytes:
        request = handle.request
        target = handle.target
        headers: List[Tuple[str, str]] = list(request.headers)
        names = {name.lower() for name, _ in headers}

        if "host" not in names:
            headers.insert(0, ("Host", format_host_header(target.host, target.port, target.scheme)))
        if "user-agent" not in names:
            headers.append(("User-Agent", self._user_agent))
        if "connection" not in names:
            headers.append(("Connection", "close"))
        if (
            request.body is not None
            and "content-length" not in names
            and "transfer-encoding" not in names
        ):
            headers.append(("Content-Length", str(len(request.body))))

        connection = handle.connection
        data = connection.send(
            h11.Request(method=request.verb, target=target.target, headers=headers)
        )
        if request.body:
            data += connection.send(h11.Data(data=request.body))
        data += connection.send(h11.EndOfMessage())

        handle.log(">", f"{request.verb} {target.target} HTTP/1.1")
        for name, value in headers:
            handle.log(">", f"{name}: {value}")

        return data

    def _fail_connect(self, handle: SocketTransferHandle, reason: str) -> None:
        target = handle.target
        handle.finish(
            TransferErrorCode.COULDNT_CONNECT,
            f"Failed to connect to {target.host} port {target.port}: {reason}",
        )

    def _connect_next(self, handle: SocketTransferHandle, reason: str) -> None:
        """
        Connect to the next resolved address.

        Addresses are tried in resolution order. The transfer fails with
        the last reason once none is left.
        """
        if handle.sock is not None:
            try:
                handle.sock.close()
            except OSError as e:
                logger.debug(f"Error closing socket for {handle.request.url}: {e}")
            handle.sock = None
            handle.fd = -1

        while handle.addresses:
            family, sock_type, proto, _, address = handle.addresses.pop(0)
            handle.log("*", f"Trying {address[0]}:{address[1]}...")

            try:
                sock = create_socket(family, sock_type, proto)
            except OSError as e:
                reason = str(e)
                continue

            try:
                result = sock.connect_ex(address)
            except OSError as e:
                sock.close()
                reason = str(e)
                continue

            if result == 0 or result in CONNECT_IN_PROGRESS:
                handle.sock = sock
                handle.fd = sock.fileno()
                handle.attempt += 1
                handle.events = selectors.EVENT_WRITE
                return

            sock.close()
            reason = os.strerror(result)

        self._fail_connect(handle, reason)

    def _complete_connect(self, handle: SocketTransferHandle) -> bool:
        error = get_socket_error(handle.sock)
        if error:
            self._connect_next(handle, error)
            return True

        try:
            handle.sock.getpeername()
        except OSError as e:
            if e.errno == errno.ENOTCONN:
                return False
            self._connect_next(handle, str(e))
            return True

        handle.mark_connected()
        target = handle.target
        handle.log("*", f"Connected to {target.host} port {target.port}")

        if target.scheme == "https":
            try:
                handle.sock = self.ssl_context.wrap_socket(
                    handle.sock,
                    server_hostname=target.host,
                    do_handshake_on_connect=False,
                )
            except OSError as e:
                handle.finish(TransferErrorCode.SSL_CONNECT_ERROR, f"SSL connect error: {e}")
                return True
            handle.phase = TransferPhase.HANDSHAKING
        else:
            handle.phase = TransferPhase.SENDING

        handle.events = selectors.EVENT_WRITE
        return True

    def _handshake(self, handle: SocketTransferHandle) -> bool:
        try:
            handle.sock.do_handshake()
        except ssl.SSLWantReadError:
            handle.events = selectors.EVENT_READ
            return False
        except ssl.SSLWantWriteError:
            handle.events = selectors.EVENT_WRITE
            return False
        except OSError as e:
            handle.finish(TransferErrorCode.SSL_CONNECT_ERROR, f"SSL connect error: {e}")
            return True

        handle.log("*", f"TLS connection using {handle.sock.version()}")
        handle.phase = TransferPhase.SENDING
        handle.events = selectors.EVENT_WRITE
        return True

    def _send(self, handle: SocketTransferHandle) -> bool:
        try:
            sent = handle.sock.send(handle.outgoing)
        except (BlockingIOError, ssl.SSLWantReadError, ssl.SSLWantWriteError):
            return False
        except OSError as e:
            handle.finish(TransferErrorCode.SEND_ERROR, f"Failed sending data to the peer: {e}")
            return True

        handle.outgoing = handle.outgoing[sent:]
        handle.bytes_sent += sent

        if not handle.outgoing:
            handle.phase = TransferPhase.RECEIVING
            handle.events = selectors.EVENT_READ

        return sent > 0

    def _receive(self, handle: SocketTransferHandle) -> bool:
        try:
            data = handle.sock.recv(self._read_size)
        except (BlockingIOError, ssl.SSLWantReadError, ssl.SSLWantWriteError):
            return False
        except OSError as e:
            handle.finish(
                TransferErrorCode.RECV_ERROR,
                f"Failure when receiving data from the peer: {e}",
            )
            return True

        if not data:
            handle.log("*", "Connection closed by peer")
        handle.bytes_received += len(data)

        try:
            handle.connection.receive_data(data)
            self._drain_events(handle)
        except h11.RemoteProtocolError as e:
            self._fail_protocol(handle, e)

        return True

    def _drain_events(self, handle: SocketTransferHandle) -> None:
        while not handle.done:
            event = handle.connection.next_event()

            if event is h11.NEED_DATA:
                return

            if isinstance(event, (h11.InformationalResponse, h11.Response)):
                handle.response_started = isinstance(event, h11.Response)
                self._emit_head(handle, event)
            elif isinstance(event, h11.Data):
                handle.emit_body(bytes(event.data))
            elif isinstance(event, h11.EndOfMessage) or event is h11.PAUSED:
                handle.log("*", "Closing connection")
                handle.finish()
            elif isinstance(event, h11.ConnectionClosed):
                self._fail_protocol(handle, None)

    def _emit_head(self, handle: SocketTransferHandle, event: h11.Response) -> None:
        version = event.http_version.decode("ascii")
        reason = event.reason.decode("iso-8859-1")
        handle.emit_header(f"HTTP/{version} {event.status_code} {reason}\r\n")

        for name, value in event.headers.raw_items():
            handle.emit_header(f"{name.decode('iso-8859-1')}: {value.decode('iso-8859-1')}\r\n")

        handle.emit_header("\r\n")

    def _fail_protocol(self, handle: SocketTransferHandle, error: Optional[Exception]) -> None:
        if handle.bytes_received == 0:
            handle.finish(TransferErrorCode.GOT_NOTHING, "Empty reply from server")
        elif handle.response_started:
            handle.finish(
                TransferErrorCode.PARTIAL_FILE,
                f"Transfer closed with outstanding read data remaining: {error}",
            )
        else:
            handle.finish(
                TransferErrorCode.WEIRD_SERVER_REPLY,
                f"Invalid HTTP response: {error}",
            )


class SocketMultiplexer(Multiplexer):
    """
    Multiplexer driving socket transfers with a selector.

    perform() advances every in-flight handle without blocking and
    select() waits on the sockets' readiness, never past the nearest
    transfer deadline so timeouts are enforced promptly.
    """

    def __init__(self, engine: SocketTransferEngine) -> None:
        self._engine = engine
        self._selector = selectors.DefaultSelector()
        self._handles: Set[SocketTransferHandle] = set()
        self._registered: Dict[SocketTransferHandle, Tuple[int, int, int]] = {}
        self._closed = False

    @property
    def handles(self) -> Set[TransferHandle]:
        return set(self._handles)

    def add_handle(self, handle: TransferHandle) -> None:
        if not isinstance(handle, SocketTransferHandle) or handle.engine is not self._engine:
            raise ValueError(f"Handle {handle!r} does not belong to this engine")
        if handle in self._handles:
            raise ValueError(f"Handle {handle!r} already added")

        self._handles.add(handle)
        self._engine.start(handle)
        self._sync(handle)

        logger.debug(f"Added transfer {handle.request.verb} {handle.request.url}")

    def remove_handle(self, handle: TransferHandle) -> None:
        if handle not in self._handles:
            return

        self._unregister(handle)
        self._handles.discard(handle)

        if not handle.done:
            handle.finish(TransferErrorCode.ABORTED_BY_CALLBACK, "Transfer aborted")

        logger.debug(f"Removed transfer {handle.request.verb} {handle.request.url}")

    def perform(self) -> Tuple[MultiStatus, int]:
        if self._closed:
            return MultiStatus.BAD_HANDLE, 0

        now = time.perf_counter()
        progressed = False

        for handle in list(self._handles):
            if handle.done:
                continue
            if handle.is_expired(now):
                handle.expire()
            elif self._engine.advance(handle):
                progressed = True
            self._sync(handle)

        running = sum(1 for handle in self._handles if not handle.done)

        if progressed and running:
            return MultiStatus.CALL_MULTI_PERFORM, running
        return MultiStatus.OK, running

    def select(self, timeout: float) -> int:
        if not self._registered:
            return 0

        deadlines = [
            handle.deadline for handle in self._handles
            if not handle.done and handle.deadline is not None
        ]
        if deadlines:
            timeout = max(0.0, min(timeout, min(deadlines) - time.perf_counter()))

        return len(self._selector.select(timeout))

    def close(self) -> None:
        for handle in list(self._registered):
            self._unregister(handle)
        self._selector.close()
        self._closed = True

    def _sync(self, handle: SocketTransferHandle) -> None:
        """Keep the selector registration in line with what the handle waits for."""
        if handle.done or handle.sock is None:
            self._unregister(handle)
            return

        wanted = (handle.fd, handle.events, handle.attempt)
        current = self._registered.get(handle)
        if current == wanted:
            return

        # A new connection attempt may reuse the fd number of the closed socket
        if current is not None and current[2] != handle.attempt:
            self._unregister(handle)
            current = None

        if current is None:
            self._selector.register(handle.fd, handle.events, handle)
        else:
            self._selector.modify(handle.fd, handle.events, handle)
        self._registered[handle] = wanted

    def _unregister(self, handle: SocketTransferHandle) -> None:
        registration = self._registered.pop(handle, None)
        if registration is None:
            return
        try:
            self._selector.unregister(registration[0])
        except (KeyError, ValueError, OSError) as e:
            logger.debug(f"Selector unregister failed for {handle.request.url}: {e}")
