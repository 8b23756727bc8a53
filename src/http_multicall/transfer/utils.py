"""
Network utilities for http_multicall transfers.

This module provides helper functions for socket creation, TLS context
setup and URL parsing used by the socket transfer engine.
"""

import errno
import os
import socket
import ssl
from typing import NamedTuple, Optional
from urllib.parse import urlsplit

SUPPORTED_SCHEMES = ("http", "https")

# connect_ex() results meaning the connection is still being established
CONNECT_IN_PROGRESS = frozenset(
    code for code in (
        errno.EINPROGRESS,
        errno.EWOULDBLOCK,
        errno.EALREADY,
        getattr(errno, "WSAEWOULDBLOCK", None),
    ) if code is not None
)


class URLTarget(NamedTuple):
    """Components of a URL needed to open a connection."""
    scheme: str
    host: str
    port: int
    target: str


def parse_url(url: str) -> URLTarget:
    """
    Parse URL into connection components.

    Args:
        url: Absolute URL string

    Returns:
        URLTarget of (scheme, host, port, request target)

    Raises:
        ValueError: If URL is malformed or has no host
    """
    parsed = urlsplit(url)

    scheme = (parsed.scheme or "http").lower()

    host = parsed.hostname or ""
    if not host:
        raise ValueError(f"No hostname found in URL: {url!r}")

    # Accessing .port raises ValueError for out of range ports
    port = parsed.port
    if port is None:
        port = 443 if scheme == "https" else 80

    target = parsed.path or "/"
    if parsed.query:
        target += "?" + parsed.query

    return URLTarget(scheme=scheme, host=host, port=port, target=target)


def format_host_header(host: str, port: int, scheme: str) -> str:
    """
    Format host header for HTTP requests.

    Args:
        host: Hostname
        port: Port number
        scheme: URL scheme

    Returns:
        Formatted host header string
    """
    if is_ipv6_address(host):
        host = f"[{host}]"
    if (scheme == "https" and port == 443) or (scheme == "http" and port == 80):
        return host
    return f"{host}:{port}"


def is_ipv6_address(host: str) -> bool:
    """Check if a host string is an IPv6 address."""
    try:
        socket.inet_pton(socket.AF_INET6, host)
        return True
    except (OSError, ValueError):
        return False


def create_socket(
    family: int = socket.AF_INET,
    type: int = socket.SOCK_STREAM,
    proto: int = 0,
) -> socket.socket:
    """
    Create a non-blocking socket with low-latency settings.

    Args:
        family: Address family (default: AF_INET)
        type: Socket type (default: SOCK_STREAM)
        proto: Protocol (default: 0 for auto)

    Returns:
        Configured non-blocking socket

    Raises:
        OSError: If socket creation fails
    """
    sock = socket.socket(family, type, proto)
    try:
        if family in (socket.AF_INET, socket.AF_INET6):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


def create_ssl_context() -> ssl.SSLContext:
    """Create the default client TLS context."""
    return ssl.create_default_context()


def get_socket_error(sock: socket.socket) -> Optional[str]:
    """
    Get the pending error message for a socket.

    Args:
        sock: Socket object

    Returns:
        Error message or None if no error
    """
    try:
        error_code = sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
    except OSError as e:
        return str(e)
    if error_code == 0:
        return None
    return os.strerror(error_code)
