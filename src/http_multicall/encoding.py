"""
Request body encoding for http_multicall.

Compiles the body of a request message: the raw body when one is set,
otherwise POST parameters as ``application/x-www-form-urlencoded`` or,
when files are attached, as ``multipart/form-data``.
"""

import mimetypes
import os
import uuid
from typing import Any, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

from .messages import RequestMessage

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
MULTIPART_CONTENT_TYPE = "multipart/form-data"


def encode_form(params: Mapping[str, Any]) -> bytes:
    """Encode parameters as application/x-www-form-urlencoded."""
    return urlencode(params, doseq=True).encode("ascii")


def encode_multipart(
    params: Mapping[str, Any],
    files: Mapping[str, str],
    boundary: Optional[str] = None,
) -> Tuple[bytes, str]:
    """
    Encode parameters and files as multipart/form-data.

    Args:
        params: Form fields
        files: Field name to path of the file to upload
        boundary: Part boundary, random if not given

    Returns:
        Tuple of (body, content type header value)

    Raises:
        OSError: If a file cannot be read
    """
    boundary = boundary or uuid.uuid4().hex
    delimiter = f"--{boundary}".encode("ascii")
    chunks: List[bytes] = []

    for name, value in params.items():
        values = value if isinstance(value, (list, tuple)) else [value]
        for item in values:
            chunks.append(delimiter)
            chunks.append(_disposition(name))
            chunks.append(b"")
            chunks.append(item if isinstance(item, bytes) else str(item).encode("utf-8"))

    for name, path in files.items():
        filename = os.path.basename(path)
        content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        with open(path, "rb") as f:
            data = f.read()
        chunks.append(delimiter)
        chunks.append(_disposition(name, filename))
        chunks.append(f"Content-Type: {content_type}".encode("utf-8"))
        chunks.append(b"")
        chunks.append(data)

    chunks.append(delimiter + b"--")
    chunks.append(b"")

    return b"\r\n".join(chunks), f"{MULTIPART_CONTENT_TYPE}; boundary={boundary}"


def compile_request_body(request: RequestMessage) -> Tuple[Optional[bytes], Optional[str]]:
    """
    Compile the body to send for a request.

    Returns:
        Tuple of (body, content type). Content type is None when the
        caller supplied a raw body or the verb carries no body.
    """
    if not request.carries_body:
        return None, None

    if request.raw_body:
        return request.raw_body, None

    if request.files:
        return encode_multipart(request.post_params, request.files)

    if request.post_params:
        return encode_form(request.post_params), FORM_CONTENT_TYPE

    return b"", None


def compile_request_headers(
    request: RequestMessage,
    content_type: Optional[str] = None,
) -> List[Tuple[str, str]]:
    """
    Compile the header list to send for a request.

    Custom headers come first, followed by a ``Cookie`` header built from
    the request cookies and the content type of an encoded body unless the
    caller set one explicitly.
    """
    headers = [(name, value) for name, value in request.headers.items()]

    if request.cookies:
        cookie_list = "; ".join(
            f"{name}={value}" if value is not None else name
            for name, value in request.get_cookie().items()
        )
        headers.append(("cookie", cookie_list))

    if content_type and "content-type" not in request.headers:
        headers.append(("content-type", content_type))

    return headers


def _disposition(name: str, filename: Optional[str] = None) -> bytes:
    disposition = f'Content-Disposition: form-data; name="{_quote(name)}"'
    if filename is not None:
        disposition += f'; filename="{_quote(filename)}"'
    return disposition.encode("utf-8")


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')
