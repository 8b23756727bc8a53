"""
HTTP messages for http_multicall.

This module defines the request and response messages exchanged by calls.
Unlike immutable wire primitives, messages here are filled in incrementally:
a response is reset before each execution and populated line by line as the
transport receives header lines and body chunks.
"""

import json
import logging
import xml.etree.ElementTree as ElementTree
from dataclasses import dataclass, field
from enum import Enum
from types import SimpleNamespace
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    Iterator,
    Mapping,
    MutableMapping,
    Optional,
    Type,
    Union,
)
from urllib.parse import urlencode

from .exceptions import EmptyBodyError, HttpResponseError, MalformedResponseError

if TYPE_CHECKING:
    from .calls import Call  # Forward reference

logger = logging.getLogger(__name__)


CookieAttributes = Dict[str, Union[str, bool]]

# Inclusive bounds of status codes treated as errors by validate_status()
ERROR_STATUS_MIN = 400
ERROR_STATUS_MAX = 599


class HttpVerb(str, Enum):
    """Common HTTP request verbs."""
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"


BODY_VERBS = frozenset({HttpVerb.POST.value, HttpVerb.PUT.value, HttpVerb.PATCH.value})


class HeaderMap(MutableMapping[str, str]):
    """
    Case-insensitive header mapping.

    Field names are stored lower-cased, so iteration yields
    lower-cased names regardless of how they were set.
    """

    def __init__(self, headers: Optional[Mapping[str, str]] = None) -> None:
        self._store: Dict[str, str] = {}
        if headers:
            self.update(headers)

    @staticmethod
    def _normalize(name: str) -> str:
        return name.strip().lower()

    def __getitem__(self, name: str) -> str:
        return self._store[self._normalize(name)]

    def __setitem__(self, name: str, value: str) -> None:
        self._store[self._normalize(name)] = value

    def __delitem__(self, name: str) -> None:
        del self._store[self._normalize(name)]

    def __iter__(self) -> Iterator[str]:
        return iter(self._store)

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self._normalize(name) in self._store

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Mapping):
            return self._store == {self._normalize(str(k)): v for k, v in other.items()}
        return NotImplemented

    def __repr__(self) -> str:
        return f"HeaderMap({self._store!r})"


@dataclass
class Cookie:
    """A cookie with its value and attributes."""
    name: str
    value: Optional[str] = None
    attributes: CookieAttributes = field(default_factory=dict)


def parse_set_cookie(value: str) -> Optional[Cookie]:
    """
    Parse the value of a ``Set-Cookie`` header.

    The first ``;`` separated segment is the cookie name and value,
    every other segment is an attribute. Attributes without ``=``
    are flags and map to ``True``.

    Args:
        value: Header value, e.g. ``"a=1; Path=/; HttpOnly"``

    Returns:
        The parsed cookie, or None if no name could be found
    """
    cookie: Optional[Cookie] = None

    for segment in value.split(";"):
        segment = segment.strip()
        if not segment:
            continue

        name, sep, segment_value = segment.partition("=")
        name = name.strip()

        if cookie is None:
            if not name:
                return None
            cookie = Cookie(name=name, value=segment_value.strip() if sep else None)
        elif sep:
            cookie.attributes[name] = segment_value.strip()
        else:
            cookie.attributes[name] = True

    return cookie


class Message:
    """
    Base HTTP message.

    Holds the raw body, the headers and the cookies shared by
    requests and responses.
    """

    def __init__(
        self,
        raw_body: Optional[bytes] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.raw_body: Optional[bytes] = raw_body
        self.headers = HeaderMap(headers)
        self.cookies: Dict[str, Cookie] = {}

    def set_raw_body(self, raw_body: Optional[Union[bytes, str]]) -> "Message":
        """Set the raw body. Strings are encoded as UTF-8."""
        if isinstance(raw_body, str):
            raw_body = raw_body.encode("utf-8")
        self.raw_body = raw_body
        return self

    def set_header(self, field_name: str, value: Optional[str] = None) -> "Message":
        """Set a header, or remove it when value is None."""
        if value is None:
            self.headers.pop(field_name, None)
        else:
            self.headers[field_name] = value
        return self

    def get_header(self, name: Optional[str] = None) -> Any:
        """Get a header value (case-insensitive), or all headers if no name is given."""
        if not name:
            return self.headers
        return self.headers.get(name)

    def set_cookie(
        self,
        name: str,
        value: Optional[str],
        attributes: Optional[CookieAttributes] = None,
    ) -> "Message":
        """Set a cookie with its attributes."""
        self.cookies[name] = Cookie(name=name, value=value, attributes=dict(attributes or {}))
        return self

    def get_cookie(self, name: Optional[str] = None) -> Any:
        """Get a cookie value, or a name to value mapping if no name is given."""
        if not name:
            return {cookie_name: cookie.value for cookie_name, cookie in self.cookies.items()}
        cookie = self.cookies.get(name)
        return cookie.value if cookie is not None else None

    def get_cookie_attributes(self, name: Optional[str] = None) -> Any:
        """Get the attributes of a cookie, or all cookies if no name is given."""
        if not name:
            return self.cookies
        cookie = self.cookies.get(name)
        return dict(cookie.attributes) if cookie is not None else {}

    def reset(self) -> "Message":
        """Clear body, headers and cookies."""
        self.raw_body = None
        self.headers = HeaderMap()
        self.cookies = {}
        return self

    @property
    def charset(self) -> str:
        """Charset declared by the Content-Type header, utf-8 by default."""
        content_type = self.headers.get("content-type", "")
        for parameter in content_type.split(";")[1:]:
            key, _, value = parameter.partition("=")
            if key.strip().lower() == "charset" and value.strip():
                return value.strip().strip('"')
        return "utf-8"

    @property
    def text(self) -> str:
        """Body decoded with the declared charset."""
        if not self.raw_body:
            return ""
        try:
            return self.raw_body.decode(self.charset, errors="replace")
        except LookupError:
            return self.raw_body.decode("utf-8", errors="replace")

    def get_body_as_json(self, assoc: bool = True) -> Any:
        """
        Decode the body as JSON.

        Args:
            assoc: Return plain dicts and lists when True, objects with
                   attribute access (SimpleNamespace) when False

        Returns:
            The decoded value. The literal ``null`` decodes to None.

        Raises:
            EmptyBodyError: If the body is empty
            MalformedResponseError: If the body is not valid JSON
        """
        if not self.raw_body:
            raise EmptyBodyError("JSON")

        object_hook = None if assoc else (lambda fields: SimpleNamespace(**fields))

        try:
            return json.loads(self.raw_body.decode("utf-8"), object_hook=object_hook)
        except UnicodeDecodeError as e:
            raise MalformedResponseError(
                "Malformed UTF-8 characters, possibly incorrectly encoded", "JSON", e
            ) from e
        except RecursionError as e:
            raise MalformedResponseError("Maximum stack depth exceeded", "JSON", e) from e
        except json.JSONDecodeError as e:
            if "control character" in e.msg.lower():
                category = "Control character error, possibly incorrectly encoded"
            else:
                category = "Syntax error"
            raise MalformedResponseError(category, "JSON", e) from e

    def get_body_as_xml(self) -> ElementTree.Element:
        """
        Decode the body as XML.

        Raises:
            EmptyBodyError: If the body is empty
            MalformedResponseError: If the body is not well-formed XML
        """
        if not self.raw_body:
            raise EmptyBodyError("XML")

        try:
            return ElementTree.fromstring(self.raw_body)
        except ElementTree.ParseError as e:
            raise MalformedResponseError("XML syntax error", "XML", e) from e


class RequestMessage(Message):
    """
    Request HTTP message.

    Besides headers, cookies and raw body, a request carries its verb,
    its URI, GET and POST parameters, files to upload and free-form
    user fields for caller bookkeeping.
    """

    def __init__(
        self,
        verb: Union[str, HttpVerb] = HttpVerb.GET,
        uri: str = "",
        headers: Optional[Mapping[str, str]] = None,
        raw_body: Optional[bytes] = None,
    ) -> None:
        super().__init__(raw_body=raw_body, headers=headers)
        self.verb = _normalize_verb(verb)
        self.uri = uri
        self.get_params: Dict[str, Any] = {}
        self.post_params: Dict[str, Any] = {}
        self.files: Dict[str, str] = {}
        self.user_fields: Dict[str, Any] = {}

    @classmethod
    def create(cls, verb: Union[str, HttpVerb] = HttpVerb.GET, uri: str = "") -> "RequestMessage":
        """Create a new request message."""
        return cls(verb=verb, uri=uri)

    def set_verb(self, verb: Union[str, HttpVerb]) -> "RequestMessage":
        self.verb = _normalize_verb(verb)
        return self

    def set_uri(self, uri: str) -> "RequestMessage":
        self.uri = uri
        return self

    def set_get_param(self, name: str, value: Any = None) -> "RequestMessage":
        """Set a GET parameter, or remove it when value is None."""
        _assign(self.get_params, name, value)
        return self

    def set_get_params(self, params: Mapping[str, Any]) -> "RequestMessage":
        for name, value in params.items():
            self.set_get_param(name, value)
        return self

    def get_get_param(self, name: Optional[str] = None) -> Any:
        return self.get_params if name is None else self.get_params.get(name)

    def set_post_param(self, name: str, value: Any = None) -> "RequestMessage":
        """Set a POST parameter, or remove it when value is None."""
        _assign(self.post_params, name, value)
        return self

    def set_post_params(self, params: Mapping[str, Any]) -> "RequestMessage":
        for name, value in params.items():
            self.set_post_param(name, value)
        return self

    def get_post_param(self, name: Optional[str] = None) -> Any:
        return self.post_params if name is None else self.post_params.get(name)

    def set_file(self, name: str, path: Optional[str] = None) -> "RequestMessage":
        """Queue the file at path for uploading as name, or unqueue it when path is None."""
        _assign(self.files, name, path)
        return self

    def set_files(self, files: Mapping[str, Optional[str]]) -> "RequestMessage":
        for name, path in files.items():
            self.set_file(name, path)
        return self

    def get_file(self, name: Optional[str] = None) -> Any:
        return self.files if name is None else self.files.get(name)

    def set_user_field(self, name: str, value: Any = None) -> "RequestMessage":
        """Set a user field, or remove it when value is None."""
        _assign(self.user_fields, name, value)
        return self

    def set_user_fields(self, fields: Mapping[str, Any]) -> "RequestMessage":
        for name, value in fields.items():
            self.set_user_field(name, value)
        return self

    def get_user_field(self, name: Optional[str] = None) -> Any:
        return self.user_fields if name is None else self.user_fields.get(name)

    @property
    def carries_body(self) -> bool:
        """Whether the verb sends a request body."""
        return self.verb in BODY_VERBS

    @property
    def effective_url(self) -> str:
        """URI with GET parameters appended."""
        if not self.get_params:
            return self.uri
        separator = "&" if "?" in self.uri else "?"
        return f"{self.uri}{separator}{urlencode(self.get_params, doseq=True)}"

    def create_call(self, call_class: Optional[Type["Call"]] = None, **kwargs: Any) -> "Call":
        """
        Wrap this request into a call.

        Args:
            call_class: Call implementation, TransferCall by default
            **kwargs: Passed to the call constructor

        Returns:
            New call owning this request
        """
        if call_class is None:
            from .calls import TransferCall
            call_class = TransferCall
        return call_class(self, **kwargs)

    def __repr__(self) -> str:
        return f"<RequestMessage {self.verb} {self.uri}>"


class ResponseMessage(Message):
    """
    Response HTTP message.

    Populated incrementally by the transport: every raw header line goes
    through parse_header_line() in arrival order and every body chunk
    through append_body_chunk().
    """

    def __init__(self) -> None:
        super().__init__()
        self.status_code: Optional[int] = None
        self.reason_phrase: str = ""
        self.protocol_version: Optional[str] = None

    def reset(self) -> "ResponseMessage":
        """Clear everything received so far."""
        super().reset()
        self.status_code = None
        self.reason_phrase = ""
        self.protocol_version = None
        return self

    def parse_header_line(self, line: Union[str, bytes]) -> bool:
        """
        Parse one raw header line.

        Args:
            line: Status line or ``Field: value`` line, line ending included or not

        Returns:
            True if the line was recognised as a status or header line
        """
        if isinstance(line, bytes):
            line = line.decode("iso-8859-1")

        field_name, sep, value = line.partition(":")

        if not sep:
            if line[:4].upper() != "HTTP":
                return False
            self._parse_status_line(line.strip())
            return True

        field_name = field_name.strip().lower()
        value = value.strip()
        self.headers[field_name] = value

        if field_name == "set-cookie" and value:
            cookie = parse_set_cookie(value)
            if cookie is not None:
                self.cookies[cookie.name] = cookie

        return True

    def _parse_status_line(self, line: str) -> None:
        tokens = line.split(" ")

        if self.status_code is not None:
            # A new header block (redirect, 100 Continue) describes the final response
            self.headers = HeaderMap()

        self.protocol_version = tokens[0]
        try:
            self.status_code = int(tokens[1]) if len(tokens) > 1 else None
        except ValueError:
            logger.debug(f"Unparsable status code in status line: {line!r}")
            self.status_code = None
        self.reason_phrase = " ".join(tokens[2:])

    def append_body_chunk(self, chunk: bytes) -> int:
        """Append a body chunk and return its length."""
        if self.raw_body is None:
            self.raw_body = bytes(chunk)
        else:
            self.raw_body += chunk
        return len(chunk)

    @property
    def is_error(self) -> bool:
        """Whether the status code lies in the error range."""
        return (
            self.status_code is not None
            and ERROR_STATUS_MIN <= self.status_code <= ERROR_STATUS_MAX
        )

    def validate_status(self) -> "ResponseMessage":
        """
        Check the status code.

        Returns:
            self, for chaining

        Raises:
            HttpResponseError: If the status code is in the error range
        """
        if self.is_error:
            raise HttpResponseError(self.status_code, self.reason_phrase)
        return self

    def __repr__(self) -> str:
        return f"<ResponseMessage {self.status_code} {self.reason_phrase}>"


def _normalize_verb(verb: Union[str, HttpVerb]) -> str:
    if isinstance(verb, HttpVerb):
        return verb.value
    return str(verb).upper()


def _assign(target: Dict[str, Any], name: str, value: Any) -> None:
    if value is None:
        target.pop(name, None)
    else:
        target[name] = value
