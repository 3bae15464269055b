from __future__ import annotations

import base64
import binascii
import json
import time
from dataclasses import dataclass, field
from typing import Any, Union

from .errors import DecodeError

Headers = dict[str, Union[str, list[str]]]

HTTP_REQUEST = "http_request"
HTTP_RESPONSE = "http_response"
PING = "ping"
PONG = "pong"
ERROR = "error"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class HttpRequestMessage:
    request_id: str
    method: str
    path: str
    headers: Headers = field(default_factory=dict)
    body: bytes | None = None


@dataclass(frozen=True)
class HttpResponseMessage:
    request_id: str
    status_code: int
    headers: Headers = field(default_factory=dict)
    body: bytes | None = None


@dataclass(frozen=True)
class PingMessage:
    timestamp: int | None = None


@dataclass(frozen=True)
class PongMessage:
    timestamp: int | None = None


@dataclass(frozen=True)
class ErrorMessage:
    message: str


@dataclass(frozen=True)
class UnknownMessage:
    """A well-formed frame whose ``type`` this client does not understand."""

    type_name: str
    payload: dict[str, Any] = field(default_factory=dict)


WireMessage = Union[
    HttpRequestMessage,
    HttpResponseMessage,
    PingMessage,
    PongMessage,
    ErrorMessage,
    UnknownMessage,
]


def _encode_body(body: bytes | None, payload: dict[str, Any]) -> None:
    if body is None:
        payload["body"] = None
        return
    try:
        payload["body"] = body.decode("utf-8")
    except UnicodeDecodeError:
        payload["body"] = base64.b64encode(body).decode("ascii")
        payload["bodyEncoding"] = "base64"


def encode(message: WireMessage) -> bytes:
    """Serialize a message to the UTF-8 JSON frame sent over the control connection."""
    payload: dict[str, Any]
    if isinstance(message, HttpResponseMessage):
        payload = {
            "type": HTTP_RESPONSE,
            "requestId": message.request_id,
            "statusCode": message.status_code,
            "headers": dict(message.headers),
        }
        _encode_body(message.body, payload)
    elif isinstance(message, HttpRequestMessage):
        payload = {
            "type": HTTP_REQUEST,
            "requestId": message.request_id,
            "method": message.method,
            "path": message.path,
            "headers": dict(message.headers),
        }
        _encode_body(message.body, payload)
    elif isinstance(message, PingMessage):
        payload = {"type": PING, "timestamp": message.timestamp}
    elif isinstance(message, PongMessage):
        payload = {"type": PONG, "timestamp": message.timestamp}
    elif isinstance(message, ErrorMessage):
        payload = {"type": ERROR, "message": message.message}
    elif isinstance(message, UnknownMessage):
        payload = {**message.payload, "type": message.type_name}
    else:
        raise TypeError(f"cannot encode {type(message).__name__}")
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def _require_str(obj: dict[str, Any], key: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str):
        raise DecodeError(f"{obj.get('type')}: field {key!r} must be a string")
    return value


def _decode_timestamp(obj: dict[str, Any]) -> int | None:
    value = obj.get("timestamp")
    if value is None:
        return None
    # Integral floats such as 1.7e12 are epoch millis too.
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        raise DecodeError(f"{obj.get('type')}: field 'timestamp' must be an integer")
    return value


def _decode_headers(obj: dict[str, Any]) -> Headers:
    raw = obj.get("headers")
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise DecodeError(f"{obj.get('type')}: field 'headers' must be an object")
    headers: Headers = {}
    for name, value in raw.items():
        if isinstance(value, str):
            headers[name] = value
        elif isinstance(value, list) and all(isinstance(v, str) for v in value):
            headers[name] = list(value)
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            headers[name] = str(value)
        else:
            raise DecodeError(f"{obj.get('type')}: header {name!r} has invalid value")
    return headers


def _decode_body(obj: dict[str, Any]) -> bytes | None:
    raw = obj.get("body")
    if raw is None:
        return None
    if isinstance(raw, str):
        if obj.get("bodyEncoding") == "base64":
            try:
                return base64.b64decode(raw, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise DecodeError(f"{obj.get('type')}: invalid base64 body") from exc
        return raw.encode("utf-8")
    # Relays may embed JSON bodies directly.
    return json.dumps(raw).encode("utf-8")


def _decode_request(obj: dict[str, Any], request_id: str) -> HttpRequestMessage:
    path = obj.get("path", obj.get("url"))
    if not isinstance(path, str):
        raise DecodeError("http_request: field 'path' must be a string")
    return HttpRequestMessage(
        request_id=request_id,
        method=_require_str(obj, "method"),
        path=path,
        headers=_decode_headers(obj),
        body=_decode_body(obj),
    )


def decode(data: bytes | str) -> WireMessage:
    """Parse one control-connection frame.

    Raises :class:`DecodeError` when the frame is not a JSON object with a
    string ``type`` or when a known message type is missing required fields.
    Frames with an unrecognised ``type`` decode to :class:`UnknownMessage`.
    """
    try:
        obj = json.loads(data)
    except (UnicodeDecodeError, ValueError) as exc:
        raise DecodeError(f"frame is not valid JSON: {exc}") from exc
    if not isinstance(obj, dict):
        raise DecodeError("frame is not a JSON object")
    msg_type = obj.get("type")
    if not isinstance(msg_type, str):
        raise DecodeError("frame has no string 'type' field")

    if msg_type == HTTP_REQUEST:
        request_id = _require_str(obj, "requestId")
        try:
            return _decode_request(obj, request_id)
        except DecodeError as exc:
            raise DecodeError(str(exc), request_id=request_id) from exc
    if msg_type == HTTP_RESPONSE:
        status = obj.get("statusCode")
        if isinstance(status, bool) or not isinstance(status, int):
            raise DecodeError("http_response: field 'statusCode' must be an integer")
        return HttpResponseMessage(
            request_id=_require_str(obj, "requestId"),
            status_code=status,
            headers=_decode_headers(obj),
            body=_decode_body(obj),
        )
    if msg_type == PING:
        return PingMessage(timestamp=_decode_timestamp(obj))
    if msg_type == PONG:
        return PongMessage(timestamp=_decode_timestamp(obj))
    if msg_type == ERROR:
        message = obj.get("message", obj.get("error"))
        return ErrorMessage(message=str(message) if message is not None else "unknown")
    return UnknownMessage(type_name=msg_type, payload=obj)
