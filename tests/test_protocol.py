import base64
import json
import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from railtunnel.errors import DecodeError
from railtunnel.protocol import (
    ErrorMessage,
    HttpRequestMessage,
    HttpResponseMessage,
    PingMessage,
    PongMessage,
    UnknownMessage,
    decode,
    encode,
    now_ms,
)


def _frame(**fields: object) -> bytes:
    return json.dumps(fields).encode("utf-8")


# ---------------------------------------------------------------------------
# decode: known message types
# ---------------------------------------------------------------------------
class DecodeRequestTests(unittest.TestCase):
    def test_http_request_fields(self) -> None:
        msg = decode(
            _frame(
                type="http_request",
                requestId="req_1",
                method="POST",
                path="/api/items?x=1",
                headers={"content-type": "application/json", "x-multi": ["a", "b"]},
                body='{"name": "widget"}',
            )
        )
        self.assertIsInstance(msg, HttpRequestMessage)
        self.assertEqual(msg.request_id, "req_1")
        self.assertEqual(msg.method, "POST")
        self.assertEqual(msg.path, "/api/items?x=1")
        self.assertEqual(msg.headers["x-multi"], ["a", "b"])
        self.assertEqual(msg.body, b'{"name": "widget"}')

    def test_http_request_accepts_url_alias(self) -> None:
        msg = decode(_frame(type="http_request", requestId="r", method="GET", url="/legacy"))
        self.assertEqual(msg.path, "/legacy")

    def test_http_request_null_body_and_missing_headers(self) -> None:
        msg = decode(_frame(type="http_request", requestId="r", method="GET", path="/", body=None))
        self.assertIsNone(msg.body)
        self.assertEqual(msg.headers, {})

    def test_http_request_embedded_json_body(self) -> None:
        msg = decode(
            _frame(type="http_request", requestId="r", method="POST", path="/", body={"a": 1})
        )
        self.assertEqual(json.loads(msg.body), {"a": 1})

    def test_http_request_base64_body(self) -> None:
        raw = b"\xff\x00\xfe"
        msg = decode(
            _frame(
                type="http_request",
                requestId="r",
                method="PUT",
                path="/upload",
                body=base64.b64encode(raw).decode(),
                bodyEncoding="base64",
            )
        )
        self.assertEqual(msg.body, raw)

    def test_numeric_header_values_become_strings(self) -> None:
        msg = decode(
            _frame(type="http_request", requestId="r", method="GET", path="/", headers={"x-n": 3})
        )
        self.assertEqual(msg.headers["x-n"], "3")

    def test_extra_fields_are_ignored(self) -> None:
        msg = decode(
            _frame(type="http_request", requestId="r", method="GET", path="/", future="yes")
        )
        self.assertEqual(msg.request_id, "r")


class DecodeControlTests(unittest.TestCase):
    def test_ping_with_timestamp(self) -> None:
        self.assertEqual(decode(_frame(type="ping", timestamp=123)), PingMessage(123))

    def test_bare_ping(self) -> None:
        self.assertEqual(decode(_frame(type="ping")), PingMessage(None))

    def test_pong(self) -> None:
        self.assertEqual(decode(_frame(type="pong", timestamp=5)), PongMessage(5))

    def test_integral_float_timestamp(self) -> None:
        msg = decode(_frame(type="ping", timestamp=1.7e12))
        self.assertEqual(msg, PingMessage(1700000000000))
        self.assertIsInstance(msg.timestamp, int)

    def test_error_message_field(self) -> None:
        self.assertEqual(decode(_frame(type="error", message="boom")), ErrorMessage("boom"))

    def test_error_legacy_field(self) -> None:
        self.assertEqual(decode(_frame(type="error", error="old boom")), ErrorMessage("old boom"))

    def test_error_without_text(self) -> None:
        self.assertEqual(decode(_frame(type="error")), ErrorMessage("unknown"))

    def test_str_frames_are_accepted(self) -> None:
        self.assertEqual(decode('{"type": "pong", "timestamp": 1}'), PongMessage(1))

    def test_unknown_type_is_not_an_error(self) -> None:
        msg = decode(_frame(type="frobnicate", knob=11))
        self.assertIsInstance(msg, UnknownMessage)
        self.assertEqual(msg.type_name, "frobnicate")
        self.assertEqual(msg.payload["knob"], 11)


# ---------------------------------------------------------------------------
# decode: malformed frames
# ---------------------------------------------------------------------------
class DecodeErrorTests(unittest.TestCase):
    def assertRejected(self, data: object) -> None:
        with self.assertRaises(DecodeError):
            decode(data)  # type: ignore[arg-type]

    def test_not_json(self) -> None:
        self.assertRejected(b"not json at all")

    def test_invalid_utf8(self) -> None:
        self.assertRejected(b"\xff\xfe\xfd")

    def test_json_array(self) -> None:
        self.assertRejected(b"[1, 2, 3]")

    def test_missing_type(self) -> None:
        self.assertRejected(_frame(requestId="r"))

    def test_non_string_type(self) -> None:
        self.assertRejected(_frame(type=7))

    def test_request_without_request_id(self) -> None:
        self.assertRejected(_frame(type="http_request", method="GET", path="/"))

    def test_request_without_path(self) -> None:
        self.assertRejected(_frame(type="http_request", requestId="r", method="GET"))

    def test_request_with_bad_headers(self) -> None:
        self.assertRejected(
            _frame(type="http_request", requestId="r", method="GET", path="/", headers=["x"])
        )
        self.assertRejected(
            _frame(
                type="http_request", requestId="r", method="GET", path="/", headers={"x": {"y": 1}}
            )
        )

    def test_request_with_bad_base64(self) -> None:
        self.assertRejected(
            _frame(
                type="http_request",
                requestId="r",
                method="GET",
                path="/",
                body="!!!",
                bodyEncoding="base64",
            )
        )

    def test_ping_with_string_timestamp(self) -> None:
        self.assertRejected(_frame(type="ping", timestamp="yesterday"))

    def test_ping_with_bool_timestamp(self) -> None:
        self.assertRejected(_frame(type="ping", timestamp=True))

    def test_ping_with_fractional_timestamp(self) -> None:
        self.assertRejected(_frame(type="ping", timestamp=1.5))

    def test_invalid_request_keeps_request_id(self) -> None:
        with self.assertRaises(DecodeError) as ctx:
            decode(_frame(type="http_request", requestId="r7", method="GET"))
        self.assertEqual(ctx.exception.request_id, "r7")
        with self.assertRaises(DecodeError) as ctx:
            decode(_frame(type="http_request", method="GET", path="/"))
        self.assertIsNone(ctx.exception.request_id)

    def test_response_with_bad_status(self) -> None:
        self.assertRejected(_frame(type="http_response", requestId="r", statusCode="200"))


# ---------------------------------------------------------------------------
# encode
# ---------------------------------------------------------------------------
class EncodeTests(unittest.TestCase):
    def test_http_response_wire_shape(self) -> None:
        data = encode(
            HttpResponseMessage(
                request_id="req_9",
                status_code=404,
                headers={"content-type": "text/plain", "set-cookie": ["a=1", "b=2"]},
                body=b"not found",
            )
        )
        self.assertIsInstance(data, bytes)
        parsed = json.loads(data)
        self.assertEqual(
            parsed,
            {
                "type": "http_response",
                "requestId": "req_9",
                "statusCode": 404,
                "headers": {"content-type": "text/plain", "set-cookie": ["a=1", "b=2"]},
                "body": "not found",
            },
        )

    def test_binary_body_is_base64(self) -> None:
        parsed = json.loads(encode(HttpResponseMessage("r", 200, {}, b"\x89PNG\xff")))
        self.assertEqual(parsed["bodyEncoding"], "base64")
        self.assertEqual(base64.b64decode(parsed["body"]), b"\x89PNG\xff")
        self.assertEqual(decode(encode(HttpResponseMessage("r", 200, {}, b"\x89PNG\xff"))).body, b"\x89PNG\xff")

    def test_null_body(self) -> None:
        parsed = json.loads(encode(HttpResponseMessage("r", 204)))
        self.assertIsNone(parsed["body"])
        self.assertNotIn("bodyEncoding", parsed)

    def test_ping_pong(self) -> None:
        self.assertEqual(json.loads(encode(PingMessage(42))), {"type": "ping", "timestamp": 42})
        self.assertEqual(json.loads(encode(PongMessage(42))), {"type": "pong", "timestamp": 42})

    def test_error(self) -> None:
        self.assertEqual(json.loads(encode(ErrorMessage("x"))), {"type": "error", "message": "x"})

    def test_unknown_message_keeps_payload(self) -> None:
        parsed = json.loads(encode(UnknownMessage("frobnicate", {"type": "frobnicate", "k": 1})))
        self.assertEqual(parsed, {"type": "frobnicate", "k": 1})

    def test_rejects_foreign_objects(self) -> None:
        with self.assertRaises(TypeError):
            encode({"type": "ping"})  # type: ignore[arg-type]


class NowMsTests(unittest.TestCase):
    def test_now_ms_is_epoch_milliseconds(self) -> None:
        ts = now_ms()
        self.assertIsInstance(ts, int)
        self.assertGreater(ts, 1_600_000_000_000)


if __name__ == "__main__":
    unittest.main()
