import errno
import socket
import unittest

import httpx
import openai

from overlay.errors import (
    CaptureError,
    HostUnreachableError,
    NetworkError,
    NoConnectionError,
    RemoteAPIError,
    RequestTimeoutError,
    describe_capture_error,
    describe_generation_error,
)
from overlay.llm import classify_error

_REQUEST = httpx.Request("POST", "https://api.example/v1/chat/completions")


def _connection_error(cause: BaseException) -> openai.APIConnectionError:
    try:
        try:
            raise cause
        except BaseException as inner:
            raise openai.APIConnectionError(request=_REQUEST) from inner
    except openai.APIConnectionError as outer:
        return outer


class TestClassifyError(unittest.TestCase):
    def test_status_error_uses_body_code_and_message(self):
        response = httpx.Response(429, request=_REQUEST)
        err = openai.APIStatusError(
            "rate limited",
            response=response,
            body={"error": {"code": 429, "message": "Resource has been exhausted"}},
        )
        out = classify_error(err)
        self.assertIsInstance(out, RemoteAPIError)
        self.assertEqual(describe_generation_error(out), "⚠️ API Error (429): Resource has been exhausted")

    def test_status_error_with_list_body(self):
        response = httpx.Response(400, request=_REQUEST)
        err = openai.APIStatusError(
            "bad",
            response=response,
            body=[{"error": {"code": 400, "message": "API key not valid"}}],
        )
        out = classify_error(err)
        self.assertEqual(out.code, 400)
        self.assertEqual(out.message, "API key not valid")

    def test_timeout(self):
        out = classify_error(openai.APITimeoutError(request=_REQUEST))
        self.assertIsInstance(out, RequestTimeoutError)
        self.assertEqual(describe_generation_error(out), "⚠️ Request timed out. Server is not responding.")

    def test_dns_failure_is_host_unreachable(self):
        out = classify_error(_connection_error(socket.gaierror(-2, "Name or service not known")))
        self.assertIsInstance(out, HostUnreachableError)
        self.assertEqual(describe_generation_error(out), "⚠️ Failed to connect to server.")

    def test_connect_refused_is_host_unreachable(self):
        out = classify_error(httpx.ConnectError("refused", request=_REQUEST))
        self.assertIsInstance(out, HostUnreachableError)

    def test_network_down_is_no_connection(self):
        out = classify_error(_connection_error(OSError(errno.ENETUNREACH, "Network is unreachable")))
        self.assertIsInstance(out, NoConnectionError)
        self.assertEqual(describe_generation_error(out), "⚠️ No internet connection. Check your connection.")

    def test_other_transport_error_is_generic_network(self):
        out = classify_error(httpx.RemoteProtocolError("peer closed connection", request=_REQUEST))
        self.assertIsInstance(out, NetworkError)
        self.assertEqual(describe_generation_error(out), "⚠️ Network Error: peer closed connection")

    def test_unknown_error_is_returned_unchanged(self):
        err = KeyError("boom")
        self.assertIs(classify_error(err), err)
        self.assertEqual(describe_generation_error(ValueError("bad value")), "⚠️ Error: bad value")


class TestCaptureErrors(unittest.TestCase):
    def test_capture_error_message(self):
        msg = describe_capture_error(CaptureError("Microphone", "permission denied"))
        self.assertEqual(msg, "⚠️ Microphone capture failed: permission denied")

    def test_foreign_error_uses_device_name(self):
        msg = describe_capture_error(RuntimeError("no frames"), device="Screen")
        self.assertEqual(msg, "⚠️ Screen capture failed: no frames")


if __name__ == "__main__":
    unittest.main()
