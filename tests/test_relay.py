from __future__ import annotations

import io
import json
import unittest
from unittest.mock import patch
from urllib import error as urllib_error

from assistant_kernel.relay import RESPONSE_ECHO_LIMIT, RelayClient, RelayError

ENDPOINT = "https://runtime.example.com/jobs"


class _FakeResponse:
    def __init__(self, body: str, status: int = 200) -> None:
        self.status = status
        self._body = body.encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> _FakeResponse:
        return self

    def __exit__(self, *exc_info) -> None:  # type: ignore[no-untyped-def]
        return None


class RelayClientTest(unittest.TestCase):
    def test_post_sends_json_with_bearer_token(self) -> None:
        client = RelayClient(ENDPOINT, api_key="relay-key", timeout=5)

        with patch("assistant_kernel.relay.urllib_request.urlopen", return_value=_FakeResponse('{"ok": true}')) as urlopen:
            body = client.post({"request_id": "REQ-1", "instruction": "整理记录"})

        self.assertEqual(body, '{"ok": true}')
        request = urlopen.call_args.args[0]
        self.assertEqual(request.full_url, ENDPOINT)
        self.assertEqual(request.get_method(), "POST")
        self.assertEqual(request.get_header("Authorization"), "Bearer relay-key")
        self.assertEqual(json.loads(request.data.decode("utf-8"))["instruction"], "整理记录")
        self.assertEqual(urlopen.call_args.kwargs["timeout"], 5)

    def test_no_authorization_header_without_key(self) -> None:
        client = RelayClient(ENDPOINT)

        with patch("assistant_kernel.relay.urllib_request.urlopen", return_value=_FakeResponse("ok")) as urlopen:
            client.post({"request_id": "REQ-1"})

        self.assertIsNone(urlopen.call_args.args[0].get_header("Authorization"))

    def test_long_body_is_clipped(self) -> None:
        client = RelayClient(ENDPOINT)

        with patch("assistant_kernel.relay.urllib_request.urlopen", return_value=_FakeResponse("x" * 5000)):
            body = client.post({})

        self.assertEqual(len(body), RESPONSE_ECHO_LIMIT)

    def test_empty_endpoint_raises(self) -> None:
        with self.assertRaises(RelayError):
            RelayClient("  ").post({})

    def test_http_error_raises_relay_error(self) -> None:
        client = RelayClient(ENDPOINT)
        http_error = urllib_error.HTTPError(ENDPOINT, 502, "Bad Gateway", {}, io.BytesIO(b"upstream down"))  # type: ignore[arg-type]

        with patch("assistant_kernel.relay.urllib_request.urlopen", side_effect=http_error):
            with self.assertRaises(RelayError) as ctx:
                client.post({"request_id": "REQ-1"})

        self.assertIn("HTTP 502", str(ctx.exception))
        self.assertIn("upstream down", str(ctx.exception))

    def test_network_error_raises_relay_error(self) -> None:
        client = RelayClient(ENDPOINT)

        with patch(
            "assistant_kernel.relay.urllib_request.urlopen",
            side_effect=urllib_error.URLError("connection refused"),
        ):
            with self.assertRaises(RelayError) as ctx:
                client.post({})

        self.assertIn("connection refused", str(ctx.exception))

    def test_non_2xx_status_raises(self) -> None:
        client = RelayClient(ENDPOINT)

        with patch("assistant_kernel.relay.urllib_request.urlopen", return_value=_FakeResponse("moved", status=302)):
            with self.assertRaises(RelayError):
                client.post({})


if __name__ == "__main__":
    unittest.main()
