import unittest
from unittest.mock import MagicMock

import requests

from site_backend.edge_config import (
    ClientState,
    EdgeConfigClient,
    EdgeConfigConnection,
    EdgeConfigError,
    EdgeConfigSizeLimitError,
    EdgeConfigUnavailableError,
    InMemoryEdgeConfigTransport,
    RawHttpTransport,
    SdkTransport,
)

CONNECTION_STRING = "https://edge-config.vercel.com/ecfg_abc?token=tok-123"


def fake_response(status_code=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.json.return_value = payload
    response.text = text
    return response


class EdgeConfigConnectionTests(unittest.TestCase):
    def test_parses_connection_string(self):
        connection = EdgeConfigConnection.from_connection_string(CONNECTION_STRING)
        self.assertEqual(connection.config_id, "ecfg_abc")
        self.assertEqual(connection.token, "tok-123")
        self.assertEqual(connection.url, "https://edge-config.vercel.com/ecfg_abc")
        self.assertNotIn("tok-123", connection.redacted())

    def test_rejects_connection_string_without_token(self):
        with self.assertRaises(ValueError):
            EdgeConfigConnection.from_connection_string(
                "https://edge-config.vercel.com/ecfg_abc"
            )
        with self.assertRaises(ValueError):
            EdgeConfigConnection.from_connection_string("not a url")


class EdgeConfigClientInitTests(unittest.TestCase):
    def test_connection_string_wins(self):
        seen = []
        transport = InMemoryEdgeConfigTransport()

        def factory(connection):
            seen.append(connection)
            return transport

        client = EdgeConfigClient(
            connection_string=CONNECTION_STRING,
            config_id="other",
            token="other-token",
            sdk_factory=factory,
            raw_factory=factory,
        )
        self.assertTrue(client.initialize())
        self.assertEqual(client.state, ClientState.SDK_READY)
        self.assertEqual(seen[0].config_id, "ecfg_abc")

    def test_falls_back_to_explicit_credentials(self):
        transport = InMemoryEdgeConfigTransport()
        client = EdgeConfigClient(
            connection_string="garbage",
            config_id="ecfg_explicit",
            token="tok",
            sdk_factory=lambda connection: transport,
            raw_factory=lambda connection: transport,
        )
        self.assertTrue(client.initialize())
        self.assertEqual(client.state, ClientState.SDK_READY)

    def test_sdk_failure_leaves_raw_http_client(self):
        def broken_sdk(connection):
            raise ValueError("sdk unavailable")

        client = EdgeConfigClient(
            config_id="ecfg_explicit",
            token="tok",
            sdk_factory=broken_sdk,
            raw_factory=lambda connection: InMemoryEdgeConfigTransport({"k": [1]}),
        )
        self.assertTrue(client.initialize())
        self.assertEqual(client.state, ClientState.RAW_HTTP_READY)
        self.assertEqual(client.get("k"), [1])

    def test_no_credentials_fails(self):
        client = EdgeConfigClient()
        self.assertFalse(client.initialize())
        self.assertEqual(client.state, ClientState.FAILED)
        self.assertFalse(client.ready)
        with self.assertRaises(EdgeConfigUnavailableError):
            client.get("k")

    def test_failed_client_stays_failed_until_reinitialized(self):
        client = EdgeConfigClient()
        client.initialize()
        client.config_id = "ecfg"
        client.token = "tok"
        client._sdk_factory = lambda connection: InMemoryEdgeConfigTransport()
        self.assertFalse(client.initialize())
        self.assertTrue(client.reinitialize())
        self.assertEqual(client.state, ClientState.SDK_READY)


class EdgeConfigClientOperationTests(unittest.TestCase):
    def setUp(self):
        self.sdk = InMemoryEdgeConfigTransport({"regs": [{"registrationId": "a"}]})
        self.raw = InMemoryEdgeConfigTransport({"regs": [{"registrationId": "raw"}]})
        self.client = EdgeConfigClient(
            config_id="ecfg",
            token="tok",
            sdk_factory=lambda connection: self.sdk,
            raw_factory=lambda connection: self.raw,
        )

    def test_get_uses_sdk_transport(self):
        self.assertEqual(self.client.get("regs"), [{"registrationId": "a"}])
        self.assertIsNone(self.client.get("missing"))

    def test_sdk_read_failure_degrades_to_raw_http(self):
        self.sdk.fail_reads = True
        self.assertEqual(self.client.get("regs"), [{"registrationId": "raw"}])
        self.assertEqual(self.client.state, ClientState.RAW_HTTP_READY)

    def test_sdk_write_failure_degrades_to_raw_http(self):
        self.sdk.fail_writes = True
        self.client.set("regs", [])
        self.assertEqual(self.raw.get("regs"), [])
        self.assertEqual(self.client.state, ClientState.RAW_HTTP_READY)

    def test_size_limit_is_not_retried_on_raw_http(self):
        self.sdk.size_limit = 0
        with self.assertRaises(EdgeConfigSizeLimitError):
            self.client.set("regs", [{"registrationId": "b"}])
        self.assertEqual(self.raw.writes, 0)
        self.assertEqual(self.client.state, ClientState.SDK_READY)

    def test_raw_failure_propagates(self):
        self.sdk.fail_reads = True
        self.raw.fail_reads = True
        with self.assertRaises(EdgeConfigError):
            self.client.get("regs")

    def test_stored_values_are_copies(self):
        value = self.client.get("regs")
        value.append({"registrationId": "mutated"})
        self.assertEqual(len(self.client.get("regs")), 1)


class HttpTransportTests(unittest.TestCase):
    def setUp(self):
        self.connection = EdgeConfigConnection("ecfg", "tok", "https://edge.test")
        self.session = MagicMock()

    def transport(self, cls, **kwargs):
        return cls(
            self.connection,
            api_url="https://api.test",
            session=self.session,
            sleep=lambda _: None,
            **kwargs,
        )

    def test_sdk_get_sends_bearer_token(self):
        self.session.request.return_value = fake_response(payload=[{"a": 1}])
        value = self.transport(SdkTransport).get("regs")
        self.assertEqual(value, [{"a": 1}])
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("GET", "https://edge.test/ecfg/item/regs"))
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer tok")

    def test_missing_item_reads_as_none(self):
        self.session.request.return_value = fake_response(status_code=404)
        self.assertIsNone(self.transport(RawHttpTransport).get("regs"))

    def test_read_error_status_raises(self):
        self.session.request.return_value = fake_response(status_code=500)
        with self.assertRaises(EdgeConfigError):
            self.transport(RawHttpTransport).get("regs")

    def test_raw_get_passes_token_as_query_parameter(self):
        self.session.request.return_value = fake_response(payload=[])
        self.transport(RawHttpTransport).get("regs")
        _, kwargs = self.session.request.call_args
        self.assertEqual(kwargs["params"], {"token": "tok"})

    def test_sdk_set_requires_api_token(self):
        with self.assertRaises(EdgeConfigError):
            self.transport(SdkTransport).set("regs", [])
        self.session.request.assert_not_called()

    def test_set_via_api_sends_upsert(self):
        self.session.request.return_value = fake_response()
        self.transport(SdkTransport, api_token="vercel-token").set("regs", [{"a": 1}])
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("PATCH", "https://api.test/v1/edge-config/ecfg/items"))
        self.assertEqual(
            kwargs["json"],
            {"items": [{"operation": "upsert", "key": "regs", "value": [{"a": 1}]}]},
        )
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer vercel-token")

    def test_raw_set_without_api_token_patches_items_endpoint(self):
        self.session.request.return_value = fake_response()
        self.transport(RawHttpTransport).set("regs", [])
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("PATCH", "https://edge.test/ecfg/items"))
        self.assertEqual(kwargs["params"], {"token": "tok"})

    def test_size_limit_response_raises_size_limit_error(self):
        self.session.request.return_value = fake_response(
            status_code=400, text="Edge Config item is too large"
        )
        with self.assertRaises(EdgeConfigSizeLimitError):
            self.transport(SdkTransport, api_token="t").set("regs", [])

    def test_network_errors_are_retried(self):
        self.session.request.side_effect = [
            requests.ConnectionError("reset"),
            fake_response(payload=[]),
        ]
        self.assertEqual(self.transport(SdkTransport).get("regs"), [])
        self.assertEqual(self.session.request.call_count, 2)


if __name__ == "__main__":
    unittest.main()
