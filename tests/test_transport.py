"""Tests for the HTTP transport and its retry/timeout state machine."""

import base64
import json
import logging
import threading
import time

import httpx
import pytest

from librato_backend.config import ConfigError, LibratoConfig
from librato_backend.models import Aggregate, PlainValue
from librato_backend.transport import (
    DeliveryState,
    HttpTransport,
    build_basic_auth,
    build_payload,
    build_user_agent,
    metrics_url,
)


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

class ScriptedServer:
    """httpx.MockTransport handler that replays a list of responses.

    Each step is a status code, or an exception class raised instead of
    responding. The last step repeats once the script runs out.
    """

    def __init__(self, *steps):
        self._steps = list(steps)
        self._lock = threading.Lock()
        self.requests: list[httpx.Request] = []
        self.times: list[float] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
            self.times.append(time.monotonic())
            index = min(len(self.requests), len(self._steps)) - 1
        step = self._steps[index]
        if isinstance(step, type) and issubclass(step, Exception):
            raise step("scripted failure", request=request)
        return httpx.Response(step, text=f"status {step}")

    @property
    def calls(self) -> int:
        with self._lock:
            return len(self.requests)


def _make_transport(server: ScriptedServer, **overrides) -> HttpTransport:
    defaults = dict(
        email="me@example.com",
        token="secret",
        source="test-host",
        retry_delay_secs=0.01,
        post_timeout_secs=1.0,
    )
    defaults.update(overrides)
    client = httpx.Client(transport=httpx.MockTransport(server))
    return HttpTransport(LibratoConfig(**defaults), http_client=client)


def _wait_for_state(delivery, state, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if delivery.state == state:
            return
        time.sleep(0.005)
    raise AssertionError(f"delivery stuck in {delivery.state}, expected {state}")


GAUGES = [PlainValue(name="g", value=1)]


@pytest.fixture
def transports():
    """Collect transports created in a test and close them afterwards."""
    created: list[HttpTransport] = []
    yield created
    for transport in created:
        transport.close()


# ------------------------------------------------------------------
# Request shape
# ------------------------------------------------------------------

class TestRequest:
    def test_posts_json_with_headers(self, transports):
        server = ScriptedServer(200)
        transport = _make_transport(server)
        transports.append(transport)

        counters = [PlainValue(name="c", value=3)]
        delivery = transport.submit(1000, GAUGES, counters)
        assert delivery.wait(5)

        request = server.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://metrics-api.librato.com/v1/metrics"
        expected_auth = "Basic " + base64.b64encode(b"me@example.com:secret").decode()
        assert request.headers["Authorization"] == expected_auth
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["Content-Length"] == str(len(request.content))
        assert request.headers["User-Agent"].startswith("statsd-librato-backend/")

        body = json.loads(request.content)
        assert body == {
            "gauges": [{"name": "g", "value": 1}],
            "counters": [{"name": "c", "value": 3}],
            "measure_time": 1000,
            "source": "test-host",
        }

    def test_plain_http_endpoint(self, transports):
        server = ScriptedServer(200)
        transport = _make_transport(server, api="http://localhost:8080")
        transports.append(transport)
        transport.submit(1000, GAUGES, []).wait(5)
        assert str(server.requests[0].url) == "http://localhost:8080/v1/metrics"


# ------------------------------------------------------------------
# State machine
# ------------------------------------------------------------------

class TestDeliveryStates:
    def test_success(self, transports):
        server = ScriptedServer(200)
        transport = _make_transport(server)
        transports.append(transport)

        delivery = transport.submit(1000, GAUGES, [])
        assert delivery.wait(5)
        assert delivery.state == DeliveryState.SUCCEEDED
        assert delivery.attempts == 1
        assert transport.stats.snapshot()["batches_sent"] == 1
        assert transport.stats.snapshot()["measurements_sent"] == 1

    def test_5xx_retried_once_then_gives_up(self, transports, caplog):
        server = ScriptedServer(503, 503)
        transport = _make_transport(server)
        transports.append(transport)

        with caplog.at_level(logging.ERROR, logger="librato_backend.transport"):
            delivery = transport.submit(1000, GAUGES, [])
            assert delivery.wait(5)
            time.sleep(0.1)

        assert delivery.state == DeliveryState.FAILED_FINAL
        assert delivery.attempts == 2
        assert delivery.status_code == 503
        assert server.calls == 2
        assert any("Failed to connect to Librato" in r.getMessage() for r in caplog.records)
        stats = transport.stats.snapshot()
        assert stats["retries"] == 1
        assert stats["failures"] == 1

    def test_5xx_then_success(self, transports):
        server = ScriptedServer(502, 200)
        transport = _make_transport(server)
        transports.append(transport)

        delivery = transport.submit(1000, GAUGES, [])
        assert delivery.wait(5)
        assert delivery.state == DeliveryState.SUCCEEDED
        assert delivery.attempts == 2

    def test_retry_waits_for_delay(self, transports):
        server = ScriptedServer(503, 200)
        transport = _make_transport(server, retry_delay_secs=0.2)
        transports.append(transport)

        delivery = transport.submit(1000, GAUGES, [])
        _wait_for_state(delivery, DeliveryState.RETRY_SCHEDULED)
        assert delivery.wait(5)
        assert server.times[1] - server.times[0] >= 0.15

    def test_4xx_rejected_without_retry(self, transports, caplog):
        server = ScriptedServer(400, 200)
        transport = _make_transport(server, debug=True)
        transports.append(transport)

        with caplog.at_level(logging.ERROR, logger="librato_backend.transport"):
            delivery = transport.submit(1000, GAUGES, [])
            assert delivery.wait(5)
            time.sleep(0.1)

        assert delivery.state == DeliveryState.REJECTED
        assert server.calls == 1
        assert any("HTTP 400" in r.getMessage() for r in caplog.records)
        assert transport.stats.snapshot()["rejections"] == 1

    def test_4xx_quiet_without_debug(self, transports, caplog):
        server = ScriptedServer(422)
        transport = _make_transport(server)
        transports.append(transport)

        with caplog.at_level(logging.ERROR, logger="librato_backend.transport"):
            assert transport.submit(1000, GAUGES, []).wait(5)
        assert caplog.records == []

    def test_connection_error_retried_once(self, transports):
        server = ScriptedServer(httpx.ConnectError, 200)
        transport = _make_transport(server)
        transports.append(transport)

        delivery = transport.submit(1000, GAUGES, [])
        assert delivery.wait(5)
        assert delivery.state == DeliveryState.SUCCEEDED
        assert delivery.attempts == 2

    def test_connection_error_twice_fails(self, transports):
        server = ScriptedServer(httpx.ConnectError)
        transport = _make_transport(server)
        transports.append(transport)

        delivery = transport.submit(1000, GAUGES, [])
        assert delivery.wait(5)
        assert delivery.state == DeliveryState.FAILED_FINAL
        assert server.calls == 2

    def test_timeout_dropped_without_retry(self, transports):
        server = ScriptedServer(httpx.ReadTimeout, 200)
        transport = _make_transport(server)
        transports.append(transport)

        delivery = transport.submit(1000, GAUGES, [])
        assert delivery.wait(5)
        time.sleep(0.1)
        assert delivery.state == DeliveryState.TIMED_OUT
        assert server.calls == 1
        assert transport.stats.snapshot()["timeouts"] == 1

    def test_last_flush_updated_on_failure(self, transports):
        server = ScriptedServer(500)
        transport = _make_transport(server)
        transports.append(transport)

        before = int(time.time())
        assert transport.submit(1000, GAUGES, []).wait(5)
        assert transport.stats.last_flush >= before

    def test_close_cancels_scheduled_retry(self):
        server = ScriptedServer(503, 200)
        transport = _make_transport(server, retry_delay_secs=10)

        delivery = transport.submit(1000, GAUGES, [])
        _wait_for_state(delivery, DeliveryState.RETRY_SCHEDULED)
        transport.close()

        assert server.calls == 1
        assert delivery.wait(1)
        assert delivery.state == DeliveryState.DROPPED

    def test_submit_after_close_dropped(self):
        server = ScriptedServer(200)
        transport = _make_transport(server)
        transport.close()

        delivery = transport.submit(1000, GAUGES, [])
        assert delivery.wait(1)
        assert delivery.state == DeliveryState.DROPPED
        assert server.calls == 0

    def test_batches_posted_in_submission_order(self, transports):
        server = ScriptedServer(200)
        transport = _make_transport(server)
        transports.append(transport)

        deliveries = [
            transport.submit(1000, [PlainValue(name=f"g{i}", value=i)], []) for i in range(20)
        ]
        assert all(d.wait(5) for d in deliveries)
        names = [json.loads(r.content)["gauges"][0]["name"] for r in server.requests]
        assert names == [f"g{i}" for i in range(20)]


class TestProxy:
    def test_missing_socks_support_is_config_error(self, monkeypatch):
        def client_without_socks(**kwargs):
            raise ImportError(
                "Using SOCKS proxy, but the 'socksio' package is not installed."
            )

        monkeypatch.setattr(httpx, "Client", client_without_socks)
        config = LibratoConfig(email="e", token="t", proxy_uri="socks5://proxy:1080")
        with pytest.raises(ConfigError, match="socks5://proxy:1080"):
            HttpTransport(config)


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

class TestHelpers:
    def test_payload_omits_missing_source(self):
        body = json.loads(build_payload(5, [], [], None))
        assert body == {"gauges": [], "counters": [], "measure_time": 5}

    def test_payload_aggregate_shape(self):
        aggregate = Aggregate(name="t", count=2, sum=3, sum_squares=5, min=1, max=2, source="h")
        body = json.loads(build_payload(5, [aggregate], []))
        assert body["gauges"] == [
            {"name": "t", "count": 2, "sum": 3, "sum_squares": 5, "min": 1, "max": 2, "source": "h"}
        ]

    def test_basic_auth(self):
        assert build_basic_auth("a", "b") == "Basic YTpi"

    def test_user_agent(self):
        product, _, version = build_user_agent().partition("/")
        assert product == "statsd-librato-backend"
        assert version

    @pytest.mark.parametrize(
        "api, expected",
        [
            ("https://metrics-api.librato.com", "https://metrics-api.librato.com/v1/metrics"),
            ("metrics-api.librato.com", "https://metrics-api.librato.com/v1/metrics"),
            ("http://localhost:8080", "http://localhost:8080/v1/metrics"),
            ("https://example.com:8443/ignored", "https://example.com:8443/v1/metrics"),
        ],
    )
    def test_metrics_url(self, api, expected):
        assert metrics_url(api) == expected
