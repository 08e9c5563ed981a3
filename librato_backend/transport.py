"""HTTP transport — posts measurement batches to Librato with a single delayed retry."""

import base64
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from importlib.metadata import PackageNotFoundError, version
from urllib.parse import urlsplit

import httpx

from librato_backend.config import ConfigError, LibratoConfig
from librato_backend.stats import FlushStats

logger = logging.getLogger(__name__)

PRODUCT = "statsd-librato-backend"
METRICS_PATH = "/v1/metrics"


class DeliveryState(Enum):
    SENDING = "sending"
    RETRY_SCHEDULED = "retry_scheduled"
    SUCCEEDED = "succeeded"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    FAILED_FINAL = "failed_final"
    DROPPED = "dropped"


TERMINAL_STATES = frozenset(
    {
        DeliveryState.SUCCEEDED,
        DeliveryState.REJECTED,
        DeliveryState.TIMED_OUT,
        DeliveryState.FAILED_FINAL,
        DeliveryState.DROPPED,
    }
)


class Delivery:
    """Tracks one batch through SENDING -> (RETRY_SCHEDULED ->) terminal state.

    - SENDING: a request for the batch is in flight.
    - RETRY_SCHEDULED: the first attempt hit a 5xx or a connection error;
      a single retry fires after the configured delay.
    - SUCCEEDED / REJECTED (4xx) / TIMED_OUT / FAILED_FINAL: terminal.
    - DROPPED: terminal; the transport was closed before the batch went out.
    """

    def __init__(self, payload: bytes, measurements: int):
        self.payload = payload
        self.measurements = measurements
        self.state = DeliveryState.SENDING
        self.attempts = 0
        self.status_code: int | None = None
        self._done = threading.Event()

    def _transition(self, state: DeliveryState) -> None:
        self.state = state
        if state in TERMINAL_STATES:
            self._done.set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the delivery reaches a terminal state. Returns False on timeout."""
        return self._done.wait(timeout)


def build_payload(measure_time: int, gauges: list, counters: list, source: str | None = None) -> bytes:
    """Serialize a batch to the JSON body the metrics API expects."""
    payload = {
        "gauges": [m.to_dict() for m in gauges],
        "counters": [m.to_dict() for m in counters],
        "measure_time": int(measure_time),
    }
    if source:
        payload["source"] = source
    return json.dumps(payload).encode("utf-8")


def build_basic_auth(email: str, token: str) -> str:
    credentials = f"{email}:{token}".encode("utf-8")
    return "Basic " + base64.b64encode(credentials).decode("ascii")


def build_user_agent() -> str:
    try:
        pkg_version = version(PRODUCT)
    except PackageNotFoundError:
        pkg_version = "unknown"
    return f"{PRODUCT}/{pkg_version}"


def metrics_url(api: str) -> str:
    """Resolve the POST URL from the configured API endpoint.

    Only scheme and host are taken from *api*; https is assumed when no
    scheme is given.
    """
    if "://" not in api:
        api = "https://" + api
    parts = urlsplit(api)
    scheme = "http" if parts.scheme == "http" else "https"
    return f"{scheme}://{parts.netloc}{METRICS_PATH}"


class HttpTransport:
    """Posts batches on a worker thread so flush never waits on the network.

    One worker by default, so batches reach the API in the order they were
    submitted.
    """

    def __init__(
        self,
        config: LibratoConfig,
        stats: FlushStats | None = None,
        http_client: httpx.Client | None = None,
        max_workers: int = 1,
    ):
        self._config = config
        self._stats = stats if stats is not None else FlushStats()
        self._url = metrics_url(config.api)
        self._source = config.source
        self._headers = {
            "Authorization": build_basic_auth(config.email, config.token),
            "Content-Type": "application/json",
            "User-Agent": build_user_agent(),
        }

        self._owns_client = http_client is None
        if http_client is None:
            try:
                http_client = httpx.Client(
                    timeout=config.post_timeout_secs, proxy=config.proxy_uri
                )
            except ImportError as exc:
                # socks proxies need the optional socksio package
                raise ConfigError(f"Proxy {config.proxy_uri!r} is not supported: {exc}") from exc
        self._client = http_client

        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="librato-post"
        )
        self._timers: dict[threading.Timer, Delivery] = {}
        self._lock = threading.Lock()
        self._closed = False

    @property
    def stats(self) -> FlushStats:
        return self._stats

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, measure_time: int, gauges: list, counters: list) -> Delivery:
        """Serialize a batch and dispatch it without waiting for the response."""
        payload = build_payload(measure_time, gauges, counters, self._source)
        delivery = Delivery(payload, len(gauges) + len(counters))
        logger.debug(
            "Submitting batch of %d gauges, %d counters (measure_time=%d, %d bytes)",
            len(gauges),
            len(counters),
            measure_time,
            len(payload),
        )
        self._dispatch(delivery, retry=True)
        return delivery

    def close(self, wait: bool = True) -> None:
        """Cancel scheduled retries and stop the worker pool.

        Batches still in flight are abandoned unless *wait* is True.
        """
        with self._lock:
            self._closed = True
            timers = list(self._timers.items())
            self._timers.clear()
        for timer, delivery in timers:
            timer.cancel()
            delivery._transition(DeliveryState.DROPPED)

        self._executor.shutdown(wait=wait)
        if self._owns_client and wait:
            self._client.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _dispatch(self, delivery: Delivery, retry: bool) -> None:
        with self._lock:
            if self._closed:
                logger.debug("Transport closed, dropping batch of %d measurements", delivery.measurements)
                delivery._transition(DeliveryState.DROPPED)
                return
            self._executor.submit(self._post, delivery, retry)

    def _post(self, delivery: Delivery, retry: bool) -> None:
        delivery.attempts += 1
        delivery._transition(DeliveryState.SENDING)

        headers = dict(self._headers)
        headers["Content-Length"] = str(len(delivery.payload))

        self._stats.record_dispatch()
        try:
            response = self._client.post(
                self._url,
                content=delivery.payload,
                headers=headers,
                timeout=self._config.post_timeout_secs,
            )
        except httpx.TimeoutException as exc:
            if self._config.debug:
                logger.error("Timed out sending metrics to Librato: %s", exc)
            self._stats.record_timeout()
            delivery._transition(DeliveryState.TIMED_OUT)
            return
        except httpx.TransportError as exc:
            self._handle_failure(delivery, retry, str(exc) or exc.__class__.__name__)
            return

        delivery.status_code = response.status_code
        status_class = response.status_code // 100

        if status_class == 5:
            self._handle_failure(delivery, retry, f"HTTP {response.status_code}: {response.text}")
        elif status_class == 4:
            if self._config.debug:
                logger.error(
                    "Failed to post to Librato: HTTP %d: %s",
                    response.status_code,
                    response.text,
                )
            self._stats.record_rejection()
            delivery._transition(DeliveryState.REJECTED)
        else:
            logger.debug(
                "Posted %d measurements to Librato (HTTP %d)",
                delivery.measurements,
                response.status_code,
            )
            self._stats.record_success(delivery.measurements)
            delivery._transition(DeliveryState.SUCCEEDED)

    def _handle_failure(self, delivery: Delivery, retry: bool, errdata: str) -> None:
        """Schedule the one retry, or give up if this was already the retry."""
        if not retry:
            logger.error("Failed to connect to Librato: %s", errdata)
            self._stats.record_failure()
            delivery._transition(DeliveryState.FAILED_FINAL)
            return

        if self._config.debug:
            logger.error(
                "Failed to post to Librato: %s (retrying in %.1fs)",
                errdata,
                self._config.retry_delay_secs,
            )
        timer = threading.Timer(self._config.retry_delay_secs, self._fire_retry, args=(delivery,))
        timer.daemon = True
        with self._lock:
            if self._closed:
                delivery._transition(DeliveryState.DROPPED)
                return
            self._timers[timer] = delivery
            delivery._transition(DeliveryState.RETRY_SCHEDULED)
        self._stats.record_retry()
        timer.start()

    def _fire_retry(self, delivery: Delivery) -> None:
        with self._lock:
            self._timers.pop(threading.current_thread(), None)
        self._dispatch(delivery, retry=False)
