"""Secure-stream transport binding.

The orchestration core only sees ``StreamTransport`` / ``StreamHandle``:
create a stream of a named type, tag it, read its events, tear it down.
``AiohttpStreamTransport`` fulfils streams over HTTP(S) with aiohttp.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import ssl
from enum import Enum
from typing import Iterable, Mapping, Protocol
from urllib.parse import quote

import aiohttp

from streamstress.core.contracts import StreamEvent, StreamSignal
from streamstress.core.errors import AttemptCreationError, MetadataError, PolicyError, TransportError
from streamstress.core.policy import CAPTIVE_PORTAL_DETECT, PolicyDocument, RetryBackoff, StreamTypePolicy
from streamstress.core.system_state import BlobType, SystemBlobStore

_URL_TEMPLATE = re.compile(r"\$\{([A-Za-z0-9_]+)\}")


class ConnectivityState(str, Enum):
    UNKNOWN = "unknown"
    INTERNET_OK = "internet_ok"
    CAPTIVE_PORTAL = "captive_portal"
    NO_INTERNET = "no_internet"


class StreamHandle:
    """Event queue plus per-stream timer shared by every stream implementation."""

    def __init__(
        self,
        stream_type: str,
        metadata_names: Iterable[str] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.stream_type = stream_type
        self._events: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self._allowed_metadata = set(metadata_names) if metadata_names is not None else None
        self._tx_metadata: dict[str, str] = {}
        self._rx_metadata: dict[str, str] = {}
        self._timer: asyncio.TimerHandle | None = None
        self._closed = False
        self._logger = logger or logging.getLogger("streamstress.transport")
        self.emit(StreamEvent.state(StreamSignal.CREATING))

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def timeout_armed(self) -> bool:
        return self._timer is not None

    def emit(self, event: StreamEvent) -> None:
        if self._closed:
            return
        self._events.put_nowait(event)

    async def next_event(self) -> StreamEvent:
        return await self._events.get()

    def start_timeout(self, timeout_ms: int) -> None:
        if self._closed:
            return
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(timeout_ms / 1000.0, self._on_timeout)

    def _on_timeout(self) -> None:
        self._timer = None
        self.emit(StreamEvent.state(StreamSignal.TIMEOUT))

    def set_metadata(self, name: str, value: str) -> None:
        if self._allowed_metadata is not None and name not in self._allowed_metadata:
            raise MetadataError(name)
        self._tx_metadata[name] = value

    def get_metadata(self, name: str) -> str | None:
        if name in self._rx_metadata:
            return self._rx_metadata[name]
        return self._tx_metadata.get(name)

    async def connect(self) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        await self._shutdown()

    async def _shutdown(self) -> None:
        return None


class StreamTransport(Protocol):
    def create_stream(self, stream_type: str) -> StreamHandle: ...

    async def close(self) -> None: ...


class HttpSecureStream(StreamHandle):
    def __init__(
        self,
        transport: "AiohttpStreamTransport",
        policy: StreamTypePolicy,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(policy.name, metadata_names=policy.metadata.keys(), logger=logger)
        self._transport = transport
        self._policy = policy
        self._task: asyncio.Task[None] | None = None

    def request_url(self) -> str:
        path = _URL_TEMPLATE.sub(lambda m: quote(self._tx_metadata.get(m.group(1), ""), safe=""), self._policy.http_url)
        return f"{self._policy.scheme}://{self._policy.endpoint}:{self._policy.port}/{path.lstrip('/')}"

    def request_headers(self) -> dict[str, str]:
        headers = {"User-Agent": self._transport.user_agent()}
        for name, value in self._tx_metadata.items():
            header = self._policy.header_for(name)
            if header:
                headers[header] = value
        return headers

    async def connect(self) -> None:
        if self._closed:
            raise TransportError(f"{self.stream_type}: stream already torn down")
        if self._task is not None:
            raise TransportError(f"{self.stream_type}: connect already requested")
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        backoff = self._transport.retry_backoff(self._policy.retry)
        for index in range(backoff.conceal):
            self.emit(StreamEvent.state(StreamSignal.CONNECTING))
            # One loop turn so the consumer can tag the stream before the request is built.
            await asyncio.sleep(0)
            connected = False
            try:
                state = await self._transport.check_connectivity()
                if state != ConnectivityState.INTERNET_OK:
                    raise TransportError(f"connectivity check: {state.value}")
                async with self._transport.request(
                    self._policy,
                    self.request_url(),
                    headers=self.request_headers(),
                ) as response:
                    connected = True
                    self._capture_response_metadata(response.headers)
                    self.emit(StreamEvent.state(StreamSignal.CONNECTED))
                    mapped = self._policy.http_resp_map.get(response.status)
                    if mapped is not None:
                        self.emit(StreamEvent.state(StreamSignal.USER_STATE, value=mapped))
                    pending: bytes | None = None
                    async for chunk in response.content.iter_any():
                        if pending is not None:
                            self.emit(StreamEvent.rx(pending))
                        pending = chunk
                    self.emit(StreamEvent.rx(pending or b"", eom=True))
                    if self._status_acceptable(response.status):
                        self.emit(StreamEvent.state(StreamSignal.QOS_ACK_REMOTE))
                    else:
                        self.emit(StreamEvent.state(StreamSignal.QOS_NACK_REMOTE))
                self.emit(StreamEvent.state(StreamSignal.DISCONNECTED))
                return
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError, TransportError, PolicyError) as exc:
                if connected:
                    self._logger.info("%s: connection lost: %s", self.stream_type, exc)
                    self.emit(StreamEvent.state(StreamSignal.DISCONNECTED))
                    return
                self._logger.info("%s: try %d unreachable: %s", self.stream_type, index + 1, exc)
                self.emit(StreamEvent.state(StreamSignal.UNREACHABLE))
            if index + 1 < backoff.conceal:
                await asyncio.sleep(backoff.delay_ms(index, self._transport.rng) / 1000.0)
        self.emit(StreamEvent.state(StreamSignal.ALL_RETRIES_FAILED))

    def _status_acceptable(self, status: int) -> bool:
        if self._policy.http_expect is not None:
            return status == self._policy.http_expect
        return 200 <= status < 300

    def _capture_response_metadata(self, headers: Mapping[str, str]) -> None:
        for name in self._policy.metadata:
            header = self._policy.header_for(name)
            if header and header in headers:
                self._rx_metadata[name] = headers[header]

    async def _shutdown(self) -> None:
        if self._task is None:
            return
        if not self._task.done():
            self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)


class AiohttpStreamTransport:
    def __init__(
        self,
        policy: PolicyDocument,
        blobs: SystemBlobStore,
        logger: logging.Logger | None = None,
        rng: random.Random | None = None,
        connect_timeout_s: float = 10.0,
    ) -> None:
        self._policy = policy
        self._blobs = blobs
        self._logger = logger or logging.getLogger("streamstress.transport")
        self.rng = rng or random.Random()
        self._connect_timeout_s = connect_timeout_s
        self._session: aiohttp.ClientSession | None = None
        self._ssl_contexts: dict[str, ssl.SSLContext] = {}
        self._connectivity = ConnectivityState.UNKNOWN
        self._closed = False

    @property
    def connectivity(self) -> ConnectivityState:
        return self._connectivity

    def create_stream(self, stream_type: str) -> HttpSecureStream:
        if self._closed:
            raise AttemptCreationError("transport is closed", reason="transport_closed")
        try:
            policy = self._policy.stream_type(stream_type)
        except PolicyError as exc:
            raise AttemptCreationError(str(exc), reason="unknown_stream_type") from exc
        return HttpSecureStream(self, policy, logger=self._logger)

    def retry_backoff(self, name: str) -> RetryBackoff:
        return self._policy.retry_backoff(name)

    def user_agent(self) -> str:
        device_type = self._blobs.get(BlobType.DEVICE_TYPE).decode("utf-8", "replace") or "unknown"
        serial = self._blobs.get(BlobType.DEVICE_SERIAL).decode("utf-8", "replace") or "unknown"
        firmware = self._blobs.get(BlobType.DEVICE_FW_VERSION).decode("utf-8", "replace") or "unknown"
        return f"streamstress ({device_type}; {serial}; {firmware})"

    def _ssl_for(self, policy: StreamTypePolicy) -> ssl.SSLContext | bool:
        if not policy.tls or not policy.tls_trust_store:
            return True
        context = self._ssl_contexts.get(policy.tls_trust_store)
        if context is None:
            context = ssl.create_default_context(cadata=self._policy.trust_store_der(policy.tls_trust_store))
            self._ssl_contexts[policy.tls_trust_store] = context
        return context

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self._connect_timeout_s),
            )
        return self._session

    def request(self, policy: StreamTypePolicy, url: str, headers: dict[str, str] | None = None):
        return self._get_session().request(
            policy.http_method,
            url,
            headers=headers,
            ssl=self._ssl_for(policy),
            allow_redirects=False,
        )

    async def check_connectivity(self) -> ConnectivityState:
        if self._connectivity == ConnectivityState.INTERNET_OK:
            return self._connectivity
        try:
            cpd = self._policy.stream_type(CAPTIVE_PORTAL_DETECT)
        except PolicyError:
            self._connectivity = ConnectivityState.INTERNET_OK
            return self._connectivity

        url = f"{cpd.scheme}://{cpd.endpoint}:{cpd.port}/{cpd.http_url.lstrip('/')}"
        try:
            async with self.request(cpd, url) as response:
                status = response.status
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            self._logger.info("captive portal detect: %s unreachable: %s", url, exc)
            self._connectivity = ConnectivityState.NO_INTERNET
            return self._connectivity

        if cpd.http_expect is not None and status == cpd.http_expect:
            self._connectivity = ConnectivityState.INTERNET_OK
        elif cpd.http_expect is None and 200 <= status < 300:
            self._connectivity = ConnectivityState.INTERNET_OK
        else:
            # redirects (http_fail_redirect) and unexpected statuses alike
            self._connectivity = ConnectivityState.CAPTIVE_PORTAL
        self._logger.info("captive portal detect: %s -> %d (%s)", url, status, self._connectivity.value)
        return self._connectivity

    async def close(self) -> None:
        self._closed = True
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
