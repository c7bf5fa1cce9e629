import asyncio
import contextlib
import copy
import functools
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

import httpx

from aioquic.asyncio import connect
from aioquic.asyncio.protocol import QuicConnectionProtocol
from aioquic.h3.connection import H3Connection
from aioquic.h3.events import DataReceived, H3Event, HeadersReceived
from aioquic.quic.configuration import QuicConfiguration
from aioquic.quic.events import (
    ConnectionTerminated,
    HandshakeCompleted,
    QuicEvent,
    StreamReset,
)
from aioquic.quic.logger import QLOG_VERSION, QuicFileLogger, QuicLoggerTrace

logger = logging.getLogger("client")

StreamItem = Union[H3Event, Exception]


def is_initial_packet(data: bytes) -> bool:
    # long header, fixed bit, packet type 0x00
    return len(data) > 0 and (data[0] & 0xF0) == 0xC0


@dataclass(frozen=True)
class HandshakeKnobs:
    only_send_initial: bool = False
    send_initial_after_handshake: bool = False
    initial_retransmit_count: int = 0


class InitialTrackingTransport:
    """
    Datagram transport wrapper which remembers the first Initial packet
    sent on a connection.

    With `only_send_initial` the first datagram is the only one which
    ever reaches the network, everything queued after it is dropped.
    """

    def __init__(self, transport, only_send_initial: bool = False) -> None:
        self._transport = transport
        self.only_send_initial = only_send_initial
        self.initial: Optional[Tuple[bytes, Any]] = None
        self.dropped = 0
        self.sent = 0

    def sendto(self, data: bytes, addr=None) -> None:
        if self.initial is None and is_initial_packet(data):
            self.initial = (data, addr)

        if self.only_send_initial and self.sent:
            self.dropped += 1
            return

        self.sent += 1
        self._transport.sendto(data, addr)

    def resend_initial(self, count: int) -> int:
        """
        Send the remembered Initial packet `count` more times.
        """
        if self.initial is None:
            return 0
        data, addr = self.initial
        for _ in range(count):
            self._transport.sendto(data, addr)
        return count

    def __getattr__(self, name: str):
        return getattr(self._transport, name)


class ClientQuicLogger(QuicFileLogger):
    """
    Writes one `client_<odcid>.qlog` file per connection, so concurrent
    connections never share a file.
    """

    def end_trace(self, trace: QuicLoggerTrace) -> None:
        trace_dict = trace.to_dict()
        trace_path = os.path.join(
            self.path, "client_%s.qlog" % trace_dict["common_fields"]["ODCID"]
        )
        logger.info("Creating qlog file %s.", trace_path)
        with open(trace_path, "w") as logger_fp:
            json.dump(
                {
                    "qlog_format": "JSON",
                    "qlog_version": QLOG_VERSION,
                    "traces": [trace_dict],
                },
                logger_fp,
            )
        self._traces.remove(trace)


class HttpClient(QuicConnectionProtocol):
    def __init__(self, *args, knobs: Optional[HandshakeKnobs] = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)

        self.knobs = knobs or HandshakeKnobs()
        self.terminated = False
        self._http = H3Connection(self._quic)
        self._request_events: Dict[int, "asyncio.Queue[StreamItem]"] = {}

    def connection_made(self, transport) -> None:
        super().connection_made(
            InitialTrackingTransport(
                transport, only_send_initial=self.knobs.only_send_initial
            )
        )

    def datagram_received(self, data: Union[bytes, str], addr) -> None:
        # the handshake must never progress past our first Initial
        if self.knobs.only_send_initial:
            return
        super().datagram_received(data, addr)

    async def send_request(
        self, request: httpx.Request, content: bytes
    ) -> Tuple[int, List[Tuple[bytes, bytes]], bool, int]:
        """
        Send the request headers and body, then wait for the response headers.

        Returns the status code, the response headers, whether the stream
        already ended and the stream ID to read the body from.
        """
        if self.terminated:
            raise ConnectionError("connection already terminated")

        stream_id = self._quic.get_next_available_stream_id()
        self._request_events[stream_id] = asyncio.Queue()

        headers = [
            (b":method", request.method.encode()),
            (b":scheme", request.url.raw_scheme),
            (b":authority", request.url.netloc),
            (b":path", request.url.raw_path),
        ] + [
            (k.lower(), v)
            for (k, v) in request.headers.raw
            if k.lower() not in (b"connection", b"host")
        ]
        self._http.send_headers(
            stream_id=stream_id, headers=headers, end_stream=not content
        )
        if content:
            self._http.send_data(stream_id=stream_id, data=content, end_stream=True)
        self.transmit()

        try:
            event = await self.next_event(stream_id)
            if not isinstance(event, HeadersReceived):
                raise ConnectionError(
                    "expected response headers on stream %d" % stream_id
                )
        except BaseException:
            self.release_stream(stream_id)
            raise

        status_code = 0
        response_headers = []
        for header, value in event.headers:
            if header == b":status":
                status_code = int(value.decode())
            elif not header.startswith(b":"):
                response_headers.append((header, value))
        return status_code, response_headers, event.stream_ended, stream_id

    async def next_event(self, stream_id: int) -> H3Event:
        item = await self._request_events[stream_id].get()
        if isinstance(item, Exception):
            raise item
        return item

    def release_stream(self, stream_id: int) -> None:
        self._request_events.pop(stream_id, None)

    def http_event_received(self, event: H3Event) -> None:
        if isinstance(event, (HeadersReceived, DataReceived)):
            queue = self._request_events.get(event.stream_id)
            if queue is not None:
                queue.put_nowait(event)

    def quic_event_received(self, event: QuicEvent) -> None:
        if isinstance(event, HandshakeCompleted):
            self._handshake_completed()
        elif isinstance(event, StreamReset):
            queue = self._request_events.get(event.stream_id)
            if queue is not None:
                queue.put_nowait(
                    ConnectionError(
                        "stream %d reset (error %d)" % (event.stream_id, event.error_code)
                    )
                )
        elif isinstance(event, ConnectionTerminated):
            self.terminated = True
            for queue in self._request_events.values():
                queue.put_nowait(
                    ConnectionError(
                        "connection terminated: %s"
                        % (event.reason_phrase or "error %d" % event.error_code)
                    )
                )

        # pass event to the HTTP layer
        for http_event in self._http.handle_event(event):
            self.http_event_received(http_event)

    def _handshake_completed(self) -> None:
        if not self.knobs.send_initial_after_handshake:
            return
        sent = self._transport.resend_initial(self.knobs.initial_retransmit_count)
        logger.debug("Re-sent %d initial packet(s) after handshake", sent)


class H3ResponseStream(httpx.AsyncByteStream):
    def __init__(self, client: HttpClient, stream_id: int, ended: bool) -> None:
        self._client = client
        self._ended = ended
        self._stream_id = stream_id

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while not self._ended:
            try:
                event = await self._client.next_event(self._stream_id)
            except ConnectionError as exc:
                raise httpx.ReadError(str(exc)) from exc
            if isinstance(event, DataReceived) and event.data:
                yield event.data
            self._ended = event.stream_ended

    async def aclose(self) -> None:
        self._client.release_stream(self._stream_id)


class Http3Transport(httpx.AsyncBaseTransport):
    """
    httpx transport performing requests over HTTP/3, keeping one QUIC
    connection per authority for the lifetime of the transport.
    """

    def __init__(
        self,
        configuration: QuicConfiguration,
        knobs: Optional[HandshakeKnobs] = None,
    ) -> None:
        self._clients: Dict[Tuple[str, int], HttpClient] = {}
        self._configuration = configuration
        self._exit_stack = contextlib.AsyncExitStack()
        self._knobs = knobs or HandshakeKnobs()
        self._locks: Dict[Tuple[str, int], asyncio.Lock] = {}

    async def _get_client(self, host: str, port: int) -> HttpClient:
        key = (host, port)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        async with self._locks[key]:
            client = self._clients.get(key)
            if client is None or client.terminated:
                logger.debug("Connecting to %s:%d", host, port)
                client = await self._exit_stack.enter_async_context(
                    connect(
                        host,
                        port,
                        # connect() fills in server_name, keep ours untouched
                        configuration=copy.copy(self._configuration),
                        create_protocol=functools.partial(HttpClient, knobs=self._knobs),
                    )
                )
                self._clients[key] = client
        return client

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        try:
            client = await self._get_client(request.url.host, request.url.port or 443)
        except OSError as exc:
            raise httpx.ConnectError(
                str(exc) or "connection failed", request=request
            ) from exc

        content = await request.aread()
        try:
            status_code, headers, ended, stream_id = await client.send_request(
                request, content
            )
        except ConnectionError as exc:
            raise httpx.RemoteProtocolError(str(exc), request=request) from exc

        return httpx.Response(
            status_code,
            headers=headers,
            stream=H3ResponseStream(client, stream_id, ended),
            extensions={"http_version": b"HTTP/3"},
        )

    async def aclose(self) -> None:
        self._clients.clear()
        self._locks.clear()
        await self._exit_stack.aclose()
