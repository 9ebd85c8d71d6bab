"""
Per-connection request handling for the public listener.

Each inbound connection is parsed with h11. Upgrade requests leave HTTP
handling altogether and are handed, with the raw streams, to the tunnel
upgrader. Everything else runs through the ASGI application one
request/response cycle at a time, with h11 doing the response framing.
"""

import asyncio
import logging
from http import HTTPStatus
from typing import Optional, Tuple
from urllib.parse import unquote

import h11

from health_wrapper.tunnel import RequestHead, TunnelUpgrader, is_upgrade_request
from health_wrapper.utils.exception_logging import (
    is_disconnect,
    log_exception_with_details,
)
from health_wrapper.vars import HEALTH_PATH

logger = logging.getLogger("uvicorn.error")

READ_CHUNK_SIZE = 64 * 1024
MAX_HEAD_SIZE = 64 * 1024


def _address(info) -> Optional[Tuple[str, int]]:
    # IPv6 peernames carry flowinfo and scope id as well.
    if not info:
        return None
    if isinstance(info, tuple) and len(info) >= 2:
        return (str(info[0]), int(info[1]))
    return None


def _reason(status_code: int) -> bytes:
    try:
        return HTTPStatus(status_code).phrase.encode("ascii")
    except ValueError:
        return b""


def _has_request_body(event: h11.Request) -> bool:
    for name, value in event.headers:
        if name == b"transfer-encoding":
            return True
        if name == b"content-length" and value.strip() != b"0":
            return True
    return False


def request_path(raw_path: bytes) -> str:
    """Decoded path, the form the application routes on."""
    return unquote(raw_path.decode("latin-1"))


class RequestResponseCycle:
    """ASGI receive/send for one request on an h11 connection."""

    def __init__(self, connection: "HttpConnection"):
        self.connection = connection
        self.conn = connection.conn
        self.body_complete = False
        self.empty_body_pending = False
        self.response_started = False
        self.response_complete = False
        self.disconnected = False
        self.message_event = asyncio.Event()
        self.app_task: Optional[asyncio.Task] = None
        self.watch_task: Optional[asyncio.Task] = None

    def skip_empty_body(self) -> None:
        """A request without body framing ends with its head; no socket read needed."""
        event = self.conn.next_event()
        if isinstance(event, h11.EndOfMessage):
            self.body_complete = True
            self.empty_body_pending = True
            self.watch_for_disconnect()

    def watch_for_disconnect(self) -> None:
        if self.watch_task is None:
            self.watch_task = asyncio.create_task(self._watch())

    async def _watch(self) -> None:
        """
        Keep reading the socket once the request body is in.

        EOF while the response is still pending means the client left: the
        application task is cancelled so that its gateway connection closes.
        Bytes of a pipelined next request are handed to h11 for the next cycle.
        """
        try:
            data = await self.connection.reader.read(READ_CHUNK_SIZE)
        except ConnectionError:
            data = b""
        self.conn.receive_data(data)
        if data or self.response_complete:
            return

        logger.debug("[proxy] Client disconnected before the response completed")
        self.disconnected = True
        self.message_event.set()
        if self.app_task is not None and not self.app_task.done():
            self.app_task.cancel()

    async def stop_watching(self) -> None:
        if self.watch_task is None:
            return
        self.watch_task.cancel()
        await asyncio.gather(self.watch_task, return_exceptions=True)

    async def receive(self) -> dict:
        if self.empty_body_pending:
            self.empty_body_pending = False
            return {"type": "http.request", "body": b"", "more_body": False}

        if self.body_complete or self.disconnected:
            await self.message_event.wait()
            return {"type": "http.disconnect"}

        if self.conn.they_are_waiting_for_100_continue and not self.response_started:
            await self.connection.write(
                self.conn.send(h11.InformationalResponse(status_code=100, headers=[]))
            )

        try:
            event = await self.connection.next_event()
        except h11.RemoteProtocolError:
            event = h11.ConnectionClosed()

        if isinstance(event, h11.Data):
            return {"type": "http.request", "body": bytes(event.data), "more_body": True}
        if isinstance(event, h11.EndOfMessage):
            self.body_complete = True
            self.watch_for_disconnect()
            return {"type": "http.request", "body": b"", "more_body": False}

        self.disconnected = True
        self.message_event.set()
        return {"type": "http.disconnect"}

    async def send(self, message: dict) -> None:
        message_type = message["type"]

        if not self.response_started:
            if message_type != "http.response.start":
                raise RuntimeError(f"Expected 'http.response.start', got '{message_type}'")
            self.response_started = True
            status_code = message["status"]
            headers = list(message.get("headers", []))
            await self.connection.write(
                self.conn.send(
                    h11.Response(
                        status_code=status_code,
                        headers=headers,
                        reason=_reason(status_code),
                    )
                )
            )
            return

        if self.response_complete:
            raise RuntimeError(f"Unexpected '{message_type}' after response completed")
        if message_type != "http.response.body":
            raise RuntimeError(f"Expected 'http.response.body', got '{message_type}'")

        body = message.get("body", b"")
        if body:
            await self.connection.write(self.conn.send(h11.Data(data=body)))
        if not message.get("more_body", False):
            self.response_complete = True
            self.message_event.set()
            await self.connection.write(self.conn.send(h11.EndOfMessage()))


class HttpConnection:
    """Dispatches the requests of one inbound connection."""

    def __init__(
        self,
        app,
        tunnel: TunnelUpgrader,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        health_path: str = HEALTH_PATH,
    ):
        self.app = app
        self.tunnel = tunnel
        self.reader = reader
        self.writer = writer
        self.health_path = health_path
        self.conn = h11.Connection(h11.SERVER, max_incomplete_event_size=MAX_HEAD_SIZE)
        self.client = _address(writer.get_extra_info("peername"))
        self.server = _address(writer.get_extra_info("sockname"))

    async def next_event(self):
        while True:
            event = self.conn.next_event()
            if event is not h11.NEED_DATA:
                return event
            try:
                data = await self.reader.read(READ_CHUNK_SIZE)
            except ConnectionError:
                data = b""
            self.conn.receive_data(data)

    async def write(self, data: Optional[bytes]) -> None:
        if data:
            self.writer.write(data)
            await self.writer.drain()

    async def run(self) -> None:
        try:
            while True:
                event = await self.next_event()
                if not isinstance(event, h11.Request):
                    break

                if self.wants_tunnel(event):
                    buffered, _ = self.conn.trailing_data
                    await self.tunnel.handle(
                        self.request_head(event), self.reader, self.writer, bytes(buffered)
                    )
                    return

                keep_alive = await self.run_asgi(event)
                if not keep_alive:
                    break
                try:
                    self.conn.start_next_cycle()
                except h11.LocalProtocolError:
                    break
        except h11.RemoteProtocolError as e:
            await self.send_error_response(e.error_status_hint, str(e))
        except Exception as e:
            log_exception_with_details(logger, "[proxy] Connection error", e)
        finally:
            await self.close()

    def wants_tunnel(self, event: h11.Request) -> bool:
        # Same form the application routes on, so the probe cannot be tunnelled.
        if request_path(event.target.split(b"?", 1)[0]) == self.health_path:
            return False
        return is_upgrade_request(
            [(name.decode("latin-1"), value.decode("latin-1")) for name, value in event.headers]
        )

    def request_head(self, event: h11.Request) -> RequestHead:
        return RequestHead(
            method=event.method.decode("ascii"),
            target=event.target.decode("latin-1"),
            http_version=event.http_version.decode("ascii"),
            headers=[
                (name.decode("latin-1"), value.decode("latin-1"))
                for name, value in event.headers.raw_items()
            ],
            client_host=self.client[0] if self.client else None,
        )

    def build_scope(self, event: h11.Request) -> dict:
        raw_path, _, query_string = event.target.partition(b"?")
        return {
            "type": "http",
            "asgi": {"version": "3.0", "spec_version": "2.4"},
            "http_version": event.http_version.decode("ascii"),
            "server": self.server,
            "client": self.client,
            "scheme": "http",
            "method": event.method.decode("ascii"),
            "root_path": "",
            "path": request_path(raw_path),
            "raw_path": raw_path,
            "query_string": query_string,
            "headers": [(name, value) for name, value in event.headers],
        }

    async def run_asgi(self, event: h11.Request) -> bool:
        """Run one ASGI cycle. Returns whether the connection may be reused."""
        cycle = RequestResponseCycle(self)
        if not _has_request_body(event):
            cycle.skip_empty_body()
        cycle.app_task = asyncio.create_task(
            self.app(self.build_scope(event), cycle.receive, cycle.send)
        )
        try:
            await cycle.app_task
        except asyncio.CancelledError:
            if not cycle.disconnected:
                raise
            logger.debug(f"[proxy] {event.method.decode('ascii')} cancelled, client left")
            return False
        except Exception as e:
            log_exception_with_details(
                logger, f"[proxy] {event.method.decode('ascii')} failed", e
            )
            if cycle.response_started or is_disconnect(e):
                return False
            await self.send_error_response(500, "Internal Server Error")
            return False
        finally:
            cycle.message_event.set()
            await cycle.stop_watching()

        if cycle.disconnected:
            return False
        if not cycle.response_started:
            await self.send_error_response(500, "Internal Server Error")
            return False
        if not cycle.response_complete:
            return False
        return self.conn.our_state is h11.DONE and self.finish_request_body()

    def finish_request_body(self) -> bool:
        """
        Consume what is left of a request the application did not read.

        Bodyless requests end without any further input; anything that would
        need another socket read means the connection cannot be reused.
        """
        try:
            while self.conn.their_state is h11.SEND_BODY:
                event = self.conn.next_event()
                if event is h11.NEED_DATA or not isinstance(
                    event, (h11.Data, h11.EndOfMessage)
                ):
                    return False
        except h11.RemoteProtocolError:
            return False
        return self.conn.their_state is h11.DONE

    async def send_error_response(self, status_code: int, message: str) -> None:
        """Plain-text error for a request that never reached the application."""
        if self.conn.our_state not in {h11.IDLE, h11.SEND_RESPONSE}:
            return
        body = f"{HTTPStatus(status_code).phrase}\n".encode("ascii")
        logger.debug(f"[proxy] Responding {status_code}: {message}")
        try:
            await self.write(
                self.conn.send(
                    h11.Response(
                        status_code=status_code,
                        headers=[
                            (b"content-type", b"text/plain; charset=utf-8"),
                            (b"content-length", str(len(body)).encode("ascii")),
                            (b"connection", b"close"),
                        ],
                        reason=_reason(status_code),
                    )
                )
            )
            await self.write(self.conn.send(h11.Data(data=body)))
            await self.write(self.conn.send(h11.EndOfMessage()))
        except (h11.LocalProtocolError, ConnectionError) as e:
            logger.debug(f"[proxy] Could not send {status_code}: {e!r}")

    async def close(self) -> None:
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError:
            pass
