import asyncio
import contextlib
import logging
from typing import Tuple

from opentelemetry import trace

from health_wrapper.readiness import ReadinessGate
from health_wrapper.tunnel.handshake import RequestHead, build_upgrade_request
from health_wrapper.vars import GATEWAY_HOST, GATEWAY_PORT

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

SERVICE_UNAVAILABLE = b"HTTP/1.1 503 Service Unavailable\r\n\r\n"
BAD_GATEWAY = b"HTTP/1.1 502 Bad Gateway\r\n\r\n"
SPLICE_CHUNK_SIZE = 64 * 1024


async def pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> int:
    """Copy bytes until EOF. Returns the number of bytes copied."""
    copied = 0
    while True:
        data = await reader.read(SPLICE_CHUNK_SIZE)
        if not data:
            return copied
        writer.write(data)
        await writer.drain()
        copied += len(data)


async def splice(
    client_reader: asyncio.StreamReader,
    client_writer: asyncio.StreamWriter,
    upstream_reader: asyncio.StreamReader,
    upstream_writer: asyncio.StreamWriter,
) -> Tuple[int, int]:
    """
    Copy bytes both ways until either side finishes.

    There is no half-close: the first EOF or error from either peer ends the
    whole tunnel. Returns (client->gateway, gateway->client) byte counts.
    """
    outbound = asyncio.create_task(pipe(client_reader, upstream_writer))
    inbound = asyncio.create_task(pipe(upstream_reader, client_writer))
    try:
        done, _ = await asyncio.wait(
            {outbound, inbound}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        for task in (outbound, inbound):
            task.cancel()
        await asyncio.gather(outbound, inbound, return_exceptions=True)

    for task in done:
        exc = task.exception()
        if exc is not None:
            logger.debug(f"[tunnel] Peer closed with error: {exc!r}")

    def _count(task: asyncio.Task) -> int:
        if task.cancelled() or task.exception() is not None:
            return 0
        return task.result()

    return _count(outbound), _count(inbound)


async def close_writer(writer: asyncio.StreamWriter) -> None:
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()


async def reject(writer: asyncio.StreamWriter, status_line: bytes) -> None:
    """Write a bare status line and drop the connection."""
    try:
        writer.write(status_line)
        await writer.drain()
    except ConnectionError as e:
        logger.debug(f"[tunnel] Client went away before rejection: {e!r}")
    finally:
        await close_writer(writer)


class TunnelUpgrader:
    """Takes over connections that asked for a protocol upgrade and splices them to the gateway."""

    def __init__(
        self,
        gate: ReadinessGate,
        host: str = GATEWAY_HOST,
        port: int = GATEWAY_PORT,
    ):
        self.gate = gate
        self.host = host
        self.port = port

    async def handle(
        self,
        head: RequestHead,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        buffered: bytes = b"",
    ) -> None:
        """
        Run one tunnel to completion. Always closes the client connection.

        ``buffered`` holds bytes that arrived after the request head before
        the tunnel existed; they go to the gateway right after the handshake.
        """
        logger.info(f"[tunnel] Upgrade request to {head.target}")

        # Checked right before acting on it, no await in between.
        if not self.gate.is_ready():
            logger.warning("[tunnel] Gateway not ready, rejecting upgrade")
            await reject(writer, SERVICE_UNAVAILABLE)
            return

        with tracer.start_as_current_span("tunnel_request") as span:
            span.set_attribute("tunnel.target", head.target)
            span.set_attribute("tunnel.method", head.method)

            try:
                upstream_reader, upstream_writer = await asyncio.open_connection(
                    self.host, self.port
                )
            except OSError as e:
                logger.error(f"[tunnel] Gateway connection failed: {e!r}")
                span.set_attribute("tunnel.error", "connection_failed")
                await reject(writer, BAD_GATEWAY)
                return

            logger.info("[tunnel] Connected to gateway")
            try:
                upstream_writer.write(build_upgrade_request(head))
                if buffered:
                    upstream_writer.write(buffered)
                await upstream_writer.drain()

                sent, received = await splice(
                    reader, writer, upstream_reader, upstream_writer
                )
                span.set_attribute("tunnel.bytes_sent", sent)
                span.set_attribute("tunnel.bytes_received", received)
                logger.info(
                    f"[tunnel] Closed {head.target} (sent={sent} received={received})"
                )
            except ConnectionError as e:
                logger.info(f"[tunnel] Closed {head.target}: {e!r}")
            finally:
                await close_writer(upstream_writer)
                await close_writer(writer)
