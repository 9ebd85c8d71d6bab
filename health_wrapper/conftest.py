import asyncio
import socket

import pytest
import pytest_asyncio

from health_wrapper.readiness import ReadinessGate


@pytest.fixture
def gate():
    return ReadinessGate(markers=["listening", "started", "bound"])


@pytest.fixture
def closed_port():
    """A loopback port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


async def read_head(reader: asyncio.StreamReader) -> bytes:
    return await reader.readuntil(b"\r\n\r\n")


def parse_head(head: bytes):
    """Split a raw request head into its request line and (name, value) pairs."""
    lines = head.decode("latin-1").split("\r\n")
    headers = []
    for line in lines[1:]:
        if not line:
            continue
        name, _, value = line.partition(":")
        headers.append((name.strip(), value.strip()))
    return lines[0], headers


class FakeGateway:
    """
    Loopback stand-in for the gateway.

    Records every request head and every byte it receives. In ``http`` mode
    it answers each request with 201 and echoes the body (``bar`` when there
    is none); in ``upgrade`` mode it answers 101 and then echoes raw bytes.
    """

    def __init__(self, mode: str = "http"):
        self.mode = mode
        self.heads = []
        self.bodies = []
        self.received = bytearray()
        self.connections = 0
        self.server = None
        self.port = None
        self.tunnel_closed = asyncio.Event()

    async def start(self) -> "FakeGateway":
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def close(self) -> None:
        # No wait_closed(): on 3.12+ it would also wait for client connections.
        self.server.close()

    async def _handle(self, reader, writer):
        self.connections += 1
        try:
            if self.mode == "upgrade":
                await self._handle_upgrade(reader, writer)
            else:
                await self._handle_http(reader, writer)
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()

    async def _handle_http(self, reader, writer):
        while True:
            head = await read_head(reader)
            self.heads.append(head)
            _, headers = parse_head(head)
            length = next(
                (int(v) for k, v in headers if k.lower() == "content-length"), 0
            )
            body = await reader.readexactly(length) if length else b""
            self.bodies.append(body)

            reply = body or b"bar"
            writer.write(
                b"HTTP/1.1 201 Created\r\n"
                b"Content-Type: text/plain\r\n"
                b"X-Gateway: fake\r\n"
                b"Set-Cookie: a=1\r\n"
                b"Set-Cookie: b=2\r\n"
                + f"Content-Length: {len(reply)}\r\n\r\n".encode("ascii")
                + reply
            )
            await writer.drain()

    async def _handle_upgrade(self, reader, writer):
        head = await read_head(reader)
        self.heads.append(head)
        writer.write(
            b"HTTP/1.1 101 Switching Protocols\r\n"
            b"Upgrade: websocket\r\n"
            b"Connection: Upgrade\r\n\r\n"
        )
        await writer.drain()
        try:
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                self.received.extend(data)
                writer.write(data)
                await writer.drain()
        finally:
            self.tunnel_closed.set()


@pytest_asyncio.fixture
async def http_gateway():
    gateway = await FakeGateway("http").start()
    yield gateway
    await gateway.close()


@pytest_asyncio.fixture
async def upgrade_gateway():
    gateway = await FakeGateway("upgrade").start()
    yield gateway
    await gateway.close()
