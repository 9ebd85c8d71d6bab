import asyncio
import logging

from health_wrapper.listener.connection import HttpConnection
from health_wrapper.readiness import ReadinessGate
from health_wrapper.tunnel import TunnelUpgrader
from health_wrapper.vars import GATEWAY_HOST, GATEWAY_PORT, HEALTH_PATH, HOST, PORT

logger = logging.getLogger("uvicorn.error")


async def start_listener(
    app,
    gate: ReadinessGate,
    host: str = HOST,
    port: int = PORT,
    gateway_host: str = GATEWAY_HOST,
    gateway_port: int = GATEWAY_PORT,
    health_path: str = HEALTH_PATH,
) -> asyncio.Server:
    """Bind the public listener. Every connection gets its own task."""
    tunnel = TunnelUpgrader(gate, host=gateway_host, port=gateway_port)

    async def handle_connection(
        reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        connection = HttpConnection(app, tunnel, reader, writer, health_path=health_path)
        await connection.run()

    server = await asyncio.start_server(handle_connection, host, port)

    for sock in server.sockets:
        bound_host, bound_port = sock.getsockname()[:2]
        logger.info(f"[proxy] Server listening on {bound_host}:{bound_port}")
    logger.info(f"[proxy] Gateway backend on {gateway_host}:{gateway_port}")
    logger.info("[proxy] HTTP + WebSocket proxying enabled")
    return server


def bound_port(server: asyncio.Server) -> int:
    return server.sockets[0].getsockname()[1]
