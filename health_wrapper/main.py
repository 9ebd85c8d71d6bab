"""
Entry point: settings bootstrap, gateway process, public listener.

The wrapper lives exactly as long as the gateway. It exits with the
gateway's exit code, and on SIGTERM/SIGINT it stops accepting connections
before terminating the gateway.
"""

import asyncio
import copy
import logging
import logging.config
import signal
import sys
from typing import Optional, Sequence

from uvicorn.config import LOGGING_CONFIG

from health_wrapper.bootstrap.settings import SettingsError, ensure_gateway_settings
from health_wrapper.listener.server import start_listener
from health_wrapper.readiness import ReadinessGate
from health_wrapper.server import configure_tracing, create_app
from health_wrapper.supervisor import BackendStartError, GatewayProcess, gateway_command
from health_wrapper.vars import (
    GATEWAY_CONFIG_FILE,
    GATEWAY_HOST,
    GATEWAY_PORT,
    GATEWAY_STATE_DIR,
    GATEWAY_TRUSTED_PROXIES,
    HEALTH_PATH,
    HOST,
    LOG_LEVEL,
    PORT,
)

logger = logging.getLogger("uvicorn.error")


def configure_logging(level: str = LOG_LEVEL) -> None:
    config = copy.deepcopy(LOGGING_CONFIG)
    config["loggers"]["uvicorn"]["level"] = level
    config["loggers"]["uvicorn.error"]["level"] = level
    logging.config.dictConfig(config)


def install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _on_signal(signum: int) -> None:
        logger.info(f"[proxy] {signal.Signals(signum).name} received, shutting down...")
        stop.set()

    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, _on_signal, signum)


async def serve(
    command: Optional[Sequence[str]] = None,
    host: str = HOST,
    port: int = PORT,
    gateway_host: str = GATEWAY_HOST,
    gateway_port: int = GATEWAY_PORT,
    state_dir: str = GATEWAY_STATE_DIR,
    config_file: str = GATEWAY_CONFIG_FILE,
    stop: Optional[asyncio.Event] = None,
    tracing: bool = True,
) -> int:
    """Run until the gateway exits or a stop is requested. Returns the exit code."""
    try:
        ensure_gateway_settings(state_dir, config_file, GATEWAY_TRUSTED_PROXIES)
    except SettingsError as e:
        logger.error(f"[proxy] {e}")
        return 1

    gate = ReadinessGate()
    gateway = GatewayProcess(
        command if command is not None else gateway_command(port=gateway_port), gate
    )
    try:
        await gateway.start()
    except BackendStartError:
        return 1

    app = create_app(gate, gateway_host=gateway_host, gateway_port=gateway_port)
    if tracing:
        configure_tracing(app)

    if stop is None:
        stop = asyncio.Event()
        install_signal_handlers(stop)

    exit_task = asyncio.create_task(gateway.wait())
    try:
        server = await start_listener(
            app,
            gate,
            host=host,
            port=port,
            gateway_host=gateway_host,
            gateway_port=gateway_port,
            health_path=HEALTH_PATH,
        )
    except OSError as e:
        logger.error(f"[proxy] Cannot bind {host}:{port}: {e}")
        gateway.terminate()
        await exit_task
        return 1

    stop_task = asyncio.create_task(stop.wait())
    try:
        await asyncio.wait({exit_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop_task.cancel()
        server.close()
        logger.info("[proxy] Server closed")

    if not exit_task.done():
        gateway.terminate()
    return await exit_task


def main(argv: Optional[Sequence[str]] = None) -> None:
    """
    Console entry point. Anything after ``--`` replaces the gateway command.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    command = argv[argv.index("--") + 1 :] if "--" in argv else None

    configure_logging()
    sys.exit(asyncio.run(serve(command=command or None)))


if __name__ == "__main__":
    main()
