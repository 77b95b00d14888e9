"""
Server Lifecycle
================

Runs the disguise application on a listener it binds itself and shuts it
down gracefully when told to.

States:
    IDLE → LISTENING → SHUTTING_DOWN → STOPPED

- IDLE → LISTENING: the configured socket is bound (tcp, tcp4, tcp6 or
  unix). A bind failure raises ServerStartupError.
- LISTENING: uvicorn serves each connection on its own asyncio task.
- LISTENING → SHUTTING_DOWN: a watcher task awaits the shutdown event once
  and asks uvicorn to exit. The listener closes at once; in-flight requests
  get DISGUISE_SHUTDOWN_TIMEOUT seconds to finish.
- SHUTTING_DOWN → STOPPED: connections drained or force-closed. Both are a
  normal return from serve().

uvicorn's own signal handling is disabled; run_server() maps SIGINT and
SIGTERM onto the shutdown event instead.
"""

import asyncio
import contextlib
import logging
import os
import signal
import socket
from enum import Enum
from typing import Any, Optional

from fastapi import FastAPI
import uvicorn

from .config import Settings
from .main import create_application

logger = logging.getLogger(__name__)

LISTEN_BACKLOG = 2048


class ServerState(str, Enum):
    """Lifecycle states of a DisguiseServer."""
    IDLE = "idle"
    LISTENING = "listening"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class ServerStartupError(Exception):
    """The server could not bind its listener or start the application."""
    pass


# =============================================================================
# Listener Binding
# =============================================================================

def bind_tcp_socket(network: str, host: str, port: int) -> socket.socket:
    """
    Bind and listen on a TCP address.

    An empty host listens on every interface (dual-stack for "tcp" where the
    platform supports it). Host names are resolved; the first address of the
    requested family wins.

    Raises:
        OSError: If resolution or binding fails
    """
    if not host and network == "tcp" and socket.has_dualstack_ipv6():
        return socket.create_server(
            ("", port),
            family=socket.AF_INET6,
            backlog=LISTEN_BACKLOG,
            dualstack_ipv6=True,
        )

    family = {
        "tcp": socket.AF_UNSPEC,
        "tcp4": socket.AF_INET,
        "tcp6": socket.AF_INET6,
    }[network]

    infos = socket.getaddrinfo(
        host or None, port, family, socket.SOCK_STREAM, 0, socket.AI_PASSIVE
    )
    resolved_family, _, _, _, sockaddr = infos[0]

    return socket.create_server(sockaddr, family=resolved_family, backlog=LISTEN_BACKLOG)


def unix_socket_path(address: str) -> str:
    """Map "@name" to the Linux abstract namespace; other paths pass through."""
    if address.startswith("@"):
        return "\0" + address[1:]
    return address


def bind_unix_socket(address: str) -> socket.socket:
    """
    Bind and listen on a unix socket.

    Raises:
        OSError: If binding fails (including an existing socket file)
    """
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.bind(unix_socket_path(address))
        sock.listen(LISTEN_BACKLOG)
    except OSError:
        sock.close()
        raise
    return sock


# =============================================================================
# uvicorn Integration
# =============================================================================

class ManagedUvicornServer(uvicorn.Server):
    """
    uvicorn server whose exit is driven by DisguiseServer.

    Signals are left alone and `serving` is set once startup has completed,
    so a shutdown request never races the startup sequence.
    """

    def __init__(self, config: uvicorn.Config):
        super().__init__(config)
        self.serving = asyncio.Event()

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    async def startup(self, sockets: Optional[list] = None) -> None:
        await super().startup(sockets=sockets)
        if self.started:
            self.serving.set()


# =============================================================================
# Server
# =============================================================================

class DisguiseServer:
    """
    Binds the configured listener and serves the proxy until shut down.

    Attributes:
        settings: Frozen configuration shared with the application
        app: FastAPI application being served
        state: Current ServerState
        bound_address: Socket name of the listener once bound
    """

    def __init__(self, settings: Settings, app: Optional[FastAPI] = None):
        self.settings = settings
        self.app = app if app is not None else create_application(settings)
        self.state = ServerState.IDLE
        self.bound_address: Any = None

    def bind(self) -> socket.socket:
        """
        Bind the listener described by DISGUISE_NETWORK and DISGUISE_ADDRESS.

        Raises:
            OSError: If binding fails
        """
        if self.settings.DISGUISE_NETWORK == "unix":
            return bind_unix_socket(self.settings.DISGUISE_ADDRESS)

        host, port = self.settings.tcp_host_port
        return bind_tcp_socket(self.settings.DISGUISE_NETWORK, host, port)

    async def serve(self, shutdown_event: asyncio.Event) -> None:
        """
        Serve until shutdown_event is set, then shut down gracefully.

        Args:
            shutdown_event: Set once by whoever receives the interrupt

        Raises:
            RuntimeError: If this server was already started
            ServerStartupError: If the listener cannot be bound or the
                application fails to start
        """
        if self.state is not ServerState.IDLE:
            raise RuntimeError(f"Server cannot be started from state {self.state.value}")

        network = self.settings.DISGUISE_NETWORK
        address = self.settings.DISGUISE_ADDRESS

        try:
            sock = self.bind()
        except OSError as e:
            self.state = ServerState.STOPPED
            logger.error(f"Cannot listen on {network} {address}: {e}")
            raise ServerStartupError(f"Cannot listen on {network} {address}: {e}") from e

        self.bound_address = sock.getsockname()
        self.state = ServerState.LISTENING
        logger.info(f"Listening on {network} {address}")

        config = uvicorn.Config(
            self.app,
            lifespan="on",
            log_config=None,
            timeout_graceful_shutdown=self.settings.DISGUISE_SHUTDOWN_TIMEOUT,
            server_header=False,
            date_header=False,
        )
        server = ManagedUvicornServer(config)
        watcher = asyncio.create_task(self._await_shutdown(server, shutdown_event))

        try:
            await server.serve(sockets=[sock])
        except SystemExit as e:
            # uvicorn exits the process when the application lifespan fails
            raise ServerStartupError(f"Application failed to start (exit code {e.code})") from e
        finally:
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher
            sock.close()
            self._remove_unix_socket_file()
            self.state = ServerState.STOPPED

        if not server.started:
            raise ServerStartupError("Application failed to start")

        logger.info("Server stopped")

    async def _await_shutdown(
        self,
        server: ManagedUvicornServer,
        shutdown_event: asyncio.Event
    ) -> None:
        await shutdown_event.wait()
        await server.serving.wait()

        self.state = ServerState.SHUTTING_DOWN
        logger.info(
            "Shutdown requested, draining connections",
            extra={"grace_period": self.settings.DISGUISE_SHUTDOWN_TIMEOUT}
        )
        server.should_exit = True

    def _remove_unix_socket_file(self) -> None:
        address = self.settings.DISGUISE_ADDRESS
        if self.settings.DISGUISE_NETWORK != "unix" or address.startswith("@"):
            return
        with contextlib.suppress(FileNotFoundError):
            os.unlink(address)


# =============================================================================
# Process Entry
# =============================================================================

async def serve_until_signalled(settings: Settings) -> None:
    """
    Serve with SIGINT and SIGTERM mapped onto a graceful shutdown.

    Raises:
        ServerStartupError: If the server cannot start
    """
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()
    handled_signals = (signal.SIGINT, signal.SIGTERM)

    for sig in handled_signals:
        loop.add_signal_handler(sig, shutdown_event.set)

    try:
        await DisguiseServer(settings).serve(shutdown_event)
    finally:
        for sig in handled_signals:
            loop.remove_signal_handler(sig)


def run_server(settings: Settings) -> None:
    """Blocking entry point used by the command line."""
    asyncio.run(serve_until_signalled(settings))
