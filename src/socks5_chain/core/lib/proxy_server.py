"""Relay server lifecycle.

This module owns the listening socket and the handler threads:
- Binding the listener with address reuse
- Dispatching each accepted client to its own handler thread
- Tracking in-flight handlers
- Graceful shutdown bounded by a grace period

The server moves through ``CREATED -> LISTENING -> SHUTTING_DOWN -> STOPPED``.
``stop()`` never interrupts running handlers: it closes the listener and
waits up to the grace period for them to finish on their own.

Example:
    server = RelayServer(params)
    thread = threading.Thread(target=server.start)
    thread.start()
    ...
    server.stop()
"""

import contextlib
import enum
import socket
import socketserver
import threading
import time
from typing import Final

from loguru import logger

from socks5_chain.core.config import ConnectionParameters
from socks5_chain.core.exceptions import ListenerError

from .socks_handler import SocksHandler

# Constants
GRACE_PERIOD: Final = 5.0  # Seconds to wait for handlers on stop
POLL_INTERVAL: Final = 0.1  # Seconds between shutdown checks in serve_forever


class ServerState(enum.Enum):
    CREATED = "created"
    LISTENING = "listening"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class SocksProxy(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """Threaded TCP server that records its handler threads."""

    allow_reuse_address = True
    daemon_threads = True
    block_on_close = False
    request_queue_size = 100

    def __init__(self, server_address, params: ConnectionParameters, connect_timeout: float | None = None) -> None:
        self.params = params
        self.connect_timeout = connect_timeout
        self.handlers: set[threading.Thread] = set()
        self._handlers_lock = threading.Lock()
        self._idle = threading.Condition(self._handlers_lock)
        self.closing = False
        if ":" in server_address[0]:
            self.address_family = socket.AF_INET6
        super().__init__(server_address, SocksHandler)

    def get_request(self):
        """Accept a client, logging failures before the serve loop drops them."""
        try:
            return super().get_request()
        except OSError as e:
            if not self.closing:
                logger.error(f"Accept failed: {e}")
            raise

    def shutdown(self) -> None:
        self.closing = True
        super().shutdown()

    def process_request(self, request, client_address) -> None:
        """Start a tracked handler thread for ``request``."""
        thread = threading.Thread(
            target=self._run_handler,
            args=(request, client_address),
            name=f"relay-{client_address[0]}:{client_address[1]}",
            daemon=self.daemon_threads,
        )
        with self._handlers_lock:
            self.handlers.add(thread)
        thread.start()

    def _run_handler(self, request, client_address) -> None:
        try:
            self.process_request_thread(request, client_address)
        finally:
            with self._handlers_lock:
                self.handlers.discard(threading.current_thread())
                self._idle.notify_all()

    @property
    def handler_count(self) -> int:
        with self._handlers_lock:
            return len(self.handlers)

    def wait_idle(self, timeout: float) -> bool:
        """Wait until no handler is running.

        Returns:
            bool: False if handlers were still running after ``timeout``
        """
        with self._idle:
            return self._idle.wait_for(lambda: not self.handlers, timeout=timeout)

    def handle_error(self, request, client_address) -> None:
        logger.opt(exception=True).error(f"Unhandled error serving {client_address}")


class RelayServer:
    """Listener plus in-flight handler bookkeeping.

    Args:
        params: Resolved connection parameters shared by every handler
        grace_period: Seconds ``stop()`` waits for running handlers
        connect_timeout: Upstream dial timeout, None for the OS default
    """

    def __init__(
        self,
        params: ConnectionParameters,
        grace_period: float = GRACE_PERIOD,
        connect_timeout: float | None = None,
    ) -> None:
        self.params = params.validate()
        self.grace_period = grace_period
        self.connect_timeout = connect_timeout
        self.state = ServerState.CREATED
        self._server: SocksProxy | None = None
        self._cancelled = threading.Event()
        self._started = threading.Event()
        self._lock = threading.Lock()

    @property
    def address(self) -> tuple[str, int] | None:
        """The bound listening address, once listening."""
        return self._server.server_address[:2] if self._server else None

    @property
    def active_handlers(self) -> int:
        if not self._server:
            return 0
        return self._server.handler_count

    def wait_started(self, timeout: float | None = None) -> bool:
        """Block until the listener is bound or startup has ended."""
        return self._started.wait(timeout)

    def start(self) -> None:
        """Bind the listener and serve until ``stop()`` is called.

        Raises:
            ListenerError: If the listening socket cannot be bound
        """
        with self._lock:
            if self.state is not ServerState.CREATED or self._cancelled.is_set():
                logger.warning(f"Ignoring start() on a server in state {self.state.value}")
                return
            try:
                self._server = SocksProxy(self.params.bind_address, self.params, self.connect_timeout)
            except OSError as e:
                self.state = ServerState.STOPPED
                self._started.set()
                raise ListenerError(f"failed to start listener on {self.params.local_host}:{self.params.local_port}: {e}") from e
            self.state = ServerState.LISTENING
            self._started.set()

        host, port = self.address
        logger.info(f"Relay listening on {host}:{port}, upstream {self.params.upstream_host}:{self.params.upstream_port}")
        try:
            self._server.serve_forever(poll_interval=POLL_INTERVAL)
        finally:
            logger.info("Listener closed")

    def stop(self) -> None:
        """Stop accepting connections and wait for running handlers.

        Safe to call more than once and from any thread.
        """
        with self._lock:
            if self._cancelled.is_set():
                return
            self._cancelled.set()
            previous, self.state = self.state, ServerState.SHUTTING_DOWN
            server = self._server

        if previous is ServerState.LISTENING and server is not None:
            logger.info("Shutting down relay")
            server.shutdown()
            with contextlib.suppress(OSError):
                server.server_close()

            started = time.monotonic()
            if server.wait_idle(self.grace_period):
                logger.info(f"All connections closed in {time.monotonic() - started:.2f}s")
            else:
                logger.warning(
                    f"Shutdown timeout - {server.handler_count} connection(s) may still be active"
                )

        with self._lock:
            self.state = ServerState.STOPPED
        self._started.set()
