"""Lifecycle controller for the REST API module.

Owns the listener, the TLS identity and the quit signal. Start and stop
are serialized by a single lock guarding the running flag; the request
path never takes it.

State machine:
    idle -> (start: configure, bind) -> running -> (stop: drain) -> idle
"""

import logging
import os
import signal
import threading
from pathlib import Path
from typing import Callable, Optional

from restapi.config import (
    PREFIX,
    ServiceConfig,
    register_params,
    resolve_cert_profile,
    resolve_config,
)
from restapi.errors import AlreadyStartedError, BindError, ListenerFault
from restapi.httpd import APIServer, create_server
from restapi.params import ParamStore
from restapi.resources import SessionResources
from restapi.routes import RouteTable, build_route_table
from restapi.session import Session
from restapi.tls import TLSIdentity, create_server_context, ensure_identity, generate_certificate

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT = 60.0
POLL_INTERVAL = 0.5
# Grace for handler threads to unwind after their sockets are shut down
FORCE_CLOSE_WAIT = 5.0


def _default_fatal(fault: ListenerFault):
    """Escalate a listener fault to the hosting process."""
    logger.critical("%s", fault.message)
    os.kill(os.getpid(), signal.SIGTERM)


class RestAPI:
    """REST API session module."""

    name = PREFIX
    description = "Expose a RESTful API."

    def __init__(
        self,
        session: Session,
        store: Optional[ParamStore] = None,
        resources=None,
        shutdown_timeout: float = SHUTDOWN_TIMEOUT,
        on_fatal: Optional[Callable[[ListenerFault], None]] = None,
        cert_generator=generate_certificate,
    ):
        """Initialize the module.

        Args:
            session: Session whose state is exposed
            store: Parameter store (a new one is created if None)
            resources: Resource handlers (SessionResources if None)
            shutdown_timeout: Grace period for in-flight requests on stop
            on_fatal: Called with a ListenerFault when the accept loop dies
            cert_generator: Certificate generation capability
        """
        self.session = session
        self.store = store if store is not None else ParamStore()
        self.resources = resources or SessionResources(session)
        self.shutdown_timeout = shutdown_timeout
        self.on_fatal = on_fatal or _default_fatal
        self.cert_generator = cert_generator

        self.config: Optional[ServiceConfig] = None
        self.identity: Optional[TLSIdentity] = None
        self.routes: Optional[RouteTable] = None
        # Signal of the next (or current) running period; set by stop()
        self.quit = threading.Event()

        self._lock = threading.Lock()
        self._running = False
        self._server: Optional[APIServer] = None
        self._thread: Optional[threading.Thread] = None
        self._stopping = threading.Event()

        register_params(self.store)
        session.add_module(self.name, self.description)
        session.register_commands(self.commands())

    @property
    def running(self) -> bool:
        return self._running

    @property
    def server_address(self) -> Optional[tuple]:
        """(host, port) actually bound, or None when idle."""
        server = self._server
        return server.server_address[:2] if server else None

    def commands(self) -> dict:
        """Control surface exposed to the session."""
        return {
            f"{self.name} on": self.start,
            f"{self.name} off": self.stop,
        }

    def configure(self) -> ServiceConfig:
        """Resolve parameters, bootstrap TLS and build the route table.

        Raises:
            AlreadyStartedError: If the service is running
            ParamError: On the first invalid parameter (certificate profile
                parameters are only read when a new pair must be generated)
            TLSBootstrapError: If TLS was requested but can't be set up
        """
        config = resolve_config(self.store, running=self._running)

        identity = None
        if config.is_tls:
            identity = ensure_identity(
                Path(config.cert_file),
                Path(config.key_file),
                lambda: resolve_cert_profile(self.store),
                generator=self.cert_generator,
            )

        self.config = config
        self.identity = identity
        self.routes = build_route_table()
        return config

    def start(self) -> ServiceConfig:
        """Configure and start serving in the background.

        Returns:
            The configuration the listener runs with

        Raises:
            AlreadyStartedError: If already running
            ConfigError: If a parameter is invalid
            TLSBootstrapError: If TLS material can't be loaded or generated
            BindError: If the address can't be bound
        """
        with self._lock:
            if self._running:
                raise AlreadyStartedError(self.name)

            config = self.configure()
            ssl_context = create_server_context(self.identity) if self.identity else None

            try:
                server = create_server(
                    config=config,
                    routes=self.routes,
                    resources=self.resources,
                    events=self.session.events,
                    quit=self.quit,
                    ssl_context=ssl_context,
                )
            except OSError as e:
                raise BindError(config.bind_address, e.strerror or str(e)) from e

            self._stopping.clear()
            self._server = server
            self._running = True
            self._thread = threading.Thread(
                target=self._serve, args=(server,), name=f"{self.name}-listener", daemon=True
            )
            self._thread.start()

        host, port = server.server_address[:2]
        logger.info("api server starting on %s://%s:%d", server.scheme, host, port)
        self.session.set_module_running(self.name, True)
        self.session.events.add("mod.started", self.name)
        return config

    def _serve(self, server: APIServer):
        try:
            server.serve_forever(poll_interval=POLL_INTERVAL)
        except Exception as e:
            if self._stopping.is_set():
                logger.debug("Listener exited during shutdown: %s", e)
                return
            fault = ListenerFault(str(e))
            logger.error("%s", fault.message)
            self.on_fatal(fault)

    def stop(self) -> bool:
        """Stop the listener, draining in-flight requests.

        New connections are refused immediately. Requests still open after
        the shutdown timeout are forcibly closed.

        Returns:
            True if the service was stopped, False if it wasn't running
        """
        with self._lock:
            if not self._running:
                logger.debug("%s is not running", self.name)
                return False

            server, thread = self._server, self._thread
            self._stopping.set()
            self.quit.set()

            logger.info("Shutting down api server")
            server.shutdown()
            server.server_close()

            if not server.wait_idle(self.shutdown_timeout):
                closed = server.close_connections()
                logger.warning(
                    "Shutdown timeout after %.1fs, forcibly closed %d connection(s)",
                    self.shutdown_timeout, closed,
                )
                server.wait_idle(FORCE_CLOSE_WAIT)

            if thread is not threading.current_thread():
                thread.join()

            self._server = None
            self._thread = None
            self._running = False
            self.quit = threading.Event()

        self.session.set_module_running(self.name, False)
        self.session.events.add("mod.stopped", self.name)
        return True
