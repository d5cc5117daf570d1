"""
RevHub Reverse Proxy Server

Listens for HTTP/1.1 traffic, routes each request by longest path prefix to
an upstream, and passes unmatched requests through to the default upstream
(typically the local application dev server).
"""

import logging
import socket
import threading
import time
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from .Core.ConnectionPool import ConnectionPool
from .Core.errors import (
    ClientDisconnected,
    InternalError,
    MalformedRequest,
    ProxyError,
    StreamAborted,
    UpstreamTimeout,
    UpstreamUnreachable,
)
from .Core.header import ConnectionContext, Exchange, Upstream
from .Core.http_io import HeadTooLarge, SocketReader, parse_request_head, status_response
from .Core.RequestForwarder import RequestForwarder
from .Core.RoutingEngine import RoutingEngine, RuleSet
from .Core.stats import ProxyStats

logger = logging.getLogger("revhub.server")
exchange_logger = logging.getLogger("revhub.exchange")

DEFAULT_LISTEN = ("127.0.0.1", 8888)


class ReverseProxyServer:
    """
    Thread-per-connection reverse proxy.

    The server owns its RuleSet through a RoutingEngine; ``reload`` swaps in a
    new RuleSet atomically and every exchange reads the reference exactly once,
    so in-flight requests never see a half-applied configuration.

    Attributes:
        routing_engine (RoutingEngine): holds the active rule set
        connection_pool (ConnectionPool): idle upstream connections
        forwarder (RequestForwarder): streams exchanges
        stats (ProxyStats): counters for the admin API and dashboard
        ready (threading.Event): set once the listener is bound
    """

    def __init__(
        self,
        rule_set: Optional[RuleSet] = None,
        listen_address: Tuple[str, int] = DEFAULT_LISTEN,
        default_upstream: Optional[Upstream] = None,
        connection_pool: Optional[ConnectionPool] = None,
        exchange_timeout: float = 60.0,
        client_timeout: float = 30.0,
        max_connections: int = 1000,
        stats: Optional[ProxyStats] = None,
    ):
        self.listen_address = listen_address
        self.default_upstream = default_upstream
        self.exchange_timeout = exchange_timeout
        self.client_timeout = client_timeout
        self.max_connections = max_connections

        # Core components
        self.routing_engine = RoutingEngine(rule_set)
        self.connection_pool = connection_pool or ConnectionPool()
        self.forwarder = RequestForwarder(self.connection_pool)
        self.stats = stats or ProxyStats()

        # State
        self.running = False
        self.server_socket: Optional[socket.socket] = None
        self.server_address: Optional[Tuple[str, int]] = None
        self.active_connections = set()
        self.active_lock = threading.Lock()
        self.ready = threading.Event()

    @property
    def rule_set(self) -> RuleSet:
        return self.routing_engine.rule_set

    def reload(self, rule_set: RuleSet) -> RuleSet:
        """Atomically replace the active rule set; returns the previous one."""
        return self.routing_engine.swap(rule_set)

    # =========================================================================
    # Listener
    # =========================================================================

    def serve(self, listen_address: Optional[Tuple[str, int]] = None, rule_set: Optional[RuleSet] = None):
        """
        Bind and run the accept loop until ``stop()`` is called.

        Raises:
            OSError: the listen address cannot be bound
        """
        if listen_address is not None:
            self.listen_address = listen_address
        if rule_set is not None:
            self.reload(rule_set)

        host, port = self.listen_address
        self.server_socket = self._create_server_socket(host, port)
        self.server_address = self.server_socket.getsockname()[:2]
        self.running = True
        logger.info(f"🚀 RevHub proxy listening on {self.server_address[0]}:{self.server_address[1]}")
        for rule in self.rule_set:
            logger.info(f"📍 {rule.describe()}")
        if self.default_upstream:
            logger.info(f"📍 * -> {self.default_upstream} (pass-through)")
        self.ready.set()

        try:
            self._accept_loop()
        finally:
            self.cleanup()

    def _create_server_socket(self, host: str, port: int) -> socket.socket:
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            sock.listen(1024)
        except OSError:
            sock.close()
            raise
        sock.settimeout(1)
        return sock

    def _accept_loop(self):
        while self.running:
            try:
                client_socket, client_addr = self.server_socket.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self.running:
                    logger.error(f"Accept error: {e}")
                    time.sleep(0.1)
                    continue
                break
            self._handle_new_connection(client_socket, client_addr)

    def _handle_new_connection(self, client_socket: socket.socket, client_addr: Tuple[str, int]):
        connection_id = str(uuid.uuid4())[:8]

        with self.active_lock:
            over_limit = len(self.active_connections) >= self.max_connections
            if not over_limit:
                self.active_connections.add(connection_id)
        if over_limit:
            logger.warning(f"Connection limit reached ({self.max_connections}), rejecting {client_addr[0]}")
            try:
                client_socket.sendall(status_response(503, "Service Unavailable", "Too many connections"))
            except OSError:
                pass
            client_socket.close()
            return

        context = ConnectionContext(
            connection_id=connection_id,
            client_socket=client_socket,
            client_addr=client_addr[:2],
            start_time=datetime.now(),
        )
        self.stats.connection_opened()
        thread = threading.Thread(
            target=self._process_connection,
            args=(context,),
            name=f"revhub-{connection_id}",
            daemon=True,
        )
        thread.start()

    # =========================================================================
    # Per-connection task
    # =========================================================================

    def _process_connection(self, context: ConnectionContext):
        client_socket = context.client_socket
        reader = SocketReader(client_socket, timeout=self.client_timeout)
        try:
            client_socket.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            while self.running and self._serve_one(context, reader):
                context.requests_served += 1
        except Exception:
            logger.exception(f"Connection {context.connection_id} from {context.client_addr[0]} failed unexpectedly")
        finally:
            with self.active_lock:
                self.active_connections.discard(context.connection_id)
            self.stats.connection_closed()
            try:
                client_socket.close()
            except OSError:
                pass

    def _serve_one(self, context: ConnectionContext, reader: SocketReader) -> bool:
        """Handle one request on the connection. Returns whether to keep it open."""
        client_socket = context.client_socket
        try:
            head = reader.read_head()
        except HeadTooLarge as e:
            self._send_error(client_socket, MalformedRequest(str(e), status_code=431))
            return False
        except (socket.timeout, ConnectionError):
            return False
        if head is None:
            return False

        try:
            request = parse_request_head(head)
        except MalformedRequest as e:
            logger.warning(f"⚠️  {context.client_addr[0]} malformed request: {e}")
            self._send_error(client_socket, e)
            return False

        # Read the rule set reference once; a concurrent reload cannot split this exchange.
        rule_set = self.routing_engine.rule_set
        found = self.routing_engine.match_prefix(request.path, rule_set)
        if found:
            prefix, rule = found
            upstream = rule.upstream
        elif self.default_upstream is not None:
            prefix, rule, upstream = None, None, self.default_upstream
        else:
            logger.info(f"{context.client_addr[0]} {request.method} {request.path} -> no route")
            self._send_error(client_socket, ProxyError(f"No route for {request.path}", status_code=404))
            return False

        exchange = Exchange(
            connection_id=context.connection_id,
            client_addr=context.client_addr,
            request=request,
            rule=rule,
            prefix=prefix,
            upstream=upstream,
            deadline=time.monotonic() + self.exchange_timeout,
        )
        return self._run_exchange(exchange, client_socket, reader)

    def _run_exchange(self, exchange: Exchange, client_socket: socket.socket, reader: SocketReader) -> bool:
        keep_alive = False
        outcome = "ok"
        error: Optional[BaseException] = None
        try:
            keep_alive = self.forwarder.forward(exchange, client_socket, reader)
            if exchange.upgraded:
                outcome = "upgraded"
        except UpstreamTimeout as e:
            outcome, error = "timeout", e
            logger.warning(f"⏱️  {exchange.connection_id} {exchange.upstream}: {e}")
            self._fail_exchange(exchange, client_socket, e)
        except UpstreamUnreachable as e:
            outcome, error = "unreachable", e
            logger.warning(f"❌ {exchange.connection_id} {exchange.upstream}: {e}")
            self._fail_exchange(exchange, client_socket, e)
        except MalformedRequest as e:
            outcome, error = "malformed", e
            logger.warning(f"⚠️  {exchange.connection_id} {exchange.client_addr[0]}: {e}")
            self._fail_exchange(exchange, client_socket, e)
        except StreamAborted as e:
            outcome, error = "aborted", e
            logger.warning(f"✂️  {exchange.connection_id} {e}; closing caller connection")
        except ClientDisconnected as e:
            outcome, error = "client_closed", e
            logger.debug(f"{exchange.connection_id} {e}")
        except Exception as e:
            outcome, error = "internal_error", e
            logger.exception(
                f"💥 {exchange.connection_id} internal error forwarding "
                f"{exchange.request.method} {exchange.request.target} to {exchange.upstream}"
            )
            self._fail_exchange(exchange, client_socket, InternalError(f"Internal proxy error: {type(e).__name__}"))
        finally:
            self._emit_exchange(exchange, outcome, error)
        return keep_alive

    def _fail_exchange(self, exchange: Exchange, client_socket: socket.socket, error: ProxyError):
        if exchange.response_started:
            return
        exchange.status = error.status_code
        self._send_error(client_socket, error)

    def _send_error(self, sock: socket.socket, error: ProxyError):
        reasons = {404: "Not Found", 431: "Request Header Fields Too Large"}
        reason = reasons.get(error.status_code, error.reason)
        try:
            sock.sendall(status_response(error.status_code, reason, str(error)))
        except OSError as e:
            logger.debug(f"Could not deliver {error.status_code} response: {e}")

    def _emit_exchange(self, exchange: Exchange, outcome: str, error: Optional[BaseException]):
        event: Dict[str, Any] = {
            "connection_id": exchange.connection_id,
            "client": exchange.client_addr[0],
            "method": exchange.request.method,
            "path": exchange.request.path,
            "rule": ",".join(exchange.rule.path_prefixes) if exchange.rule else None,
            "upstream": str(exchange.upstream),
            "status": exchange.status,
            "duration_ms": round(exchange.duration_ms(), 2),
            "bytes_up": exchange.bytes_up,
            "bytes_down": exchange.bytes_down,
            "outcome": outcome,
        }
        if error is not None:
            event["error"] = str(error)
        self.stats.record_exchange(event)

        level = logging.INFO if outcome in ("ok", "upgraded") else logging.WARNING
        route = f"[{event['rule']}]" if event["rule"] else "[pass-through]"
        exchange_logger.log(
            level,
            f"{event['client']} {event['method']} {exchange.request.target} {route} -> {event['upstream']} "
            f"{event['status'] or '-'} {outcome} ({event['duration_ms']:.1f} ms)",
            extra={"exchange": event},
        )

    # =========================================================================
    # Shutdown
    # =========================================================================

    def stop(self):
        """Stop accepting connections and drop idle upstream connections."""
        if self.running:
            logger.info("🛑 Stopping proxy...")
        self.running = False
        self.cleanup()

    def cleanup(self):
        if self.server_socket:
            try:
                self.server_socket.close()
            except OSError:
                pass
            self.server_socket = None
        self.connection_pool.close_all()
        self.ready.clear()
