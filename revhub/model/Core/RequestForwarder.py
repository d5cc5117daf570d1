import logging
import select
import socket
import ssl
import time
from http import HTTPStatus
from typing import List, Optional, Tuple

from .ConnectionPool import ConnectionPool, PooledConnection
from .errors import (
    ClientDisconnected,
    MalformedRequest,
    ProxyError,
    StreamAborted,
    UpstreamTimeout,
    UpstreamUnreachable,
)
from .header import HOP_BY_HOP, Exchange, Headers, HTTPResponseHead
from .http_io import (
    BUFFER_SIZE,
    CHUNKED,
    LAST_CHUNK,
    UNTIL_CLOSE,
    SocketReader,
    encode_chunk,
    iter_body,
    parse_response_head,
    request_body_length,
    response_body_length,
)

logger = logging.getLogger("revhub.forwarder")

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE", "PUT", "DELETE"})
DEFAULT_TUNNEL_IDLE_TIMEOUT = 300.0


def filter_hop_by_hop(headers: Headers) -> Headers:
    """Copy of ``headers`` without hop-by-hop fields, including any named in ``Connection``."""
    drop = set(HOP_BY_HOP) | set(headers.tokens("Connection"))
    return Headers([(key, value) for key, value in headers if key.lower() not in drop])


def _standard_reason(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return ""


def _readable(socks: List[socket.socket], timeout: Optional[float]) -> List[socket.socket]:
    # Bytes already decrypted inside an SSL object never show up in select().
    pending = [s for s in socks if isinstance(s, ssl.SSLSocket) and s.pending()]
    if pending:
        return pending
    readable, _, _ = select.select(socks, [], [], timeout)
    return readable


class RequestForwarder:
    """
    Streams one inbound request to its upstream and the response back.

    Memory use per exchange is bounded by BUFFER_SIZE: bodies are never
    held in full, in either direction.
    """

    def __init__(self, pool: ConnectionPool, tunnel_idle_timeout: float = DEFAULT_TUNNEL_IDLE_TIMEOUT):
        self.pool = pool
        self.tunnel_idle_timeout = tunnel_idle_timeout

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def forward(self, exchange: Exchange, client_socket: socket.socket, client_reader: SocketReader) -> bool:
        """
        Forward ``exchange.request`` and stream the response to the caller.

        Args:
            exchange: the in-flight exchange (request, rule, upstream, deadline)
            client_socket: caller connection
            client_reader: buffered reader over ``client_socket``; the request
                head has already been consumed from it

        Returns:
            bool: True if the caller connection may serve another request

        Raises:
            UpstreamUnreachable / UpstreamTimeout: failed before any response byte was sent
            StreamAborted: failed after the response had started; the caller
                connection must be closed without further bytes
            ClientDisconnected: the caller went away
            MalformedRequest: the request body framing is broken
        """
        request = exchange.request
        body_length = request_body_length(request)

        if body_length != 0 and "100-continue" in request.headers.tokens("Expect"):
            self._send_client(exchange, client_socket, b"HTTP/1.1 100 Continue\r\n\r\n", interim=True)

        conn, response = self._send_request(exchange, client_socket, client_reader, body_length)
        try:
            if response.status == 101 and request.wants_upgrade:
                self._relay_upgrade(exchange, conn, response, client_socket, client_reader)
                self.pool.invalidate(conn)
                return False

            keep_client, upstream_reusable = self._relay_response(exchange, conn, response, client_socket)
        except BaseException:
            self.pool.invalidate(conn)
            raise

        self.pool.release(conn, reusable=upstream_reusable)
        return keep_client

    # -------------------------------------------------------------------------
    # Request leg
    # -------------------------------------------------------------------------

    def build_request_head(self, exchange: Exchange, body_length: int) -> bytes:
        request = exchange.request
        rule = exchange.rule

        path = request.path
        if rule is not None and rule.strip_prefix and exchange.prefix and exchange.prefix != "/":
            path = path[len(exchange.prefix):] or "/"
        target = f"{path}?{request.query}" if "?" in request.target else path

        original_host = request.headers.get("Host")
        headers = filter_hop_by_hop(request.headers)
        headers.remove("Expect")

        if rule is not None and rule.rewrite_origin:
            headers.set("Host", exchange.upstream.host_header)
        elif original_host is None:
            headers.set("Host", exchange.upstream.host_header)

        client_ip = exchange.client_addr[0]
        prior = ", ".join(headers.get_all("X-Forwarded-For"))
        headers.set("X-Forwarded-For", f"{prior}, {client_ip}" if prior else client_ip)
        # Listener is plain HTTP; overrides any caller-supplied value.
        headers.set("X-Forwarded-Proto", "http")
        if original_host and "X-Forwarded-Host" not in headers:
            headers.set("X-Forwarded-Host", original_host)

        if body_length == CHUNKED:
            headers.add("Transfer-Encoding", "chunked")

        if request.wants_upgrade:
            headers.add("Connection", "Upgrade")
            headers.add("Upgrade", request.headers.get("Upgrade"))
        else:
            headers.add("Connection", "keep-alive")

        if rule is not None and rule.verbose_logging:
            logger.info(f"🔎 {exchange.connection_id} -> {exchange.upstream} {request.method} {target} {list(headers)}")

        head = f"{request.method} {target} HTTP/1.1\r\n".encode("iso-8859-1")
        return head + headers.to_bytes() + b"\r\n"

    def _send_request(
        self,
        exchange: Exchange,
        client_socket: socket.socket,
        client_reader: SocketReader,
        body_length: int,
    ) -> Tuple[PooledConnection, HTTPResponseHead]:
        """
        Acquire a connection, write the request and read the final response head.

        A reused connection that dies before answering is retried once on a
        fresh connection, but only for bodiless idempotent requests.
        """
        request = exchange.request
        rule = exchange.rule
        head = self.build_request_head(exchange, body_length)
        retryable = request.method in IDEMPOTENT_METHODS and body_length == 0

        fresh = False
        while True:
            remaining = exchange.remaining()
            if remaining <= 0:
                raise UpstreamTimeout(f"No time left to connect to {exchange.upstream.authority}")
            try:
                conn = self.pool.acquire(
                    exchange.upstream,
                    allow_insecure_tls=bool(rule and rule.allow_insecure_tls),
                    timeout=remaining,
                    fresh=fresh,
                )
            except UpstreamUnreachable:
                if exchange.remaining() <= 0:
                    raise UpstreamTimeout(f"Connect to {exchange.upstream.authority} exceeded the exchange timeout")
                raise
            conn.reader.deadline = exchange.deadline

            try:
                conn.sendall(head)
                exchange.bytes_up += len(head)
                if body_length != 0:
                    self._stream_request_body(exchange, conn, client_reader, body_length)
                response = self._read_response_head(exchange, conn, client_socket)
                return conn, response
            except (ClientDisconnected, MalformedRequest):
                self.pool.invalidate(conn)
                raise
            except (OSError, ValueError, ProxyError) as e:
                self.pool.invalidate(conn)
                if conn.reused and retryable and not fresh and not exchange.response_started and not isinstance(e, socket.timeout):
                    logger.debug(f"{exchange.connection_id} stale pooled connection to {exchange.upstream.authority} ({e}), retrying")
                    fresh = True
                    continue
                raise self._upstream_failure(exchange, e)

    def _stream_request_body(self, exchange: Exchange, conn: PooledConnection, client_reader: SocketReader, body_length: int):
        chunks = iter_body(client_reader, body_length)
        while True:
            try:
                data = next(chunks)
            except StopIteration:
                break
            except ValueError as e:
                raise MalformedRequest(f"Malformed request body: {e}")
            except OSError as e:
                raise ClientDisconnected(f"Caller went away while sending the body: {e}")
            out = encode_chunk(data) if body_length == CHUNKED else data
            conn.sendall(out)
            exchange.bytes_up += len(out)
        if body_length == CHUNKED:
            conn.sendall(LAST_CHUNK)
            exchange.bytes_up += len(LAST_CHUNK)

    def _wait_for_upstream(self, exchange: Exchange, conn: PooledConnection, client_socket: socket.socket):
        """
        Block until the upstream has bytes for us, watching the caller for a
        hang-up meanwhile so that an abandoned exchange is cancelled promptly.
        """
        watch_client = True
        while not conn.reader.buffer:
            remaining = exchange.remaining()
            if remaining <= 0:
                raise socket.timeout("exchange deadline exceeded")
            socks = [conn.sock, client_socket] if watch_client else [conn.sock]
            readable = _readable(socks, min(remaining, 1.0))
            if conn.sock in readable:
                return
            if client_socket in readable:
                try:
                    peek = client_socket.recv(1, socket.MSG_PEEK)
                except OSError as e:
                    raise ClientDisconnected(f"Caller connection failed: {e}")
                if not peek:
                    raise ClientDisconnected("Caller closed the connection while waiting for the upstream")
                # Pipelined bytes; stop watching so the wait doesn't spin.
                watch_client = False

    def _read_response_head(self, exchange: Exchange, conn: PooledConnection, client_socket: socket.socket) -> HTTPResponseHead:
        while True:
            self._wait_for_upstream(exchange, conn, client_socket)
            head = conn.reader.read_head()
            if head is None:
                raise UpstreamUnreachable(f"{exchange.upstream.authority} closed the connection without responding")
            response = parse_response_head(head)
            if 100 <= response.status < 200 and response.status != 101:
                # Interim responses (103 Early Hints, an unsolicited 100) go straight through.
                if exchange.request.version == "HTTP/1.1":
                    self._send_client(exchange, client_socket, head + b"\r\n\r\n", interim=True)
                continue
            return response

    # -------------------------------------------------------------------------
    # Response leg
    # -------------------------------------------------------------------------

    def build_response_head(self, exchange: Exchange, response: HTTPResponseHead, body_length: int) -> Tuple[bytes, bool, bool]:
        """
        Returns:
            (head bytes, keep caller connection alive, re-chunk the body)
        """
        request = exchange.request
        headers = filter_hop_by_hop(response.headers)
        keep_client = request.keep_alive
        rechunk = False

        if body_length == CHUNKED:
            if request.version == "HTTP/1.1":
                headers.add("Transfer-Encoding", "chunked")
                rechunk = True
            else:
                keep_client = False
        elif body_length == UNTIL_CLOSE:
            keep_client = False

        if not keep_client:
            headers.add("Connection", "close")
        elif request.version == "HTTP/1.0":
            headers.add("Connection", "keep-alive")

        reason = response.reason or _standard_reason(response.status)
        head = f"HTTP/1.1 {response.status} {reason}\r\n".encode("iso-8859-1")
        return head + headers.to_bytes() + b"\r\n", keep_client, rechunk

    def _relay_response(
        self,
        exchange: Exchange,
        conn: PooledConnection,
        response: HTTPResponseHead,
        client_socket: socket.socket,
    ) -> Tuple[bool, bool]:
        """Stream status, headers and body to the caller in upstream order."""
        body_length = response_body_length(exchange.request.method, response)
        exchange.status = response.status
        head, keep_client, rechunk = self.build_response_head(exchange, response, body_length)
        self._send_client(exchange, client_socket, head)

        chunks = iter_body(conn.reader, body_length)
        while True:
            try:
                data = next(chunks)
            except StopIteration:
                break
            except (OSError, ValueError) as e:
                raise self._upstream_failure(exchange, e)
            self._send_client(exchange, client_socket, encode_chunk(data) if rechunk else data)
        if rechunk:
            self._send_client(exchange, client_socket, LAST_CHUNK)

        upstream_reusable = response.keep_alive and body_length != UNTIL_CLOSE
        return keep_client, upstream_reusable

    def _relay_upgrade(
        self,
        exchange: Exchange,
        conn: PooledConnection,
        response: HTTPResponseHead,
        client_socket: socket.socket,
        client_reader: SocketReader,
    ):
        """Relay the 101 head, then shuttle raw bytes both ways until either side closes."""
        exchange.status = 101
        exchange.upgraded = True
        headers = filter_hop_by_hop(response.headers)
        headers.add("Connection", "Upgrade")
        headers.add("Upgrade", response.headers.get("Upgrade") or exchange.request.headers.get("Upgrade"))
        head = f"HTTP/1.1 101 {response.reason or 'Switching Protocols'}\r\n".encode("iso-8859-1")
        self._send_client(exchange, client_socket, head + headers.to_bytes() + b"\r\n")

        # Bytes that arrived alongside the heads belong to the new protocol.
        if conn.reader.buffer:
            self._send_client(exchange, client_socket, bytes(conn.reader.buffer))
            conn.reader.buffer.clear()
        if client_reader.buffer:
            conn.sendall(bytes(client_reader.buffer))
            exchange.bytes_up += len(client_reader.buffer)
            client_reader.buffer.clear()

        upstream_sock = conn.sock
        upstream_sock.settimeout(self.tunnel_idle_timeout)
        client_socket.settimeout(self.tunnel_idle_timeout)
        sockets = [client_socket, upstream_sock]
        started = time.monotonic()

        while True:
            try:
                ready = _readable(sockets, self.tunnel_idle_timeout)
            except (OSError, ValueError) as e:
                logger.debug(f"Tunnel {exchange.connection_id} select failed: {e}")
                break
            if not ready:
                logger.debug(f"Tunnel {exchange.connection_id} idle for {self.tunnel_idle_timeout:.0f}s, closing")
                break

            for sock in ready:
                try:
                    data = sock.recv(BUFFER_SIZE)
                except ssl.SSLWantReadError:
                    continue
                except OSError as e:
                    logger.debug(f"Tunnel {exchange.connection_id} closed: {e}")
                    data = b""
                if not data:
                    logger.debug(
                        f"📊 Tunnel {exchange.connection_id} done after {time.monotonic() - started:.1f}s: "
                        f"↑{exchange.bytes_up} ↓{exchange.bytes_down}"
                    )
                    return
                try:
                    if sock is client_socket:
                        upstream_sock.sendall(data)
                        exchange.bytes_up += len(data)
                    else:
                        client_socket.sendall(data)
                        exchange.bytes_down += len(data)
                except OSError as e:
                    logger.debug(f"Tunnel {exchange.connection_id} closed: {e}")
                    return

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _send_client(self, exchange: Exchange, client_socket: socket.socket, data: bytes, interim: bool = False):
        try:
            client_socket.sendall(data)
        except OSError as e:
            raise ClientDisconnected(f"Caller went away: {e}")
        if not interim:
            exchange.response_started = True
        exchange.bytes_down += len(data)

    def _upstream_failure(self, exchange: Exchange, error: Exception) -> Exception:
        if exchange.response_started:
            return StreamAborted(f"Upstream {exchange.upstream.authority} failed mid-response: {error}")
        if isinstance(error, (UpstreamTimeout, socket.timeout)):
            return UpstreamTimeout(f"{exchange.upstream.authority} did not respond within the exchange timeout")
        if isinstance(error, ProxyError):
            return error
        return UpstreamUnreachable(f"I/O error talking to {exchange.upstream.authority}: {error}")
