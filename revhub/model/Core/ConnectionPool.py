import logging
import select
import socket
import ssl
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .errors import UpstreamUnreachable
from .header import Upstream
from .http_io import SocketReader

logger = logging.getLogger("revhub.pool")

DEFAULT_MAX_IDLE = 8
DEFAULT_CONNECT_TIMEOUT = 5.0
DEFAULT_IDLE_TIMEOUT = 30.0

PoolKey = Tuple[str, str, int, bool]


@dataclass(eq=False)
class PooledConnection:
    sock: socket.socket
    upstream: Upstream
    insecure: bool
    created_at: float = field(default_factory=time.monotonic)
    last_used: float = field(default_factory=time.monotonic)
    reuse_count: int = 0
    closed: bool = False

    def __post_init__(self):
        self.reader = SocketReader(self.sock)

    @property
    def key(self) -> PoolKey:
        return (self.upstream.scheme, self.upstream.host, self.upstream.port, self.insecure)

    @property
    def reused(self) -> bool:
        return self.reuse_count > 0

    def sendall(self, data: bytes):
        self.sock.sendall(data)

    def close(self):
        if self.closed:
            return
        self.closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self.sock.close()
        except OSError:
            pass


class ConnectionPool:
    """
    Bounded per-authority pool of idle upstream connections.

    A connection is either idle in the pool or checked out by exactly one
    exchange; acquire, release and invalidate move it between those states
    under a single lock.

    Idle connections past ``idle_timeout`` (or closed by the upstream) are
    reaped by a background thread that runs only while something is idle.
    """

    def __init__(
        self,
        max_idle_per_authority: int = DEFAULT_MAX_IDLE,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
    ):
        self.max_idle_per_authority = max_idle_per_authority
        self.connect_timeout = connect_timeout
        self.idle_timeout = idle_timeout
        self.pool: Dict[PoolKey, List[PooledConnection]] = {}
        self.in_use = set()
        self.lock = threading.Lock()
        self.opened = 0
        self.reused = 0
        self._ssl_contexts: Dict[bool, ssl.SSLContext] = {}
        self.closed = False
        self._reaper: Optional[threading.Thread] = None
        self._stopped = threading.Event()

    def _ssl_context(self, insecure: bool) -> ssl.SSLContext:
        with self.lock:
            context = self._ssl_contexts.get(insecure)
            if context is None:
                context = ssl.create_default_context()
                if insecure:
                    context.check_hostname = False
                    context.verify_mode = ssl.CERT_NONE
                self._ssl_contexts[insecure] = context
            return context

    def acquire(
        self,
        upstream: Upstream,
        allow_insecure_tls: bool = False,
        timeout: Optional[float] = None,
        fresh: bool = False,
    ) -> PooledConnection:
        """
        Get an idle pooled connection to ``upstream`` or open a new one.

        Args:
            upstream: target authority
            allow_insecure_tls: skip certificate validation for https upstreams
            timeout: connect timeout override (capped by ``connect_timeout``)
            fresh: skip idle connections and always open a new one

        Raises:
            UpstreamUnreachable: refused, unresolvable, TLS failure, or connect timeout
        """
        insecure = bool(allow_insecure_tls) and upstream.tls
        key = (upstream.scheme, upstream.host, upstream.port, insecure)

        with self.lock:
            expired = self._sweep_locked()
        for stale in expired:
            stale.close()

        while not fresh:
            with self.lock:
                idle = self.pool.get(key)
                conn = idle.pop() if idle else None
                if idle is not None and not idle:
                    del self.pool[key]
                if conn is not None:
                    self.in_use.add(conn)
            if conn is None:
                break
            if self._is_alive(conn):
                conn.reuse_count += 1
                with self.lock:
                    self.reused += 1
                logger.debug(f"♻️  Reusing connection to {upstream.authority} (use #{conn.reuse_count + 1})")
                return conn
            logger.debug(f"Discarding stale connection to {upstream.authority}")
            self.invalidate(conn)

        conn = self._open(upstream, insecure, timeout)
        with self.lock:
            self.in_use.add(conn)
            self.opened += 1
        return conn

    def _open(self, upstream: Upstream, insecure: bool, timeout: Optional[float]) -> PooledConnection:
        connect_timeout = self.connect_timeout if timeout is None else max(0.001, min(timeout, self.connect_timeout))
        sock = None
        try:
            sock = socket.create_connection((upstream.host, upstream.port), timeout=connect_timeout)
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            if upstream.tls:
                sock = self._ssl_context(insecure).wrap_socket(sock, server_hostname=upstream.host)
        except socket.timeout as e:
            self._close_quietly(sock)
            raise UpstreamUnreachable(f"Connect to {upstream.authority} timed out after {connect_timeout:.1f}s") from e
        except ssl.SSLError as e:
            self._close_quietly(sock)
            raise UpstreamUnreachable(f"TLS handshake with {upstream.authority} failed: {e}") from e
        except OSError as e:
            self._close_quietly(sock)
            raise UpstreamUnreachable(f"Cannot connect to {upstream.authority}: {e}") from e
        logger.debug(f"🔌 Opened connection to {upstream}")
        return PooledConnection(sock=sock, upstream=upstream, insecure=insecure)

    @staticmethod
    def _close_quietly(sock: Optional[socket.socket]):
        if sock is not None:
            try:
                sock.close()
            except OSError:
                pass

    def _is_alive(self, conn: PooledConnection) -> bool:
        """Idle-age check plus a zero-timeout readability check; an idle socket must have nothing to read."""
        if conn.closed or time.monotonic() - conn.last_used > self.idle_timeout:
            return False
        if conn.reader.buffer:
            return False
        sock = conn.sock
        try:
            sock.getpeername()
            readable, _, _ = select.select([sock], [], [], 0)
        except (OSError, ValueError):
            return False
        if not readable:
            return True
        if isinstance(sock, ssl.SSLSocket):
            # Post-handshake TLS records (session tickets) make the socket readable without app data.
            try:
                sock.setblocking(False)
                sock.recv(1)
            except ssl.SSLWantReadError:
                return True
            except OSError:
                return False
            finally:
                try:
                    sock.setblocking(True)
                except OSError:
                    pass
        # EOF or unsolicited bytes: either way the connection is unusable.
        return False

    def release(self, conn: PooledConnection, reusable: bool = True):
        """
        Return a checked-out connection. It is pooled only when ``reusable``,
        there is room, and the pool has not been closed; otherwise it is closed.
        """
        with self.lock:
            if conn not in self.in_use:
                logger.warning(f"Ignoring release of a connection to {conn.upstream.authority} that is not checked out")
                return
            self.in_use.discard(conn)
            expired = self._sweep_locked()
            idle = self.pool.get(conn.key, [])
            pooled = (
                reusable
                and not self.closed
                and not conn.closed
                and not conn.reader.buffer
                and len(idle) < self.max_idle_per_authority
            )
            if pooled:
                conn.last_used = time.monotonic()
                idle.append(conn)
                self.pool[conn.key] = idle
                self._start_reaper_locked()
        for stale in expired:
            stale.close()
        if not pooled:
            conn.close()

    def invalidate(self, conn: PooledConnection):
        """Forcibly close ``conn`` and make sure it is never handed out again."""
        with self.lock:
            self.in_use.discard(conn)
            idle = self.pool.get(conn.key)
            if idle and conn in idle:
                idle.remove(conn)
                if not idle:
                    del self.pool[conn.key]
        conn.close()

    def close_all(self):
        """Close every idle connection; connections released afterwards are closed too."""
        with self.lock:
            self.closed = True
            idle = [conn for conns in self.pool.values() for conn in conns]
            self.pool.clear()
        self._stopped.set()
        for conn in idle:
            conn.close()

    # -------------------------------------------------------------------------
    # Idle reaping
    # -------------------------------------------------------------------------

    def _sweep_locked(self) -> List[PooledConnection]:
        """Unlink dead or expired idle connections. Caller holds the lock and closes the result."""
        expired = []
        for key in list(self.pool):
            conns = self.pool[key]
            keep = []
            for conn in conns:
                (keep if self._is_alive(conn) else expired).append(conn)
            if keep:
                self.pool[key] = keep
            else:
                del self.pool[key]
        return expired

    def cleanup_idle(self) -> int:
        """Close idle connections that timed out or were closed by the upstream."""
        with self.lock:
            expired = self._sweep_locked()
        for conn in expired:
            conn.close()
        if expired:
            logger.debug(f"🧹 Reaped {len(expired)} idle upstream connection(s)")
        return len(expired)

    def _start_reaper_locked(self):
        if self._reaper is not None or self.closed:
            return
        self._reaper = threading.Thread(target=self._reap, name="revhub-pool-reaper", daemon=True)
        self._reaper.start()

    def _reap(self):
        interval = max(0.05, min(self.idle_timeout / 2, 5.0))
        while not self._stopped.wait(interval):
            self.cleanup_idle()
            with self.lock:
                if not self.pool:
                    self._reaper = None
                    return
        with self.lock:
            self._reaper = None

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def idle_count(self, upstream: Optional[Upstream] = None) -> int:
        with self.lock:
            if upstream is None:
                return sum(len(conns) for conns in self.pool.values())
            return sum(
                len(conns) for key, conns in self.pool.items()
                if key[:3] == (upstream.scheme, upstream.host, upstream.port)
            )

    @staticmethod
    def _describe_key(key: PoolKey) -> str:
        scheme, host, port, insecure = key
        label = f"{scheme}://{host}:{port}"
        return f"{label} (insecure)" if insecure else label

    def stats(self) -> Dict[str, object]:
        with self.lock:
            return {
                "idle": {self._describe_key(key): len(conns) for key, conns in self.pool.items() if conns},
                "in_use": len(self.in_use),
                "opened": self.opened,
                "reused": self.reused,
            }
