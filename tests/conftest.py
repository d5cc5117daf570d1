import json
import logging
import socket
import threading
import time

import pytest
from flask import Flask, Response, request
from werkzeug.serving import make_server

from revhub.model.Core.ConnectionPool import ConnectionPool
from revhub.model.Core.header import Upstream
from revhub.model.Core.http_io import SocketReader, parse_request_head
from revhub.model.Core.RoutingEngine import RuleSet
from revhub.model.ReverseProxyServer import ReverseProxyServer


# =============================================================================
# Echo upstream (Flask catch-all)
# =============================================================================

def create_echo_app(name: str) -> Flask:
    app = Flask(name)

    @app.route("/", defaults={"path": ""}, methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
    @app.route("/<path:path>", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
    def catch_all(path):
        payload = {
            "server": name,
            "method": request.method,
            "path": request.path,
            "query": request.query_string.decode(),
            "headers": {key: value for key, value in request.headers.items()},
            "body": request.get_data().decode("utf-8", errors="replace"),
        }
        return Response(json.dumps(payload), mimetype="application/json", headers={"X-Echo-Server": name})

    return app


class FlaskUpstream:
    def __init__(self, name: str):
        self.httpd = make_server("127.0.0.1", 0, create_echo_app(name), threaded=True)
        self.upstream = Upstream("http", "127.0.0.1", self.httpd.server_port)
        self.thread = threading.Thread(target=self.httpd.serve_forever, daemon=True)

    def start(self):
        self.thread.start()
        return self

    def stop(self):
        self.httpd.shutdown()
        self.thread.join(timeout=5)


@pytest.fixture
def echo_upstream():
    server = FlaskUpstream("api").start()
    yield server.upstream
    server.stop()


@pytest.fixture
def app_upstream():
    server = FlaskUpstream("app").start()
    yield server.upstream
    server.stop()


# =============================================================================
# Raw socket upstream, for framing and failure cases
# =============================================================================

def read_request(reader: SocketReader):
    """Read one request (head and Content-Length body) from ``reader``; None on EOF."""
    head = reader.read_head()
    if head is None:
        return None, b""
    parsed = parse_request_head(head)
    length = int(parsed.headers.get("Content-Length", "0"))
    body = reader.read_exact(length) if length else b""
    return parsed, body


class RawUpstream:
    """
    TCP server that hands every accepted connection to ``handler(conn, reader, upstream)``
    on its own thread.
    """

    def __init__(self, handler):
        self.handler = handler
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(50)
        self.sock.settimeout(0.2)
        self.port = self.sock.getsockname()[1]
        self.upstream = Upstream("http", "127.0.0.1", self.port)
        self.accepted = 0
        self.requests = []
        self.events = {}
        self.running = True
        self.thread = threading.Thread(target=self._loop, daemon=True)
        self.thread.start()

    def event(self, name: str) -> threading.Event:
        return self.events.setdefault(name, threading.Event())

    def _loop(self):
        while self.running:
            try:
                conn, _ = self.sock.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            self.accepted += 1
            threading.Thread(target=self._run, args=(conn,), daemon=True).start()

    def _run(self, conn):
        conn.settimeout(10)
        try:
            self.handler(conn, SocketReader(conn, timeout=10), self)
        except OSError:
            pass
        finally:
            conn.close()

    def stop(self):
        self.running = False
        self.sock.close()
        self.thread.join(timeout=2)


@pytest.fixture
def raw_upstream():
    servers = []

    def factory(handler):
        server = RawUpstream(handler)
        servers.append(server)
        return server

    yield factory
    for server in servers:
        server.stop()


def free_port() -> int:
    """A local port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


# =============================================================================
# Proxy under test
# =============================================================================

@pytest.fixture
def start_proxy():
    started = []

    def factory(rule_set=None, **kwargs):
        kwargs.setdefault("connection_pool", ConnectionPool(connect_timeout=2.0))
        server = ReverseProxyServer(rule_set=rule_set or RuleSet(), listen_address=("127.0.0.1", 0), **kwargs)
        thread = threading.Thread(target=server.serve, daemon=True)
        thread.start()
        assert server.ready.wait(5), "proxy did not start listening"
        started.append((server, thread))
        return server

    yield factory
    for server, thread in started:
        server.stop()
        thread.join(timeout=5)


def proxy_url(server: ReverseProxyServer, path: str) -> str:
    host, port = server.server_address
    return f"http://{host}:{port}{path}"


def raw_exchange(server: ReverseProxyServer, payload: bytes, timeout: float = 5.0) -> bytes:
    """Send raw bytes to the proxy and read until it closes the connection."""
    with socket.create_connection(server.server_address, timeout=timeout) as sock:
        sock.sendall(payload)
        out = bytearray()
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            try:
                chunk = sock.recv(65536)
            except socket.timeout:
                break
            if not chunk:
                break
            out.extend(chunk)
        return bytes(out)


@pytest.fixture
def restore_revhub_logging():
    logger = logging.getLogger("revhub")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield logger
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)
    logger.propagate = propagate


def wait_for(predicate, timeout: float = 2.0) -> bool:
    """Poll ``predicate`` until it is truthy; the proxy records stats after the caller has its bytes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return bool(predicate())
