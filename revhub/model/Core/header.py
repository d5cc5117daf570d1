import socket
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple
from urllib.parse import urlsplit

from .errors import ConfigurationConflict

# =============================================================================
# Core Types & Configuration
# =============================================================================

DEFAULT_PORTS = {"http": 80, "https": 443}

# Meaningful for one transport leg only; never copied across the proxy.
HOP_BY_HOP = frozenset({
    "connection",
    "proxy-connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})


class Headers:
    """
    Ordered, case-insensitive HTTP header list.

    Duplicate names are kept in arrival order, since some headers
    (``Set-Cookie``) must never be folded into one line.
    """

    def __init__(self, items: Optional[List[Tuple[str, str]]] = None):
        self._items: List[Tuple[str, str]] = list(items or [])

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        name = name.lower()
        for key, value in self._items:
            if key.lower() == name:
                return value
        return default

    def get_all(self, name: str) -> List[str]:
        name = name.lower()
        return [value for key, value in self._items if key.lower() == name]

    def add(self, name: str, value: str):
        self._items.append((name, value))

    def set(self, name: str, value: str):
        """Replace every occurrence of ``name`` with a single value, keeping its position."""
        lowered = name.lower()
        for index, (key, _) in enumerate(self._items):
            if key.lower() == lowered:
                self._items[index] = (key, value)
                self._items = self._items[:index + 1] + [
                    item for item in self._items[index + 1:] if item[0].lower() != lowered
                ]
                return
        self._items.append((name, value))

    def remove(self, name: str):
        name = name.lower()
        self._items = [item for item in self._items if item[0].lower() != name]

    def tokens(self, name: str) -> List[str]:
        """Comma-separated tokens across all occurrences of ``name``, lowercased."""
        out = []
        for value in self.get_all(name):
            out.extend(token.strip().lower() for token in value.split(",") if token.strip())
        return out

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"Headers({self._items!r})"

    def to_bytes(self) -> bytes:
        return b"".join(f"{key}: {value}\r\n".encode("iso-8859-1") for key, value in self._items)


@dataclass(frozen=True)
class Upstream:
    scheme: str
    host: str
    port: int

    @classmethod
    def from_url(cls, url: str) -> "Upstream":
        """
        Parse ``http://host:port`` into an Upstream.

        Raises:
            ConfigurationConflict: scheme is not http/https or the host is missing
        """
        parts = urlsplit(url if "://" in url else f"http://{url}")
        scheme = (parts.scheme or "http").lower()
        if scheme not in DEFAULT_PORTS:
            raise ConfigurationConflict(f"Unsupported upstream scheme {scheme!r} in {url!r}")
        if not parts.hostname:
            raise ConfigurationConflict(f"Upstream {url!r} has no host")
        try:
            port = parts.port or DEFAULT_PORTS[scheme]
        except ValueError:
            raise ConfigurationConflict(f"Upstream {url!r} has an invalid port")
        return cls(scheme=scheme, host=parts.hostname, port=port)

    @property
    def authority(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def host_header(self) -> str:
        """Value for the ``Host`` header; the port is omitted when it is the scheme default."""
        host = f"[{self.host}]" if ":" in self.host else self.host
        if self.port == DEFAULT_PORTS[self.scheme]:
            return host
        return f"{host}:{self.port}"

    @property
    def tls(self) -> bool:
        return self.scheme == "https"

    def __str__(self) -> str:
        return f"{self.scheme}://{self.authority}"


def normalize_prefix(prefix: str) -> str:
    if not isinstance(prefix, str) or not prefix.startswith("/"):
        raise ConfigurationConflict(f"Path prefix {prefix!r} must start with '/'")
    if prefix != "/":
        prefix = prefix.rstrip("/") or "/"
    return prefix


@dataclass(frozen=True)
class ForwardingRule:
    path_prefixes: Tuple[str, ...]
    upstream: Upstream
    rewrite_origin: bool = False
    allow_insecure_tls: bool = False
    verbose_logging: bool = False
    strip_prefix: bool = False

    def __post_init__(self):
        if isinstance(self.path_prefixes, str):
            raise ConfigurationConflict("path_prefixes must be a sequence of strings, not a string")
        prefixes = tuple(normalize_prefix(p) for p in self.path_prefixes)
        if not prefixes:
            raise ConfigurationConflict(f"Rule for {self.upstream} declares no path prefixes")
        if len(set(prefixes)) != len(prefixes):
            raise ConfigurationConflict(f"Rule for {self.upstream} repeats a path prefix: {prefixes}")
        object.__setattr__(self, "path_prefixes", prefixes)

    def describe(self) -> str:
        return f"{','.join(self.path_prefixes)} -> {self.upstream}"

    def to_dict(self) -> Dict[str, object]:
        return {
            "pathPrefixes": list(self.path_prefixes),
            "upstream": {"scheme": self.upstream.scheme, "host": self.upstream.host, "port": self.upstream.port},
            "rewriteOrigin": self.rewrite_origin,
            "allowInsecureTLS": self.allow_insecure_tls,
            "verboseLogging": self.verbose_logging,
            "stripPrefix": self.strip_prefix,
        }


@dataclass
class HTTPRequest:
    method: str
    target: str
    version: str
    headers: Headers

    @property
    def path(self) -> str:
        return self.target.split("?", 1)[0]

    @property
    def query(self) -> str:
        return self.target.split("?", 1)[1] if "?" in self.target else ""

    @property
    def wants_upgrade(self) -> bool:
        return "upgrade" in self.headers.tokens("Connection") and "Upgrade" in self.headers

    @property
    def keep_alive(self) -> bool:
        tokens = self.headers.tokens("Connection")
        if self.version == "HTTP/1.0":
            return "keep-alive" in tokens
        return "close" not in tokens


@dataclass
class HTTPResponseHead:
    version: str
    status: int
    reason: str
    headers: Headers

    @property
    def keep_alive(self) -> bool:
        tokens = self.headers.tokens("Connection")
        if self.version == "HTTP/1.0":
            return "keep-alive" in tokens
        return "close" not in tokens


@dataclass
class Exchange:
    """One inbound request paired with its upstream request/response cycle."""

    connection_id: str
    client_addr: Tuple[str, int]
    request: HTTPRequest
    rule: Optional[ForwardingRule]
    upstream: Upstream
    deadline: float
    prefix: Optional[str] = None
    start_time: datetime = field(default_factory=datetime.now)
    started: float = field(default_factory=time.monotonic)
    response_started: bool = False
    status: Optional[int] = None
    bytes_up: int = 0
    bytes_down: int = 0
    upgraded: bool = False

    def remaining(self) -> float:
        return self.deadline - time.monotonic()

    def duration_ms(self) -> float:
        return (time.monotonic() - self.started) * 1000


@dataclass
class ConnectionContext:
    connection_id: str
    client_socket: socket.socket
    client_addr: Tuple[str, int]
    start_time: datetime
    requests_served: int = 0
