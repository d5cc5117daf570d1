import socket
import time
from typing import Iterator, Optional

from .errors import MalformedRequest, UpstreamUnreachable
from .header import Headers, HTTPRequest, HTTPResponseHead

BUFFER_SIZE = 65536
MAX_HEAD_SIZE = 65536  # request line + headers
MAX_LINE_SIZE = 8192   # chunk-size and trailer lines


class ConnectionClosed(ConnectionError):
    """Peer closed the socket before the expected bytes arrived."""


class HeadTooLarge(ValueError):
    pass


class SocketReader:
    """
    Buffered reader over a blocking socket.

    When ``deadline`` (a ``time.monotonic()`` value) is set, every receive is
    bounded by the time left and raises ``socket.timeout`` once it has passed.
    """

    def __init__(self, sock: socket.socket, timeout: Optional[float] = None):
        self.sock = sock
        self.timeout = timeout
        self.deadline: Optional[float] = None
        self.buffer = bytearray()

    def _recv(self) -> bytes:
        timeout = self.timeout
        if self.deadline is not None:
            remaining = self.deadline - time.monotonic()
            if remaining <= 0:
                raise socket.timeout("exchange deadline exceeded")
            timeout = remaining if timeout is None else min(timeout, remaining)
        self.sock.settimeout(timeout)
        return self.sock.recv(BUFFER_SIZE)

    def recv_more(self) -> bytes:
        chunk = self._recv()
        if not chunk:
            raise ConnectionClosed("Connection closed mid-message")
        return chunk

    def read_some(self) -> bytes:
        """Return whatever is buffered, or one recv worth of bytes. b'' means EOF."""
        if self.buffer:
            data = bytes(self.buffer)
            self.buffer.clear()
            return data
        return self._recv()

    def read_head(self, max_size: int = MAX_HEAD_SIZE) -> Optional[bytes]:
        """
        Read up to and including the blank line that ends a message head.

        Returns:
            The head without its terminating CRLFCRLF, or None if the peer
            closed the connection before sending anything
        """
        # Stray CRLFs between keep-alive requests are legal.
        while True:
            while self.buffer.startswith(b"\r\n"):
                del self.buffer[:2]
            marker = self.buffer.find(b"\r\n\r\n")
            if marker != -1:
                head = bytes(self.buffer[:marker])
                del self.buffer[:marker + 4]
                return head
            if len(self.buffer) > max_size:
                raise HeadTooLarge(f"Message head exceeds {max_size} bytes")
            chunk = self._recv()
            if not chunk:
                if not self.buffer or self.buffer == b"\r":
                    return None
                raise ConnectionClosed("Connection closed mid-head")
            self.buffer.extend(chunk)

    def readline(self, max_size: int = MAX_LINE_SIZE) -> bytes:
        """Read a CRLF-terminated line, returned without the CRLF."""
        while True:
            p = self.buffer.find(b"\r\n")
            if p != -1:
                line = bytes(self.buffer[:p])
                del self.buffer[:p + 2]
                return line
            if len(self.buffer) > max_size:
                raise HeadTooLarge(f"Line exceeds {max_size} bytes")
            self.buffer.extend(self.recv_more())

    def read_up_to(self, n: int) -> bytes:
        """Read between 1 and n bytes; raises ConnectionClosed on EOF."""
        if not self.buffer:
            self.buffer.extend(self.recv_more())
        data = bytes(self.buffer[:n])
        del self.buffer[:n]
        return data

    def read_exact(self, n: int) -> bytes:
        out = bytearray()
        while len(out) < n:
            out.extend(self.read_up_to(n - len(out)))
        return bytes(out)


# =============================================================================
# Head Parsing
# =============================================================================

def _parse_header_lines(lines) -> Headers:
    headers = Headers()
    for line in lines:
        if not line:
            continue
        if line[:1] in (b" ", b"\t"):
            raise ValueError("Obsolete header line folding is not supported")
        if b":" not in line:
            raise ValueError(f"Header line without ':': {line[:40]!r}")
        name, value = line.split(b":", 1)
        name = name.decode("iso-8859-1")
        if not name or name != name.strip() or " " in name:
            raise ValueError(f"Invalid header name {name!r}")
        headers.add(name, value.strip().decode("iso-8859-1"))
    return headers


def parse_request_head(head: bytes) -> HTTPRequest:
    """
    Parse a request line plus headers.

    Raises:
        MalformedRequest: the head is not valid HTTP/1.x framing
    """
    lines = head.split(b"\r\n")
    try:
        request_line = lines[0].decode("ascii")
        method, target, version = request_line.split(" ")
        if not method.isupper() or not method.isalpha():
            raise ValueError(f"Invalid method {method!r}")
        if version not in ("HTTP/1.0", "HTTP/1.1"):
            raise ValueError(f"Unsupported version {version!r}")
        if not target:
            raise ValueError("Empty request target")
        headers = _parse_header_lines(lines[1:])
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedRequest(f"Malformed request head: {e}")

    # Absolute-form targets are accepted; only the origin-form part is routed.
    if "://" in target:
        rest = target.split("://", 1)[1]
        slash = rest.find("/")
        target = rest[slash:] if slash != -1 else "/"
    if not target.startswith("/") and not (method == "OPTIONS" and target == "*"):
        raise MalformedRequest(f"Unsupported request target {target!r}")

    if version == "HTTP/1.1" and "Host" not in headers:
        raise MalformedRequest("HTTP/1.1 request without Host header")
    if len(headers.get_all("Host")) > 1:
        raise MalformedRequest("Multiple Host headers")
    request = HTTPRequest(method=method, target=target, version=version, headers=headers)
    request_body_length(request)  # validates framing headers
    return request


def parse_response_head(head: bytes) -> HTTPResponseHead:
    lines = head.split(b"\r\n")
    try:
        status_line = lines[0].decode("iso-8859-1")
        parts = status_line.split(" ", 2)
        version = parts[0]
        if not version.startswith("HTTP/1."):
            raise ValueError(f"Unsupported version {version!r}")
        status = int(parts[1])
        if not 100 <= status <= 999:
            raise ValueError(f"Invalid status {status}")
        reason = parts[2] if len(parts) > 2 else ""
        headers = _parse_header_lines(lines[1:])
    except (IndexError, ValueError) as e:
        raise UpstreamUnreachable(f"Malformed upstream response: {e}")
    return HTTPResponseHead(version=version, status=status, reason=reason, headers=headers)


# =============================================================================
# Body Framing
# =============================================================================

CHUNKED = -1
UNTIL_CLOSE = -2


def _content_length(headers: Headers) -> Optional[int]:
    values = {v.strip() for value in headers.get_all("Content-Length") for v in value.split(",")}
    if not values:
        return None
    if len(values) > 1:
        raise ValueError("Conflicting Content-Length values")
    value = values.pop()
    if not value.isdigit():
        raise ValueError(f"Invalid Content-Length {value!r}")
    return int(value)


def request_body_length(request: HTTPRequest) -> int:
    """Body length of an inbound request, or CHUNKED."""
    te = request.headers.tokens("Transfer-Encoding")
    if te:
        if te[-1] != "chunked":
            raise MalformedRequest(f"Unsupported Transfer-Encoding {','.join(te)}")
        if "Content-Length" in request.headers:
            raise MalformedRequest("Both Transfer-Encoding and Content-Length present")
        return CHUNKED
    try:
        length = _content_length(request.headers)
    except ValueError as e:
        raise MalformedRequest(str(e))
    return length or 0


def response_body_length(method: str, response: HTTPResponseHead) -> int:
    """Body length of an upstream response, CHUNKED, or UNTIL_CLOSE."""
    if method == "HEAD" or response.status < 200 or response.status in (204, 304):
        return 0
    te = response.headers.tokens("Transfer-Encoding")
    if te:
        return CHUNKED if te[-1] == "chunked" else UNTIL_CLOSE
    try:
        length = _content_length(response.headers)
    except ValueError as e:
        raise UpstreamUnreachable(f"Malformed upstream response: {e}")
    return UNTIL_CLOSE if length is None else length


def iter_fixed(reader: SocketReader, length: int) -> Iterator[bytes]:
    remaining = length
    while remaining > 0:
        data = reader.read_up_to(min(remaining, BUFFER_SIZE))
        remaining -= len(data)
        yield data


def iter_chunked(reader: SocketReader) -> Iterator[bytes]:
    """
    Decode a chunked body into its data pieces; trailers are read and discarded.

    Chunk body:
        <size in hex>[;ext]\\r\\n<data>\\r\\n ... 0\\r\\n<trailers>\\r\\n
    """
    while True:
        size_line = reader.readline().strip()
        size_b = size_line.split(b";", 1)[0].strip()
        try:
            size = int(size_b, 16)
        except ValueError:
            raise ValueError(f"Bad chunk size line: {size_line[:40]!r}")
        if size < 0:
            raise ValueError("Negative chunk size")

        if size == 0:
            while reader.readline() != b"":
                pass
            return

        yield from iter_fixed(reader, size)
        if reader.read_exact(2) != b"\r\n":
            raise ValueError("Malformed chunk: missing CRLF after data")


def iter_until_close(reader: SocketReader) -> Iterator[bytes]:
    while True:
        data = reader.read_some()
        if not data:
            return
        yield data


def iter_body(reader: SocketReader, length: int) -> Iterator[bytes]:
    if length == CHUNKED:
        return iter_chunked(reader)
    if length == UNTIL_CLOSE:
        return iter_until_close(reader)
    return iter_fixed(reader, length)


def encode_chunk(data: bytes) -> bytes:
    return b"%x\r\n%s\r\n" % (len(data), data)


LAST_CHUNK = b"0\r\n\r\n"


def status_response(status: int, reason: str, message: str = "", close: bool = True) -> bytes:
    """A complete small text/plain response, as sent for proxy-generated errors."""
    body = (message or reason).encode("utf-8", errors="replace") + b"\n"
    head = (
        f"HTTP/1.1 {status} {reason}\r\n"
        f"Content-Type: text/plain; charset=utf-8\r\n"
        f"Content-Length: {len(body)}\r\n"
    )
    if close:
        head += "Connection: close\r\n"
    return head.encode("iso-8859-1") + b"\r\n" + body
