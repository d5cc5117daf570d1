import socket

import pytest

from revhub.model.Core.errors import ConfigurationConflict, MalformedRequest, UpstreamUnreachable
from revhub.model.Core.header import Headers, HTTPResponseHead, Upstream
from revhub.model.Core.http_io import (
    CHUNKED,
    UNTIL_CLOSE,
    ConnectionClosed,
    HeadTooLarge,
    SocketReader,
    encode_chunk,
    iter_chunked,
    parse_request_head,
    parse_response_head,
    request_body_length,
    response_body_length,
    status_response,
)


@pytest.fixture
def pair():
    a, b = socket.socketpair()
    yield a, b
    a.close()
    b.close()


class TestUpstream:
    def test_from_url_defaults(self):
        assert Upstream.from_url("http://localhost:8081") == Upstream("http", "localhost", 8081)
        assert Upstream.from_url("https://example.com").port == 443
        assert Upstream.from_url("localhost:3000") == Upstream("http", "localhost", 3000)

    def test_host_header_omits_default_port(self):
        assert Upstream("http", "example.com", 80).host_header == "example.com"
        assert Upstream("https", "example.com", 8443).host_header == "example.com:8443"
        assert Upstream("http", "::1", 8080).host_header == "[::1]:8080"

    @pytest.mark.parametrize("url", ["ftp://host", "http://", "http://host:notaport"])
    def test_invalid_urls(self, url):
        with pytest.raises(ConfigurationConflict):
            Upstream.from_url(url)


class TestHeaders:
    def test_case_insensitive_lookup_keeps_duplicates(self):
        headers = Headers([("Set-Cookie", "a=1"), ("set-cookie", "b=2"), ("Host", "x")])
        assert headers.get("HOST") == "x"
        assert headers.get_all("Set-Cookie") == ["a=1", "b=2"]

    def test_set_replaces_all_occurrences_in_place(self):
        headers = Headers([("A", "1"), ("X", "1"), ("B", "2"), ("x", "2")])
        headers.set("X", "3")
        assert list(headers) == [("A", "1"), ("X", "3"), ("B", "2")]

    def test_tokens(self):
        headers = Headers([("Connection", "keep-alive, Upgrade"), ("Connection", "X-Foo")])
        assert headers.tokens("connection") == ["keep-alive", "upgrade", "x-foo"]


class TestRequestHead:
    def test_parses_origin_form(self):
        request = parse_request_head(b"GET /api/widgets?x=1 HTTP/1.1\r\nHost: localhost:4200\r\nAccept: */*")
        assert request.method == "GET"
        assert request.path == "/api/widgets"
        assert request.query == "x=1"
        assert request.headers.get("host") == "localhost:4200"
        assert request.keep_alive

    def test_absolute_form_is_reduced_to_path(self):
        request = parse_request_head(b"GET http://example.com/api/x?q HTTP/1.1\r\nHost: example.com")
        assert request.target == "/api/x?q"

    @pytest.mark.parametrize("head", [
        b"GARBAGE",
        b"GET /x HTTP/2.0\r\nHost: a",
        b"GET /x HTTP/1.1",
        b"GET /x HTTP/1.1\r\nHost: a\r\nHost: b",
        b"GET /x HTTP/1.1\r\nHost: a\r\nBad Header: y",
        b"GET /x HTTP/1.1\r\nHost: a\r\nNoColon",
        b"GET /x HTTP/1.1\r\nHost: a\r\nContent-Length: 3\r\nTransfer-Encoding: chunked",
        b"POST /x HTTP/1.1\r\nHost: a\r\nContent-Length: abc",
        b"GET x HTTP/1.1\r\nHost: a",
    ])
    def test_malformed(self, head):
        with pytest.raises(MalformedRequest):
            parse_request_head(head)

    def test_http10_without_host_is_accepted(self):
        request = parse_request_head(b"GET / HTTP/1.0")
        assert not request.keep_alive

    def test_body_length(self):
        chunked = parse_request_head(b"POST /x HTTP/1.1\r\nHost: a\r\nTransfer-Encoding: chunked")
        fixed = parse_request_head(b"POST /x HTTP/1.1\r\nHost: a\r\nContent-Length: 12")
        assert request_body_length(chunked) == CHUNKED
        assert request_body_length(fixed) == 12

    def test_upgrade_detection(self):
        request = parse_request_head(
            b"GET /ws HTTP/1.1\r\nHost: a\r\nConnection: keep-alive, Upgrade\r\nUpgrade: websocket"
        )
        assert request.wants_upgrade


class TestResponseHead:
    def test_parse(self):
        response = parse_response_head(b"HTTP/1.1 404 Not Found\r\nContent-Length: 0")
        assert (response.status, response.reason) == (404, "Not Found")

    def test_malformed_response_is_bad_gateway(self):
        with pytest.raises(UpstreamUnreachable):
            parse_response_head(b"SSH-2.0-OpenSSH")

    @pytest.mark.parametrize("method,status,headers,expected", [
        ("HEAD", 200, [("Content-Length", "10")], 0),
        ("GET", 204, [], 0),
        ("GET", 304, [("Content-Length", "10")], 0),
        ("GET", 200, [("Content-Length", "10")], 10),
        ("GET", 200, [("Transfer-Encoding", "chunked")], CHUNKED),
        ("GET", 200, [], UNTIL_CLOSE),
    ])
    def test_body_length(self, method, status, headers, expected):
        response = HTTPResponseHead("HTTP/1.1", status, "", Headers(headers))
        assert response_body_length(method, response) == expected


class TestSocketReader:
    def test_read_head_skips_leading_crlf_and_keeps_rest(self, pair):
        a, b = pair
        b.sendall(b"\r\nGET / HTTP/1.1\r\nHost: a\r\n\r\nBODY")
        reader = SocketReader(a, timeout=2)
        assert reader.read_head() == b"GET / HTTP/1.1\r\nHost: a"
        assert reader.read_exact(4) == b"BODY"

    def test_read_head_returns_none_on_clean_eof(self, pair):
        a, b = pair
        b.close()
        assert SocketReader(a, timeout=2).read_head() is None

    def test_eof_mid_head_raises(self, pair):
        a, b = pair
        b.sendall(b"GET / HT")
        b.close()
        with pytest.raises(ConnectionClosed):
            SocketReader(a, timeout=2).read_head()

    def test_head_too_large(self, pair):
        a, b = pair
        b.sendall(b"GET /" + b"x" * 200)
        with pytest.raises(HeadTooLarge):
            SocketReader(a, timeout=2).read_head(max_size=100)

    def test_iter_chunked_decodes_and_drops_trailers(self, pair):
        a, b = pair
        b.sendall(b"5;ext=1\r\nhello\r\n6\r\n world\r\n0\r\nX-Trailer: y\r\n\r\nNEXT")
        reader = SocketReader(a, timeout=2)
        assert b"".join(iter_chunked(reader)) == b"hello world"
        assert bytes(reader.buffer) == b"NEXT"

    def test_iter_chunked_rejects_bad_size(self, pair):
        a, b = pair
        b.sendall(b"zz\r\n")
        with pytest.raises(ValueError):
            list(iter_chunked(SocketReader(a, timeout=2)))

    def test_deadline_raises_timeout(self, pair):
        a, _ = pair
        reader = SocketReader(a)
        reader.deadline = 0  # long past
        with pytest.raises(socket.timeout):
            reader.read_head()


def test_encode_chunk():
    assert encode_chunk(b"x" * 26) == b"1a\r\n" + b"x" * 26 + b"\r\n"


def test_status_response_is_complete():
    raw = status_response(502, "Bad Gateway", "upstream down")
    head, body = raw.split(b"\r\n\r\n", 1)
    assert head.startswith(b"HTTP/1.1 502 Bad Gateway")
    assert b"Connection: close" in head
    assert b"Content-Length: %d" % len(body) in head
