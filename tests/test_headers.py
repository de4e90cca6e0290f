"""
Unit tests for header filtering
"""

from core.headers import HeaderBuilder, strip_hop_by_hop


def test_strip_hop_by_hop_removes_standard_set():
    headers = [
        (b"Connection", b"keep-alive"),
        (b"Keep-Alive", b"timeout=5"),
        (b"Transfer-Encoding", b"chunked"),
        (b"Upgrade", b"websocket"),
        (b"Proxy-Authenticate", b"Basic"),
        (b"Proxy-Authorization", b"Basic abc"),
        (b"TE", b"trailers"),
        (b"Trailer", b"Expires"),
        (b"Content-Type", b"application/json"),
    ]

    assert strip_hop_by_hop(headers) == [(b"Content-Type", b"application/json")]


def test_strip_hop_by_hop_removes_connection_listed_headers():
    headers = [
        (b"connection", b"close, X-Trace"),
        (b"x-trace", b"abc"),
        (b"x-keep", b"1"),
    ]

    assert strip_hop_by_hop(headers) == [(b"x-keep", b"1")]


def test_strip_hop_by_hop_keeps_duplicates():
    headers = [(b"set-cookie", b"a=1"), (b"set-cookie", b"b=2")]

    assert strip_hop_by_hop(headers) == headers


def test_upstream_headers_drop_host_and_length_and_add_forwarded():
    builder = HeaderBuilder()

    upstream = builder.build_upstream_headers(
        [
            (b"host", b"gateway.local"),
            (b"content-length", b"12"),
            (b"authorization", b"Bearer t"),
            (b"x-forwarded-for", b"10.0.0.1"),
        ],
        client_host="10.0.0.2",
        host="gateway.local",
        scheme="https",
    )

    assert dict(upstream) == {
        b"authorization": b"Bearer t",
        b"x-forwarded-for": b"10.0.0.1, 10.0.0.2",
        b"x-forwarded-host": b"gateway.local",
        b"x-forwarded-proto": b"https",
    }


def test_downstream_headers_strip_hop_by_hop():
    builder = HeaderBuilder()

    relayed = builder.build_downstream_headers(
        [(b"Content-Type", b"text/plain"), (b"Keep-Alive", b"timeout=5")]
    )

    assert relayed == [(b"Content-Type", b"text/plain")]
