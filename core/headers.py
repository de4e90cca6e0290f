"""Header filtering for forwarded requests and relayed responses."""

from collections.abc import Iterable

RawHeaders = list[tuple[bytes, bytes]]

HOP_BY_HOP_HEADERS = frozenset(
    {
        b"connection",
        b"keep-alive",
        b"transfer-encoding",
        b"upgrade",
        b"proxy-authenticate",
        b"proxy-authorization",
        b"te",
        b"trailer",
    }
)

# Recomputed by the outbound client for the new connection leg
_REQUEST_ONLY_DROPS = frozenset({b"host", b"content-length"})


def strip_hop_by_hop(headers: Iterable[tuple[bytes, bytes]]) -> RawHeaders:
    """Drop hop-by-hop headers, including any listed in ``Connection``."""
    headers = list(headers)
    dropped = set(HOP_BY_HOP_HEADERS)
    for key, value in headers:
        if key.lower() == b"connection":
            dropped.update(
                token.strip().lower() for token in value.split(b",") if token.strip()
            )
    return [(key, value) for key, value in headers if key.lower() not in dropped]


class HeaderBuilder:
    """Build outbound and relayed header lists."""

    def build_upstream_headers(
        self,
        headers: Iterable[tuple[bytes, bytes]],
        *,
        client_host: str | None,
        host: str | None,
        scheme: str,
    ) -> RawHeaders:
        """Copy end-to-end headers and append X-Forwarded-* for the backend."""
        upstream = [
            (key, value)
            for key, value in strip_hop_by_hop(headers)
            if key.lower() not in _REQUEST_ONLY_DROPS
        ]

        forwarded_for = [value for key, value in upstream if key.lower() == b"x-forwarded-for"]
        upstream = [
            (key, value)
            for key, value in upstream
            if key.lower() not in (b"x-forwarded-for", b"x-forwarded-host", b"x-forwarded-proto")
        ]
        if client_host:
            forwarded_for.append(client_host.encode("latin-1"))
        if forwarded_for:
            upstream.append((b"x-forwarded-for", b", ".join(forwarded_for)))
        if host:
            upstream.append((b"x-forwarded-host", host.encode("latin-1")))
        upstream.append((b"x-forwarded-proto", scheme.encode("latin-1")))
        return upstream

    def build_downstream_headers(self, headers: Iterable[tuple[bytes, bytes]]) -> RawHeaders:
        """Relay backend response headers minus hop-by-hop ones."""
        return strip_hop_by_hop(headers)
