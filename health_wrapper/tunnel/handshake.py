"""
Upgrade handshake reconstruction.

Once an upgrade request is taken off the normal request/response path there
is no request object left to forward, so the request line and header block
are replayed to the gateway as literal bytes. This module is the only place
that produces that framing.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

HeaderValue = Union[str, Sequence[str]]
HeaderItems = Sequence[Tuple[str, HeaderValue]]

X_FORWARDED_FOR = "X-Forwarded-For"
X_FORWARDED_PROTO = "X-Forwarded-Proto"
X_FORWARDED_HOST = "X-Forwarded-Host"
X_REAL_IP = "X-Real-IP"

DEFAULT_UPGRADE_PROTOCOL = "websocket"
SECURE_SCHEMES = ("https://", "wss://")


@dataclass
class RequestHead:
    """Request line and headers of an inbound request, as received."""

    method: str
    target: str
    http_version: str = "1.1"
    headers: List[Tuple[str, HeaderValue]] = field(default_factory=list)
    client_host: Optional[str] = None

    @property
    def path(self) -> str:
        return self.target.split("?", 1)[0]


@dataclass(frozen=True)
class ForwardedMetadata:
    client_ip: str
    proto: str
    host: Optional[str]
    upgrade: str


def header_value(value: HeaderValue) -> str:
    """Flatten a header value; list values are joined the way proxies fold them."""
    if isinstance(value, str):
        return value
    return ", ".join(value)


def find_header(headers: HeaderItems, name: str) -> Optional[str]:
    wanted = name.lower()
    for key, value in headers:
        if key.lower() == wanted:
            return header_value(value)
    return None


def connection_tokens(headers: HeaderItems) -> set:
    tokens = set()
    for key, value in headers:
        if key.lower() == "connection":
            tokens.update(
                t.strip().lower() for t in header_value(value).split(",") if t.strip()
            )
    return tokens


def is_upgrade_request(headers: HeaderItems) -> bool:
    """An Upgrade header naming a protocol and a Connection header asking for it."""
    upgrade = find_header(headers, "upgrade")
    return bool(upgrade and upgrade.strip()) and "upgrade" in connection_tokens(headers)


def is_secure_target(target: str) -> bool:
    return target.lower().startswith(SECURE_SCHEMES)


def forwarded_metadata(head: RequestHead) -> ForwardedMetadata:
    # The left-most X-Forwarded-For entry is the original client.
    client_ip = None
    existing_xff = find_header(head.headers, X_FORWARDED_FOR)
    if existing_xff:
        client_ip = existing_xff.split(",")[0].strip() or None
    if not client_ip:
        client_ip = head.client_host or "unknown"

    upgrade = (find_header(head.headers, "upgrade") or "").strip()

    return ForwardedMetadata(
        client_ip=client_ip,
        proto="https" if is_secure_target(head.target) else "http",
        host=find_header(head.headers, "host"),
        upgrade=upgrade or DEFAULT_UPGRADE_PROTOCOL,
    )


def missing_forwarded_headers(head: RequestHead) -> List[Tuple[str, str]]:
    """Forwarding headers to add; anything the client already sent is left alone."""
    meta = forwarded_metadata(head)
    candidates = [
        (X_FORWARDED_FOR, meta.client_ip),
        (X_FORWARDED_PROTO, meta.proto),
        (X_FORWARDED_HOST, meta.host),
        (X_REAL_IP, meta.client_ip),
    ]
    return [
        (name, value)
        for name, value in candidates
        if value and find_header(head.headers, name) is None
    ]


def build_upgrade_request(head: RequestHead) -> bytes:
    """
    Serialize an upgrade request for the gateway.

    Every inbound header is kept in order. Missing forwarding headers are
    appended, and the Connection/Upgrade pair is guaranteed so the gateway
    sees a well-formed handshake even if the client's was sloppy.
    """
    meta = forwarded_metadata(head)
    keeps_connection = "upgrade" in connection_tokens(head.headers)

    lines = [f"{head.method} {head.target} HTTP/{head.http_version}"]
    for name, value in head.headers:
        lowered = name.lower()
        if lowered == "connection" and not keeps_connection:
            continue
        if lowered == "upgrade" and not header_value(value).strip():
            continue
        lines.append(f"{name}: {header_value(value)}")

    for name, value in missing_forwarded_headers(head):
        lines.append(f"{name}: {value}")

    if not keeps_connection:
        lines.append("Connection: Upgrade")
    if not (find_header(head.headers, "upgrade") or "").strip():
        lines.append(f"Upgrade: {meta.upgrade}")

    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")
