import pytest

from health_wrapper.conftest import parse_head
from health_wrapper.tunnel.handshake import (
    RequestHead,
    build_upgrade_request,
    forwarded_metadata,
    header_value,
    is_upgrade_request,
    missing_forwarded_headers,
)

WS_HEADERS = [
    ("Host", "app.example.com"),
    ("Upgrade", "websocket"),
    ("Connection", "Upgrade"),
    ("Sec-WebSocket-Key", "dGhlIHNhbXBsZSBub25jZQ=="),
    ("Sec-WebSocket-Version", "13"),
]


def make_head(headers=None, target="/ws?token=abc", client_host="203.0.113.5", **kwargs):
    return RequestHead(
        method=kwargs.pop("method", "GET"),
        target=target,
        http_version=kwargs.pop("http_version", "1.1"),
        headers=list(WS_HEADERS if headers is None else headers),
        client_host=client_host,
    )


def serialized_headers(head: RequestHead):
    request_line, headers = parse_head(build_upgrade_request(head))
    return request_line, headers


def names(headers):
    return [name.lower() for name, _ in headers]


class TestIsUpgradeRequest:
    def test_websocket_handshake(self):
        assert is_upgrade_request(WS_HEADERS)

    def test_connection_token_list(self):
        assert is_upgrade_request(
            [("Upgrade", "websocket"), ("Connection", "keep-alive, Upgrade")]
        )

    def test_upgrade_without_connection_token(self):
        assert not is_upgrade_request([("Upgrade", "websocket"), ("Connection", "keep-alive")])

    def test_connection_without_upgrade_header(self):
        assert not is_upgrade_request([("Connection", "Upgrade")])

    def test_empty_upgrade_value(self):
        assert not is_upgrade_request([("Upgrade", " "), ("Connection", "upgrade")])

    def test_plain_request(self):
        assert not is_upgrade_request([("Host", "a"), ("Accept", "*/*")])


class TestForwardedMetadata:
    def test_peer_address_when_no_forwarding_header(self):
        meta = forwarded_metadata(make_head())
        assert meta.client_ip == "203.0.113.5"
        assert meta.proto == "http"
        assert meta.host == "app.example.com"
        assert meta.upgrade == "websocket"

    def test_existing_forwarded_for_wins(self):
        head = make_head(WS_HEADERS + [("X-Forwarded-For", "198.51.100.7, 10.0.0.1")])
        assert forwarded_metadata(head).client_ip == "198.51.100.7"

    @pytest.mark.parametrize("target", ["wss://app.example.com/ws", "https://app.example.com/ws"])
    def test_secure_target(self, target):
        assert forwarded_metadata(make_head(target=target)).proto == "https"

    def test_unknown_peer(self):
        assert forwarded_metadata(make_head(client_host=None)).client_ip == "unknown"

    def test_default_upgrade_protocol(self):
        head = make_head([("Host", "h"), ("Connection", "Upgrade")])
        assert forwarded_metadata(head).upgrade == "websocket"


class TestBuildUpgradeRequest:
    def test_request_line(self):
        request_line, _ = serialized_headers(make_head())
        assert request_line == "GET /ws?token=abc HTTP/1.1"

    def test_http_version_is_kept(self):
        request_line, _ = serialized_headers(make_head(http_version="1.0"))
        assert request_line.endswith("HTTP/1.0")

    def test_terminated_by_blank_line(self):
        raw = build_upgrade_request(make_head())
        assert raw.endswith(b"\r\n\r\n")
        assert raw.count(b"\r\n\r\n") == 1

    def test_inbound_headers_kept_in_order(self):
        _, headers = serialized_headers(make_head())
        assert headers[: len(WS_HEADERS)] == WS_HEADERS

    def test_exactly_four_forwarding_headers_added(self):
        _, headers = serialized_headers(make_head())
        added = headers[len(WS_HEADERS):]
        assert added == [
            ("X-Forwarded-For", "203.0.113.5"),
            ("X-Forwarded-Proto", "http"),
            ("X-Forwarded-Host", "app.example.com"),
            ("X-Real-IP", "203.0.113.5"),
        ]

    def test_client_forwarded_for_is_preserved_and_not_duplicated(self):
        inbound = WS_HEADERS + [("x-forwarded-for", "198.51.100.7")]
        _, headers = serialized_headers(make_head(inbound))

        values = [value for name, value in headers if name.lower() == "x-forwarded-for"]
        assert values == ["198.51.100.7"]
        assert ("X-Real-IP", "198.51.100.7") in headers

    def test_all_forwarding_headers_present_adds_nothing(self):
        inbound = WS_HEADERS + [
            ("X-Forwarded-For", "1.1.1.1"),
            ("X-Forwarded-Proto", "https"),
            ("X-Forwarded-Host", "edge.example.com"),
            ("X-Real-IP", "1.1.1.1"),
        ]
        _, headers = serialized_headers(make_head(inbound))
        assert headers == inbound

    def test_list_values_are_joined(self):
        inbound = WS_HEADERS + [("Sec-WebSocket-Protocol", ["chat", "superchat"])]
        _, headers = serialized_headers(make_head(inbound))
        assert ("Sec-WebSocket-Protocol", "chat, superchat") in headers

    def test_repeated_headers_each_kept(self):
        inbound = WS_HEADERS + [("Cookie", "a=1"), ("Cookie", "b=2")]
        _, headers = serialized_headers(make_head(inbound))
        assert [v for n, v in headers if n == "Cookie"] == ["a=1", "b=2"]

    def test_connection_and_upgrade_not_duplicated(self):
        _, headers = serialized_headers(make_head())
        assert names(headers).count("connection") == 1
        assert names(headers).count("upgrade") == 1

    def test_missing_handshake_headers_are_added(self):
        inbound = [("Host", "app.example.com"), ("Sec-WebSocket-Version", "13")]
        _, headers = serialized_headers(make_head(inbound))
        assert ("Connection", "Upgrade") in headers
        assert ("Upgrade", "websocket") in headers

    def test_connection_without_upgrade_token_is_replaced(self):
        inbound = [("Host", "h"), ("Upgrade", "websocket"), ("Connection", "keep-alive")]
        _, headers = serialized_headers(make_head(inbound))
        connection = [v for n, v in headers if n.lower() == "connection"]
        assert connection == ["Upgrade"]

    def test_custom_upgrade_protocol_is_kept(self):
        inbound = [("Host", "h"), ("Upgrade", "h2c"), ("Connection", "Upgrade, HTTP2-Settings")]
        _, headers = serialized_headers(make_head(inbound))
        assert [v for n, v in headers if n.lower() == "upgrade"] == ["h2c"]

    def test_no_host_means_no_forwarded_host(self):
        inbound = [("Upgrade", "websocket"), ("Connection", "Upgrade")]
        assert "X-Forwarded-Host" not in dict(missing_forwarded_headers(make_head(inbound)))

    def test_serialize_then_parse_keeps_header_set(self):
        inbound = WS_HEADERS + [("X-Custom", "value: with colon")]
        _, headers = serialized_headers(make_head(inbound))
        assert set(inbound) <= set(headers)


def test_header_value():
    assert header_value("a") == "a"
    assert header_value(["a", "b", "c"]) == "a, b, c"
