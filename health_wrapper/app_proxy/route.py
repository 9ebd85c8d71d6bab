import asyncio
import logging
from typing import List, Tuple

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse, Response
from opentelemetry import trace
from starlette.routing import request_response

from health_wrapper.vars import GATEWAY_HOST, GATEWAY_PORT

router = APIRouter()
tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

BAD_GATEWAY_BODY = "Bad Gateway - Gateway unavailable"


def gateway_base_url(request: Request) -> str:
    base_url = getattr(request.app.state, "gateway_base_url", None)
    return base_url or f"http://{GATEWAY_HOST}:{GATEWAY_PORT}"


def get_request_target(request: Request) -> bytes:
    """The request target as the client sent it: raw path plus raw query."""
    raw_path = request.scope.get("raw_path") or request.url.path.encode("latin-1")
    target = raw_path.split(b"?", 1)[0]
    query_string = request.scope.get("query_string", b"")
    if query_string:
        target = target + b"?" + query_string
    return target


def is_origin_form(target: bytes) -> bool:
    return target.startswith(b"/")


def get_target_url(request: Request) -> str:
    """Rebuild the gateway URL from the raw request target, byte for byte."""
    target = get_request_target(request)
    if not is_origin_form(target):
        # "*" and absolute-form targets travel in the "target" extension.
        return gateway_base_url(request) + "/"
    return gateway_base_url(request) + target.decode("latin-1")


def prepare_headers(request: Request) -> List[Tuple[bytes, bytes]]:
    """
    Headers for the gateway, unmodified.

    Order and repeated names are kept. Host is passed through as the client
    sent it, the gateway trusts loopback and reads forwarding headers itself.
    """
    return list(request.headers.raw)


def has_request_body(headers: List[Tuple[bytes, bytes]]) -> bool:
    names = {name.lower() for name, _ in headers}
    return b"content-length" in names or b"transfer-encoding" in names


def create_upstream_client() -> httpx.AsyncClient:
    """One short-lived client per proxied request; no proxy-side timeouts."""
    return httpx.AsyncClient(timeout=httpx.Timeout(None), follow_redirects=False)


class GatewayResponse(Response):
    """
    Relay a streamed gateway response verbatim.

    Status, raw headers (order and repeats) and raw body bytes are passed on
    untouched. The upstream response and its client are released however the
    relay ends, including when the caller disconnects mid-body.
    """

    def __init__(self, upstream: httpx.Response, client: httpx.AsyncClient):
        self.upstream = upstream
        self.client = client
        self.status_code = upstream.status_code
        self.background = None
        self.raw_headers = list(upstream.headers.raw)

    async def relay(self, send) -> None:
        await send(
            {
                "type": "http.response.start",
                "status": self.status_code,
                "headers": self.raw_headers,
            }
        )
        async for chunk in self.upstream.aiter_raw():
            await send({"type": "http.response.body", "body": chunk, "more_body": True})
        await send({"type": "http.response.body", "body": b"", "more_body": False})

    async def listen_for_disconnect(self, receive) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                return

    async def __call__(self, scope, receive, send) -> None:
        # Whichever ends first wins: the gateway body or the caller going away.
        relay = asyncio.create_task(self.relay(send))
        listener = asyncio.create_task(self.listen_for_disconnect(receive))
        try:
            await asyncio.wait({relay, listener}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (relay, listener):
                task.cancel()
            await asyncio.gather(relay, listener, return_exceptions=True)
            await self.upstream.aclose()
            await self.client.aclose()

        if not relay.cancelled() and relay.exception() is not None:
            raise relay.exception()


async def forward_to_gateway(request: Request) -> Response:
    """
    Forward one request to the gateway and stream the answer back.

    There is no readiness check here: while the gateway is still starting the
    connect is refused and the caller gets the same 502 as for any other
    unreachable gateway. Nothing is retried.
    """
    with tracer.start_as_current_span("proxy_request") as span:
        target = get_request_target(request)
        target_url = get_target_url(request)
        span.set_attribute("proxy.target_url", target_url)
        span.set_attribute("proxy.method", request.method)

        logger.debug(f"[proxy] {request.method} {target.decode('latin-1')} -> {target_url}")

        headers = prepare_headers(request)
        content = request.stream() if has_request_body(headers) else None
        upstream_request = httpx.Request(
            request.method,
            target_url,
            headers=headers,
            content=content,
            extensions=None if is_origin_form(target) else {"target": target},
        )

        client = create_upstream_client()
        try:
            upstream = await client.send(upstream_request, stream=True)
        except httpx.TransportError as e:
            await client.aclose()
            logger.error(f"[proxy] HTTP error: {e!r}")
            span.set_attribute("proxy.error", "connection_failed")
            return PlainTextResponse(BAD_GATEWAY_BODY, status_code=502)
        except BaseException:
            # Includes cancellation when the caller disconnects mid-request.
            await client.aclose()
            raise

        span.set_attribute("proxy.status_code", upstream.status_code)
        return GatewayResponse(upstream, client)


# Catch-all without a method list so that any verb, standard or not, is
# forwarded. Must be registered after the health route.
router.add_route("/{path:path}", forward_to_gateway, include_in_schema=False)

# "*" and absolute-form targets match no route; the router's default hands
# them to the gateway as well.
gateway_fallback = request_response(forward_to_gateway)
