from __future__ import annotations

import json
import logging
import time as _time

import httpx

from .config import LOCAL_REQUEST_TIMEOUT_SECONDS, TunnelConfig
from .errors import LocalForwardFailure
from .protocol import Headers, HttpRequestMessage, HttpResponseMessage

logger = logging.getLogger("railtunnel")

BAD_GATEWAY_BODY = json.dumps({"error": "Bad Gateway - Local service unavailable"})

# httpx hands back a decoded, fully buffered body.
_DROPPED_RESPONSE_HEADERS = {"content-encoding", "content-length", "transfer-encoding"}


def bad_gateway(request_id: str) -> HttpResponseMessage:
    return HttpResponseMessage(
        request_id=request_id,
        status_code=502,
        headers={"Content-Type": "application/json"},
        body=BAD_GATEWAY_BODY.encode("utf-8"),
    )


def _flatten_headers(headers: Headers) -> list[tuple[str, str]]:
    items: list[tuple[str, str]] = []
    for name, value in headers.items():
        if isinstance(value, list):
            items.extend((name, v) for v in value)
        else:
            items.append((name, value))
    return items


def _group_headers(resp: httpx.Response) -> Headers:
    grouped: dict[str, list[str]] = {}
    for key, value in resp.headers.multi_items():
        lk = key.lower()
        if lk in _DROPPED_RESPONSE_HEADERS:
            continue
        grouped.setdefault(lk, []).append(value)
    return {k: v[0] if len(v) == 1 else v for k, v in grouped.items()}


class LocalForwarder:
    """
    Replays relay requests against the local service.

    Every call to :meth:`forward` returns exactly one response for the
    request's ``request_id``; an unreachable local service yields a 502.
    """

    def __init__(
        self,
        config: TunnelConfig,
        timeout_seconds: float = LOCAL_REQUEST_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def local_url(self, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.config.local_base_url}{path}"

    async def forward(self, request: HttpRequestMessage) -> HttpResponseMessage:
        url = self.local_url(request.path)
        t0 = _time.monotonic()
        logger.info(
            "%s %s req=%s body=%d bytes",
            request.method,
            request.path,
            request.request_id,
            len(request.body or b""),
        )
        try:
            resp = await self._request_local(request, url)
        except LocalForwardFailure as exc:
            elapsed_ms = (_time.monotonic() - t0) * 1000
            logger.error(
                "%s %s req=%s -> 502 error=%s (%.0fms)",
                request.method,
                request.path,
                request.request_id,
                exc.cause,
                elapsed_ms,
            )
            return bad_gateway(request.request_id)

        elapsed_ms = (_time.monotonic() - t0) * 1000
        logger.info(
            "%s %s req=%s -> %d (%d bytes, %.0fms)",
            request.method,
            request.path,
            request.request_id,
            resp.status_code,
            len(resp.content),
            elapsed_ms,
        )
        return HttpResponseMessage(
            request_id=request.request_id,
            status_code=resp.status_code,
            headers=_group_headers(resp),
            body=resp.content,
        )

    async def _request_local(
        self, request: HttpRequestMessage, url: str
    ) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self._transport
            ) as client:
                return await client.request(
                    method=request.method,
                    url=url,
                    headers=_flatten_headers(request.headers),
                    content=request.body,
                )
        except Exception as exc:
            raise LocalForwardFailure(request.method, url, exc) from exc
