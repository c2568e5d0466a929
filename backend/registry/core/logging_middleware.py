"""Request logging middleware."""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("registry.requests")

_MAX_LOGGED_BODY = 500

# Route parameters worth a log field: which entity group a commit or audit
# query touched, and which consumer a confirmation came from.
_LOGGED_PATH_PARAMS = {
    "entity_group_id": "group",
    "consumer_name": "consumer",
}


def _route_fields(request: Request) -> str:
    # path_params is only filled in once the router has matched the request.
    fields = [
        f"{label}={request.path_params[name]}"
        for name, label in _LOGGED_PATH_PARAMS.items()
        if name in request.path_params
    ]
    return f" [{' '.join(fields)}]" if fields else ""


async def _drain(response: Response) -> bytes:
    body = b""
    async for chunk in response.body_iterator:
        body += chunk.encode("utf-8") if isinstance(chunk, str) else chunk
    return body


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and duration of every request.

    Commit-log and consumer routes also log the entity group or consumer
    they act on. Error responses log their body, so a 409 from a refused
    checkpoint advancement shows which consumer held it back.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        started = time.monotonic()
        response = await call_next(request)
        elapsed_ms = (time.monotonic() - started) * 1000

        target = request.url.path
        if request.url.query:
            target = f"{target}?{request.url.query}"
        status = response.status_code
        fields = _route_fields(request)

        if status < 400 or not hasattr(response, "body_iterator"):
            logger.info(
                "%s %s %d (%.0fms)%s", request.method, target, status, elapsed_ms, fields
            )
            return response

        body = await _drain(response)
        detail = body.decode("utf-8", errors="replace")
        if len(detail) > _MAX_LOGGED_BODY:
            detail = detail[:_MAX_LOGGED_BODY] + "..."
        log = logger.warning if status < 500 else logger.error
        log(
            "%s %s %d (%.0fms)%s: %s",
            request.method,
            target,
            status,
            elapsed_ms,
            fields,
            detail,
        )

        # The body iterator is consumed; hand the client a rebuilt response.
        return Response(
            content=body,
            status_code=status,
            headers=dict(response.headers),
            media_type=response.media_type,
        )
