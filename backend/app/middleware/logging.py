import hashlib
import json
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("sportsbook.http")

_REQUEST_ID_HEADER = "X-Request-ID"


def hash_client_ip(host: str | None) -> str | None:
    if not host:
        return None
    return hashlib.sha256(host.encode()).hexdigest()[:12]


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """One JSON log line per request; echoes or assigns X-Request-ID."""

    async def dispatch(self, request: Request, call_next) -> Response:
        incoming = (request.headers.get(_REQUEST_ID_HEADER) or "").strip()
        request_id = incoming[:64] if incoming else uuid.uuid4().hex[:12]
        request.state.request_id = request_id
        started = time.perf_counter()

        response: Response = await call_next(request)

        log_data = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            "client_ip_hash": hash_client_ip(request.client.host if request.client else None),
        }
        if response.status_code >= 500:
            level = logging.ERROR
        elif response.status_code >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(level, json.dumps(log_data))

        response.headers[_REQUEST_ID_HEADER] = request_id
        return response


def setup_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    # httpx logs every request URL at INFO, including the api key query param.
    logging.getLogger("httpx").setLevel(logging.WARNING)
