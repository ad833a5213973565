import json
import logging
import re
import time
import uuid
from typing import Any, Dict

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


logger = logging.getLogger("rentals.request")

_BOOKING_PATH = re.compile(r"^/bookings/([0-9a-fA-F-]{36})(?:/|$)")


def access_record(request: Request, response: Response, req_id: str, duration_ms: int) -> Dict[str, Any]:
    """One access-log line; carries the acting user and booking when known."""
    record: Dict[str, Any] = {
        "request_id": req_id,
        "method": request.method,
        "path": request.url.path,
        "status": response.status_code,
        "duration_ms": duration_ms,
    }
    # set by get_current_user once the bearer token is verified
    actor = getattr(request.state, "actor", None)
    if actor:
        record["actor"] = actor
    m = _BOOKING_PATH.match(request.url.path)
    if m:
        record["booking_id"] = m.group(1).lower()
    return record


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        req_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = req_id
        start = time.perf_counter()
        response: Response = await call_next(request)
        response.headers["X-Request-ID"] = req_id
        duration_ms = int((time.perf_counter() - start) * 1000)
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        try:
            logger.log(level, json.dumps(access_record(request, response, req_id, duration_ms)))
        except Exception:
            pass
        return response
