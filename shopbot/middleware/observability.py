from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from shopbot.core.request_context import clear_request_context, set_request_context

logger = logging.getLogger(__name__)


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Request id plus one summary line per request.

    Webhook handlers record the Messenger page ids and event count on
    ``request.state`` so deliveries can be traced per page.
    """

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        set_request_context(request_id=request_id)

        status_code = 500
        response = None
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            extra = {
                "request_id": request_id,
                "endpoint": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            }
            page_ids = getattr(request.state, "page_ids", None)
            if page_ids:
                extra["page_id"] = ",".join(page_ids)
                extra["event_count"] = getattr(request.state, "event_count", 0)
            logger.info("request completed", extra=extra)

            if response is not None:
                response.headers["X-Request-ID"] = request_id

            clear_request_context()
