# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Request correlation middleware.

Every request gets an ID (the caller's X-Request-Id or X-Trace-Id, else a
fresh UUID) that is bound to the log context for the duration of the
request and echoed back in the X-Request-Id response header. When the app
has a metrics collector on app.state.metrics, response codes and latencies
are recorded there; POST /event is timed separately as "event".
"""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from character_actor.logging import StructuredLogger, clear_context, set_request_id
from character_actor.metrics import MetricsTimer

logger = StructuredLogger(__name__)

REQUEST_ID_HEADERS = ('X-Request-Id', 'X-Trace-Id')


class RequestCorrelationMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = next(
            (request.headers[name] for name in REQUEST_ID_HEADERS if request.headers.get(name)),
            None
        ) or str(uuid.uuid4())
        set_request_id(request_id)

        collector = getattr(request.app.state, 'metrics', None)
        path = request.url.path
        operation = "event" if path == "/event" else "request"

        try:
            with MetricsTimer(operation, collector) as timer:
                response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {path}",
                error_type=type(e).__name__
            )
            raise
        finally:
            clear_context()

        if collector is not None:
            collector.record_request(response.status_code)

        logger.info(
            f"Request completed: {request.method} {path}",
            request_id=request_id,
            status_code=response.status_code,
            duration_ms=f"{(time.perf_counter() - timer.start_time) * 1000:.2f}"
        )
        response.headers['X-Request-Id'] = request_id
        return response
