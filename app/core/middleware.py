"""HTTP middleware: workflow-aware request tagging, error mapping and timing."""

import re
import time
import uuid
from datetime import datetime
from typing import Callable, Optional
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import WorkflowEngineError, create_error_response, get_status_code
from .logging import get_logger, set_logging_context, clear_logging_context


logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
RUN_ID_HEADER = "X-Run-ID"
WORKFLOW_ID_HEADER = "X-Workflow-ID"

# /api/workflows/{id}, /api/execute-workflow/{id}, /api/webhooks/{id}
_WORKFLOW_PATH = re.compile(r"^/api/(?:workflows|execute-workflow|webhooks)/(?P<workflow_id>[^/]+)")


def workflow_id_from_path(path: str) -> Optional[str]:
    match = _WORKFLOW_PATH.match(path)
    return match.group("workflow_id") if match else None


def is_execution_request(request: Request) -> bool:
    """POST /api/execute-workflow runs a whole workflow before answering."""
    return request.method == "POST" and request.url.path.rstrip("/") == "/api/execute-workflow"


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with a request ID and, where the route names one, the
    workflow it targets. Endpoints that start a run report it through the
    X-Run-ID response header; it is added to the completion log line.

    WorkflowEngineError escaping an endpoint becomes the JSON error body used
    across the API; anything else becomes a 500.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        workflow_id = workflow_id_from_path(request.url.path)
        start_time = time.perf_counter()

        context = {"request_id": request_id, "method": request.method, "path": request.url.path}
        if workflow_id:
            context["workflow_id"] = workflow_id
        set_logging_context(**context)

        tags = {REQUEST_ID_HEADER: request_id}
        if workflow_id:
            tags[WORKFLOW_ID_HEADER] = workflow_id

        try:
            response = await call_next(request)
            duration = time.perf_counter() - start_time

            run_id = response.headers.get(RUN_ID_HEADER)
            run_note = f" - Run: {run_id}" if run_id else ""
            logger.info(
                f"{request.method} {request.url.path} -> {response.status_code}{run_note} "
                f"({duration:.3f}s)"
            )
            for header, value in tags.items():
                response.headers[header] = value
            return response

        except WorkflowEngineError as e:
            if workflow_id and "workflow_id" not in e.details:
                e.add_details(workflow_id=workflow_id)
            logger.warning(
                f"{request.method} {request.url.path} failed with {e.error_code}: {e.message}",
                extra={"extra_fields": {"error_details": e.to_dict()}}
            )
            return JSONResponse(status_code=get_status_code(e), content=create_error_response(e), headers=tags)

        except Exception as e:
            logger.error(f"Unexpected error on {request.method} {request.url.path}: {e}", exc_info=True)
            return JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "details": {
                        "error_type": type(e).__name__,
                        "workflow_id": workflow_id,
                        "timestamp": datetime.utcnow().isoformat()
                    },
                    "request_id": request_id
                },
                headers=tags
            )

        finally:
            clear_logging_context()


class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """
    Reports X-Response-Time on every response.

    Synchronous workflow executions are judged against their own threshold,
    since they include every node's run time, and the warning names the run.
    """

    def __init__(self, app, slow_request_threshold: float = 5.0, slow_execution_threshold: float = 60.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold
        self.slow_execution_threshold = slow_execution_threshold

    def threshold_for(self, request: Request) -> float:
        if is_execution_request(request):
            return self.slow_execution_threshold
        return self.slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        threshold = self.threshold_for(request)
        if duration > threshold:
            run_id = response.headers.get(RUN_ID_HEADER)
            subject = f"Workflow run {run_id}" if run_id else f"Request {request.method} {request.url.path}"
            logger.warning(f"{subject} took {duration:.3f}s (threshold: {threshold}s)")

        response.headers["X-Response-Time"] = f"{duration:.3f}s"
        return response
