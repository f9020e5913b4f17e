import logging
from http import HTTPStatus

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from rewrite_proxy.app_proxy import route as proxy_route
from rewrite_proxy.models import HealthResponse, ServiceInfo
from rewrite_proxy.relay import route as relay_route
from rewrite_proxy.rewriter.service_worker import (
    SERVICE_WORKER_PATH,
    generate_service_worker_script,
)
from rewrite_proxy.utils import error_envelope, utc_timestamp
from rewrite_proxy.utils.exception_logging import (
    format_exception_message,
    log_exception_with_details,
)
from rewrite_proxy.vars import PROXY_BASE_URL, SERVICE_NAME, SERVICE_VERSION, WS_RELAY_PATH

router = APIRouter()
logger = logging.getLogger("uvicorn.error")


@router.get("/health", response_model=HealthResponse)
async def health():
    return {
        "status": "OK",
        "message": "Proxy server is running",
        "timestamp": utc_timestamp(),
        "sessions": proxy_route.auth_tracker.stats(),
        "relay": relay_route.relay.stats(),
    }


@router.get("/", response_model=ServiceInfo)
async def service_info():
    return {
        "name": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "description": "URL-rewriting reverse proxy with session-bound cookie relay",
        "endpoints": {
            "health": "/health",
            "api": "/api/*",
            "proxy": "/proxy?url=<encoded absolute URL>",
            "relay": WS_RELAY_PATH,
            "service_worker": SERVICE_WORKER_PATH,
            "metrics": "/metrics",
        },
    }


@router.get(SERVICE_WORKER_PATH)
async def service_worker():
    return Response(
        content=generate_service_worker_script(PROXY_BASE_URL),
        media_type="application/javascript",
        headers={"service-worker-allowed": "/"},
    )


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    if exc.status_code == 404:
        message = f"The endpoint {request.method} {request.url.path} does not exist"
    else:
        message = str(exc.detail)
    try:
        error = HTTPStatus(exc.status_code).phrase
    except ValueError:
        error = "Error"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(error, message),
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    log_exception_with_details(
        logger, f"[Proxy] Unhandled error on {request.method} {request.url.path}:", exc
    )
    return JSONResponse(
        status_code=500,
        content=error_envelope("Internal Server Error", format_exception_message(exc)),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
