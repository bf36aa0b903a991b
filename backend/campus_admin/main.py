import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from campus_admin.api.v1.actions import router as actions_router
from campus_admin.api.v1.collections import router as collections_router
from campus_admin.core.config import get_settings
from campus_admin.core.errors import ConsoleError, http_status_for

settings = get_settings()

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "An internal error occurred"

app = FastAPI(
    title="Campus Admin Console API",
    version="1.0.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)

if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

# Collections first: "/me/capabilities" must win over "/{kind}/{entity_id}".
app.include_router(collections_router, prefix="/api/v1", tags=["collections"])
app.include_router(actions_router, prefix="/api/v1", tags=["actions"])


@app.exception_handler(ConsoleError)
async def _console_error_handler(request: Request, exc: ConsoleError):
    status_code = http_status_for(exc)
    if status_code >= 500:
        logger.warning("Console error path=%s kind=%s status=%s", request.url.path, exc.kind.value, status_code)
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "error": exc.to_dict()})


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Hide internal details for 5xx in production unless explicitly enabled.
    if exc.status_code >= 500 and not settings.expose_error_details:
        return JSONResponse(status_code=exc.status_code, content={"detail": INTERNAL_ERROR_MESSAGE})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception")
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": INTERNAL_ERROR_MESSAGE})


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if not settings.security_headers_enabled:
        return response

    headers = response.headers
    if "Cache-Control" not in headers:
        headers["Cache-Control"] = "no-store"
    if "X-Content-Type-Options" not in headers:
        headers["X-Content-Type-Options"] = "nosniff"
    if "X-Frame-Options" not in headers:
        headers["X-Frame-Options"] = "DENY"
    if "Referrer-Policy" not in headers:
        headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if "Content-Security-Policy" not in headers:
        headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'; base-uri 'none'"

    return response


@app.get("/health")
async def health_check():
    return {"status": "ok"}
