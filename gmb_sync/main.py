"""
Application FastAPI gmb-sync
"""
import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.middleware.sessions import SessionMiddleware

from .config import settings
from .database import init_db
from .errors import GmbSyncError
from .middleware.csrf import CSRFFromCookieGuard
from .middleware.logging import RequestIdMiddleware, configure_logging
from .routers import auth, cron, gmb

configure_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(title="GMB Sync API", version=settings.API_VERSION)

# Ordre : le dernier ajouté s'exécute en premier
app.add_middleware(CSRFFromCookieGuard)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.SESSION_SECRET,
    same_site=settings.COOKIE_SAMESITE,
    https_only=not settings.DEBUG,
    max_age=settings.OAUTH_STATE_TTL_SECONDS,
)
app.add_middleware(RequestIdMiddleware)


@app.exception_handler(GmbSyncError)
async def gmb_sync_error_handler(request: Request, exc: GmbSyncError):
    if exc.status_code >= 500:
        logger.error(
            "request_failed",
            code=exc.code,
            error=exc.message,
            upstream_status=getattr(exc, "status", None),
            upstream_body=getattr(exc, "body", None),
        )
    else:
        logger.warning("request_rejected", code=exc.code, error=exc.message)

    headers = None
    retry_after = getattr(exc, "retry_after_seconds", None)
    if retry_after is not None:
        headers = {"Retry-After": str(retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail, "code": f"HTTP_{exc.status_code}"},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": f"{field}: {message}" if field else message,
            "code": "VALIDATION_ERROR",
        },
    )


@app.on_event("startup")
async def on_startup():
    init_db()
    logger.info("app_startup", environment=settings.ENVIRONMENT)


app.include_router(auth.router)
app.include_router(gmb.router)
app.include_router(cron.router)


@app.get("/health")
def health():
    return {"status": "ok", "version": settings.API_VERSION}
