"""
Garde CSRF pour l'authentification par cookie HttpOnly

Le dashboard appelle l'API avec le cookie access_token : une page tierce peut
faire envoyer ce cookie par le navigateur. Les clients Bearer (scripts, cron,
intégrations) ne sont pas concernés, le navigateur n'ajoute jamais ce header
tout seul.

Règles pour POST/PUT/PATCH/DELETE:
- Authorization: Bearer ... → accepté
- cookie seul → Origin (ou Referer) doit correspondre au dashboard ou à une
  origine CORS autorisée
- sinon → 403 avec l'enveloppe d'erreur habituelle (code CSRF_REJECTED)
"""
from urllib.parse import urlparse

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from ..config import settings

logger = structlog.get_logger(__name__)


def _netloc(url: str) -> str:
    return urlparse(url).netloc if url else ""


class CSRFFromCookieGuard(BaseHTTPMiddleware):
    SAFE_METHODS = ("GET", "HEAD", "OPTIONS")

    # /api/cron/cleanup n'accepte que Bearer <CRON_SECRET>, jamais le cookie :
    # une requête forgée par un navigateur n'a pas le secret
    SECRET_AUTHENTICATED_PATHS = ("/api/cron/cleanup",)

    # N'existe qu'en DEBUG (404 sinon)
    DEBUG_ONLY_PATHS = ("/auth/dev-login",)

    def is_exempt(self, request) -> bool:
        path = request.url.path
        if request.method in self.SAFE_METHODS or path in self.SECRET_AUTHENTICATED_PATHS:
            return True
        if path in self.DEBUG_ONLY_PATHS and settings.DEBUG:
            return True
        return request.headers.get("authorization", "").lower().startswith("bearer ")

    @staticmethod
    def trusted_netlocs() -> set:
        origins = [settings.DASHBOARD_URL, *settings.allowed_origins_list]
        return {_netloc(origin) for origin in origins if _netloc(origin)}

    async def dispatch(self, request, call_next):
        if self.is_exempt(request):
            return await call_next(request)

        origin = request.headers.get("origin") or request.headers.get("referer", "")
        if _netloc(origin) not in self.trusted_netlocs():
            logger.warning(
                "csrf_rejected",
                path=request.url.path,
                method=request.method,
                origin=origin or None,
            )
            return JSONResponse(
                status_code=403,
                content={
                    "success": False,
                    "error": "Cross-origin cookie requests must use Bearer token authentication",
                    "code": "CSRF_REJECTED",
                },
            )

        return await call_next(request)
