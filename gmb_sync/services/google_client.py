"""
Client Google Business Profile avec retry et timeouts
Gestion des rate limits (429 + retry-after) avec backoff exponentiel

Endpoints utilisés:
- OAuth token endpoint (code → tokens, refresh)
- Account Management v1 (accounts)
- Business Information v1 (locations)
- My Business v4 (reviews, localPosts)
- Q&A v1 (questions)
"""
import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx
import structlog

from ..config import settings
from ..errors import AuthExpired, RateLimited, SyncCancelled, UpstreamError

logger = structlog.get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
ACCOUNTS_BASE = "https://mybusinessaccountmanagement.googleapis.com/v1"
BUSINESS_INFO_BASE = "https://mybusinessbusinessinformation.googleapis.com/v1"
GMB_V4_BASE = "https://mybusiness.googleapis.com/v4"
QANDA_BASE = "https://mybusinessqanda.googleapis.com/v1"

LOCATION_READ_MASK = (
    "name,title,storefrontAddress,phoneNumbers,categories,websiteUri,regularHours,profile,latlng"
)

# Timeouts explicites pour éviter les blocages
DEFAULT_TIMEOUT = httpx.Timeout(connect=5.0, read=30.0, write=5.0, pool=5.0)


def ensure_account_resource(account_id: str) -> str:
    """"123" → "accounts/123" ("accounts/123" inchangé)"""
    if not account_id:
        return ""
    return account_id if account_id.startswith("accounts/") else f"accounts/{account_id}"


def build_location_resource(account_id: str, location_id: str) -> str:
    """Resource v4 : accounts/{a}/locations/{l}"""
    clean_account = account_id.replace("accounts/", "", 1) if account_id.startswith("accounts/") else account_id
    clean_location = location_id.rsplit("locations/", 1)[-1]
    return f"accounts/{clean_account}/locations/{clean_location}"


def _retry_after_ms(response: httpx.Response) -> Optional[int]:
    header = response.headers.get("retry-after")
    if header is None:
        return None
    try:
        return max(int(float(header) * 1000), 1000)
    except ValueError:
        # Format HTTP-date non supporté → backoff exponentiel
        return None


class GoogleClient:
    """
    Client asynchrone pour les APIs Google Business Profile

    Features:
    - Pagination séquentielle par pageToken (page N+1 après la page N)
    - Retry borné par page : 429 (retry-after) et erreurs transitoires
    - Tout-ou-rien : un échec de page annule toute la collection
    - Annulation via asyncio.Event
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        max_retries: Optional[int] = None,
        page_size: Optional[int] = None,
    ):
        self.client_id = settings.GOOGLE_CLIENT_ID
        self.client_secret = settings.GOOGLE_CLIENT_SECRET
        self.redirect_uri = settings.GOOGLE_REDIRECT_URI
        self.max_retries = max_retries or settings.GOOGLE_MAX_RETRIES
        self.page_size = page_size or settings.GOOGLE_PAGE_SIZE
        self._http_client = http_client
        self._sleep = sleep

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.request(method, url, **kwargs)
        async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT) as client:
            return await client.request(method, url, **kwargs)

    async def _wait(self, delay_ms: int, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelled()
        await self._sleep(delay_ms / 1000)

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        token: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        """
        Une requête Google avec retry

        Politique (par requête, max_retries tentatives au total):
        - 429: attente retry-after (secondes → ms, min 1000ms) sinon 2^attempt * 1000ms
        - autre non-2xx / erreur réseau: attente 2^attempt * 1000ms
        - épuisé: RateLimited (429) ou UpstreamError (status + extrait du body)

        Raises:
            RateLimited, UpstreamError, SyncCancelled
        """
        headers = {"Authorization": f"Bearer {token}"} if token else {}

        for attempt in range(self.max_retries):
            last_attempt = attempt >= self.max_retries - 1

            try:
                response = await self._send(method, url, params=params, json=json_data, headers=headers)
            except httpx.TransportError as e:
                if last_attempt:
                    raise UpstreamError(f"Google API unreachable after {self.max_retries} attempts: {e}")
                delay_ms = (2 ** attempt) * 1000
                logger.warning("google_request_transport_error", url=url, attempt=attempt, delay_ms=delay_ms, error=str(e))
                await self._wait(delay_ms, cancel_event)
                continue

            if response.status_code == 429:
                if last_attempt:
                    logger.error("google_rate_limit_exhausted", url=url, attempts=self.max_retries)
                    retry_after = _retry_after_ms(response) or 60000
                    raise RateLimited(
                        retry_after // 1000,
                        "Google API rate limit exceeded. Please try again later.",
                    )
                delay_ms = _retry_after_ms(response) or (2 ** attempt) * 1000
                logger.warning("google_rate_limited", url=url, attempt=attempt, delay_ms=delay_ms)
                await self._wait(delay_ms, cancel_event)
                continue

            if not response.is_success:
                body = response.text
                if last_attempt:
                    logger.error("google_request_failed", url=url, status=response.status_code, body=body[:500])
                    raise UpstreamError(
                        f"Google API error {response.status_code}",
                        status=response.status_code,
                        body=body,
                    )
                delay_ms = (2 ** attempt) * 1000
                logger.warning("google_request_retry", url=url, status=response.status_code, attempt=attempt, delay_ms=delay_ms)
                await self._wait(delay_ms, cancel_event)
                continue

            if not response.content:
                return {}
            try:
                return response.json()
            except (json.JSONDecodeError, ValueError):
                raise UpstreamError("Malformed JSON from Google API", status=response.status_code, body=response.text)

        raise UpstreamError("Unexpected error in retry loop")

    async def fetch_all_pages(
        self,
        url: str,
        token: str,
        collection_key: str,
        params: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[Dict[str, Any]]:
        """
        Récupère TOUTE une collection paginée (pageSize fixe, curseur pageToken)

        Args:
            url: Endpoint de la collection
            token: Access token Google valide
            collection_key: Clé du tableau dans la réponse ("locations", "reviews"...)
            params: Query params additionnels (readMask...)
            cancel_event: Si set → SyncCancelled avant la page suivante

        Returns:
            Tous les items, dans l'ordre des pages
        """
        items: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        page_count = 0

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise SyncCancelled()

            page_params = dict(params or {})
            page_params["pageSize"] = self.page_size
            if page_token:
                page_params["pageToken"] = page_token

            data = await self._request_with_retry("GET", url, token=token, params=page_params, cancel_event=cancel_event)
            if not isinstance(data, dict):
                raise UpstreamError("Unexpected response shape from Google API", body=str(data))

            # Page vide = 0 item, pas une erreur
            items.extend(data.get(collection_key) or [])
            page_count += 1

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        logger.debug("google_collection_fetched", url=url, pages=page_count, items=len(items))
        return items

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def build_authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": settings.GOOGLE_SCOPES,
            "access_type": "offline",  # Indispensable pour obtenir un refresh_token
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def _token_request(self, form: Dict[str, str]) -> Dict[str, Any]:
        """
        POST sur le token endpoint (pas de retry : un grant rejeté ne se retente pas)

        Raises:
            AuthExpired: grant rejeté (4xx: invalid_grant, révoqué...)
            UpstreamError: 5xx, réseau, JSON illisible
        """
        payload = {"client_id": self.client_id, "client_secret": self.client_secret, **form}
        try:
            response = await self._send("POST", GOOGLE_TOKEN_URL, data=payload)
        except httpx.TransportError as e:
            raise UpstreamError(f"Google token endpoint unreachable: {e}")

        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError):
            data = {}

        if 400 <= response.status_code < 500:
            error = data.get("error", "unknown_error")
            logger.warning(
                "google_token_rejected",
                status=response.status_code,
                error=error,
                error_description=data.get("error_description"),
            )
            raise AuthExpired(f"Token request rejected: {error}")

        if not response.is_success or "access_token" not in data:
            raise UpstreamError(
                "Google token endpoint error",
                status=response.status_code,
                body=response.text,
            )
        return data

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        """
        Échange le code OAuth contre les tokens

        Returns:
            {"access_token", "expires_in", "refresh_token"?, "scope", "token_type"}
        """
        return await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
        })

    async def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        """
        Returns:
            {"access_token", "expires_in", "refresh_token"?} : Google ne renvoie
            pas toujours un nouveau refresh_token
        """
        return await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })

    async def get_user_info(self, access_token: str) -> Dict[str, Any]:
        return await self._request_with_retry("GET", GOOGLE_USERINFO_URL, token=access_token)

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    async def list_accounts(self, access_token: str) -> List[Dict[str, Any]]:
        return await self.fetch_all_pages(f"{ACCOUNTS_BASE}/accounts", access_token, "accounts")

    async def list_locations(
        self,
        access_token: str,
        account_id: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[Dict[str, Any]]:
        url = f"{BUSINESS_INFO_BASE}/{ensure_account_resource(account_id)}/locations"
        return await self.fetch_all_pages(
            url, access_token, "locations",
            params={"readMask": LOCATION_READ_MASK},
            cancel_event=cancel_event,
        )

    async def list_reviews(
        self,
        access_token: str,
        account_id: str,
        location_id: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[Dict[str, Any]]:
        url = f"{GMB_V4_BASE}/{build_location_resource(account_id, location_id)}/reviews"
        return await self.fetch_all_pages(url, access_token, "reviews", cancel_event=cancel_event)

    async def list_questions(
        self,
        access_token: str,
        location_id: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[Dict[str, Any]]:
        clean_location = location_id.rsplit("locations/", 1)[-1]
        url = f"{QANDA_BASE}/locations/{clean_location}/questions"
        return await self.fetch_all_pages(
            url, access_token, "questions",
            params={"answersPerQuestion": 1},
            cancel_event=cancel_event,
        )

    async def list_local_posts(
        self,
        access_token: str,
        account_id: str,
        location_id: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[Dict[str, Any]]:
        url = f"{GMB_V4_BASE}/{build_location_resource(account_id, location_id)}/localPosts"
        return await self.fetch_all_pages(url, access_token, "localPosts", cancel_event=cancel_event)

    # ------------------------------------------------------------------
    # Écritures
    # ------------------------------------------------------------------

    async def reply_to_review(
        self,
        access_token: str,
        account_id: str,
        location_id: str,
        review_id: str,
        comment: str,
    ) -> Dict[str, Any]:
        clean_review = review_id.rsplit("reviews/", 1)[-1]
        url = f"{GMB_V4_BASE}/{build_location_resource(account_id, location_id)}/reviews/{clean_review}/reply"
        return await self._request_with_retry("PUT", url, token=access_token, json_data={"comment": comment})

    async def answer_question(
        self,
        access_token: str,
        question_name: str,
        text: str,
    ) -> Dict[str, Any]:
        # question_name: "locations/{l}/questions/{q}"
        url = f"{QANDA_BASE}/{question_name}/answers:upsert"
        return await self._request_with_retry("POST", url, token=access_token, json_data={"answer": {"text": text}})


# Instance globale (singleton pattern)
google_client = GoogleClient()
