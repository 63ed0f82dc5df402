"""
Client for the external calendar provider.

App-only (client-credentials) OAuth: the bearer token is cached on a
``TokenCache`` owned by the client instance, so several clients can coexist
and tests can inject their own cache and transport.
"""
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx

from common.circuit_breaker import CircuitBreaker

from . import config
from .errors import ExternalServiceError

logger = logging.getLogger(__name__)

# Refresh a token this long before the provider says it expires.
REFRESH_MARGIN = timedelta(minutes=5)
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenCache:
    """
    Holds one bearer token and the instant it stops being usable.

    Parameters
    ----------
    clock : Callable[[], datetime]
        Source of "now" (timezone-aware); injectable for tests.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self.clock = clock
        self.access_token: Optional[str] = None
        self.expires_at: Optional[datetime] = None

    def is_valid(self) -> bool:
        if not self.access_token or self.expires_at is None:
            return False
        return self.expires_at - self.clock() > REFRESH_MARGIN

    def store(self, access_token: str, expires_in_seconds: Optional[int]) -> None:
        lifetime = expires_in_seconds or DEFAULT_TOKEN_LIFETIME_SECONDS
        self.access_token = access_token
        self.expires_at = self.clock() + timedelta(seconds=int(lifetime))

    def clear(self) -> None:
        self.access_token = None
        self.expires_at = None


class CalendarProxyClient:
    """
    Thin wrapper over the provider's events and webhook-subscription endpoints.

    Every call goes through a circuit breaker; transport errors and non-2xx
    responses surface as ``ExternalServiceError``.
    """

    def __init__(
        self,
        base_url: str,
        token_url: str,
        client_id: str,
        client_secret: str,
        scope: str = config.CALENDAR_SCOPE,
        token_cache: Optional[TokenCache] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = config.CALENDAR_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url.rstrip("/")
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope
        self.token_cache = token_cache or TokenCache()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            name="calendar_proxy", max_failures=3, reset_timeout_seconds=30
        )
        self._http = httpx.Client(transport=transport, timeout=timeout)
        self._token_lock = threading.Lock()

    def close(self) -> None:
        self._http.close()

    # ---------- Auth ----------

    def refresh_token(self) -> str:
        try:
            response = self._http.post(
                self.token_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "scope": self.scope,
                },
            )
        except httpx.RequestError as exc:
            raise ExternalServiceError("Failed to contact calendar token endpoint") from exc

        if response.status_code != 200:
            logger.error("Calendar token request failed with status %s", response.status_code)
            raise ExternalServiceError("Failed to authenticate with calendar provider")

        try:
            payload = response.json()
        except ValueError as exc:
            logger.error("Calendar token endpoint returned a non-JSON body")
            raise ExternalServiceError("Calendar token response was not valid JSON") from exc
        token = payload.get("access_token")
        if not token:
            raise ExternalServiceError("Calendar token response carried no access token")

        self.token_cache.store(token, payload.get("expires_in"))
        logger.debug("Acquired new calendar app token")
        return token

    def get_access_token(self) -> str:
        if self.token_cache.is_valid():
            return self.token_cache.access_token
        with self._token_lock:
            # Another thread may have refreshed while this one waited.
            if self.token_cache.is_valid():
                return self.token_cache.access_token
            return self.refresh_token()

    # ---------- Transport ----------

    def _request(self, method: str, path: str, **kwargs) -> Any:
        if not self.circuit_breaker.allow_request():
            raise ExternalServiceError(
                f"Calendar provider temporarily unavailable (circuit '{self.circuit_breaker.name}' open)"
            )

        headers = {"Authorization": f"Bearer {self.get_access_token()}"}
        try:
            response = self._http.request(
                method, f"{self.base_url}{path}", headers=headers, **kwargs
            )
        except httpx.RequestError as exc:
            self.circuit_breaker.record_failure()
            logger.warning("Calendar request %s %s failed: %s", method, path, exc)
            raise ExternalServiceError("Failed to contact calendar provider") from exc

        if response.status_code == 401:
            # Token revoked or rotated early; the next call re-authenticates.
            self.token_cache.clear()

        if response.status_code >= 400:
            if response.status_code >= 500:
                self.circuit_breaker.record_failure()
            logger.warning(
                "Calendar request %s %s returned %s", method, path, response.status_code
            )
            raise ExternalServiceError(
                f"Calendar provider returned an error ({response.status_code})",
                {"providerStatus": response.status_code},
            )

        if response.status_code == 204 or not response.content:
            self.circuit_breaker.record_success()
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            self.circuit_breaker.record_failure()
            logger.warning("Calendar request %s %s returned a non-JSON body", method, path)
            raise ExternalServiceError(
                "Calendar provider returned an unreadable response",
                {"providerStatus": response.status_code},
            ) from exc
        self.circuit_breaker.record_success()
        return data

    # ---------- Events ----------

    def create_event(self, user_id: str, event: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", f"/users/{user_id}/events", json=event)

    def update_event(self, user_id: str, event_id: str, event: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PATCH", f"/users/{user_id}/events/{event_id}", json=event)

    def delete_event(self, user_id: str, event_id: str) -> None:
        self._request("DELETE", f"/users/{user_id}/events/{event_id}")

    def list_events(self, user_id: str, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        data = self._request(
            "GET",
            f"/users/{user_id}/calendarView",
            params={"startDateTime": start.isoformat(), "endDateTime": end.isoformat()},
        )
        return data.get("value", [])

    # ---------- Webhook subscriptions ----------

    def create_subscription(
        self,
        user_id: str,
        notification_url: str,
        expiration: datetime,
        change_type: str = "created,updated,deleted",
    ) -> Dict[str, Any]:
        return self._request(
            "POST",
            "/subscriptions",
            json={
                "changeType": change_type,
                "notificationUrl": notification_url,
                "resource": f"/users/{user_id}/events",
                "expirationDateTime": expiration.isoformat(),
            },
        )

    def renew_subscription(self, subscription_id: str, expiration: datetime) -> Dict[str, Any]:
        return self._request(
            "PATCH",
            f"/subscriptions/{subscription_id}",
            json={"expirationDateTime": expiration.isoformat()},
        )

    def delete_subscription(self, subscription_id: str) -> None:
        self._request("DELETE", f"/subscriptions/{subscription_id}")

    def list_subscriptions(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/subscriptions").get("value", [])


def build_event_payload(reservation: Any) -> Dict[str, Any]:
    """Calendar event body for an approved reservation (times are UTC)."""
    return {
        "subject": reservation.title,
        "body": {"contentType": "text", "content": reservation.description or ""},
        "start": {"dateTime": reservation.start_datetime.isoformat(), "timeZone": "UTC"},
        "end": {"dateTime": reservation.end_datetime.isoformat(), "timeZone": "UTC"},
        "location": {"displayName": ", ".join(f"Room {r}" for r in reservation.selected_rooms or [])},
    }


def build_default_client() -> Optional[CalendarProxyClient]:
    """Client configured from the environment, or None when calendar sync is not configured."""
    if not (config.CALENDAR_API_URL and config.CALENDAR_TOKEN_URL and config.CALENDAR_USER_ID):
        return None
    return CalendarProxyClient(
        base_url=config.CALENDAR_API_URL,
        token_url=config.CALENDAR_TOKEN_URL,
        client_id=config.CALENDAR_CLIENT_ID or "",
        client_secret=config.CALENDAR_CLIENT_SECRET or "",
    )
