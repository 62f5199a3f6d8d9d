"""
MailerLite client (email-marketing provider).

Thin httpx wrapper over the MailerLite REST API. Transient failures
(timeouts, 429, 5xx) are retried with exponential backoff and surface as
``ApiError`` once retries are exhausted.
"""
from typing import Any, Dict, Iterator, List, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from bema_sync.lib.errors import ApiError
from bema_sync.lib.logging import get_logger, log_with_context
from bema_sync.lib.settings import Settings
from bema_sync.providers.base import FieldRecord, GroupRecord, Provider, SubscriberRecord


logger = get_logger(__name__)

PAGE_SIZE = 1000


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ApiError) and exc.retryable


class MailerLiteProvider(Provider):
    """Subscribers and groups from MailerLite."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://connect.mailerlite.com/api",
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        if not self.api_key:
            logger.warning("MailerLite API key not configured. Email-marketing sync will fail.")
        self.client = client or httpx.Client(
            base_url=base_url.rstrip("/") + "/",
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "MailerLiteProvider":
        return cls(
            api_key=settings.mailerlite_api_key,
            base_url=settings.mailerlite_base_url,
            timeout=settings.http_timeout_seconds,
        )

    def close(self) -> None:
        self.client.close()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception(_is_retryable),
        reraise=True,
    )
    def _request(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self.client.request(method, endpoint, **kwargs)
        except httpx.TransportError as exc:
            raise ApiError(f"MailerLite request failed: {exc}", endpoint=endpoint, method=method) from exc

        if response.status_code >= 400:
            log_with_context(
                logger, "warning", "MailerLite API error",
                endpoint=endpoint,
                method=method,
                status_code=response.status_code,
            )
            raise ApiError(
                f"MailerLite {method} {endpoint} returned {response.status_code}",
                endpoint=endpoint,
                method=method,
                status_code=response.status_code,
            )

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def _paginate(self, endpoint: str, params: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        cursor: Optional[str] = None
        while True:
            page_params = dict(params, limit=PAGE_SIZE)
            if cursor:
                page_params["cursor"] = cursor
            payload = self._request("GET", endpoint, params=page_params)
            yield from payload.get("data", [])
            cursor = (payload.get("meta") or {}).get("next_cursor")
            if not cursor:
                return

    def validate_connection(self) -> bool:
        try:
            self._request("GET", "groups", params={"limit": 1})
            return True
        except ApiError as exc:
            log_with_context(logger, "error", "MailerLite connection check failed", error=str(exc))
            return False

    def get_subscribers(self, status: Optional[str] = None) -> List[SubscriberRecord]:
        params: Dict[str, Any] = {"include": "groups"}
        if status:
            params["filter[status]"] = status
        return [self._to_subscriber(raw) for raw in self._paginate("subscribers", params)]

    def update_subscriber(self, subscriber_id: str, data: Dict[str, Any]) -> bool:
        self._request("PUT", f"subscribers/{subscriber_id}", json=data)
        return True

    def add_subscriber_to_group(self, subscriber_id: str, group_id: str) -> bool:
        self._request("POST", f"subscribers/{subscriber_id}/groups/{group_id}")
        return True

    def remove_subscriber_from_group(self, subscriber_id: str, group_id: str) -> bool:
        self._request("DELETE", f"subscribers/{subscriber_id}/groups/{group_id}")
        return True

    def get_groups(self) -> List[GroupRecord]:
        return [
            GroupRecord(id=str(raw["id"]), name=raw["name"], active_count=raw.get("active_count") or 0)
            for raw in self._paginate("groups", {})
        ]

    def add_or_update_subscriber(self, data: Dict[str, Any]) -> str:
        payload = self._request("POST", "subscribers", json=data)
        return str(payload["data"]["id"])

    def get_fields(self) -> List[FieldRecord]:
        return [
            FieldRecord(
                id=str(raw["id"]),
                name=raw.get("name") or raw.get("key") or "",
                key=raw.get("key"),
                type=raw.get("type") or "text",
            )
            for raw in self._paginate("fields", {})
        ]

    def create_field(self, name: str, field_type: str = "number") -> Optional[FieldRecord]:
        payload = self._request("POST", "fields", json={"name": name, "type": field_type})
        data = payload.get("data") or {}
        if not data.get("id"):
            return None
        return FieldRecord(
            id=str(data["id"]),
            name=data.get("name") or name,
            key=data.get("key"),
            type=data.get("type") or field_type,
        )

    @staticmethod
    def _to_subscriber(raw: Dict[str, Any]) -> SubscriberRecord:
        fields = raw.get("fields") or {}
        name = " ".join(part for part in (fields.get("name"), fields.get("last_name")) if part) or None
        return SubscriberRecord(
            id=str(raw["id"]),
            email=raw["email"],
            name=name,
            status=raw.get("status") or "active",
            groups=[str(group["id"]) for group in raw.get("groups") or []],
            fields=fields,
            subscribed_at=raw.get("subscribed_at") or None,
            unsubscribed_at=raw.get("unsubscribed_at") or None,
            updated_at=raw.get("updated_at") or None,
        )
