"""
Easy Digital Downloads client (commerce provider).

Reads customers, completed sales and products from the EDD REST API. EDD
has no notion of groups, so group operations are no-ops that report
failure, and subscriber writes are not supported by the store.
"""
from typing import Any, Dict, Iterator, List, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from bema_sync.lib.errors import ApiError
from bema_sync.lib.logging import get_logger, log_with_context
from bema_sync.lib.settings import Settings
from bema_sync.providers.base import (
    AlbumRecord,
    CommerceProvider,
    GroupRecord,
    OrderRecord,
    SubscriberRecord,
)


logger = get_logger(__name__)

PAGE_SIZE = 100


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ApiError) and exc.retryable


class EDDProvider(CommerceProvider):
    """Orders, customers and albums from the EDD store."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        token: str,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        self.token = token
        if not (base_url and api_key and token):
            logger.warning("EDD API credentials not configured. Purchase lookups will fail.")
        self.client = client or httpx.Client(
            base_url=base_url.rstrip("/") + "/",
            timeout=timeout,
            headers={"Accept": "application/json"},
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "EDDProvider":
        return cls(
            base_url=settings.edd_base_url,
            api_key=settings.edd_api_key,
            token=settings.edd_token,
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
    def _request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        query = {"key": self.api_key, "token": self.token, "format": "json", **(params or {})}
        try:
            response = self.client.get(f"{endpoint}/", params=query)
        except httpx.TransportError as exc:
            raise ApiError(f"EDD request failed: {exc}", endpoint=endpoint) from exc

        if response.status_code >= 400:
            log_with_context(logger, "warning", "EDD API error", endpoint=endpoint, status_code=response.status_code)
            raise ApiError(
                f"EDD {endpoint} returned {response.status_code}",
                endpoint=endpoint,
                status_code=response.status_code,
            )

        payload = response.json()
        if isinstance(payload, dict) and payload.get("error"):
            raise ApiError(f"EDD {endpoint} error: {payload['error']}", endpoint=endpoint, status_code=400)
        return payload

    def _paginate(self, endpoint: str, key: str, params: Optional[Dict[str, Any]] = None) -> Iterator[Dict[str, Any]]:
        page = 1
        while True:
            payload = self._request(endpoint, {**(params or {}), "page": page, "number": PAGE_SIZE})
            rows = payload.get(key) or []
            yield from rows
            if len(rows) < PAGE_SIZE:
                return
            page += 1

    def validate_connection(self) -> bool:
        try:
            self._request("stats", {"type": "sales"})
            return True
        except ApiError as exc:
            log_with_context(logger, "error", "EDD connection check failed", error=str(exc))
            return False

    def get_subscribers(self, status: Optional[str] = None) -> List[SubscriberRecord]:
        customers = []
        for raw in self._paginate("customers", "customers"):
            info = raw.get("info") or {}
            name = " ".join(part for part in (info.get("first_name"), info.get("last_name")) if part) or None
            customers.append(SubscriberRecord(
                id=str(info.get("customer_id") or info.get("user_id")),
                email=info["email"],
                name=name,
                fields={
                    "purchase_count": (raw.get("stats") or {}).get("total_purchases", 0),
                    "purchase_value": (raw.get("stats") or {}).get("total_spent", 0),
                },
            ))
        return customers

    def update_subscriber(self, subscriber_id: str, data: Dict[str, Any]) -> bool:
        logger.debug("EDD does not support subscriber updates")
        return False

    def add_subscriber_to_group(self, subscriber_id: str, group_id: str) -> bool:
        return False

    def remove_subscriber_from_group(self, subscriber_id: str, group_id: str) -> bool:
        return False

    def get_groups(self) -> List[GroupRecord]:
        return []

    def add_or_update_subscriber(self, data: Dict[str, Any]) -> str:
        raise ApiError("EDD does not support subscriber writes", endpoint="customers", method="POST", status_code=405)

    def get_orders(self, product_id: Optional[int] = None) -> List[OrderRecord]:
        params = {"product": product_id} if product_id is not None else {}
        orders = []
        for sale in self._paginate("sales", "sales", params):
            if sale.get("status", "complete") not in ("complete", "publish"):
                continue
            product_ids = [int(p["id"]) for p in sale.get("products") or [] if p.get("id") is not None]
            if product_id is not None and product_ids and product_id not in product_ids:
                continue
            orders.append(OrderRecord(
                id=str(sale["ID"]),
                email=sale["email"],
                product_ids=product_ids,
                status="complete",
                total=float(sale.get("total") or 0),
                date=sale.get("date") or None,
            ))
        return orders

    def get_albums(self) -> List[AlbumRecord]:
        """
        Products exposed as albums. The product title is the album, its first
        tag is the artist, and the release year comes from the creation date.
        """
        albums = []
        for raw in self._paginate("products", "products"):
            info = raw.get("info") or {}
            tags = info.get("tags") or []
            artist = tags[0].get("name") if tags and isinstance(tags[0], dict) else None
            created = str(info.get("create_date") or "")
            if not (info.get("id") and info.get("title") and artist and created[:4].isdigit()):
                logger.debug(f"Skipping product without album metadata: {info.get('id')}")
                continue
            albums.append(AlbumRecord(
                product_id=int(info["id"]),
                album=info["title"],
                artist=artist,
                year=created[:4],
            ))
        return albums

    def validate_order(self, order_id: str, email: str) -> bool:
        if not order_id or not email:
            return False
        try:
            payload = self._request("sales", {"id": order_id})
        except ApiError as exc:
            if exc.status_code == 404:
                return False
            raise
        sales = payload.get("sales") or []
        if not sales:
            return False
        return str(sales[0].get("email", "")).strip().lower() == email.strip().lower()
