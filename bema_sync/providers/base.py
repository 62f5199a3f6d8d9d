"""
Provider capabilities consumed by the sync engine.

One implementation exists per external system: the email-marketing
platform (subscribers and groups) and the commerce store (orders and
albums). Records crossing the boundary are pydantic models so malformed
vendor payloads fail at the edge rather than deep in the engine.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class SubscriberRecord(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    status: str = "active"
    groups: List[str] = Field(default_factory=list, description="External group ids")
    fields: Dict[str, Any] = Field(default_factory=dict)
    subscribed_at: Optional[datetime] = None
    unsubscribed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class GroupRecord(BaseModel):
    id: str
    name: str
    active_count: int = 0


class FieldRecord(BaseModel):
    id: str
    name: str
    key: Optional[str] = Field(default=None, description="Key used in subscriber field payloads")
    type: str = "number"

    @property
    def payload_key(self) -> str:
        return self.key or self.name


class OrderRecord(BaseModel):
    id: str
    email: str
    product_ids: List[int] = Field(default_factory=list)
    status: str = "complete"
    total: float = 0.0
    date: Optional[datetime] = None


class AlbumRecord(BaseModel):
    product_id: int
    album: str
    artist: str
    year: str


class Provider(ABC):
    """Operations the engine needs from an external subscriber system."""

    @abstractmethod
    def validate_connection(self) -> bool:
        ...

    @abstractmethod
    def get_subscribers(self, status: Optional[str] = None) -> List[SubscriberRecord]:
        ...

    @abstractmethod
    def update_subscriber(self, subscriber_id: str, data: Dict[str, Any]) -> bool:
        ...

    @abstractmethod
    def add_subscriber_to_group(self, subscriber_id: str, group_id: str) -> bool:
        ...

    @abstractmethod
    def remove_subscriber_from_group(self, subscriber_id: str, group_id: str) -> bool:
        ...

    @abstractmethod
    def get_groups(self) -> List[GroupRecord]:
        ...

    @abstractmethod
    def add_or_update_subscriber(self, data: Dict[str, Any]) -> str:
        """Create or update a subscriber by email and return its external id."""

    def get_fields(self) -> List[FieldRecord]:
        """Custom subscriber fields; platforms without them report none."""
        return []

    def create_field(self, name: str, field_type: str = "number") -> Optional[FieldRecord]:
        return None


class CommerceProvider(Provider):
    """A provider that also sells products."""

    @abstractmethod
    def get_orders(self, product_id: Optional[int] = None) -> List[OrderRecord]:
        """Completed orders, optionally only those containing ``product_id``."""

    @abstractmethod
    def get_albums(self) -> List[AlbumRecord]:
        ...

    @abstractmethod
    def validate_order(self, order_id: str, email: str) -> bool:
        """True if ``order_id`` exists and was placed with ``email`` (case-insensitive)."""
