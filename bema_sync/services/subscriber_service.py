"""
Local subscriber upserts from fetched provider records.
"""
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import select

from bema_sync.lib.db import SessionFactory, retry_on_deadlock, session_scope
from bema_sync.lib.logging import get_logger, log_with_context
from bema_sync.models.subscriber import Subscriber, SubscriberStatus
from bema_sync.providers.base import SubscriberRecord


logger = get_logger(__name__)


def normalize_status(value: str) -> SubscriberStatus:
    try:
        return SubscriberStatus((value or "").strip().lower())
    except ValueError:
        logger.debug(f"Unknown subscriber status '{value}', treating as unconfirmed")
        return SubscriberStatus.UNCONFIRMED


class SubscriberService:
    """Keeps the local subscriber table in step with the email-marketing platform."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    @retry_on_deadlock
    def sync_subscribers(self, records: Iterable[SubscriberRecord]) -> int:
        """
        Upsert subscribers by external id.

        A record whose email already belongs to a different local subscriber
        is skipped and logged; email is unique locally.

        Returns:
            Number of subscribers inserted or updated
        """
        records = list(records)
        if not records:
            return 0

        upserted = 0
        with session_scope(self._session_factory) as db:
            ids = [r.id for r in records]
            existing = {s.id: s for s in db.scalars(select(Subscriber).where(Subscriber.id.in_(ids)))}
            emails = {
                s.email.lower(): s.id
                for s in db.scalars(select(Subscriber).where(Subscriber.email.in_([r.email for r in records])))
            }

            for record in records:
                owner = emails.get(record.email.lower())
                if owner is not None and owner != record.id:
                    log_with_context(
                        logger, "warning", "Email already linked to another subscriber, skipping",
                        subscriber_id=record.id,
                        existing_id=owner,
                    )
                    continue

                subscriber = existing.get(record.id)
                if subscriber is None:
                    subscriber = Subscriber(id=record.id, email=record.email)
                    db.add(subscriber)
                    existing[record.id] = subscriber
                    emails[record.email.lower()] = record.id

                subscriber.email = record.email
                subscriber.name = record.name
                subscriber.status = normalize_status(record.status)
                subscriber.subscribed_at = _naive(record.subscribed_at)
                subscriber.unsubscribed_at = _naive(record.unsubscribed_at)
                upserted += 1

        logger.info(f"Upserted {upserted} subscribers")
        return upserted

    def delete_subscriber(self, subscriber_id: str) -> bool:
        """Explicit admin delete; campaign links go with it."""
        with session_scope(self._session_factory) as db:
            subscriber = db.get(Subscriber, subscriber_id)
            if subscriber is None:
                return False
            db.delete(subscriber)
            return True


def _naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
