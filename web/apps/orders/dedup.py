"""Short-lived record of processed webhook event ids.

Backed by a dedicated Django cache alias so the TTL and size bound are set
in ``CACHES``. Dedup is best effort: correctness under redelivery comes from
the completion claim, this only saves the work of re-running it.
"""

import logging

from django.conf import settings
from django.core.cache import caches

logger = logging.getLogger(__name__)

KEY_PREFIX = "webhook-event:"


class WebhookEventDedup:
    def __init__(self, alias: str | None = None, ttl: int | None = None):
        self.alias = alias or getattr(settings, "WEBHOOK_DEDUP_CACHE", "webhook-events")
        self.ttl = ttl if ttl is not None else getattr(settings, "WEBHOOK_DEDUP_TTL", 3600)

    @property
    def cache(self):
        return caches[self.alias]

    def first_seen(self, event_id: str) -> bool:
        """Record ``event_id`` and return True if it was not already recorded.

        Events without an id are always processed.
        """
        if not event_id:
            return True
        return self.cache.add(KEY_PREFIX + event_id, 1, timeout=self.ttl)

    def forget(self, event_id: str) -> None:
        """Drop ``event_id`` so a redelivery is processed again."""
        if event_id:
            self.cache.delete(KEY_PREFIX + event_id)
            logger.info("webhook event forgotten for redelivery", extra={"event_id": event_id})
