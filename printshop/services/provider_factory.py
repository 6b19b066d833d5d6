from __future__ import annotations

from functools import lru_cache

from printshop.config import settings
from printshop.services.change_feed import ChangeFeed, InMemoryChangeFeed
from printshop.services.mock_payment_gateway import MockPaymentGateway
from printshop.services.payment_gateway import PaymentGateway
from printshop.services.postgres_change_feed import PostgresChangeFeed
from printshop.services.stripe_payment_gateway import StripePaymentGateway


@lru_cache(maxsize=1)
def get_payment_gateway() -> PaymentGateway:
    provider = settings.payment_gateway.strip().lower()
    if provider == 'stripe':
        return StripePaymentGateway()
    return MockPaymentGateway()


@lru_cache(maxsize=1)
def get_change_feed() -> ChangeFeed:
    provider = settings.change_feed.strip().lower()
    if provider == 'postgres':
        return PostgresChangeFeed(
            settings.database_url_normalized,
            channel=settings.change_feed_channel,
            reconnect_seconds=settings.change_feed_reconnect_seconds,
        )
    return InMemoryChangeFeed()
