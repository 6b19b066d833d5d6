from __future__ import annotations

import random
from datetime import datetime, timezone

ORDER_PREFIX = 'ORD'
WORK_ORDER_PREFIX = 'SPK'


def generate_number(prefix: str, *, now: datetime | None = None, rng: random.Random | None = None) -> str:
    """Build ``PREFIX-YYYYMMDD-NNN`` with a random three-digit suffix.

    Collisions are left to the store's unique constraint.
    """
    now = now or datetime.now(tz=timezone.utc)
    suffix = (rng or random).randrange(1000)
    return f'{prefix}-{now:%Y%m%d}-{suffix:03d}'


def format_money(amount: int, currency: str = 'idr') -> str:
    code = currency.upper()
    if code == 'IDR':
        return 'Rp ' + f'{amount:,}'.replace(',', '.')
    return f'{code} {amount / 100:,.2f}'
