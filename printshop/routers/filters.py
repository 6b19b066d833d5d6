from __future__ import annotations

from enum import Enum
from typing import TypeVar

from printshop.errors import ValidationError

E = TypeVar('E', bound=Enum)


def parse_status_filter(enum_cls: type[E], raw: str | None) -> E | None:
    value = (raw or '').strip()
    if not value or value.lower() == 'all':
        return None
    try:
        return enum_cls(value.upper())
    except ValueError as exc:
        raise ValidationError(f'Unknown {enum_cls.__name__} filter: {raw}') from exc
