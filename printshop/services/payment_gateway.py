from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class GatewayResult:
    approved: bool
    reference: str | None = None
    decline_reason: str | None = None


class PaymentGateway(Protocol):
    def authorize(self, *, token: str, amount: int, currency: str, reference: str) -> GatewayResult: ...
