from __future__ import annotations

import hashlib

from printshop.services.payment_gateway import GatewayResult

DECLINE_PREFIXES = ('tok_decline', 'pm_card_chargeDeclined')


class MockPaymentGateway:
    def __init__(self) -> None:
        self.calls: list[dict] = []

    def authorize(self, *, token: str, amount: int, currency: str, reference: str) -> GatewayResult:
        self.calls.append({'amount': amount, 'currency': currency, 'reference': reference})
        if token.startswith(DECLINE_PREFIXES):
            return GatewayResult(approved=False, decline_reason='Your card was declined.')
        digest = hashlib.sha256(f'{token}:{reference}:{amount}'.encode('utf-8')).hexdigest()[:24]
        return GatewayResult(approved=True, reference=f'mock_pi_{digest}')
