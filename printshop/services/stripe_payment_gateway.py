from __future__ import annotations

import json
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from printshop.config import settings
from printshop.errors import PaymentGatewayError
from printshop.services.payment_gateway import GatewayResult


class StripePaymentGateway:
    """Confirms a PaymentIntent for a payment-method token produced client-side.

    Raw card data never reaches this service; only the ``pm_...`` token does.
    """

    def __init__(self) -> None:
        if not settings.stripe_secret_key:
            raise ValueError('STRIPE_SECRET_KEY is required when PAYMENT_GATEWAY=stripe')

        self.base_url = settings.stripe_api_base_url.rstrip('/')
        self.headers = {
            'Authorization': f'Bearer {settings.stripe_secret_key}',
            'Content-Type': 'application/x-www-form-urlencoded',
        }

    def _post(self, path: str, payload: dict) -> dict:
        req = Request(
            url=f'{self.base_url}{path}',
            data=urlencode(payload).encode('utf-8'),
            headers=self.headers,
            method='POST',
        )
        try:
            with urlopen(req, timeout=settings.gateway_timeout_seconds) as response:
                return json.loads(response.read().decode('utf-8'))
        except HTTPError as exc:
            body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
            try:
                error = json.loads(body).get('error', {})
            except ValueError:
                error = {}
            if error.get('type') == 'card_error':
                return {'status': 'declined', 'decline_reason': error.get('message') or error.get('code')}
            raise PaymentGatewayError(f'Stripe API error {exc.code} on {path}', reason=error.get('message') or body) from exc
        except (URLError, TimeoutError) as exc:
            reason = getattr(exc, 'reason', exc)
            raise PaymentGatewayError(f'Stripe API network error on {path}', reason=str(reason)) from exc

    def authorize(self, *, token: str, amount: int, currency: str, reference: str) -> GatewayResult:
        parsed = self._post(
            '/v1/payment_intents',
            {
                'amount': amount,
                'currency': currency,
                'payment_method': token,
                'confirm': 'true',
                'description': reference,
                'metadata[order_number]': reference,
                'automatic_payment_methods[enabled]': 'true',
                'automatic_payment_methods[allow_redirects]': 'never',
            },
        )
        if parsed.get('status') == 'succeeded':
            return GatewayResult(approved=True, reference=parsed.get('id'))
        reason = parsed.get('decline_reason')
        if not reason:
            last_error = parsed.get('last_payment_error') or {}
            reason = last_error.get('message') or f"Payment intent status {parsed.get('status')}"
        return GatewayResult(approved=False, reference=parsed.get('id'), decline_reason=reason)
