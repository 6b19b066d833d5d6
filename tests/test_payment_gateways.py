from __future__ import annotations

import io
import json
import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock, patch
from urllib.error import HTTPError, URLError
from urllib.parse import parse_qs

from printshop.errors import PaymentGatewayError
from printshop.services.mock_payment_gateway import MockPaymentGateway
from printshop.services.stripe_payment_gateway import StripePaymentGateway

STRIPE_SETTINGS = SimpleNamespace(
    stripe_secret_key='sk_test_123',
    stripe_api_base_url='https://stripe.test/',
    gateway_timeout_seconds=7,
)


def _response(payload: dict) -> MagicMock:
    response = MagicMock()
    response.__enter__.return_value = response
    response.read.return_value = json.dumps(payload).encode('utf-8')
    return response


class MockPaymentGatewayTests(unittest.TestCase):
    def test_approves_with_stable_reference(self) -> None:
        gateway = MockPaymentGateway()

        first = gateway.authorize(token='pm_card_visa', amount=1000, currency='idr', reference='ORD-1')
        second = gateway.authorize(token='pm_card_visa', amount=1000, currency='idr', reference='ORD-1')

        self.assertTrue(first.approved)
        self.assertEqual(first.reference, second.reference)
        self.assertEqual(len(gateway.calls), 2)

    def test_declines_test_tokens(self) -> None:
        gateway = MockPaymentGateway()

        for token in ('tok_decline', 'pm_card_chargeDeclinedInsufficientFunds'):
            result = gateway.authorize(token=token, amount=1000, currency='idr', reference='ORD-1')
            self.assertFalse(result.approved)
            self.assertEqual(result.decline_reason, 'Your card was declined.')


@patch('printshop.services.stripe_payment_gateway.settings', STRIPE_SETTINGS)
class StripePaymentGatewayTests(unittest.TestCase):
    @patch('printshop.services.stripe_payment_gateway.urlopen')
    def test_confirms_payment_intent(self, urlopen_mock) -> None:
        urlopen_mock.return_value = _response({'id': 'pi_123', 'status': 'succeeded'})

        result = StripePaymentGateway().authorize(token='pm_card_visa', amount=150000, currency='idr', reference='ORD-1')

        self.assertTrue(result.approved)
        self.assertEqual(result.reference, 'pi_123')
        request = urlopen_mock.call_args.args[0]
        self.assertEqual(request.full_url, 'https://stripe.test/v1/payment_intents')
        self.assertEqual(request.get_header('Authorization'), 'Bearer sk_test_123')
        body = parse_qs(request.data.decode('utf-8'))
        self.assertEqual(body['amount'], ['150000'])
        self.assertEqual(body['confirm'], ['true'])
        self.assertEqual(body['payment_method'], ['pm_card_visa'])
        self.assertEqual(urlopen_mock.call_args.kwargs['timeout'], 7)

    @patch('printshop.services.stripe_payment_gateway.urlopen')
    def test_card_error_is_a_decline(self, urlopen_mock) -> None:
        body = json.dumps({'error': {'type': 'card_error', 'message': 'Insufficient funds.'}}).encode('utf-8')
        urlopen_mock.side_effect = HTTPError('https://stripe.test', 402, 'Payment Required', {}, io.BytesIO(body))

        result = StripePaymentGateway().authorize(token='pm_x', amount=1, currency='idr', reference='ORD-1')

        self.assertFalse(result.approved)
        self.assertEqual(result.decline_reason, 'Insufficient funds.')

    @patch('printshop.services.stripe_payment_gateway.urlopen')
    def test_incomplete_intent_is_a_decline(self, urlopen_mock) -> None:
        urlopen_mock.return_value = _response(
            {'id': 'pi_9', 'status': 'requires_action', 'last_payment_error': {'message': 'Authentication required.'}}
        )

        result = StripePaymentGateway().authorize(token='pm_x', amount=1, currency='idr', reference='ORD-1')

        self.assertFalse(result.approved)
        self.assertEqual(result.decline_reason, 'Authentication required.')

    @patch('printshop.services.stripe_payment_gateway.urlopen')
    def test_api_and_network_failures_raise(self, urlopen_mock) -> None:
        body = json.dumps({'error': {'type': 'api_error', 'message': 'Upstream down'}}).encode('utf-8')
        urlopen_mock.side_effect = HTTPError('https://stripe.test', 500, 'Server Error', {}, io.BytesIO(body))
        with self.assertRaises(PaymentGatewayError) as ctx:
            StripePaymentGateway().authorize(token='pm_x', amount=1, currency='idr', reference='ORD-1')
        self.assertEqual(ctx.exception.reason, 'Upstream down')

        urlopen_mock.side_effect = URLError('timed out')
        with self.assertRaises(PaymentGatewayError) as ctx:
            StripePaymentGateway().authorize(token='pm_x', amount=1, currency='idr', reference='ORD-1')
        self.assertEqual(ctx.exception.reason, 'timed out')

    def test_requires_secret_key(self) -> None:
        with patch('printshop.services.stripe_payment_gateway.settings', SimpleNamespace(stripe_secret_key=None)):
            with self.assertRaises(ValueError):
                StripePaymentGateway()


if __name__ == '__main__':
    unittest.main()
