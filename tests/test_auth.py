from __future__ import annotations

import unittest

from printshop.auth import Action, Principal, Role, allowed_actions, authorize
from printshop.errors import ForbiddenError

EXPECTED = {
    Role.INTAKE: {
        Action.CREATE_ORDER,
        Action.LIST_ORDERS,
        Action.VIEW_CUSTOMERS,
        Action.CREATE_WORK_ORDER,
        Action.LIST_WORK_ORDERS,
    },
    Role.CASHIER: {Action.LIST_ORDERS, Action.SETTLE_PAYMENT, Action.LIST_PAYMENTS},
    Role.OPERATOR: {Action.LIST_WORK_ORDERS, Action.ADVANCE_STAGE},
}


class AuthorizationMatrixTests(unittest.TestCase):
    def test_every_role_and_action(self) -> None:
        for role in Role:
            principal = Principal(id=1, identity=f'{role.value.lower()}@shop', full_name=role.value, role=role)
            for action in Action:
                with self.subTest(role=role, action=action):
                    if action in EXPECTED[role]:
                        authorize(principal, action)
                    else:
                        with self.assertRaises(ForbiddenError):
                            authorize(principal, action)

    def test_allowed_actions_matches_table(self) -> None:
        for role, actions in EXPECTED.items():
            self.assertEqual(allowed_actions(role), frozenset(actions))

    def test_inactive_principal_is_refused(self) -> None:
        principal = Principal(id=1, identity='cashier@shop', full_name='Cashier', role=Role.CASHIER, active=False)

        with self.assertRaises(ForbiddenError):
            authorize(principal, Action.SETTLE_PAYMENT)

    def test_unknown_role_raises(self) -> None:
        with self.assertRaises(ValueError):
            allowed_actions('MANAGER')


if __name__ == '__main__':
    unittest.main()
