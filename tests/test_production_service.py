from __future__ import annotations

import unittest
from unittest.mock import patch

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from printshop.errors import (
    DuplicateWorkOrderError,
    ForbiddenError,
    InconsistentStateError,
    NotFoundError,
    NotPayableError,
    NumberCollisionError,
    TerminalStateError,
    ValidationError,
)
from printshop.models import AuditLog, Order, OrderStatus, PaymentStatus, ProductionStatus, ProductionWorkOrder
from printshop.services.change_feed import ChangeEvent, ChangeOperation
from printshop.services.payment_service import settle_payment
from printshop.services.production_service import (
    advance_stage,
    create_work_order,
    list_work_orders,
    next_stage,
    operator_stats,
)
from workflow_fixtures import NO_WAIT, StoreTestCase


class ProductionTestCase(StoreTestCase):
    def make_paid_order(self, **kwargs):
        order = self.make_order(**kwargs)
        settle_payment(self.db, self.gateway, actor=self.cashier, order_id=order.id, amount=order.total_amount, method='cash')
        return order

    def order_status(self, order_id: int) -> OrderStatus:
        with self.session_factory() as other:
            return other.execute(select(Order.order_status).where(Order.id == order_id)).scalar_one()

    def work_order_count(self) -> int:
        return self.db.execute(select(func.count(ProductionWorkOrder.id))).scalar_one()

    def assert_paid_invariant(self) -> None:
        rows = self.db.execute(select(Order.order_status, Order.payment_status)).all()
        for order_status, payment_status in rows:
            if order_status in (OrderStatus.IN_PRODUCTION, OrderStatus.COMPLETED):
                self.assertEqual(payment_status, PaymentStatus.PAID)


class CreateWorkOrderTests(ProductionTestCase):
    def test_paid_order_moves_into_production(self) -> None:
        order = self.make_paid_order()

        work_order = create_work_order(self.db, actor=self.intake, order_id=order.id, notes=' Rush job ')

        self.assertEqual(work_order.production_status, ProductionStatus.PENDING)
        self.assertEqual(work_order.notes, 'Rush job')
        self.assertRegex(work_order.spk_number, r'^SPK-\d{8}-\d{3}$')
        self.assertEqual(self.order_status(order.id), OrderStatus.IN_PRODUCTION)
        self.assert_paid_invariant()

    def test_unpaid_order_is_not_payable(self) -> None:
        order = self.make_order()

        with self.assertRaises(NotPayableError):
            create_work_order(self.db, actor=self.intake, order_id=order.id)
        self.assertEqual(self.work_order_count(), 0)
        self.assertEqual(self.order_status(order.id), OrderStatus.PENDING)

    def test_second_work_order_is_duplicate(self) -> None:
        order = self.make_paid_order()
        create_work_order(self.db, actor=self.intake, order_id=order.id)

        with self.assertRaises(DuplicateWorkOrderError):
            create_work_order(self.db, actor=self.intake, order_id=order.id)
        self.assertEqual(self.work_order_count(), 1)

    def test_missing_order(self) -> None:
        with self.assertRaises(NotFoundError):
            create_work_order(self.db, actor=self.intake, order_id=321)

    def test_spk_number_collision_rolls_back_order_transition(self) -> None:
        first = self.make_paid_order(customer_name='A')
        second = self.make_paid_order(customer_name='B')
        create_work_order(self.db, actor=self.intake, order_id=first.id, spk_number='SPK-20260101-007')

        with self.assertRaises(NumberCollisionError):
            create_work_order(self.db, actor=self.intake, order_id=second.id, spk_number='SPK-20260101-007')

        self.assertEqual(self.order_status(second.id), OrderStatus.PAID)
        self.assertEqual(self.work_order_count(), 1)

    def test_cashier_and_operator_cannot_create(self) -> None:
        order = self.make_paid_order()

        for principal in (self.cashier, self.operator):
            with self.assertRaises(ForbiddenError):
                create_work_order(self.db, actor=principal, order_id=order.id)


class AdvanceStageTests(ProductionTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.order = self.make_paid_order()
        self.work_order = create_work_order(self.db, actor=self.intake, order_id=self.order.id)

    def test_full_pipeline_completes_order(self) -> None:
        seen = []
        for _ in range(3):
            advanced = advance_stage(self.db, actor=self.operator, work_order_id=self.work_order.id)
            seen.append(advanced.production_status)

        self.assertEqual(seen, [ProductionStatus.PRINTING, ProductionStatus.FINISHING, ProductionStatus.DONE])
        self.assertEqual(self.order_status(self.order.id), OrderStatus.COMPLETED)
        self.assertEqual(advanced.operator_principal_id, self.operator.id)
        with self.assertRaises(TerminalStateError):
            advance_stage(self.db, actor=self.operator, work_order_id=self.work_order.id)
        self.assert_paid_invariant()

    def test_repeated_request_with_same_expected_stage_advances_once(self) -> None:
        first = advance_stage(self.db, actor=self.operator, work_order_id=self.work_order.id, expected_stage='pending')
        again = advance_stage(self.db, actor=self.operator, work_order_id=self.work_order.id, expected_stage='PENDING')

        self.assertEqual(first.production_status, ProductionStatus.PRINTING)
        self.assertEqual(again.production_status, ProductionStatus.PRINTING)
        audits = self.db.execute(
            select(func.count(AuditLog.id)).where(AuditLog.action == 'WORK_ORDER_ADVANCED')
        ).scalar_one()
        self.assertEqual(audits, 1)

    def test_stale_expected_stage_on_done_is_not_an_error(self) -> None:
        for _ in range(3):
            advance_stage(self.db, actor=self.operator, work_order_id=self.work_order.id)

        result = advance_stage(self.db, actor=self.operator, work_order_id=self.work_order.id, expected_stage='FINISHING')

        self.assertEqual(result.production_status, ProductionStatus.DONE)

    def test_lost_race_returns_current_state(self) -> None:
        with self.session_factory() as other:
            advance_stage(other, actor=self.operator, work_order_id=self.work_order.id)
        fresh = self.db.get(ProductionWorkOrder, self.work_order.id)
        # this request read the work order before the concurrent advance landed
        stale = ProductionWorkOrder(
            id=self.work_order.id,
            spk_number=self.work_order.spk_number,
            order_id=self.order.id,
            production_status=ProductionStatus.PENDING,
        )

        with patch('printshop.services.production_service._load_work_order', side_effect=[stale, fresh]):
            result = advance_stage(self.db, actor=self.operator, work_order_id=self.work_order.id)

        self.assertIs(result, fresh)
        with self.session_factory() as other:
            stage = other.get(ProductionWorkOrder, self.work_order.id).production_status
        self.assertEqual(stage, ProductionStatus.PRINTING)

    def test_unknown_expected_stage(self) -> None:
        with self.assertRaises(ValidationError):
            advance_stage(self.db, actor=self.operator, work_order_id=self.work_order.id, expected_stage='cutting')

    def test_missing_work_order(self) -> None:
        with self.assertRaises(NotFoundError):
            advance_stage(self.db, actor=self.operator, work_order_id=999)

    def test_only_operator_advances(self) -> None:
        for principal in (self.intake, self.cashier):
            with self.assertRaises(ForbiddenError):
                advance_stage(self.db, actor=principal, work_order_id=self.work_order.id)

    def test_order_out_of_production_blocks_done_transition(self) -> None:
        advance_stage(self.db, actor=self.operator, work_order_id=self.work_order.id)
        advance_stage(self.db, actor=self.operator, work_order_id=self.work_order.id)
        with self.session_factory() as other:
            other.get(Order, self.order.id).order_status = OrderStatus.PAID
            other.commit()

        with self.assertRaises(InconsistentStateError):
            advance_stage(self.db, actor=self.operator, work_order_id=self.work_order.id)

        with self.session_factory() as other:
            stage = other.get(ProductionWorkOrder, self.work_order.id).production_status
        self.assertEqual(stage, ProductionStatus.FINISHING)

    def test_ambiguous_commit_is_confirmed(self) -> None:
        real_commit = self.db.commit
        calls = []

        def commit_then_drop():
            calls.append(1)
            real_commit()
            if len(calls) == 1:
                raise OperationalError('COMMIT', {}, Exception('connection lost'))

        with patch.object(self.db, 'commit', side_effect=commit_then_drop):
            result = advance_stage(self.db, actor=self.operator, work_order_id=self.work_order.id, policy=NO_WAIT)

        self.assertEqual(result.production_status, ProductionStatus.PRINTING)
        advanced = self.db.execute(
            select(func.count(AuditLog.id)).where(AuditLog.action == 'WORK_ORDER_ADVANCED')
        ).scalar_one()
        self.assertEqual(advanced, 1)

    def test_confirmed_advance_still_reaches_subscribers(self) -> None:
        received = []
        self.feed.subscribe({'work_orders'}, received.append)
        real_commit = self.db.commit
        calls = []

        def commit_lands_then_connection_drops():
            calls.append(1)
            if len(calls) == 1:
                self.db.connection().connection.dbapi_connection.commit()
                raise OperationalError('COMMIT', {}, Exception('connection lost'))
            real_commit()

        with patch.object(self.db, 'commit', side_effect=commit_lands_then_connection_drops):
            result = advance_stage(self.db, actor=self.operator, work_order_id=self.work_order.id, policy=NO_WAIT)

        self.assertEqual(result.production_status, ProductionStatus.PRINTING)
        self.assertEqual(received, [ChangeEvent('work_orders', ChangeOperation.UPDATE, self.work_order.id)])


class StageOrderingTests(unittest.TestCase):
    def test_next_stage_follows_pipeline(self) -> None:
        self.assertEqual(next_stage(ProductionStatus.PENDING), ProductionStatus.PRINTING)
        self.assertEqual(next_stage(ProductionStatus.PRINTING), ProductionStatus.FINISHING)
        self.assertEqual(next_stage(ProductionStatus.FINISHING), ProductionStatus.DONE)
        self.assertIsNone(next_stage(ProductionStatus.DONE))


class WorkOrderListingTests(ProductionTestCase):
    def test_search_filter_and_stats(self) -> None:
        sari = self.make_paid_order(customer_name='Sari')
        andi = self.make_paid_order(customer_name='Andi')
        sari_wo = create_work_order(self.db, actor=self.intake, order_id=sari.id)
        andi_wo = create_work_order(self.db, actor=self.intake, order_id=andi.id)
        advance_stage(self.db, actor=self.operator, work_order_id=andi_wo.id)

        everything = list_work_orders(self.db, actor=self.operator)
        by_customer = list_work_orders(self.db, actor=self.operator, search_text='SARI')
        by_number = list_work_orders(self.db, actor=self.intake, search_text=andi_wo.spk_number)
        printing = list_work_orders(self.db, actor=self.operator, production_status=ProductionStatus.PRINTING)

        self.assertEqual([row['id'] for row in everything], [andi_wo.id, sari_wo.id])
        self.assertEqual([row['id'] for row in by_customer], [sari_wo.id])
        self.assertEqual([row['id'] for row in by_number], [andi_wo.id])
        self.assertEqual([row['order_number'] for row in printing], [andi.order_number])
        self.assertEqual(printing[0]['next_stage'], 'FINISHING')
        self.assertEqual(operator_stats(self.db, actor=self.operator), {'total': 2, 'pending': 1, 'in_progress': 1, 'done': 0})

    def test_cashier_cannot_list_work_orders(self) -> None:
        with self.assertRaises(ForbiddenError):
            list_work_orders(self.db, actor=self.cashier)

    def test_cashier_cannot_read_operator_stats(self) -> None:
        with self.assertRaises(ForbiddenError):
            operator_stats(self.db, actor=self.cashier)


if __name__ == '__main__':
    unittest.main()
