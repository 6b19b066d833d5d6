"""Error taxonomy for the order/production workflow.

Every rejection carries a ``category`` so callers can tell invalid input apart
from a concurrent conflict or an unavailable dependency without parsing text.
"""

from __future__ import annotations


class WorkflowError(Exception):
    code = 'workflow_error'
    category = 'internal'

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class ValidationError(WorkflowError, ValueError):
    code = 'validation_error'
    category = 'input'


class NotFoundError(WorkflowError, LookupError):
    code = 'not_found'
    category = 'not_found'


class AlreadyPaidError(WorkflowError):
    code = 'already_paid'
    category = 'conflict'


class DuplicateWorkOrderError(WorkflowError):
    code = 'duplicate_work_order'
    category = 'conflict'


class TerminalStateError(WorkflowError):
    code = 'terminal_state'
    category = 'conflict'


class NumberCollisionError(WorkflowError):
    code = 'number_collision'
    category = 'conflict'


class AmountMismatchError(WorkflowError):
    code = 'amount_mismatch'
    category = 'business'


class NotPayableError(WorkflowError):
    code = 'not_payable'
    category = 'business'


class PaymentGatewayError(WorkflowError):
    code = 'payment_gateway_error'
    category = 'dependency'

    def __init__(self, detail: str, *, reason: str | None = None) -> None:
        super().__init__(detail)
        self.reason = reason or detail


class StoreUnavailableError(WorkflowError):
    code = 'store_unavailable'
    category = 'dependency'


class ForbiddenError(WorkflowError):
    code = 'forbidden'
    category = 'authorization'


class InconsistentStateError(WorkflowError):
    code = 'inconsistent_state'
    category = 'integrity'


HTTP_STATUS_BY_CATEGORY = {
    'input': 400,
    'not_found': 404,
    'conflict': 409,
    'business': 422,
    'dependency': 502,
    'authorization': 403,
    'integrity': 500,
    'internal': 500,
}


def http_status_for(error: WorkflowError) -> int:
    return HTTP_STATUS_BY_CATEGORY.get(error.category, 500)
