"""
BASELINE SERVICE - MEMBER CASH ALLOCATION
==========================================

The owner assigns each member a baseline of business funds to hold.
A baseline change is written as a single held_allocate / held_return row
for the difference.

INVARIANT: the sum of all members' baselines never exceeds cash on hand
(income - business expenses). Changes smaller than one cent are no-ops.
"""

from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from orgfinance.extensions import db
from orgfinance.models import (
    Organization, Transaction, TransactionType, FundedByType
)
from orgfinance.services.authorization_service import (
    can_set_baseline, get_membership, require_authorization
)
from orgfinance.services.finance_service import get_cash_on_hand, get_member_baselines, ZERO

BASELINE_EPSILON = Decimal('0.01')


class BaselineError(Exception):
    """Base exception for baseline operations"""
    pass


class InvalidBaselineError(BaselineError):
    """Raised when the requested baseline is not a valid amount"""
    pass


class AllocationExceedsCashError(BaselineError):
    """Raised when total allocations would exceed cash on hand"""

    def __init__(self, total_allocated, cash_on_hand):
        self.total_allocated = total_allocated
        self.cash_on_hand = cash_on_hand
        super().__init__(
            f"Total allocated (${total_allocated:,.2f}) would exceed cash on hand "
            f"(${cash_on_hand:,.2f})"
        )


def _parse_baseline(value):
    try:
        baseline = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidBaselineError("Please enter a valid non-negative number")
    if not baseline.is_finite() or baseline < 0:
        raise InvalidBaselineError("Please enter a valid non-negative number")
    return baseline.quantize(Decimal('0.01'))


def set_member_baseline(organization_id, acting_user_id, target_user_id, target_baseline):
    """
    Move a member's baseline to target_baseline.

    1. Owner-only
    2. Lock the organization row so baseline changes serialize per organization
    3. delta = target - current; |delta| < 0.01 is a no-op
    4. Reject if the proposed total allocation exceeds cash on hand
    5. Otherwise write one held_allocate / held_return row for |delta|

    Returns: dict(success, changed, transaction, baseline)
    """
    target = _parse_baseline(target_baseline)
    require_authorization(can_set_baseline, acting_user_id, organization_id)

    if not get_membership(target_user_id, organization_id, active_only=False):
        raise BaselineError("Target user is not a member of this organization")

    try:
        # SELECT ... FOR UPDATE on databases that support it
        organization = db.session.query(Organization).filter_by(
            id=organization_id
        ).with_for_update().first()
        if not organization:
            raise BaselineError("Organization not found")

        baselines = get_member_baselines(organization_id)
        current = baselines.get(target_user_id, ZERO)

        delta = target - current
        if abs(delta) < BASELINE_EPSILON:
            db.session.rollback()
            return {'success': True, 'changed': False, 'transaction': None, 'baseline': current}

        cash_on_hand = get_cash_on_hand(organization_id)

        proposed = dict(baselines)
        proposed[target_user_id] = target
        total_allocated = sum(proposed.values(), ZERO)

        if total_allocated > cash_on_hand:
            current_app.logger.warning(
                '[SET_BASELINE] Rejected for organization %s member %s: allocated %s > cash %s',
                organization_id, target_user_id, total_allocated, cash_on_hand
            )
            raise AllocationExceedsCashError(total_allocated, cash_on_hand)

        transaction_type = (
            TransactionType.HELD_ALLOCATE.value if delta > 0 else TransactionType.HELD_RETURN.value
        )
        transaction = Transaction(
            organization_id=organization_id,
            type=transaction_type,
            amount=abs(delta),
            funded_by_type=FundedByType.BUSINESS.value,
            funded_by_user_id=target_user_id,
            user_id=acting_user_id,
            updated_by_user_id=acting_user_id,
            description='Baseline allocation' if delta > 0 else 'Baseline return',
        )
        db.session.add(transaction)
        db.session.commit()

        current_app.logger.info(
            '[SET_BASELINE] Organization %s member %s baseline %s -> %s (%s %s)',
            organization_id, target_user_id, current, target, transaction_type, abs(delta)
        )
        return {'success': True, 'changed': True, 'transaction': transaction, 'baseline': target}

    except BaselineError:
        db.session.rollback()
        raise
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception(
            '[SET_BASELINE] Failed for organization %s member %s', organization_id, target_user_id
        )
        raise BaselineError("Unable to update the baseline right now. Please try again.")
