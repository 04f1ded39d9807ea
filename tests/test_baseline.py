from decimal import Decimal

import pytest

from orgfinance.models import Transaction
from orgfinance.services.authorization_service import AuthorizationError
from orgfinance.services.baseline_service import (
    set_member_baseline, AllocationExceedsCashError,
    InvalidBaselineError, BaselineError
)
from orgfinance.services.finance_service import get_cash_on_hand, get_member_baselines
from orgfinance.services.ledger_service import add_income, add_expense
from orgfinance.services.membership_service import deactivate_member

from tests.conftest import TODAY, make_user, add_member


def baseline_of(organization_id, user_id):
    return get_member_baselines(organization_id).get(user_id, Decimal('0'))


def baseline_rows(organization_id):
    return Transaction.query.filter(
        Transaction.organization_id == organization_id,
        Transaction.type.in_(['held_allocate', 'held_return'])
    ).order_by(Transaction.id).all()


@pytest.fixture
def funded(organization, owner):
    """Cash on hand of 800."""
    add_income(organization.id, owner.id, '1000', TODAY)
    add_expense(organization.id, owner.id, '200', TODAY)
    return organization


def test_allocation_within_cash_creates_one_row(funded, owner, member):
    assert get_cash_on_hand(funded.id) == Decimal('800')

    result = set_member_baseline(funded.id, owner.id, member.id, '300')

    assert result['success'] and result['changed']
    rows = baseline_rows(funded.id)
    assert len(rows) == 1
    assert rows[0].type == 'held_allocate'
    assert rows[0].amount == Decimal('300')
    assert rows[0].funded_by_user_id == member.id
    assert rows[0].funded_by_type == 'business'
    assert baseline_of(funded.id, member.id) == Decimal('300')


def test_allocation_over_cash_is_rejected(funded, owner, admin, member):
    set_member_baseline(funded.id, owner.id, member.id, '300')

    with pytest.raises(AllocationExceedsCashError) as exc_info:
        set_member_baseline(funded.id, owner.id, admin.id, '600')

    message = str(exc_info.value)
    assert '900.00' in message and '800.00' in message
    assert exc_info.value.total_allocated == Decimal('900')
    assert len(baseline_rows(funded.id)) == 1
    assert baseline_of(funded.id, admin.id) == Decimal('0')


def test_non_owner_cannot_set_baseline(funded, admin, member):
    with pytest.raises(AuthorizationError) as exc_info:
        set_member_baseline(funded.id, admin.id, member.id, '100')

    assert 'owner' in str(exc_info.value)
    assert baseline_rows(funded.id) == []


def test_outsider_cannot_set_baseline(funded, outsider, member):
    with pytest.raises(AuthorizationError):
        set_member_baseline(funded.id, outsider.id, member.id, '100')


def test_same_target_is_a_no_op(funded, owner, member):
    set_member_baseline(funded.id, owner.id, member.id, '250')

    result = set_member_baseline(funded.id, owner.id, member.id, '250.004')

    assert result['changed'] is False
    assert result['transaction'] is None
    assert len(baseline_rows(funded.id)) == 1


def test_lowering_baseline_writes_return(funded, owner, member):
    set_member_baseline(funded.id, owner.id, member.id, '400')
    result = set_member_baseline(funded.id, owner.id, member.id, '150')

    rows = baseline_rows(funded.id)
    assert [r.type for r in rows] == ['held_allocate', 'held_return']
    assert rows[1].amount == Decimal('250')
    assert result['baseline'] == Decimal('150')
    assert get_member_baselines(funded.id)[member.id] == Decimal('150')


def test_return_to_zero_is_allowed_when_over_allocated(funded, owner, member):
    set_member_baseline(funded.id, owner.id, member.id, '800')
    # Spending after allocation pushes cash below the allocated total
    add_expense(funded.id, owner.id, '300', TODAY)

    set_member_baseline(funded.id, owner.id, member.id, '0')

    assert baseline_of(funded.id, member.id) == Decimal('0')


def test_exact_cash_on_hand_is_allowed(funded, owner, admin, member):
    set_member_baseline(funded.id, owner.id, member.id, '500')
    set_member_baseline(funded.id, owner.id, admin.id, '300')

    total = sum(get_member_baselines(funded.id).values())
    assert total == get_cash_on_hand(funded.id)


@pytest.mark.parametrize('value', ['-1', 'abc', None, 'NaN', 'Infinity'])
def test_invalid_target_rejected(funded, owner, member, value):
    with pytest.raises(InvalidBaselineError):
        set_member_baseline(funded.id, owner.id, member.id, value)
    assert baseline_rows(funded.id) == []


def test_target_must_belong_to_organization(funded, owner, outsider):
    with pytest.raises(BaselineError):
        set_member_baseline(funded.id, owner.id, outsider.id, '10')


def test_inactive_member_baseline_can_be_returned(funded, owner, admin, member):
    set_member_baseline(funded.id, owner.id, member.id, '100')
    deactivate_member(funded.id, admin.id, member.id)

    result = set_member_baseline(funded.id, owner.id, member.id, '0')

    assert result['changed'] is True
    assert baseline_of(funded.id, member.id) == Decimal('0')


def test_baselines_are_scoped_to_one_organization(funded, owner, member):
    from orgfinance.services.membership_service import create_organization

    other_owner = make_user('Other Owner', 'other@example.com')
    other = create_organization(other_owner.id, 'Other Org')
    add_member(other.id, member.id)
    add_income(other.id, other_owner.id, '50', TODAY)

    set_member_baseline(funded.id, owner.id, member.id, '700')

    assert baseline_of(other.id, member.id) == Decimal('0')
    with pytest.raises(AllocationExceedsCashError):
        set_member_baseline(other.id, other_owner.id, member.id, '60')


def test_database_failure_writes_nothing(funded, owner, member, failing_commit):
    with pytest.raises(BaselineError, match='Please try again'):
        set_member_baseline(funded.id, owner.id, member.id, '300')

    assert baseline_rows(funded.id) == []
    assert baseline_of(funded.id, member.id) == Decimal('0')
