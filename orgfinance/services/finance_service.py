"""
FINANCE SERVICE - BALANCE AGGREGATION
=====================================

Organization totals and per-member balances are never stored.
They are recomputed from the full ledger on every read:

    cash on hand          = income - business expenses
    business held         = allocations - returns
                            + business income held - business expenses paid from held
    outstanding           = max(personal contributions - paid reimbursements, 0)

compute_organization_stats() is pure and works on any iterable of rows;
get_organization_stats() loads the rows for one organization.
"""

from collections import defaultdict
from dataclasses import dataclass, field, asdict
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from orgfinance.extensions import db
from orgfinance.models import (
    Organization, OrganizationMember, Transaction, ReimbursementRequest,
    TransactionType, FundedByType, ReimbursementStatus, BASELINE_TRANSACTION_TYPES
)

ZERO = Decimal('0')
CAPITAL_CATEGORY = 'capital'


class FinanceError(Exception):
    """Raised when ledger data cannot be read"""
    pass


@dataclass
class OrganizationTotals:
    total_income: Decimal = ZERO
    total_expenses_business: Decimal = ZERO
    total_expenses_personal: Decimal = ZERO
    expenses_capital: Decimal = ZERO
    actual_expenses_without_capital: Decimal = ZERO
    cash_on_hand: Decimal = ZERO
    actual_expenses_vs_income: Decimal = ZERO

    def to_dict(self):
        return asdict(self)


@dataclass
class MemberBalance:
    user_id: int
    name: str = None
    email: str = None
    role: str = None
    is_active: bool = True
    business_held: Decimal = ZERO
    contributed_personal: Decimal = ZERO
    reimbursements_paid: Decimal = ZERO
    outstanding_reimbursable: Decimal = ZERO

    def to_dict(self):
        return asdict(self)


@dataclass
class OrganizationStats:
    totals: OrganizationTotals
    members: list = field(default_factory=list)

    def member(self, user_id):
        return next((m for m in self.members if m.user_id == user_id), None)

    def to_dict(self):
        return {
            'totals': self.totals.to_dict(),
            'members': [m.to_dict() for m in self.members],
        }


@dataclass
class MemberHolding:
    user_id: int
    name: str = None
    email: str = None
    role: str = None
    is_active: bool = True
    baseline: Decimal = ZERO


@dataclass
class HoldingsOverview:
    cash_on_hand: Decimal = ZERO
    total_allocated: Decimal = ZERO
    unallocated: Decimal = ZERO
    members: list = field(default_factory=list)

    def member(self, user_id):
        return next((m for m in self.members if m.user_id == user_id), None)


def _amount(row):
    return Decimal(row.amount) if row.amount is not None else ZERO


def _is_capital(row):
    return bool(row.category) and row.category.strip().lower() == CAPITAL_CATEGORY


# ============================================================
# PURE AGGREGATION
# ============================================================

def compute_totals(transactions):
    """Organization-wide totals. Baseline rows never touch them."""
    totals = OrganizationTotals()

    for row in transactions:
        amount = _amount(row)

        if row.type == TransactionType.INCOME.value:
            totals.total_income += amount
        elif row.type == TransactionType.EXPENSE_BUSINESS.value:
            totals.total_expenses_business += amount
        elif row.type == TransactionType.EXPENSE_PERSONAL.value:
            totals.total_expenses_personal += amount

        if _is_capital(row):
            totals.expenses_capital += amount

    totals.cash_on_hand = totals.total_income - totals.total_expenses_business
    totals.actual_expenses_without_capital = (
        totals.total_expenses_business
        + max(totals.total_expenses_personal - totals.expenses_capital, ZERO)
    )
    totals.actual_expenses_vs_income = totals.total_income - totals.actual_expenses_without_capital
    return totals


def compute_business_held(transactions):
    """Per-holder business funds, keyed by funded_by_user_id."""
    held = defaultdict(lambda: ZERO)

    for row in transactions:
        holder = row.funded_by_user_id
        if holder is None:
            continue

        amount = _amount(row)

        # Baseline moves count regardless of funding source
        if row.type == TransactionType.HELD_ALLOCATE.value:
            held[holder] += amount
        elif row.type == TransactionType.HELD_RETURN.value:
            held[holder] -= amount
        elif row.funded_by_type == FundedByType.BUSINESS.value:
            if row.type == TransactionType.INCOME.value:
                held[holder] += amount
            elif row.type == TransactionType.EXPENSE_BUSINESS.value:
                held[holder] -= amount

    return dict(held)


def compute_personal_contributions(transactions):
    contributions = defaultdict(lambda: ZERO)

    for row in transactions:
        if (row.type == TransactionType.EXPENSE_PERSONAL.value
                and row.funded_by_type == FundedByType.PERSONAL.value
                and row.funded_by_user_id is not None):
            contributions[row.funded_by_user_id] += _amount(row)

    return dict(contributions)


def compute_reimbursements_paid(reimbursements):
    paid = defaultdict(lambda: ZERO)

    for row in reimbursements:
        if row.status == ReimbursementStatus.PAID.value:
            paid[row.from_user_id] += _amount(row)

    return dict(paid)


def compute_baselines(transactions):
    """
    Baseline-only slice of business held: allocations minus returns per member.
    Income and expense flow is ignored.
    """
    baselines = defaultdict(lambda: ZERO)

    for row in transactions:
        if row.funded_by_user_id is None or row.type not in BASELINE_TRANSACTION_TYPES:
            continue
        if row.type == TransactionType.HELD_ALLOCATE.value:
            baselines[row.funded_by_user_id] += _amount(row)
        else:
            baselines[row.funded_by_user_id] -= _amount(row)

    return dict(baselines)


def compute_organization_stats(transactions, memberships, reimbursements):
    """
    Single pass over each row set. Every membership (active or not)
    receives a balance; rows attributed to nobody only affect totals.
    """
    transactions = list(transactions)

    totals = compute_totals(transactions)
    held = compute_business_held(transactions)
    contributions = compute_personal_contributions(transactions)
    paid = compute_reimbursements_paid(reimbursements)

    members = []
    for membership in memberships:
        uid = membership.user_id
        contributed = contributions.get(uid, ZERO)
        reimbursed = paid.get(uid, ZERO)
        user = getattr(membership, 'user', None)

        members.append(MemberBalance(
            user_id=uid,
            name=getattr(user, 'name', None),
            email=getattr(user, 'email', None),
            role=membership.role,
            is_active=membership.is_active if membership.is_active is not None else True,
            business_held=held.get(uid, ZERO),
            contributed_personal=contributed,
            reimbursements_paid=reimbursed,
            outstanding_reimbursable=max(contributed - reimbursed, ZERO),
        ))

    return OrganizationStats(totals=totals, members=members)


# ============================================================
# LEDGER READS
# ============================================================

def _load_transactions(organization_id):
    return Transaction.query.filter_by(organization_id=organization_id).all()


def get_organization_stats(organization_id):
    """Totals and member balances for one organization. All or nothing."""
    try:
        transactions = _load_transactions(organization_id)
        memberships = OrganizationMember.query.filter_by(
            organization_id=organization_id
        ).order_by(OrganizationMember.created_at).all()
        reimbursements = ReimbursementRequest.query.filter_by(
            organization_id=organization_id,
            status=ReimbursementStatus.PAID.value
        ).all()
    except SQLAlchemyError:
        current_app.logger.exception('[FINANCE] Failed to load ledger for organization %s', organization_id)
        raise FinanceError('Unable to load organization balances right now. Please try again.')

    stats = compute_organization_stats(transactions, memberships, reimbursements)
    current_app.logger.debug(
        '[FINANCE] Aggregated %d transactions for organization %s (cash on hand %s)',
        len(transactions), organization_id, stats.totals.cash_on_hand
    )
    return stats


def get_cash_on_hand(organization_id):
    return compute_totals(_load_transactions(organization_id)).cash_on_hand


def get_member_baselines(organization_id):
    """Current baseline per member (only members with baseline rows appear)."""
    rows = Transaction.query.filter(
        Transaction.organization_id == organization_id,
        Transaction.type.in_(BASELINE_TRANSACTION_TYPES)
    ).all()
    return compute_baselines(rows)


def get_member_outstanding(organization_id, user_id):
    """Outstanding reimbursable balance for a single member."""
    stats = get_organization_stats(organization_id)
    balance = stats.member(user_id)
    return balance.outstanding_reimbursable if balance else ZERO


def get_holdings_overview(organization_id):
    """
    Cash on hand, total allocated and per-member baselines for the
    owner's holdings page. Inactive members are listed too so any cash
    they still hold can be returned.
    """
    try:
        cash_on_hand = get_cash_on_hand(organization_id)
        baselines = get_member_baselines(organization_id)
        memberships = OrganizationMember.query.filter_by(
            organization_id=organization_id
        ).order_by(OrganizationMember.is_active.desc(), OrganizationMember.created_at).all()
    except SQLAlchemyError:
        current_app.logger.exception('[FINANCE] Failed to load holdings for organization %s', organization_id)
        raise FinanceError('Unable to load holdings right now. Please try again.')

    total_allocated = sum(baselines.values(), ZERO)

    return HoldingsOverview(
        cash_on_hand=cash_on_hand,
        total_allocated=total_allocated,
        unallocated=cash_on_hand - total_allocated,
        members=[
            MemberHolding(
                user_id=m.user_id,
                name=m.user.name,
                email=m.user.email,
                role=m.role,
                is_active=m.is_active,
                baseline=baselines.get(m.user_id, ZERO),
            )
            for m in memberships
        ],
    )


# ============================================================
# PLATFORM STATISTICS (public landing page)
# ============================================================

def get_platform_statistics():
    """
    Aggregate figures across all organizations. Failures fall back to zeros
    so the public page still renders.
    """
    try:
        organization_count = db.session.query(db.func.count(Organization.id)).scalar() or 0
        transaction_count = db.session.query(db.func.count(Transaction.id)).scalar() or 0

        sums = dict(
            db.session.query(Transaction.type, db.func.coalesce(db.func.sum(Transaction.amount), 0))
            .group_by(Transaction.type)
            .all()
        )
    except SQLAlchemyError:
        current_app.logger.exception('[FINANCE] Failed to load platform statistics')
        return {
            'organization_count': 0,
            'total_contributions': ZERO,
            'transaction_count': 0,
            'cash_on_hand': ZERO,
        }

    def total(transaction_type):
        return Decimal(str(sums.get(transaction_type, 0)))

    cash_on_hand = (
        total(TransactionType.INCOME.value)
        - total(TransactionType.EXPENSE_BUSINESS.value)
        - total(TransactionType.HELD_RETURN.value)
    )

    return {
        'organization_count': organization_count,
        'total_contributions': total(TransactionType.EXPENSE_PERSONAL.value),
        'transaction_count': transaction_count,
        'cash_on_hand': cash_on_hand,
    }
