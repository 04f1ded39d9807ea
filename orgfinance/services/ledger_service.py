"""
LEDGER SERVICE - TRANSACTION MUTATIONS
======================================

Every handler follows the same shape:
1. Validate input (amount finite and > 0, date parses, required fields)
2. Check permissions (authorization_service)
3. Perform exactly one commit
4. Log; on database failure roll back and raise a generic LedgerError

RULES:
- Income and expenses are recorded by admins and the owner
- Initial transactions (opening balances) are owner-only and their type never changes
- held_allocate / held_return rows belong to the baseline service and are
  never edited or deleted here
"""

from datetime import datetime, date, timedelta, timezone
from decimal import Decimal

from flask import current_app
from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError

from orgfinance.extensions import db
from orgfinance.models import (
    Transaction, ReimbursementRequest, TransactionType, FundedByType,
    ReimbursementStatus, to_amount
)
from orgfinance.services.authorization_service import (
    can_record_transactions, can_manage_initial_transactions, can_request_refund,
    can_view_organization, get_membership, require_authorization
)

REFUND_TOLERANCE = Decimal('0.01')
DEFAULT_PAGE_SIZE = 20
CURSOR_SEPARATOR = '|'

# Sentinel for "leave the assignment as it is" in updates
UNCHANGED = object()

# Types an owner/admin may record or switch between
RECORDABLE_TYPES = [
    TransactionType.INCOME.value,
    TransactionType.EXPENSE_BUSINESS.value,
    TransactionType.EXPENSE_PERSONAL.value,
]


# ============================================================
# CUSTOM EXCEPTIONS
# ============================================================

class LedgerError(Exception):
    """Base exception for ledger operations"""
    pass


class ValidationError(LedgerError):
    """Raised when input is malformed"""
    pass


class InvalidAmountError(ValidationError):
    """Raised when amount is invalid"""
    pass


class RefundExceedsOutstandingError(ValidationError):
    """Raised when a refund is larger than what the member is owed"""
    pass


class TransactionNotFoundError(LedgerError):
    """Raised when a transaction does not exist in the organization"""
    pass


# ============================================================
# INPUT HELPERS
# ============================================================

def validate_amount(amount):
    try:
        return to_amount(amount)
    except ValueError as e:
        raise InvalidAmountError(str(e))


def parse_occurred_at(value):
    """Accepts a date, a datetime, 'YYYY-MM-DD' or an ISO-8601 datetime string."""
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError("Date is required")

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError("Invalid date")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _is_date_only(value):
    if isinstance(value, datetime):
        return False
    return isinstance(value, date) or len(str(value).strip()) == 10


def _clean(text):
    if text is None:
        return None
    text = str(text).strip()
    return text or None


def _funding_for_type(transaction_type):
    if transaction_type == TransactionType.EXPENSE_PERSONAL.value:
        return FundedByType.PERSONAL.value
    return FundedByType.BUSINESS.value


def _require_organization(organization_id):
    if not organization_id:
        raise ValidationError("Organization is required")


def _resolve_assignee(organization_id, assigned_to_user_id):
    """None means the organization itself; otherwise must be an active member."""
    if assigned_to_user_id in (None, '', 'none'):
        return None
    try:
        assigned_to_user_id = int(assigned_to_user_id)
    except (TypeError, ValueError):
        raise ValidationError("Invalid member")
    if not get_membership(assigned_to_user_id, organization_id):
        raise ValidationError("Assigned user is not an active member of this organization")
    return assigned_to_user_id


def _get_transaction(organization_id, transaction_id):
    transaction = Transaction.query.filter_by(
        id=transaction_id,
        organization_id=organization_id
    ).first()
    if not transaction:
        raise TransactionNotFoundError("Transaction not found")
    return transaction


def _commit(tag, failure_message, organization_id, user_id):
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception(
            '[%s] Write failed for organization %s by user %s', tag, organization_id, user_id
        )
        raise LedgerError(failure_message)


def _insert(transaction, tag, failure_message):
    db.session.add(transaction)
    _commit(tag, failure_message, transaction.organization_id, transaction.user_id)
    current_app.logger.info(
        '[%s] Recorded %s of %s in organization %s (user %s)',
        tag, transaction.type, transaction.amount, transaction.organization_id, transaction.user_id
    )
    return transaction


# ============================================================
# INCOME / EXPENSES
# ============================================================

def add_income(organization_id, user_id, amount, occurred_at, description=None, category=None):
    """
    Record income. Revenue is modelled as business funds held by the
    member who records it.
    """
    _require_organization(organization_id)
    amount = validate_amount(amount)
    occurred = parse_occurred_at(occurred_at)

    require_authorization(can_record_transactions, user_id, organization_id)

    transaction = Transaction(
        organization_id=organization_id,
        user_id=user_id,
        updated_by_user_id=user_id,
        type=TransactionType.INCOME.value,
        amount=amount,
        description=_clean(description),
        category=_clean(category),
        occurred_at=occurred,
        funded_by_type=FundedByType.BUSINESS.value,
        funded_by_user_id=user_id,
    )
    return _insert(transaction, 'ADD_INCOME', "Unable to add income right now. Please try again.")


def add_expense(organization_id, user_id, amount, occurred_at, expense_type='business',
                description=None, category=None):
    """
    Record an expense paid by the caller: from business funds they hold
    ('business') or out of their own pocket ('personal').
    """
    return add_expense_for_member(
        organization_id, user_id, amount, occurred_at,
        expense_type=expense_type,
        assigned_to_user_id=user_id,
        description=description,
        category=category,
        _tag='ADD_EXPENSE',
    )


def add_expense_for_member(organization_id, user_id, amount, occurred_at, expense_type='business',
                           assigned_to_user_id=None, description=None, category=None, _tag='ADD_MEMBER_EXPENSE'):
    """Record an expense on behalf of any member, or the organization when unassigned."""
    _require_organization(organization_id)
    amount = validate_amount(amount)
    occurred = parse_occurred_at(occurred_at)

    if expense_type not in (FundedByType.BUSINESS.value, FundedByType.PERSONAL.value):
        raise ValidationError("Expense type must be business or personal")

    require_authorization(can_record_transactions, user_id, organization_id)
    holder = _resolve_assignee(organization_id, assigned_to_user_id)

    if expense_type == FundedByType.PERSONAL.value:
        transaction_type = TransactionType.EXPENSE_PERSONAL.value
    else:
        transaction_type = TransactionType.EXPENSE_BUSINESS.value

    transaction = Transaction(
        organization_id=organization_id,
        user_id=user_id,
        updated_by_user_id=user_id,
        type=transaction_type,
        amount=amount,
        description=_clean(description),
        category=_clean(category),
        occurred_at=occurred,
        funded_by_type=expense_type,
        funded_by_user_id=holder,
    )
    return _insert(transaction, _tag, "Unable to add expense right now. Please try again.")


# ============================================================
# INITIAL TRANSACTIONS (owner only)
# ============================================================

def add_initial_transaction(organization_id, user_id, transaction_type, amount, occurred_at,
                            assigned_to_user_id=None, description=None, category=None):
    """Opening balance or capital injection."""
    _require_organization(organization_id)
    amount = validate_amount(amount)
    occurred = parse_occurred_at(occurred_at)

    if transaction_type not in RECORDABLE_TYPES:
        raise ValidationError("Initial transactions must be income, business expense or personal expense")

    require_authorization(can_manage_initial_transactions, user_id, organization_id)
    holder = _resolve_assignee(organization_id, assigned_to_user_id)

    transaction = Transaction(
        organization_id=organization_id,
        user_id=user_id,
        updated_by_user_id=user_id,
        type=transaction_type,
        amount=amount,
        description=_clean(description),
        category=_clean(category),
        occurred_at=occurred,
        funded_by_type=_funding_for_type(transaction_type),
        funded_by_user_id=holder,
        is_initial=True,
    )
    return _insert(transaction, 'ADD_INITIAL', "Unable to add initial value right now. Please try again.")


def get_initial_transactions(organization_id, user_id):
    require_authorization(can_manage_initial_transactions, user_id, organization_id)
    return Transaction.query.filter_by(
        organization_id=organization_id,
        is_initial=True
    ).order_by(Transaction.occurred_at.desc()).all()


# ============================================================
# UPDATE / DELETE
# ============================================================

def update_transaction(organization_id, user_id, transaction_id, amount, occurred_at=None,
                       description=None, category=None, transaction_type=None,
                       assigned_to_user_id=UNCHANGED):
    """
    Edit amount, description, category, date and assignment.
    The type may switch between income and expenses for regular rows only.
    """
    _require_organization(organization_id)
    amount = validate_amount(amount)
    occurred = parse_occurred_at(occurred_at) if occurred_at not in (None, '') else None

    transaction = _get_transaction(organization_id, transaction_id)

    if transaction.is_baseline_adjustment:
        raise ValidationError("Baseline adjustments can only be changed from member holdings")

    change_type = bool(transaction_type) and transaction_type != transaction.type
    if transaction.is_initial:
        require_authorization(can_manage_initial_transactions, user_id, organization_id)
        if change_type:
            raise ValidationError("The type of an initial transaction cannot be changed")
    else:
        require_authorization(can_record_transactions, user_id, organization_id)
        if change_type and transaction_type not in RECORDABLE_TYPES:
            raise ValidationError("Invalid transaction type")

    if assigned_to_user_id is not UNCHANGED:
        transaction.funded_by_user_id = _resolve_assignee(organization_id, assigned_to_user_id)

    if change_type:
        transaction.type = transaction_type
        transaction.funded_by_type = _funding_for_type(transaction_type)
    transaction.amount = amount
    transaction.description = _clean(description)
    transaction.category = _clean(category)
    if occurred is not None:
        transaction.occurred_at = occurred
    transaction.updated_by_user_id = user_id

    _commit('UPDATE_TRANSACTION', "Unable to update transaction right now. Please try again.",
            organization_id, user_id)
    current_app.logger.info(
        '[UPDATE_TRANSACTION] Transaction %s in organization %s updated by user %s',
        transaction_id, organization_id, user_id
    )
    return transaction


def update_initial_transaction(organization_id, user_id, transaction_id, amount, occurred_at=None,
                               description=None, category=None, assigned_to_user_id=UNCHANGED):
    transaction = _get_transaction(organization_id, transaction_id)
    if not transaction.is_initial:
        raise TransactionNotFoundError("Initial transaction not found")
    return update_transaction(
        organization_id, user_id, transaction_id, amount,
        occurred_at=occurred_at,
        description=description,
        category=category,
        assigned_to_user_id=assigned_to_user_id,
    )


def delete_transaction(organization_id, user_id, transaction_id):
    """Remove a row outright. Transactions have no soft delete."""
    _require_organization(organization_id)
    transaction = _get_transaction(organization_id, transaction_id)

    if transaction.is_baseline_adjustment:
        raise ValidationError("Baseline adjustments can only be changed from member holdings")

    if transaction.is_initial:
        require_authorization(can_manage_initial_transactions, user_id, organization_id)
    else:
        require_authorization(can_record_transactions, user_id, organization_id)

    db.session.delete(transaction)
    _commit('DELETE_TRANSACTION', "Unable to delete transaction right now. Please try again.",
            organization_id, user_id)
    current_app.logger.info(
        '[DELETE_TRANSACTION] Transaction %s removed from organization %s by user %s',
        transaction_id, organization_id, user_id
    )
    return True


def delete_initial_transaction(organization_id, user_id, transaction_id):
    transaction = _get_transaction(organization_id, transaction_id)
    if not transaction.is_initial:
        raise TransactionNotFoundError("Initial transaction not found")
    return delete_transaction(organization_id, user_id, transaction_id)


# ============================================================
# REFUNDS (reimbursements paid to the caller)
# ============================================================

def record_refund(organization_id, user_id, amount, description=None):
    """
    Record a paid reimbursement for the caller's outstanding personal
    contributions. Cannot exceed what the member is owed.
    """
    from orgfinance.services.finance_service import get_member_outstanding

    _require_organization(organization_id)
    amount = validate_amount(amount)

    require_authorization(can_request_refund, user_id, organization_id)

    outstanding = get_member_outstanding(organization_id, user_id)
    if amount - outstanding >= REFUND_TOLERANCE:
        raise RefundExceedsOutstandingError(
            f"Refund of ${amount:,.2f} exceeds your outstanding balance of ${outstanding:,.2f}"
        )

    refund = ReimbursementRequest(
        organization_id=organization_id,
        from_user_id=user_id,
        amount=amount,
        status=ReimbursementStatus.PAID.value,
        notes=_clean(description),
    )
    db.session.add(refund)
    _commit('REFUND', "Unable to record refund right now. Please try again.", organization_id, user_id)
    current_app.logger.info(
        '[REFUND] Recorded refund of %s for user %s in organization %s', amount, user_id, organization_id
    )
    return refund


# ============================================================
# RECORDS (filtered listing)
# ============================================================

def make_cursor(transaction):
    return f"{transaction.occurred_at.isoformat()}{CURSOR_SEPARATOR}{transaction.id}"


def parse_cursor(cursor):
    occurred_at, _, transaction_id = str(cursor).rpartition(CURSOR_SEPARATOR)
    try:
        return parse_occurred_at(occurred_at), int(transaction_id)
    except (ValidationError, ValueError):
        raise ValidationError("Invalid cursor")


def list_transactions(organization_id, user_id, search_text=None, category=None, transaction_type=None,
                      member_id=None, funded_by_type=None, start_date=None, end_date=None,
                      cursor=None, limit=None):
    """
    Filtered, newest-first listing with cursor pagination.
    The cursor is "<occurred_at ISO>|<id>" of the last row returned, matching
    the (occurred_at, id) sort so rows sharing a timestamp are never skipped.

    Returns: dict(transactions, next_cursor, has_more)
    """
    require_authorization(can_view_organization, user_id, organization_id)
    limit = limit or DEFAULT_PAGE_SIZE

    query = Transaction.query.filter(Transaction.organization_id == organization_id)

    if search_text:
        pattern = f"%{search_text.strip().lower()}%"
        query = query.filter(or_(
            db.func.lower(Transaction.description).like(pattern),
            db.func.lower(Transaction.category).like(pattern),
        ))
    if category:
        query = query.filter(db.func.lower(Transaction.category) == category.strip().lower())
    if transaction_type:
        query = query.filter(Transaction.type == transaction_type)
    if member_id:
        query = query.filter(Transaction.funded_by_user_id == member_id)
    if funded_by_type:
        query = query.filter(Transaction.funded_by_type == funded_by_type)
    if start_date:
        query = query.filter(Transaction.occurred_at >= parse_occurred_at(start_date))
    if end_date:
        end = parse_occurred_at(end_date)
        if _is_date_only(end_date):
            # A bare date covers the whole day
            query = query.filter(Transaction.occurred_at < end + timedelta(days=1))
        else:
            query = query.filter(Transaction.occurred_at <= end)
    if cursor:
        cursor_at, cursor_id = parse_cursor(cursor)
        query = query.filter(or_(
            Transaction.occurred_at < cursor_at,
            and_(Transaction.occurred_at == cursor_at, Transaction.id < cursor_id),
        ))

    # One extra row tells us whether another page exists
    rows = query.order_by(
        Transaction.occurred_at.desc(), Transaction.id.desc()
    ).limit(limit + 1).all()

    has_more = len(rows) > limit
    if has_more:
        rows = rows[:limit]
    next_cursor = make_cursor(rows[-1]) if has_more and rows else None

    return {'transactions': rows, 'next_cursor': next_cursor, 'has_more': has_more}


def get_top_categories(organization_id, limit=10):
    """Most used categories, most frequent first."""
    name = db.func.lower(Transaction.category)
    rows = db.session.query(name, db.func.count(Transaction.id)).filter(
        Transaction.organization_id == organization_id,
        Transaction.category.isnot(None)
    ).group_by(name).order_by(db.func.count(Transaction.id).desc(), name).limit(limit).all()
    return [category for category, _ in rows]
