"""
LEDGER ROUTES
=============

Uses ledger_service for every write.
Each form posts, then redirects back so the next page load
re-aggregates from the database.
"""

from flask import Blueprint, render_template, redirect, url_for, flash, request, current_app
from flask_login import login_required, current_user
from orgfinance.extensions import db
from orgfinance.models import Organization, OrganizationMember, VALID_TRANSACTION_TYPES
from orgfinance.services.authorization_service import (
    is_org_member, is_org_admin, is_org_owner, AuthorizationError
)
from orgfinance.services.ledger_service import (
    add_income, add_expense, add_expense_for_member, add_initial_transaction,
    update_transaction, update_initial_transaction, delete_transaction, delete_initial_transaction,
    record_refund, list_transactions, get_top_categories, UNCHANGED, LedgerError
)

ledger_bp = Blueprint('ledger', __name__)

LEDGER_ERRORS = (LedgerError, AuthorizationError)


def _dashboard(organization_id):
    return redirect(url_for('organizations.view_organization', organization_id=organization_id))


def _settings(organization_id):
    return redirect(url_for('organizations.organization_settings', organization_id=organization_id))


def _form_assignee():
    """'none' = organization, 'current' = the signed-in user, otherwise a user id."""
    value = request.form.get('assigned_to_user_id', 'none')
    if value == 'current':
        return current_user.id
    return value


# ============== ADD INCOME ==============
@ledger_bp.route('/organizations/<int:organization_id>/income', methods=['POST'])
@login_required
def add_income_route(organization_id):
    try:
        add_income(
            organization_id, current_user.id,
            amount=request.form.get('amount'),
            occurred_at=request.form.get('occurred_at'),
            description=request.form.get('description'),
            category=request.form.get('category')
        )
        flash('Income added!', 'success')
    except LEDGER_ERRORS as e:
        flash(str(e), 'danger')
    return _dashboard(organization_id)


# ============== ADD EXPENSE ==============
@ledger_bp.route('/organizations/<int:organization_id>/expense', methods=['POST'])
@login_required
def add_expense_route(organization_id):
    try:
        add_expense(
            organization_id, current_user.id,
            amount=request.form.get('amount'),
            occurred_at=request.form.get('occurred_at'),
            expense_type=request.form.get('expense_type', 'business'),
            description=request.form.get('description'),
            category=request.form.get('category')
        )
        flash('Expense added!', 'success')
    except LEDGER_ERRORS as e:
        flash(str(e), 'danger')
    return _dashboard(organization_id)


@ledger_bp.route('/organizations/<int:organization_id>/member-expense', methods=['POST'])
@login_required
def add_member_expense_route(organization_id):
    try:
        add_expense_for_member(
            organization_id, current_user.id,
            amount=request.form.get('amount'),
            occurred_at=request.form.get('occurred_at'),
            expense_type=request.form.get('expense_type', 'business'),
            assigned_to_user_id=_form_assignee(),
            description=request.form.get('description'),
            category=request.form.get('category')
        )
        flash('Expense added!', 'success')
    except LEDGER_ERRORS as e:
        flash(str(e), 'danger')
    return _settings(organization_id)


# ============== REFUND ==============
@ledger_bp.route('/organizations/<int:organization_id>/refund', methods=['POST'])
@login_required
def refund_route(organization_id):
    try:
        refund = record_refund(
            organization_id, current_user.id,
            amount=request.form.get('amount'),
            description=request.form.get('description')
        )
        flash(f'Refund of ${refund.amount:,.2f} recorded.', 'success')
    except LEDGER_ERRORS as e:
        flash(str(e), 'danger')
    return _dashboard(organization_id)


# ============== RECORDS ==============
@ledger_bp.route('/organizations/<int:organization_id>/records')
@login_required
def records(organization_id):
    organization = db.get_or_404(Organization, organization_id)

    if not is_org_member(current_user.id, organization_id):
        flash('You are not a member of this organization!', 'danger')
        return redirect(url_for('organizations.list_organizations'))

    filters = {
        'search_text': request.args.get('q') or None,
        'category': request.args.get('category') or None,
        'transaction_type': request.args.get('type') or None,
        'member_id': request.args.get('member', type=int),
        'funded_by_type': request.args.get('funded_by') or None,
        'start_date': request.args.get('start') or None,
        'end_date': request.args.get('end') or None,
    }

    try:
        page = list_transactions(
            organization_id, current_user.id,
            cursor=request.args.get('cursor') or None,
            limit=current_app.config.get('TRANSACTIONS_PAGE_SIZE'),
            **filters
        )
    except LEDGER_ERRORS as e:
        flash(str(e), 'danger')
        page = {'transactions': [], 'next_cursor': None, 'has_more': False}

    members = OrganizationMember.query.filter_by(organization_id=organization_id).all()

    return render_template(
        'ledger/records.html',
        organization=organization,
        page=page,
        filters=filters,
        members=members,
        transaction_types=VALID_TRANSACTION_TYPES,
        categories=get_top_categories(organization_id, limit=25),
        is_admin=is_org_admin(current_user.id, organization_id)
    )


# ============== EDIT / DELETE ==============
@ledger_bp.route('/organizations/<int:organization_id>/transactions/<int:transaction_id>/edit',
                 methods=['POST'])
@login_required
def edit_transaction(organization_id, transaction_id):
    assignee = _form_assignee() if 'assigned_to_user_id' in request.form else UNCHANGED
    try:
        update_transaction(
            organization_id, current_user.id, transaction_id,
            amount=request.form.get('amount'),
            occurred_at=request.form.get('occurred_at'),
            description=request.form.get('description'),
            category=request.form.get('category'),
            transaction_type=request.form.get('type') or None,
            assigned_to_user_id=assignee
        )
        flash('Transaction updated!', 'success')
    except LEDGER_ERRORS as e:
        flash(str(e), 'danger')
    return redirect(url_for('ledger.records', organization_id=organization_id))


@ledger_bp.route('/organizations/<int:organization_id>/transactions/<int:transaction_id>/delete',
                 methods=['POST'])
@login_required
def delete_transaction_route(organization_id, transaction_id):
    try:
        delete_transaction(organization_id, current_user.id, transaction_id)
        flash('Transaction deleted.', 'info')
    except LEDGER_ERRORS as e:
        flash(str(e), 'danger')
    return redirect(url_for('ledger.records', organization_id=organization_id))


# ============== INITIAL VALUES (owner) ==============
@ledger_bp.route('/organizations/<int:organization_id>/initial', methods=['POST'])
@login_required
def add_initial_route(organization_id):
    try:
        add_initial_transaction(
            organization_id, current_user.id,
            transaction_type=request.form.get('type', 'income'),
            amount=request.form.get('amount'),
            occurred_at=request.form.get('occurred_at'),
            assigned_to_user_id=_form_assignee(),
            description=request.form.get('description'),
            category=request.form.get('category')
        )
        flash('Initial value added!', 'success')
    except LEDGER_ERRORS as e:
        flash(str(e), 'danger')
    return _settings(organization_id)


@ledger_bp.route('/organizations/<int:organization_id>/initial/<int:transaction_id>/edit', methods=['POST'])
@login_required
def edit_initial_route(organization_id, transaction_id):
    try:
        update_initial_transaction(
            organization_id, current_user.id, transaction_id,
            amount=request.form.get('amount'),
            occurred_at=request.form.get('occurred_at'),
            description=request.form.get('description'),
            category=request.form.get('category'),
            assigned_to_user_id=_form_assignee()
        )
        flash('Initial value updated!', 'success')
    except LEDGER_ERRORS as e:
        flash(str(e), 'danger')
    return _settings(organization_id)


@ledger_bp.route('/organizations/<int:organization_id>/initial/<int:transaction_id>/delete', methods=['POST'])
@login_required
def delete_initial_route(organization_id, transaction_id):
    if not is_org_owner(current_user.id, organization_id):
        flash('Only the organization owner can manage initial transactions', 'danger')
        return _settings(organization_id)

    try:
        delete_initial_transaction(organization_id, current_user.id, transaction_id)
        flash('Initial value deleted.', 'info')
    except LEDGER_ERRORS as e:
        flash(str(e), 'danger')
    return _settings(organization_id)
