"""
ORGANIZATION ROUTES
===================

Organization list, creation, joining, dashboard, settings,
ownership transfer and member holdings (baselines).
"""

from flask import Blueprint, render_template, redirect, url_for, flash, request
from flask_login import login_required, current_user
from orgfinance.extensions import db
from orgfinance.models import Organization, OrganizationMember
from orgfinance.services.authorization_service import (
    get_role, is_org_member, is_org_admin, is_org_owner, AuthorizationError
)
from orgfinance.services.finance_service import (
    get_organization_stats, get_holdings_overview, FinanceError
)
from orgfinance.services.baseline_service import set_member_baseline, BaselineError
from orgfinance.services.ledger_service import get_initial_transactions, get_top_categories
from orgfinance.services.membership_service import (
    create_organization, update_organization, delete_organization, leave_organization,
    transfer_ownership, search_organizations, get_user_organizations, MembershipError
)
from orgfinance.services.invite_service import join_with_invite_code, InviteError

organizations_bp = Blueprint('organizations', __name__)


# ============== LIST MY ORGANIZATIONS ==============
@organizations_bp.route('/organizations')
@login_required
def list_organizations():
    return render_template(
        'organizations/list.html',
        organizations=get_user_organizations(current_user.id)
    )


# ============== CREATE ORGANIZATION ==============
@organizations_bp.route('/organizations/create', methods=['GET', 'POST'])
@login_required
def create_organization_route():
    if request.method == 'POST':
        try:
            organization = create_organization(
                current_user.id,
                request.form.get('name', ''),
                request.form.get('description', '')
            )
            flash(f'Organization "{organization.name}" created!', 'success')
            return redirect(url_for('organizations.view_organization', organization_id=organization.id))
        except MembershipError as e:
            flash(str(e), 'danger')

    return render_template('organizations/create.html')


# ============== JOIN WITH INVITE CODE ==============
@organizations_bp.route('/organizations/join', methods=['GET', 'POST'])
@login_required
def join_organization():
    if request.method == 'POST':
        try:
            membership = join_with_invite_code(current_user.id, request.form.get('code', ''))
            flash(f'You joined {membership.organization.name}!', 'success')
            return redirect(url_for('organizations.view_organization',
                                    organization_id=membership.organization_id))
        except InviteError as e:
            flash(str(e), 'danger')

    query = request.args.get('q', '')
    return render_template(
        'organizations/join.html',
        query=query,
        results=search_organizations(query)
    )


# ============== DASHBOARD ==============
@organizations_bp.route('/organizations/<int:organization_id>')
@login_required
def view_organization(organization_id):
    organization = db.get_or_404(Organization, organization_id)

    if not is_org_member(current_user.id, organization_id):
        flash('You are not a member of this organization!', 'danger')
        return redirect(url_for('organizations.list_organizations'))

    try:
        stats = get_organization_stats(organization_id)
    except FinanceError as e:
        flash(str(e), 'danger')
        stats = None

    return render_template(
        'organizations/dashboard.html',
        organization=organization,
        stats=stats,
        role=get_role(current_user.id, organization_id),
        is_admin=is_org_admin(current_user.id, organization_id),
        my_balance=stats.member(current_user.id) if stats else None,
        categories=get_top_categories(organization_id)
    )


# ============== SETTINGS ==============
@organizations_bp.route('/organizations/<int:organization_id>/settings', methods=['GET', 'POST'])
@login_required
def organization_settings(organization_id):
    organization = db.get_or_404(Organization, organization_id)

    if not is_org_admin(current_user.id, organization_id):
        flash('Only admins and the owner can access settings!', 'danger')
        return redirect(url_for('organizations.view_organization', organization_id=organization_id))

    if request.method == 'POST':
        try:
            update_organization(
                organization_id, current_user.id,
                request.form.get('name', ''),
                request.form.get('description', '')
            )
            flash('Settings updated!', 'success')
            return redirect(url_for('organizations.organization_settings', organization_id=organization_id))
        except (MembershipError, AuthorizationError) as e:
            flash(str(e), 'danger')

    is_owner = is_org_owner(current_user.id, organization_id)
    members = OrganizationMember.query.filter_by(
        organization_id=organization_id, is_active=True
    ).order_by(OrganizationMember.created_at).all()

    return render_template(
        'organizations/settings.html',
        organization=organization,
        is_owner=is_owner,
        members=members,
        initial_transactions=get_initial_transactions(organization_id, current_user.id) if is_owner else []
    )


# ============== TRANSFER OWNERSHIP ==============
@organizations_bp.route('/organizations/<int:organization_id>/transfer-ownership', methods=['POST'])
@login_required
def transfer_ownership_route(organization_id):
    to_user_id = request.form.get('new_owner_id', type=int)

    if not to_user_id:
        flash('Please select a member!', 'danger')
    else:
        try:
            transfer_ownership(organization_id, current_user.id, to_user_id, request.form.get('reason'))
            flash('Ownership transferred!', 'success')
            return redirect(url_for('organizations.view_organization', organization_id=organization_id))
        except (MembershipError, AuthorizationError) as e:
            flash(str(e), 'danger')

    return redirect(url_for('organizations.organization_settings', organization_id=organization_id))


# ============== DELETE ORGANIZATION ==============
@organizations_bp.route('/organizations/<int:organization_id>/delete', methods=['POST'])
@login_required
def delete_organization_route(organization_id):
    try:
        delete_organization(organization_id, current_user.id)
        flash('Organization deleted.', 'info')
        return redirect(url_for('organizations.list_organizations'))
    except (MembershipError, AuthorizationError) as e:
        flash(str(e), 'danger')
        return redirect(url_for('organizations.organization_settings', organization_id=organization_id))


# ============== LEAVE ORGANIZATION ==============
@organizations_bp.route('/organizations/<int:organization_id>/leave', methods=['POST'])
@login_required
def leave_organization_route(organization_id):
    try:
        leave_organization(organization_id, current_user.id)
        flash('You left the organization.', 'info')
        return redirect(url_for('organizations.list_organizations'))
    except (MembershipError, AuthorizationError) as e:
        flash(str(e), 'danger')
        return redirect(url_for('organizations.view_organization', organization_id=organization_id))


# ============== HOLDINGS (owner) ==============
@organizations_bp.route('/organizations/<int:organization_id>/holdings')
@login_required
def holdings(organization_id):
    organization = db.get_or_404(Organization, organization_id)

    if not is_org_owner(current_user.id, organization_id):
        flash('Only the organization owner can manage holdings!', 'danger')
        return redirect(url_for('organizations.view_organization', organization_id=organization_id))

    try:
        overview = get_holdings_overview(organization_id)
    except FinanceError as e:
        flash(str(e), 'danger')
        return redirect(url_for('organizations.view_organization', organization_id=organization_id))

    return render_template('organizations/holdings.html', organization=organization, overview=overview)


@organizations_bp.route('/organizations/<int:organization_id>/holdings/<int:user_id>', methods=['POST'])
@login_required
def set_baseline(organization_id, user_id):
    try:
        result = set_member_baseline(
            organization_id, current_user.id, user_id, request.form.get('baseline', '')
        )
        if result['changed']:
            flash(f'Baseline set to ${result["baseline"]:,.2f}', 'success')
        else:
            flash('Baseline unchanged.', 'info')
    except (BaselineError, AuthorizationError) as e:
        flash(str(e), 'danger')

    return redirect(url_for('organizations.holdings', organization_id=organization_id))
