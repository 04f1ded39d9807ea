"""
MEMBER ROUTES
=============

Member list, role changes, deactivation/reactivation and invite codes.
"""

from flask import Blueprint, render_template, redirect, url_for, flash, request
from flask_login import login_required, current_user
from orgfinance.extensions import db
from orgfinance.models import Organization
from orgfinance.services.authorization_service import (
    is_org_member, is_org_admin, AuthorizationError
)
from orgfinance.services.membership_service import (
    get_members, get_member_stats, update_member_role, deactivate_member,
    reactivate_member, MembershipError
)
from orgfinance.services.invite_service import (
    create_invite_code, revoke_invite_code, get_invite_codes, get_invite_stats,
    format_remaining_uses, InviteError
)

members_bp = Blueprint('members', __name__)

MEMBER_ERRORS = (MembershipError, InviteError, AuthorizationError)


def _members_page(organization_id):
    return redirect(url_for('members.list_members', organization_id=organization_id))


# ============== MEMBER LIST ==============
@members_bp.route('/organizations/<int:organization_id>/members')
@login_required
def list_members(organization_id):
    organization = db.get_or_404(Organization, organization_id)

    if not is_org_member(current_user.id, organization_id):
        flash('You are not a member of this organization!', 'danger')
        return redirect(url_for('organizations.list_organizations'))

    is_admin = is_org_admin(current_user.id, organization_id)
    members = get_members(
        organization_id, current_user.id,
        status=request.args.get('status') or None,
        role=request.args.get('role') or None,
        search=request.args.get('q') or None
    )

    return render_template(
        'members/list.html',
        organization=organization,
        members=members,
        stats=get_member_stats(organization_id),
        is_admin=is_admin,
        invite_codes=get_invite_codes(organization_id, current_user.id) if is_admin else [],
        invite_stats=get_invite_stats(organization_id) if is_admin else None,
        format_remaining_uses=format_remaining_uses
    )


# ============== ROLE ==============
@members_bp.route('/organizations/<int:organization_id>/members/<int:user_id>/role', methods=['POST'])
@login_required
def change_role(organization_id, user_id):
    try:
        update_member_role(organization_id, current_user.id, user_id, request.form.get('role', ''))
        flash('Role updated!', 'success')
    except MEMBER_ERRORS as e:
        flash(str(e), 'danger')
    return _members_page(organization_id)


# ============== DEACTIVATE / REACTIVATE ==============
@members_bp.route('/organizations/<int:organization_id>/members/<int:user_id>/deactivate', methods=['POST'])
@login_required
def deactivate(organization_id, user_id):
    try:
        deactivate_member(organization_id, current_user.id, user_id)
        flash('Member deactivated. Their history is preserved.', 'success')
    except MEMBER_ERRORS as e:
        flash(str(e), 'danger')
    return _members_page(organization_id)


@members_bp.route('/organizations/<int:organization_id>/members/<int:user_id>/reactivate', methods=['POST'])
@login_required
def reactivate(organization_id, user_id):
    try:
        reactivate_member(organization_id, current_user.id, user_id)
        flash('Member reactivated!', 'success')
    except MEMBER_ERRORS as e:
        flash(str(e), 'danger')
    return _members_page(organization_id)


# ============== INVITE CODES ==============
@members_bp.route('/organizations/<int:organization_id>/invites', methods=['POST'])
@login_required
def create_invite(organization_id):
    try:
        invite = create_invite_code(organization_id, current_user.id, request.form.get('max_uses') or None)
        flash(f'Invite code {invite.code} created!', 'success')
    except MEMBER_ERRORS as e:
        flash(str(e), 'danger')
    return _members_page(organization_id)


@members_bp.route('/organizations/<int:organization_id>/invites/<int:invite_id>/revoke', methods=['POST'])
@login_required
def revoke_invite(organization_id, invite_id):
    try:
        revoke_invite_code(organization_id, current_user.id, invite_id)
        flash('Invite code revoked.', 'info')
    except MEMBER_ERRORS as e:
        flash(str(e), 'danger')
    return _members_page(organization_id)
