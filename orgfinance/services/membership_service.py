"""
MEMBERSHIP SERVICE
==================

Handles:
- Creating, updating, deleting and searching organizations
- Role changes
- Deactivation / reactivation (soft delete; history is preserved)
- Leaving an organization
- Ownership transfer (one database transaction)
"""

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from orgfinance.extensions import db
from orgfinance.models import (
    Organization, OrganizationMember, OwnershipTransfer, MemberRole
)
from orgfinance.services.authorization_service import (
    can_change_role, can_deactivate_member, can_reactivate_member,
    can_leave_organization, can_transfer_ownership, can_update_organization,
    can_delete_organization, can_view_organization, get_membership,
    require_authorization, AuthorizationError
)

ORGANIZATION_NAME_MIN = 3
ORGANIZATION_NAME_MAX = 100


class MembershipError(Exception):
    """Base exception for membership operations"""
    pass


class OrganizationNotFoundError(MembershipError):
    pass


def _validate_organization_name(name):
    name = (name or '').strip()
    if not name:
        raise MembershipError("Organization name is required")
    if len(name) < ORGANIZATION_NAME_MIN:
        raise MembershipError(f"Organization name must be at least {ORGANIZATION_NAME_MIN} characters")
    if len(name) > ORGANIZATION_NAME_MAX:
        raise MembershipError(f"Organization name must be less than {ORGANIZATION_NAME_MAX} characters")
    return name


def _commit(tag, failure_message, **context):
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception('[%s] Write failed %s', tag, context)
        raise MembershipError(failure_message)


# ============================================================
# ORGANIZATIONS
# ============================================================

def create_organization(user_id, name, description=None):
    """Create an organization; the creator becomes its owner in the same commit."""
    name = _validate_organization_name(name)

    organization = Organization(
        name=name,
        description=(description or '').strip() or None,
        owner_id=user_id
    )
    db.session.add(organization)
    try:
        db.session.flush()
        db.session.add(OrganizationMember(
            organization_id=organization.id,
            user_id=user_id,
            role=MemberRole.OWNER.value,
            invited_by=None
        ))
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception('[CREATE_ORG] Failed to create organization for user %s', user_id)
        raise MembershipError("Failed to set up organization. Please try again.")

    _commit('CREATE_ORG', "Failed to set up organization. Please try again.", user_id=user_id)
    current_app.logger.info('[CREATE_ORG] Organization %s created by user %s', organization.id, user_id)
    return organization


def update_organization(organization_id, user_id, name, description=None):
    organization = db.session.get(Organization, organization_id)
    if not organization:
        raise OrganizationNotFoundError("Organization not found")

    require_authorization(can_update_organization, user_id, organization_id)
    organization.name = _validate_organization_name(name)
    organization.description = (description or '').strip() or None

    _commit('UPDATE_ORG', "Failed to update organization", organization_id=organization_id)
    return organization


def delete_organization(organization_id, user_id):
    """Owner only. Cascades to members, transactions, reimbursements and invites."""
    organization = db.session.get(Organization, organization_id)
    if not organization:
        raise OrganizationNotFoundError("Organization not found")

    require_authorization(can_delete_organization, user_id, organization_id)

    db.session.delete(organization)
    _commit('DELETE_ORG', "Failed to delete organization", organization_id=organization_id)
    current_app.logger.info('[DELETE_ORG] Organization %s deleted by user %s', organization_id, user_id)
    return True


def search_organizations(query, limit=10):
    query = (query or '').strip()
    if not query:
        return []
    return Organization.query.filter(
        Organization.name.ilike(f'%{query}%')
    ).order_by(Organization.name).limit(limit).all()


def get_user_organizations(user_id):
    memberships = OrganizationMember.query.filter_by(
        user_id=user_id,
        is_active=True
    ).order_by(OrganizationMember.created_at).all()
    return [(m.organization, m.role) for m in memberships]


# ============================================================
# MEMBERS
# ============================================================

def get_members(organization_id, user_id, status=None, role=None, search=None):
    """
    Members with their users, owner first. status: 'active' | 'inactive'.
    """
    require_authorization(can_view_organization, user_id, organization_id)

    query = OrganizationMember.query.filter_by(organization_id=organization_id)
    if status == 'active':
        query = query.filter_by(is_active=True)
    elif status == 'inactive':
        query = query.filter_by(is_active=False)
    if role:
        query = query.filter_by(role=role)

    members = query.order_by(OrganizationMember.created_at).all()

    if search:
        needle = search.strip().lower()
        members = [
            m for m in members
            if needle in (m.user.name or '').lower() or needle in (m.user.email or '').lower()
        ]

    rank = {MemberRole.OWNER.value: 0, MemberRole.ADMIN.value: 1, MemberRole.MEMBER.value: 2}
    return sorted(members, key=lambda m: (not m.is_active, rank.get(m.role, 3)))


def get_member_stats(organization_id):
    members = OrganizationMember.query.filter_by(organization_id=organization_id).all()
    active = [m for m in members if m.is_active]
    return {
        'total_active': len(active),
        'total_inactive': len(members) - len(active),
        'owner_count': sum(1 for m in active if m.role == MemberRole.OWNER.value),
        'admin_count': sum(1 for m in active if m.role == MemberRole.ADMIN.value),
        'member_count': sum(1 for m in active if m.role == MemberRole.MEMBER.value),
    }


def update_member_role(organization_id, user_id, target_user_id, new_role):
    """Admin/owner changes another member's role between admin and member."""
    require_authorization(can_change_role, user_id, organization_id, target_user_id, new_role)

    target = get_membership(target_user_id, organization_id)
    target.role = new_role

    _commit('UPDATE_ROLE', "Failed to update member role",
            organization_id=organization_id, target_user_id=target_user_id)
    current_app.logger.info(
        '[UPDATE_ROLE] User %s set role of %s to %s in organization %s',
        user_id, target_user_id, new_role, organization_id
    )
    return target


def deactivate_member(organization_id, user_id, target_user_id):
    """Soft delete. The member's transactions stay attributed to them."""
    require_authorization(can_deactivate_member, user_id, organization_id, target_user_id)

    target = get_membership(target_user_id, organization_id, active_only=False)
    target.deactivate()

    _commit('DEACTIVATE_MEMBER', "Failed to deactivate member",
            organization_id=organization_id, target_user_id=target_user_id)
    current_app.logger.info(
        '[DEACTIVATE_MEMBER] User %s deactivated %s in organization %s',
        user_id, target_user_id, organization_id
    )
    return target


def reactivate_member(organization_id, user_id, target_user_id):
    require_authorization(can_reactivate_member, user_id, organization_id, target_user_id)

    target = get_membership(target_user_id, organization_id, active_only=False)
    target.reactivate()

    _commit('REACTIVATE_MEMBER', "Failed to reactivate member",
            organization_id=organization_id, target_user_id=target_user_id)
    return target


def leave_organization(organization_id, user_id):
    """Member leaves voluntarily. Same soft delete as deactivation."""
    require_authorization(can_leave_organization, user_id, organization_id)

    membership = get_membership(user_id, organization_id)
    membership.deactivate()

    _commit('LEAVE_ORG', "Failed to leave organization", organization_id=organization_id, user_id=user_id)
    return True


# ============================================================
# TRANSFER OWNERSHIP
# ============================================================

def transfer_ownership(organization_id, from_user_id, to_user_id, reason=None):
    """
    Hand the organization to another active member.

    One transaction: organization.owner_id, old owner -> admin,
    new owner -> owner and the audit row commit together or not at all,
    so exactly one owner exists before and after.
    """
    try:
        to_user_id = int(to_user_id)
    except (TypeError, ValueError):
        raise MembershipError("New owner ID is required")

    organization = db.session.get(Organization, organization_id)
    if not organization:
        raise OrganizationNotFoundError("Organization not found")

    require_authorization(can_transfer_ownership, from_user_id, to_user_id, organization_id)

    try:
        from_membership = get_membership(from_user_id, organization_id)
        to_membership = get_membership(to_user_id, organization_id)

        organization.owner_id = to_user_id
        from_membership.role = MemberRole.ADMIN.value
        to_membership.role = MemberRole.OWNER.value

        transfer_record = OwnershipTransfer(
            organization_id=organization_id,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            reason=(reason or '').strip() or None
        )
        db.session.add(transfer_record)

        db.session.commit()

    except AuthorizationError:
        db.session.rollback()
        raise
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception(
            '[TRANSFER_OWNERSHIP] Failed for organization %s (%s -> %s)',
            organization_id, from_user_id, to_user_id
        )
        raise MembershipError("Failed to transfer ownership")

    current_app.logger.info(
        '[TRANSFER_OWNERSHIP] Organization %s ownership %s -> %s', organization_id, from_user_id, to_user_id
    )
    return transfer_record
