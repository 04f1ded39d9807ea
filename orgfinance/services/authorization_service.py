"""
CENTRALIZED AUTHORIZATION SERVICE
==================================

All permission checks live here.
Routes and other services call these functions.

Role hierarchy is total: owner (3) > admin (2) > member (1).
Checks return (allowed, reason) tuples; require_authorization()
turns a failed check into an AuthorizationError.
"""

from orgfinance.extensions import db
from orgfinance.models import Organization, OrganizationMember, MemberRole


class AuthorizationError(Exception):
    """Raised when authorization fails"""
    pass


ROLE_HIERARCHY = {
    MemberRole.OWNER.value: 3,
    MemberRole.ADMIN.value: 2,
    MemberRole.MEMBER.value: 1,
}


def has_permission(user_role, required_role):
    """True when user_role ranks at or above required_role."""
    if user_role not in ROLE_HIERARCHY:
        return False
    return ROLE_HIERARCHY[user_role] >= ROLE_HIERARCHY[required_role]


# ============================================================
# MEMBERSHIP LOOKUPS
# ============================================================

def get_membership(user_id, organization_id, active_only=True):
    """Get the membership record for (organization, user)"""
    query = OrganizationMember.query.filter_by(
        organization_id=organization_id,
        user_id=user_id
    )
    if active_only:
        query = query.filter_by(is_active=True)
    return query.first()


def get_role(user_id, organization_id):
    """Role of an active member, or None"""
    membership = get_membership(user_id, organization_id)
    return membership.role if membership else None


def is_org_member(user_id, organization_id):
    return get_membership(user_id, organization_id) is not None


def is_org_admin(user_id, organization_id):
    """Admins and the owner"""
    return has_permission(get_role(user_id, organization_id), MemberRole.ADMIN.value)


def is_org_owner(user_id, organization_id):
    return get_role(user_id, organization_id) == MemberRole.OWNER.value


# ============================================================
# GENERIC ROLE CHECK
# ============================================================

def authorize(organization_id, user_id, required_role=MemberRole.MEMBER.value):
    """
    Check the caller holds at least required_role in the organization.
    """
    membership = get_membership(user_id, organization_id)
    if not membership:
        return False, "You are not a member of this organization"

    if not has_permission(membership.role, required_role):
        if required_role == MemberRole.OWNER.value:
            return False, "Only the organization owner can do this"
        return False, "Insufficient permissions. Only admins and owners can do this."

    return True, None


# ============================================================
# LEDGER AUTHORIZATION
# ============================================================

def can_view_organization(user_id, organization_id):
    return authorize(organization_id, user_id, MemberRole.MEMBER.value)


def can_record_transactions(user_id, organization_id):
    """Income and expenses are recorded by admins and the owner"""
    allowed, reason = authorize(organization_id, user_id, MemberRole.ADMIN.value)
    if not allowed and is_org_member(user_id, organization_id):
        return False, "You don't have permission to record transactions"
    return allowed, reason


def can_manage_initial_transactions(user_id, organization_id):
    """Opening balances and capital injections are owner-only"""
    allowed, reason = authorize(organization_id, user_id, MemberRole.OWNER.value)
    if not allowed and is_org_member(user_id, organization_id):
        return False, "Only the organization owner can manage initial transactions"
    return allowed, reason


def can_set_baseline(user_id, organization_id):
    """Baseline allocations are owner-only"""
    allowed, reason = authorize(organization_id, user_id, MemberRole.OWNER.value)
    if not allowed and is_org_member(user_id, organization_id):
        return False, "Only the organization owner can set member baselines"
    return allowed, reason


def can_request_refund(user_id, organization_id):
    return authorize(organization_id, user_id, MemberRole.MEMBER.value)


# ============================================================
# MEMBER MANAGEMENT AUTHORIZATION
# ============================================================

def can_change_role(user_id, organization_id, target_user_id, new_role):
    """
    Requirements:
    - Caller must be admin or owner
    - Nobody changes their own role
    - The owner role is never granted or removed here (use transfer)
    - Target must be an active member
    """
    if new_role == MemberRole.OWNER.value:
        return False, "Cannot change role to owner. Use transfer ownership instead."

    if new_role not in ROLE_HIERARCHY:
        return False, f"Invalid role: {new_role}"

    if target_user_id == user_id:
        return False, "You cannot change your own role."

    allowed, reason = authorize(organization_id, user_id, MemberRole.ADMIN.value)
    if not allowed:
        return False, reason

    target = get_membership(target_user_id, organization_id)
    if not target:
        return False, "Target user is not an active member of this organization"

    if target.role == MemberRole.OWNER.value:
        return False, "Cannot change owner role. Use transfer ownership instead."

    return True, None


def can_deactivate_member(user_id, organization_id, target_user_id):
    """
    Requirements:
    - Caller must be admin or owner
    - Target is not the caller and not the owner
    - Target must currently be active
    """
    if target_user_id == user_id:
        return False, "You cannot deactivate yourself. Leave the organization instead."

    allowed, reason = authorize(organization_id, user_id, MemberRole.ADMIN.value)
    if not allowed:
        return False, reason

    target = get_membership(target_user_id, organization_id, active_only=False)
    if not target:
        return False, "Target user is not a member of this organization"

    if target.role == MemberRole.OWNER.value:
        return False, "Cannot deactivate the organization owner"

    if not target.is_active:
        return False, "Member is already inactive"

    return True, None


def can_reactivate_member(user_id, organization_id, target_user_id):
    allowed, reason = authorize(organization_id, user_id, MemberRole.ADMIN.value)
    if not allowed:
        return False, reason

    target = get_membership(target_user_id, organization_id, active_only=False)
    if not target:
        return False, "Target user is not a member of this organization"

    if target.is_active:
        return False, "Member is already active"

    return True, None


def can_leave_organization(user_id, organization_id):
    """The owner must hand over ownership before leaving"""
    membership = get_membership(user_id, organization_id)
    if not membership:
        return False, "You are not a member of this organization"

    if membership.role == MemberRole.OWNER.value:
        return False, "You are the owner. Transfer ownership before leaving."

    return True, None


def can_manage_invites(user_id, organization_id):
    return authorize(organization_id, user_id, MemberRole.ADMIN.value)


# ============================================================
# ORGANIZATION AUTHORIZATION
# ============================================================

def can_update_organization(user_id, organization_id):
    return authorize(organization_id, user_id, MemberRole.ADMIN.value)


def can_delete_organization(user_id, organization_id):
    organization = db.session.get(Organization, organization_id)
    if not organization:
        return False, "Organization not found"

    if not is_org_owner(user_id, organization_id) or organization.owner_id != user_id:
        return False, "Only the organization owner can delete the organization"

    return True, None


def can_transfer_ownership(from_user_id, to_user_id, organization_id):
    """
    Requirements:
    - Caller must be the current owner
    - New owner must be an active member other than the caller
    """
    organization = db.session.get(Organization, organization_id)
    if not organization:
        return False, "Organization not found"

    if organization.owner_id != from_user_id or not is_org_owner(from_user_id, organization_id):
        return False, "Only the organization owner can transfer ownership"

    if to_user_id == from_user_id:
        return False, "You already own this organization"

    if not is_org_member(to_user_id, organization_id):
        return False, "New owner must be an active member of the organization"

    return True, None


# ============================================================
# HELPER FUNCTION: REQUIRE AUTHORIZATION
# ============================================================

def require_authorization(check_func, *args, error_class=AuthorizationError):
    """
    Wrapper to raise exception if authorization fails.

    Usage:
        require_authorization(can_set_baseline, user_id, organization_id)
    """
    allowed, reason = check_func(*args)
    if not allowed:
        raise error_class(reason)
    return True
