"""
INVITE SERVICE
==============

Invite codes are 12 characters from an alphabet without look-alike
characters, shown as XXXX-XXXX-XXXX. Anyone signed in can join with a
usable code; admins and the owner create and revoke them.
"""

import re
import secrets

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from orgfinance.extensions import db
from orgfinance.models import InviteCode, OrganizationMember, MemberRole
from orgfinance.services.authorization_service import (
    can_manage_invites, get_membership, require_authorization
)

INVITE_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'
INVITE_CODE_LENGTH = 12
MAX_GENERATION_ATTEMPTS = 10


class InviteError(Exception):
    """Base exception for invite operations"""
    pass


# ============================================================
# CODE HELPERS
# ============================================================

def generate_invite_code():
    raw = ''.join(secrets.choice(INVITE_ALPHABET) for _ in range(INVITE_CODE_LENGTH))
    return format_invite_code(raw)


def format_invite_code(code):
    """Dashes every four characters."""
    clean = code.replace('-', '')
    return '-'.join(clean[i:i + 4] for i in range(0, len(clean), 4)) or code


def clean_invite_code(code):
    """Strip dashes and whitespace, uppercase."""
    return re.sub(r'[-\s]', '', code or '').upper()


def is_valid_invite_code_format(code):
    return re.fullmatch(r'[A-Z0-9]{%d}' % INVITE_CODE_LENGTH, clean_invite_code(code)) is not None


def is_invite_code_exhausted(invite):
    if invite.max_uses is None:
        return False
    return invite.current_uses >= invite.max_uses


def get_remaining_uses(invite):
    """None means unlimited."""
    if invite.max_uses is None:
        return None
    return max(0, invite.max_uses - invite.current_uses)


def format_remaining_uses(invite):
    remaining = get_remaining_uses(invite)
    if remaining is None:
        return 'Unlimited'
    if remaining == 0:
        return 'Exhausted'
    return f'{remaining} remaining'


def is_invite_code_usable(invite):
    return invite.is_active and not is_invite_code_exhausted(invite)


# ============================================================
# MANAGEMENT (admin / owner)
# ============================================================

def create_invite_code(organization_id, user_id, max_uses=None):
    require_authorization(can_manage_invites, user_id, organization_id)

    if max_uses in ('', 0):
        max_uses = None
    if max_uses is not None:
        try:
            max_uses = int(max_uses)
        except (TypeError, ValueError):
            raise InviteError("Max uses must be a whole number")
        if max_uses < 1:
            raise InviteError("Max uses must be at least 1")

    code = None
    for _ in range(MAX_GENERATION_ATTEMPTS):
        candidate = generate_invite_code()
        if not InviteCode.query.filter_by(code=candidate).first():
            code = candidate
            break

    if code is None:
        raise InviteError("Failed to generate unique invite code. Please try again.")

    invite = InviteCode(
        organization_id=organization_id,
        code=code,
        max_uses=max_uses,
        current_uses=0,
        is_active=True,
        created_by=user_id
    )
    db.session.add(invite)
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception('[INVITE] Failed to create invite code for organization %s', organization_id)
        raise InviteError("Failed to create invite code")

    current_app.logger.info('[INVITE] Code %s created for organization %s', code, organization_id)
    return invite


def revoke_invite_code(organization_id, user_id, invite_id):
    require_authorization(can_manage_invites, user_id, organization_id)

    invite = InviteCode.query.filter_by(id=invite_id, organization_id=organization_id).first()
    if not invite:
        raise InviteError("Invite code not found")

    invite.is_active = False
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception('[INVITE] Failed to revoke invite %s', invite_id)
        raise InviteError("Failed to revoke invite code")
    return invite


def get_invite_codes(organization_id, user_id):
    """Active codes, newest first."""
    require_authorization(can_manage_invites, user_id, organization_id)
    return InviteCode.query.filter_by(
        organization_id=organization_id,
        is_active=True
    ).order_by(InviteCode.created_at.desc(), InviteCode.id.desc()).all()


def get_invite_stats(organization_id):
    codes = InviteCode.query.filter_by(organization_id=organization_id).all()
    active = [c for c in codes if c.is_active]
    total_uses = sum(c.current_uses for c in codes)
    return {
        'total_active': len(active),
        'total_revoked': len(codes) - len(active),
        'total_uses': total_uses,
        'average_uses_per_code': (total_uses / len(codes)) if codes else 0,
    }


# ============================================================
# JOIN
# ============================================================

def join_with_invite_code(user_id, code):
    """
    Join the code's organization as a member.
    Returns the OrganizationMember row.
    """
    if not is_valid_invite_code_format(code or ''):
        raise InviteError("Invalid invite code format")

    formatted = format_invite_code(clean_invite_code(code))
    invite = InviteCode.query.filter_by(code=formatted).first()

    if not invite or not invite.is_active:
        raise InviteError("Invite code is invalid or has been revoked")

    if is_invite_code_exhausted(invite):
        raise InviteError("This invite code has reached its maximum number of uses")

    existing = get_membership(user_id, invite.organization_id, active_only=False)
    if existing and existing.is_active:
        raise InviteError("You are already a member of this organization")
    if existing:
        raise InviteError("Your membership has been deactivated. Ask an admin to reactivate you.")

    membership = OrganizationMember(
        organization_id=invite.organization_id,
        user_id=user_id,
        role=MemberRole.MEMBER.value,
        invited_by=invite.created_by
    )
    db.session.add(membership)
    invite.current_uses += 1

    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception('[JOIN] User %s failed to join with code %s', user_id, formatted)
        raise InviteError("Unable to join right now. Please try again.")

    current_app.logger.info('[JOIN] User %s joined organization %s', user_id, invite.organization_id)
    return membership
