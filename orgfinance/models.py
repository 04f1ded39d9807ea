import enum
from datetime import datetime
from decimal import Decimal, InvalidOperation

from flask_login import UserMixin
from sqlalchemy.orm import validates
from werkzeug.security import generate_password_hash, check_password_hash

from orgfinance.extensions import db


# ============================================================
# ENUMS
# ============================================================
class MemberRole(enum.Enum):
    OWNER = 'owner'
    ADMIN = 'admin'
    MEMBER = 'member'


class TransactionType(enum.Enum):
    INCOME = 'income'
    EXPENSE_BUSINESS = 'expense_business'
    EXPENSE_PERSONAL = 'expense_personal'
    HELD_ALLOCATE = 'held_allocate'
    HELD_RETURN = 'held_return'


class FundedByType(enum.Enum):
    BUSINESS = 'business'
    PERSONAL = 'personal'


class ReimbursementStatus(enum.Enum):
    PENDING = 'pending'
    PAID = 'paid'
    REJECTED = 'rejected'


VALID_ROLES = [r.value for r in MemberRole]
VALID_TRANSACTION_TYPES = [t.value for t in TransactionType]
VALID_FUNDED_BY_TYPES = [f.value for f in FundedByType]

# Types that move baseline allocations; written only by the baseline service
BASELINE_TRANSACTION_TYPES = [TransactionType.HELD_ALLOCATE.value, TransactionType.HELD_RETURN.value]


def to_amount(value):
    """Coerce a user-supplied amount to Decimal, rejecting non-finite and non-positive values."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError('Amount must be a number')
    if not amount.is_finite() or amount <= 0:
        raise ValueError('Amount must be greater than 0')
    return amount


# ============================================================
# USER MODEL
# ============================================================
class User(UserMixin, db.Model):
    """
    A registered user. Users belong to organizations through
    OrganizationMember rows.
    """
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    memberships = db.relationship('OrganizationMember', backref='user', lazy='dynamic',
                                  foreign_keys='OrganizationMember.user_id')

    def set_password(self, password):
        """Hash and set the user's password."""
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        """Verify password against stored hash."""
        return check_password_hash(self.password_hash, password)

    def get_active_memberships(self):
        return self.memberships.filter_by(is_active=True)

    def __repr__(self):
        return f'<User {self.email}>'


# ============================================================
# ORGANIZATION MODEL
# ============================================================
class Organization(db.Model):
    """
    A tenant. Owns its members, transactions, reimbursements and invite codes;
    deleting it removes all of them.
    """
    __tablename__ = 'organizations'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500))
    owner_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    owner = db.relationship('User', foreign_keys=[owner_id])
    members = db.relationship('OrganizationMember', backref='organization', lazy='dynamic',
                              cascade='all, delete-orphan')
    transactions = db.relationship('Transaction', backref='organization', lazy='dynamic',
                                   cascade='all, delete-orphan')
    reimbursements = db.relationship('ReimbursementRequest', backref='organization', lazy='dynamic',
                                     cascade='all, delete-orphan')
    invite_codes = db.relationship('InviteCode', backref='organization', lazy='dynamic',
                                   cascade='all, delete-orphan')
    ownership_transfers = db.relationship('OwnershipTransfer', backref='organization', lazy='dynamic',
                                          cascade='all, delete-orphan')

    def get_member_count(self):
        return self.members.filter_by(is_active=True).count()

    def __repr__(self):
        return f'<Organization {self.name}>'


# ============================================================
# ORGANIZATION MEMBER MODEL
# ============================================================
class OrganizationMember(db.Model):
    """
    Membership of a user in an organization.

    Members are never hard-deleted while transactions reference them;
    deactivation flips is_active and stamps deactivated_at.
    """
    __tablename__ = 'organization_members'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey('organizations.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=MemberRole.MEMBER.value)
    invited_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    deactivated_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('organization_id', 'user_id', name='unique_organization_member'),
    )

    @validates('role')
    def validate_role(self, key, role):
        if role not in VALID_ROLES:
            raise ValueError(f'Invalid role: {role}')
        return role

    def deactivate(self):
        self.is_active = False
        self.deactivated_at = datetime.utcnow()

    def reactivate(self):
        self.is_active = True
        self.deactivated_at = None

    def __repr__(self):
        return f'<OrganizationMember user={self.user_id} org={self.organization_id} role={self.role}>'


# ============================================================
# TRANSACTION MODEL (LEDGER)
# ============================================================
class Transaction(db.Model):
    """
    A single financial event in an organization's ledger.

    amount is always positive; direction comes from the type:
    - 'income':            money in, held by funded_by_user_id when business-funded
    - 'expense_business':  paid from business funds
    - 'expense_personal':  paid out of a member's pocket (reimbursable)
    - 'held_allocate':     baseline allocation to a member
    - 'held_return':       baseline returned by a member

    Initial rows (is_initial) are opening balances or capital injections:
    owner-only, and their type never changes.
    """
    __tablename__ = 'transactions'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey('organizations.id'), nullable=False, index=True)
    type = db.Column(db.String(30), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)

    funded_by_type = db.Column(db.String(20), nullable=False, default=FundedByType.BUSINESS.value)
    # NULL = attributed to the organization rather than a member
    funded_by_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)

    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    updated_by_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)

    category = db.Column(db.String(100), nullable=True)
    description = db.Column(db.String(500), nullable=True)
    occurred_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    is_initial = db.Column(db.Boolean, default=False, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    funded_by_user = db.relationship('User', foreign_keys=[funded_by_user_id])
    recorder = db.relationship('User', foreign_keys=[user_id])

    @validates('amount')
    def validate_amount(self, key, amount):
        return to_amount(amount)

    @validates('type')
    def validate_type(self, key, transaction_type):
        if transaction_type not in VALID_TRANSACTION_TYPES:
            raise ValueError(f'Invalid transaction type: {transaction_type}')
        return transaction_type

    @validates('funded_by_type')
    def validate_funded_by_type(self, key, funded_by_type):
        if funded_by_type not in VALID_FUNDED_BY_TYPES:
            raise ValueError(f'Invalid funding source: {funded_by_type}')
        return funded_by_type

    @property
    def is_baseline_adjustment(self):
        return self.type in BASELINE_TRANSACTION_TYPES

    def __repr__(self):
        return f'<Transaction {self.type} amount={self.amount}>'


# ============================================================
# REIMBURSEMENT REQUEST MODEL
# ============================================================
class ReimbursementRequest(db.Model):
    """
    Money paid back to a member for personal contributions.
    Only 'paid' rows are written today; there is no approval step.
    """
    __tablename__ = 'reimbursement_requests'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey('organizations.id'), nullable=False, index=True)
    from_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=ReimbursementStatus.PAID.value)
    notes = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    member = db.relationship('User', foreign_keys=[from_user_id])

    @validates('amount')
    def validate_amount(self, key, amount):
        return to_amount(amount)

    def __repr__(self):
        return f'<ReimbursementRequest user={self.from_user_id} amount={self.amount} status={self.status}>'


# ============================================================
# INVITE CODE MODEL
# ============================================================
class InviteCode(db.Model):
    """
    Shareable code for joining an organization.
    max_uses NULL means unlimited; revoking sets is_active False.
    """
    __tablename__ = 'invite_codes'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey('organizations.id'), nullable=False)
    code = db.Column(db.String(14), unique=True, nullable=False)
    max_uses = db.Column(db.Integer, nullable=True)
    current_uses = db.Column(db.Integer, default=0, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    creator = db.relationship('User', foreign_keys=[created_by])

    def __repr__(self):
        return f'<InviteCode {self.code} org={self.organization_id}>'


# ============================================================
# OWNERSHIP TRANSFER HISTORY
# ============================================================
class OwnershipTransfer(db.Model):
    """Audit trail of ownership transfers."""
    __tablename__ = 'ownership_transfers'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey('organizations.id'), nullable=False)
    from_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    to_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    reason = db.Column(db.String(255), nullable=True)
    transferred_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<OwnershipTransfer org={self.organization_id} {self.from_user_id}->{self.to_user_id}>'
