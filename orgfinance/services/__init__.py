"""
Services Package
================

Business logic layer for OrgFinance.

All financial and authorization operations are handled here.
Routes should call these services, not manipulate models directly.
"""

from orgfinance.services.authorization_service import (
    ROLE_HIERARCHY,
    has_permission,
    authorize,
    get_membership,
    is_org_member,
    is_org_admin,
    is_org_owner,
    require_authorization,
    AuthorizationError
)

from orgfinance.services.finance_service import (
    compute_organization_stats,
    get_organization_stats,
    get_cash_on_hand,
    get_member_baselines,
    get_holdings_overview,
    get_platform_statistics,
    OrganizationTotals,
    MemberBalance,
    OrganizationStats,
    HoldingsOverview,
    FinanceError
)

from orgfinance.services.baseline_service import (
    set_member_baseline,
    BaselineError,
    InvalidBaselineError,
    AllocationExceedsCashError
)

from orgfinance.services.ledger_service import (
    add_income,
    add_expense,
    add_expense_for_member,
    add_initial_transaction,
    update_transaction,
    update_initial_transaction,
    delete_transaction,
    delete_initial_transaction,
    record_refund,
    list_transactions,
    LedgerError,
    ValidationError,
    InvalidAmountError,
    RefundExceedsOutstandingError,
    TransactionNotFoundError
)

from orgfinance.services.membership_service import (
    create_organization,
    update_organization,
    delete_organization,
    update_member_role,
    deactivate_member,
    reactivate_member,
    leave_organization,
    transfer_ownership,
    MembershipError,
    OrganizationNotFoundError
)

from orgfinance.services.invite_service import (
    create_invite_code,
    revoke_invite_code,
    join_with_invite_code,
    InviteError
)
