from decimal import Decimal

from orgfinance.models import MemberRole, TransactionType

TRANSACTION_TYPE_LABELS = {
    TransactionType.INCOME.value: 'Income',
    TransactionType.EXPENSE_BUSINESS.value: 'Business Expense',
    TransactionType.EXPENSE_PERSONAL.value: 'Personal Expense',
    TransactionType.HELD_ALLOCATE.value: 'Held Allocation',
    TransactionType.HELD_RETURN.value: 'Held Return',
}

ROLE_LABELS = {
    MemberRole.OWNER.value: 'Owner',
    MemberRole.ADMIN.value: 'Admin',
    MemberRole.MEMBER.value: 'Member',
}


def money(value):
    if value is None:
        value = Decimal('0')
    return f'${Decimal(value):,.2f}'


def register_template_helpers(app):
    app.add_template_filter(money, 'money')

    @app.context_processor
    def inject_labels():
        return {
            'transaction_type_labels': TRANSACTION_TYPE_LABELS,
            'role_labels': ROLE_LABELS,
        }
