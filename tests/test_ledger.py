from datetime import datetime, date
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from orgfinance.extensions import db
from orgfinance.models import Transaction, ReimbursementRequest
from orgfinance.services.authorization_service import AuthorizationError
from orgfinance.services.baseline_service import set_member_baseline
from orgfinance.services.finance_service import get_organization_stats
from orgfinance.services.ledger_service import (
    add_income, add_expense, add_expense_for_member, add_initial_transaction,
    get_initial_transactions, update_transaction, update_initial_transaction,
    delete_transaction, delete_initial_transaction, record_refund, list_transactions,
    get_top_categories, parse_occurred_at, ValidationError, InvalidAmountError,
    RefundExceedsOutstandingError, TransactionNotFoundError, LedgerError
)
from orgfinance.services.membership_service import deactivate_member

from tests.conftest import TODAY


class TestInputValidation:

    @pytest.mark.parametrize('amount', ['0', '-5', 'ten', '', None, 'NaN', 'inf'])
    def test_bad_amounts_rejected(self, organization, owner, amount):
        with pytest.raises(InvalidAmountError):
            add_income(organization.id, owner.id, amount, TODAY)
        assert Transaction.query.count() == 0

    def test_date_required(self, organization, owner):
        with pytest.raises(ValidationError, match='Date is required'):
            add_income(organization.id, owner.id, '10', '')
        with pytest.raises(ValidationError, match='Invalid date'):
            add_income(organization.id, owner.id, '10', 'yesterday')

    def test_parse_occurred_at(self):
        assert parse_occurred_at('2024-03-15') == datetime(2024, 3, 15)
        assert parse_occurred_at(date(2024, 3, 15)) == datetime(2024, 3, 15)
        assert parse_occurred_at('2024-03-15T12:30:00Z') == datetime(2024, 3, 15, 12, 30)
        assert parse_occurred_at('2024-03-15T14:30:00+02:00') == datetime(2024, 3, 15, 12, 30)

    def test_bad_expense_type(self, organization, owner):
        with pytest.raises(ValidationError):
            add_expense(organization.id, owner.id, '10', TODAY, expense_type='crypto')


class TestRecording:

    def test_income_held_by_recorder(self, organization, admin):
        income = add_income(organization.id, admin.id, '99.99', TODAY, '  Bake sale ', 'Events')

        assert income.type == 'income'
        assert income.amount == Decimal('99.99')
        assert income.funded_by_type == 'business'
        assert income.funded_by_user_id == admin.id
        assert income.description == 'Bake sale'
        assert income.is_initial is False

    def test_members_cannot_record(self, organization, member):
        with pytest.raises(AuthorizationError):
            add_income(organization.id, member.id, '10', TODAY)
        with pytest.raises(AuthorizationError):
            add_expense(organization.id, member.id, '10', TODAY)

    def test_personal_expense(self, organization, admin):
        expense = add_expense(organization.id, admin.id, '40', TODAY, expense_type='personal')

        assert expense.type == 'expense_personal'
        assert expense.funded_by_type == 'personal'
        assert expense.funded_by_user_id == admin.id

    def test_expense_for_member_and_for_organization(self, organization, owner, member):
        for_member = add_expense_for_member(
            organization.id, owner.id, '15', TODAY, expense_type='personal', assigned_to_user_id=str(member.id)
        )
        for_org = add_expense_for_member(organization.id, owner.id, '5', TODAY, assigned_to_user_id='none')

        assert for_member.funded_by_user_id == member.id
        assert for_org.funded_by_user_id is None
        assert get_organization_stats(organization.id).member(member.id).outstanding_reimbursable == Decimal('15')

    def test_expense_for_inactive_member_rejected(self, organization, owner, member):
        deactivate_member(organization.id, owner.id, member.id)
        with pytest.raises(ValidationError):
            add_expense_for_member(organization.id, owner.id, '15', TODAY, assigned_to_user_id=member.id)


class TestInitialTransactions:

    def test_owner_only(self, organization, owner, admin):
        initial = add_initial_transaction(
            organization.id, owner.id, 'income', '5000', TODAY, description='Opening balance'
        )
        assert initial.is_initial is True
        assert initial.funded_by_user_id is None

        with pytest.raises(AuthorizationError):
            add_initial_transaction(organization.id, admin.id, 'income', '10', TODAY)
        with pytest.raises(AuthorizationError):
            get_initial_transactions(organization.id, admin.id)

        assert get_initial_transactions(organization.id, owner.id) == [initial]

    def test_baseline_types_not_allowed(self, organization, owner):
        with pytest.raises(ValidationError):
            add_initial_transaction(organization.id, owner.id, 'held_allocate', '10', TODAY)

    def test_type_is_immutable(self, organization, owner):
        initial = add_initial_transaction(organization.id, owner.id, 'expense_personal', '100', TODAY,
                                          assigned_to_user_id=owner.id, category='capital')

        with pytest.raises(ValidationError, match='cannot be changed'):
            update_transaction(organization.id, owner.id, initial.id, '100', transaction_type='income')

        updated = update_initial_transaction(organization.id, owner.id, initial.id, '150', category='capital')
        assert updated.type == 'expense_personal'
        assert updated.amount == Decimal('150')
        assert updated.funded_by_user_id == owner.id

    def test_admin_cannot_edit_or_delete_initial(self, organization, owner, admin):
        initial = add_initial_transaction(organization.id, owner.id, 'income', '100', TODAY)

        with pytest.raises(AuthorizationError):
            update_transaction(organization.id, admin.id, initial.id, '200')
        with pytest.raises(AuthorizationError):
            delete_transaction(organization.id, admin.id, initial.id)

        delete_initial_transaction(organization.id, owner.id, initial.id)
        assert Transaction.query.count() == 0

    def test_initial_helpers_reject_regular_rows(self, organization, owner):
        income = add_income(organization.id, owner.id, '10', TODAY)
        with pytest.raises(TransactionNotFoundError):
            delete_initial_transaction(organization.id, owner.id, income.id)


class TestUpdateDelete:

    def test_update_fields_and_type(self, organization, owner, admin):
        income = add_income(organization.id, owner.id, '10', TODAY)

        updated = update_transaction(
            organization.id, admin.id, income.id, '12.50', occurred_at='2024-04-01',
            description='Fixed', category='Supplies', transaction_type='expense_personal'
        )

        assert updated.amount == Decimal('12.50')
        assert updated.type == 'expense_personal'
        assert updated.funded_by_type == 'personal'
        assert updated.occurred_at == datetime(2024, 4, 1)
        assert updated.updated_by_user_id == admin.id
        assert updated.funded_by_user_id == owner.id

    def test_failed_validation_leaves_row_untouched(self, organization, owner, outsider):
        income = add_income(organization.id, owner.id, '10', TODAY)

        with pytest.raises(ValidationError):
            update_transaction(organization.id, owner.id, income.id, '20',
                               transaction_type='expense_business', assigned_to_user_id=outsider.id)

        db.session.expire_all()
        row = db.session.get(Transaction, income.id)
        assert row.type == 'income'
        assert row.amount == Decimal('10')

    def test_baseline_rows_are_protected(self, organization, owner, member):
        add_income(organization.id, owner.id, '100', TODAY)
        row = set_member_baseline(organization.id, owner.id, member.id, '50')['transaction']

        with pytest.raises(ValidationError):
            update_transaction(organization.id, owner.id, row.id, '60')
        with pytest.raises(ValidationError):
            delete_transaction(organization.id, owner.id, row.id)

    def test_rows_scoped_to_organization(self, organization, owner):
        from orgfinance.services.membership_service import create_organization

        other = create_organization(owner.id, 'Second Org')
        income = add_income(other.id, owner.id, '10', TODAY)

        with pytest.raises(TransactionNotFoundError):
            delete_transaction(organization.id, owner.id, income.id)

    def test_delete(self, organization, owner, admin):
        income = add_income(organization.id, owner.id, '10', TODAY)
        delete_transaction(organization.id, admin.id, income.id)
        assert db.session.get(Transaction, income.id) is None


class TestRefunds:

    def test_refund_up_to_outstanding(self, organization, owner, member):
        add_expense_for_member(organization.id, owner.id, '50', TODAY,
                               expense_type='personal', assigned_to_user_id=member.id)

        refund = record_refund(organization.id, member.id, '30', 'Cash back')
        assert refund.status == 'paid'
        assert get_organization_stats(organization.id).member(member.id).outstanding_reimbursable == Decimal('20')

        with pytest.raises(RefundExceedsOutstandingError):
            record_refund(organization.id, member.id, '25')

        record_refund(organization.id, member.id, '20')
        assert get_organization_stats(organization.id).member(member.id).outstanding_reimbursable == Decimal('0')
        assert ReimbursementRequest.query.count() == 2

    def test_refund_requires_membership(self, organization, outsider):
        with pytest.raises(AuthorizationError):
            record_refund(organization.id, outsider.id, '1')


class TestRecords:

    @pytest.fixture
    def ledger(self, organization, owner, admin):
        add_income(organization.id, owner.id, '100', '2024-01-10', 'January dues', 'Dues')
        add_income(organization.id, owner.id, '200', '2024-02-10T15:00:00', 'February dues', 'dues')
        add_expense(organization.id, admin.id, '30', '2024-02-20', 'personal', 'Printer ink', 'Office')
        add_expense(organization.id, owner.id, '40', '2024-03-05', 'business', 'Hall rental', 'Venue')
        return organization

    def test_newest_first(self, ledger, member):
        page = list_transactions(ledger.id, member.id)
        assert [t.description for t in page['transactions']] == [
            'Hall rental', 'Printer ink', 'February dues', 'January dues'
        ]
        assert page['has_more'] is False
        assert page['next_cursor'] is None

    def test_filters(self, ledger, admin):
        def descriptions(**filters):
            return [t.description for t in list_transactions(ledger.id, admin.id, **filters)['transactions']]

        assert descriptions(search_text='DUES') == ['February dues', 'January dues']
        assert descriptions(category='Dues') == ['February dues', 'January dues']
        assert descriptions(transaction_type='expense_personal') == ['Printer ink']
        assert descriptions(member_id=admin.id) == ['Printer ink']
        assert descriptions(funded_by_type='business', start_date='2024-02-01') == ['Hall rental', 'February dues']
        assert descriptions(end_date='2024-02-10') == ['February dues', 'January dues']

    def test_cursor_pagination(self, ledger, owner):
        first = list_transactions(ledger.id, owner.id, limit=3)
        assert first['has_more'] is True
        second = list_transactions(ledger.id, owner.id, cursor=first['next_cursor'], limit=3)

        assert len(first['transactions']) == 3
        assert [t.description for t in second['transactions']] == ['January dues']
        assert second['has_more'] is False

    def test_outsider_cannot_list(self, ledger, outsider):
        with pytest.raises(AuthorizationError):
            list_transactions(ledger.id, outsider.id)

    def test_top_categories(self, ledger):
        assert get_top_categories(ledger.id) == ['dues', 'office', 'venue']


class TestPagingWithinOneDay:

    def test_rows_sharing_a_date_span_pages(self, organization, owner):
        for n in range(25):
            add_income(organization.id, owner.id, str(n + 1), '2024-03-15', f'Dues #{n + 1}')

        first = list_transactions(organization.id, owner.id, limit=20)
        second = list_transactions(organization.id, owner.id, cursor=first['next_cursor'], limit=20)

        assert first['has_more'] is True
        assert len(first['transactions']) == 20
        assert len(second['transactions']) == 5
        assert second['has_more'] is False

        seen = [t.id for t in first['transactions'] + second['transactions']]
        assert len(set(seen)) == 25
        assert seen == sorted(seen, reverse=True)

    def test_malformed_cursor(self, organization, owner):
        with pytest.raises(ValidationError, match='Invalid cursor'):
            list_transactions(organization.id, owner.id, cursor='2024-03-15|abc')
        with pytest.raises(ValidationError, match='Invalid cursor'):
            list_transactions(organization.id, owner.id, cursor='not-a-cursor')


class TestDatabaseFailures:

    def test_failed_income_is_not_recorded(self, organization, owner, failing_commit):
        with pytest.raises(LedgerError, match='Please try again'):
            add_income(organization.id, owner.id, '10', TODAY)

        assert Transaction.query.count() == 0

    def test_failed_delete_keeps_row(self, organization, owner, monkeypatch):
        income = add_income(organization.id, owner.id, '10', TODAY)

        def commit(self):
            self.flush()
            raise OperationalError('COMMIT', {}, Exception('database is unavailable'))

        monkeypatch.setattr(Session, 'commit', commit)
        with pytest.raises(LedgerError, match='Please try again'):
            delete_transaction(organization.id, owner.id, income.id)
        monkeypatch.undo()

        db.session.expire_all()
        assert db.session.get(Transaction, income.id) is not None
