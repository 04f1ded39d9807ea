from decimal import Decimal

from orgfinance.models import Transaction, InviteCode, User
from orgfinance.services.authorization_service import get_role
from orgfinance.services.finance_service import get_member_baselines
from orgfinance.services.ledger_service import add_income

from tests.conftest import TODAY, login


def test_home_page_anonymous(client, app):
    response = client.get('/')
    assert response.status_code == 200
    assert b'Organizations' in response.data


def test_pages_require_login(client, organization):
    response = client.get(f'/organizations/{organization.id}')
    assert response.status_code == 302
    assert '/login' in response.headers['Location']


def test_register_then_login(client, app):
    response = client.post('/register', data={
        'name': 'Nora New', 'email': 'Nora@Example.com',
        'password': 'secret123', 'confirm_password': 'secret123'
    })
    assert response.status_code == 302
    assert User.query.filter_by(email='nora@example.com').count() == 1

    response = login(client, 'nora@example.com')
    assert response.status_code == 302
    assert '/organizations' in response.headers['Location']


def test_register_rejects_mismatched_passwords(client, app):
    response = client.post('/register', data={
        'name': 'Nora', 'email': 'nora@example.com', 'password': 'secret123', 'confirm_password': 'other'
    }, follow_redirects=True)
    assert b'Passwords do not match!' in response.data
    assert User.query.count() == 0


def test_dashboard_shows_balances(owner_client, organization, owner):
    add_income(organization.id, owner.id, '1000', TODAY)

    response = owner_client.get(f'/organizations/{organization.id}')

    assert response.status_code == 200
    assert b'Acme Collective' in response.data
    assert b'$1,000.00' in response.data


def test_outsider_redirected_from_dashboard(client, organization, outsider):
    login(client, outsider.email)
    response = client.get(f'/organizations/{organization.id}')
    assert response.status_code == 302
    assert response.headers['Location'].endswith('/organizations')


def test_add_income_form(owner_client, organization):
    response = owner_client.post(
        f'/organizations/{organization.id}/income',
        data={'amount': '250.00', 'occurred_at': '2024-03-15', 'category': 'Dues'},
        follow_redirects=True
    )
    assert b'Income added!' in response.data
    assert Transaction.query.filter_by(organization_id=organization.id).count() == 1


def test_invalid_amount_flashes_error(owner_client, organization):
    response = owner_client.post(
        f'/organizations/{organization.id}/expense',
        data={'amount': '-4', 'occurred_at': '2024-03-15'},
        follow_redirects=True
    )
    assert b'Amount must be greater than 0' in response.data
    assert Transaction.query.count() == 0


def test_member_cannot_record(client, organization, member):
    login(client, member.email)
    response = client.post(
        f'/organizations/{organization.id}/income',
        data={'amount': '10', 'occurred_at': '2024-03-15'},
        follow_redirects=True
    )
    assert b"permission to record transactions" in response.data
    assert Transaction.query.count() == 0


def test_member_redirected_from_settings(client, organization, member):
    login(client, member.email)
    response = client.get(f'/organizations/{organization.id}/settings')
    assert response.status_code == 302


def test_settings_page_for_owner(owner_client, organization):
    response = owner_client.get(f'/organizations/{organization.id}/settings')
    assert response.status_code == 200
    assert b'Transfer ownership' in response.data


def test_set_baseline_form(owner_client, organization, owner, member):
    add_income(organization.id, owner.id, '800', TODAY)

    response = owner_client.post(
        f'/organizations/{organization.id}/holdings/{member.id}',
        data={'baseline': '300'}, follow_redirects=True
    )
    assert b'Baseline set to $300.00' in response.data

    response = owner_client.post(
        f'/organizations/{organization.id}/holdings/{owner.id}',
        data={'baseline': '600'}, follow_redirects=True
    )
    assert b'would exceed cash on hand' in response.data
    assert get_member_baselines(organization.id)[member.id] == Decimal('300')
    assert owner.id not in get_member_baselines(organization.id)


def test_records_page(owner_client, organization, owner):
    add_income(organization.id, owner.id, '42', TODAY, 'Raffle tickets', 'Events')

    response = owner_client.get(f'/organizations/{organization.id}/records?q=raffle')

    assert response.status_code == 200
    assert b'Raffle tickets' in response.data


def test_invite_and_join(client, organization, owner, outsider):
    login(client, owner.email)
    client.post(f'/organizations/{organization.id}/invites', data={'max_uses': '1'})
    invite = InviteCode.query.filter_by(organization_id=organization.id).one()
    assert invite.max_uses == 1

    response = client.get(f'/organizations/{organization.id}/members')
    assert invite.code.encode() in response.data


def test_join_form(client, organization, owner, outsider):
    from orgfinance.services.invite_service import create_invite_code

    invite = create_invite_code(organization.id, owner.id)
    login(client, outsider.email)

    response = client.post('/organizations/join', data={'code': invite.code}, follow_redirects=True)

    assert b'You joined Acme Collective!' in response.data
    assert get_role(outsider.id, organization.id) == 'member'


def test_transfer_ownership_form(owner_client, organization, owner, member):
    response = owner_client.post(
        f'/organizations/{organization.id}/transfer-ownership',
        data={'new_owner_id': str(member.id), 'reason': 'Moving away'}
    )
    assert response.status_code == 302
    assert get_role(member.id, organization.id) == 'owner'
    assert get_role(owner.id, organization.id) == 'admin'
