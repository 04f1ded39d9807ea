from datetime import date

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from config import TestConfig
from orgfinance import create_app
from orgfinance.extensions import db as _db
from orgfinance.models import User, OrganizationMember, MemberRole
from orgfinance.services.membership_service import create_organization

PASSWORD = 'secret123'
TODAY = date(2024, 3, 15)


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        yield app
        _db.session.remove()
        _db.drop_all()


def make_user(name, email):
    user = User(name=name, email=email)
    user.set_password(PASSWORD)
    _db.session.add(user)
    _db.session.commit()
    return user


def add_member(organization_id, user_id, role=MemberRole.MEMBER.value):
    membership = OrganizationMember(organization_id=organization_id, user_id=user_id, role=role)
    _db.session.add(membership)
    _db.session.commit()
    return membership


@pytest.fixture
def owner(app):
    return make_user('Olivia Owner', 'owner@example.com')


@pytest.fixture
def admin(app):
    return make_user('Adam Admin', 'admin@example.com')


@pytest.fixture
def member(app):
    return make_user('Mia Member', 'member@example.com')


@pytest.fixture
def outsider(app):
    return make_user('Oscar Outsider', 'outsider@example.com')


@pytest.fixture
def organization(owner, admin, member):
    """Owner, one admin and one member."""
    organization = create_organization(owner.id, 'Acme Collective', 'Test organization')
    add_member(organization.id, admin.id, MemberRole.ADMIN.value)
    add_member(organization.id, member.id)
    return organization


@pytest.fixture
def client(app):
    return app.test_client()


def login(client, email):
    return client.post('/login', data={'email': email, 'password': PASSWORD})


@pytest.fixture
def owner_client(client, owner, organization):
    login(client, owner.email)
    return client


def database_down(*args, **kwargs):
    raise OperationalError('SELECT', {}, Exception('database is unavailable'))


@pytest.fixture
def failing_commit(monkeypatch):
    """Every commit flushes its changes, then fails as if the database went away."""
    def commit(self):
        self.flush()
        raise OperationalError('COMMIT', {}, Exception('database is unavailable'))

    monkeypatch.setattr(Session, 'commit', commit)
