"""
JSON API
========

Every response is {"error": message} or {"success": true, ...}.

400 invalid input, 401 not signed in, 403 not allowed,
404 not found, 409 allocation limit, 500 database unavailable.
"""

from functools import wraps

from flask import Blueprint, jsonify, request, current_app
from flask_login import current_user
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from orgfinance.extensions import db
from orgfinance.services.authorization_service import can_view_organization, AuthorizationError
from orgfinance.services.finance_service import get_organization_stats, FinanceError
from orgfinance.services.baseline_service import (
    set_member_baseline, BaselineError, AllocationExceedsCashError
)
from orgfinance.services.membership_service import (
    update_organization, delete_organization, transfer_ownership,
    MembershipError, OrganizationNotFoundError
)

api_bp = Blueprint('api', __name__, url_prefix='/api')


def _error(message, status):
    return jsonify({'error': message}), status


def api_login_required(view):
    """login_required, but answers 401 JSON instead of redirecting to the login page."""
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not current_user.is_authenticated:
            return _error('Unauthorized', 401)
        return view(*args, **kwargs)
    return wrapped


def _payload():
    return request.get_json(silent=True) or {}


# ============== ORGANIZATION ==============
@api_bp.route('/organization/<int:organization_id>', methods=['PATCH'])
@api_login_required
def patch_organization(organization_id):
    data = _payload()
    try:
        organization = update_organization(
            organization_id, current_user.id, data.get('name'), data.get('description')
        )
    except OrganizationNotFoundError as e:
        return _error(str(e), 404)
    except AuthorizationError as e:
        return _error(str(e), 403)
    except MembershipError as e:
        return _error(str(e), 400)

    return jsonify({
        'success': True,
        'organization': {
            'id': organization.id,
            'name': organization.name,
            'description': organization.description,
        }
    })


@api_bp.route('/organization/<int:organization_id>', methods=['DELETE'])
@api_login_required
def remove_organization(organization_id):
    try:
        delete_organization(organization_id, current_user.id)
    except OrganizationNotFoundError as e:
        return _error(str(e), 404)
    except AuthorizationError as e:
        return _error(str(e), 403)
    except MembershipError as e:
        return _error(str(e), 500)

    return jsonify({'success': True})


@api_bp.route('/organization/<int:organization_id>/transfer-ownership', methods=['POST'])
@api_login_required
def post_transfer_ownership(organization_id):
    data = _payload()
    try:
        transfer = transfer_ownership(
            organization_id, current_user.id, data.get('newOwnerId'), data.get('reason')
        )
    except OrganizationNotFoundError as e:
        return _error(str(e), 404)
    except AuthorizationError as e:
        return _error(str(e), 403)
    except MembershipError as e:
        return _error(str(e), 400)

    return jsonify({
        'success': True,
        'transfer': {
            'from_user_id': transfer.from_user_id,
            'to_user_id': transfer.to_user_id,
            'reason': transfer.reason,
        }
    })


# ============== BALANCES ==============
@api_bp.route('/organization/<int:organization_id>/stats', methods=['GET'])
@api_login_required
def organization_stats(organization_id):
    allowed, reason = can_view_organization(current_user.id, organization_id)
    if not allowed:
        return _error(reason, 403)

    try:
        stats = get_organization_stats(organization_id)
    except FinanceError as e:
        return _error(str(e), 500)

    return jsonify({'success': True, **stats.to_dict()})


@api_bp.route('/organization/<int:organization_id>/baseline', methods=['POST'])
@api_login_required
def post_baseline(organization_id):
    data = _payload()
    if data.get('userId') is None or data.get('baseline') is None:
        return _error('userId and baseline are required', 400)

    try:
        target_user_id = int(data['userId'])
    except (TypeError, ValueError):
        return _error('Invalid userId', 400)

    try:
        result = set_member_baseline(organization_id, current_user.id, target_user_id, data['baseline'])
    except AuthorizationError as e:
        return _error(str(e), 403)
    except AllocationExceedsCashError as e:
        return jsonify({
            'error': str(e),
            'total_allocated': e.total_allocated,
            'cash_on_hand': e.cash_on_hand,
        }), 409
    except BaselineError as e:
        return _error(str(e), 400)

    transaction = result['transaction']
    return jsonify({
        'success': True,
        'changed': result['changed'],
        'baseline': result['baseline'],
        'transaction_id': transaction.id if transaction else None,
    })


# ============== HEALTH ==============
@api_bp.route('/health-check', methods=['GET'])
def health_check():
    try:
        db.session.execute(text('SELECT 1'))
    except SQLAlchemyError:
        current_app.logger.exception('[HEALTH] Database check failed')
        return jsonify({'status': 'error', 'database': 'unavailable'}), 500
    return jsonify({'status': 'ok', 'database': 'ok'})
