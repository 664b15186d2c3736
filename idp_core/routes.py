from __future__ import annotations

import logging
import secrets

from authlib.oauth2 import OAuth2Error
from flask import Blueprint, abort, jsonify, redirect, request
from werkzeug.exceptions import HTTPException
from werkzeug.security import gen_salt

from .grants import IntrospectionEndpoint, RevocationEndpoint, payload_value
from .models import ExchangeEvent, ExchangePolicy, OAuth2Client
from .policies import normalize_list
from .provider import get_provider
from .sessions import current_session, ensure_grant, find_interaction, finish_login, start_interaction

logger = logging.getLogger(__name__)

oauth_bp = Blueprint('oauth', __name__)
interaction_bp = Blueprint('interaction', __name__)
admin_bp = Blueprint('admin', __name__, url_prefix='/admin')


def _json_error(error: HTTPException):
    return jsonify({'error': error.name.lower().replace(' ', '_'), 'error_description': error.description}), error.code


interaction_bp.register_error_handler(HTTPException, _json_error)
admin_bp.register_error_handler(HTTPException, _json_error)


def _require_admin():
    hdr = (request.headers.get('X-Admin-Token') or '').strip()
    admin_token = get_provider().settings.admin_token
    if not admin_token or not secrets.compare_digest(hdr, admin_token):
        abort(401, 'admin token required')


# ----------------------
# OAuth2 endpoints
# ----------------------
@oauth_bp.route('/oauth/authorize', methods=['GET'])
def authorize():
    provider = get_provider()
    server = provider.server
    try:
        grant = server.get_consent_grant(end_user=None)
    except OAuth2Error as e:
        return jsonify(dict(e.get_body())), e.status_code

    if provider.settings.require_pkce:
        ch = request.args.get('code_challenge')
        chm = (request.args.get('code_challenge_method') or '').upper()
        if not ch or chm != 'S256':
            return jsonify({'error': 'invalid_request', 'error_description': 'PKCE (S256) is required'}), 400

    session_payload = current_session(provider)
    if session_payload is None:
        uid = start_interaction(provider, request.args.to_dict(), request.full_path)
        return redirect(provider.settings.interaction_url.format(uid=uid))

    client = grant.client
    scope = payload_value(grant.request, 'scope') or ''
    user = ensure_grant(provider, session_payload, client.get_client_id(), scope)
    return server.create_authorization_response(grant_user=user)


@oauth_bp.route('/oauth/token', methods=['POST'])
def issue_token():
    return get_provider().server.create_token_response()


@oauth_bp.route('/oauth/revoke', methods=['POST'])
def revoke_token():
    return get_provider().server.create_endpoint_response(RevocationEndpoint.ENDPOINT_NAME)


@oauth_bp.route('/oauth/introspect', methods=['POST'])
def introspect_token():
    return get_provider().server.create_endpoint_response(IntrospectionEndpoint.ENDPOINT_NAME)


@oauth_bp.route('/health')
def health():
    return jsonify({'status': 'ok'}), 200


# ----------------------
# Login interactions (driven by the external login UI)
# ----------------------
@interaction_bp.route('/interaction/<uid>', methods=['GET'])
def interaction_details(uid):
    interaction = find_interaction(get_provider(), uid)
    if not interaction or interaction.get('consumed'):
        abort(404, 'unknown or finished interaction')
    params = interaction.get('params') or {}
    return jsonify({
        'uid': interaction['uid'],
        'prompt': interaction.get('prompt'),
        'client_id': params.get('client_id'),
        'scope': params.get('scope'),
        'params': params,
        'expires_at': interaction.get('exp'),
    })


@interaction_bp.route('/interaction/<uid>/login', methods=['POST'])
def interaction_login(uid):
    _require_admin()
    data = request.get_json(silent=True) or request.form
    account_id = (data.get('account_id') or '').strip()
    if not account_id:
        abort(400, 'account_id required')
    return_to = finish_login(get_provider(), uid, account_id)
    if return_to is None:
        abort(404, 'unknown or finished interaction')
    return redirect(return_to)


# ----------------------
# Admin API (secured by X-Admin-Token)
# ----------------------
@admin_bp.route('/clients', methods=['GET', 'POST'])
def admin_clients():
    _require_admin()
    database = get_provider().database
    with database.session() as db:
        if request.method == 'GET':
            items = db.query(OAuth2Client).order_by(OAuth2Client.created_at).all()
            return jsonify([c.to_dict() for c in items])
        data = request.get_json(silent=True) or {}
        client_id = (data.get('client_id') or '').strip() or gen_salt(24)
        if db.query(OAuth2Client).filter_by(client_id=client_id).first():
            abort(409, 'client_id already exists')
        auth_method = (data.get('token_endpoint_auth_method') or 'client_secret_basic').strip()
        secret = None if auth_method == 'none' else gen_salt(48)
        client = OAuth2Client(
            client_id=client_id,
            client_name=data.get('client_name') or client_id,
            redirect_uris=' '.join(normalize_list(data.get('redirect_uris'))),
            grant_types=' '.join(normalize_list(data.get('grant_types') or 'authorization_code refresh_token')),
            response_types=' '.join(normalize_list(data.get('response_types') or 'code')),
            scope=' '.join(normalize_list(data.get('scope'))),
            token_endpoint_auth_method=auth_method,
        )
        client.set_client_secret(secret)
        db.add(client)
        db.commit()
        body = client.to_dict()
        if secret:
            # Only ever shown once; the database keeps a hash
            body['client_secret'] = secret
        logger.info('Registered client %s (%s)', client_id, auth_method)
        return jsonify(body), 201


@admin_bp.route('/clients/<client_id>', methods=['DELETE'])
def admin_delete_client(client_id):
    _require_admin()
    with get_provider().database.session() as db:
        deleted = db.query(OAuth2Client).filter_by(client_id=client_id).delete()
        db.query(ExchangePolicy).filter_by(client_id=client_id).delete()
        db.commit()
    if not deleted:
        abort(404)
    return jsonify({'ok': True})


def _policy_fields(data: dict, partial: bool = False) -> dict:
    fields = {}
    if not partial or 'client_id' in data:
        client_id = (data.get('client_id') or '').strip()
        if not client_id:
            abort(400, 'client_id required')
        fields['client_id'] = client_id
    if 'priority' in data:
        try:
            fields['priority'] = int(data['priority'] or 0)
        except (TypeError, ValueError):
            abort(400, 'priority must be an integer')
    if 'subject' in data:
        fields['subject'] = (data['subject'] or '').strip() or None
    for name in ('subject_token_types', 'audiences'):
        if name in data:
            fields[name] = normalize_list(data[name])
    if 'scopes' in data:
        fields['scopes'] = None if data['scopes'] is None else normalize_list(data['scopes'])
    for name in ('actor_token_required', 'enabled'):
        if name in data and data[name] is not None:
            if not isinstance(data[name], bool):
                abort(400, f'{name} must be a boolean')
            fields[name] = data[name]
    if 'description' in data:
        fields['description'] = data['description']
    return fields


@admin_bp.route('/token-exchange/policies', methods=['GET', 'POST'])
def admin_policies():
    _require_admin()
    with get_provider().database.session() as db:
        if request.method == 'GET':
            query = db.query(ExchangePolicy)
            client_id = request.args.get('client_id')
            if client_id:
                query = query.filter_by(client_id=client_id)
            items = query.order_by(ExchangePolicy.client_id, ExchangePolicy.priority.desc(),
                                   ExchangePolicy.created_at).all()
            return jsonify([p.to_dict() for p in items])
        policy = ExchangePolicy(**_policy_fields(request.get_json(silent=True) or {}))
        db.add(policy)
        db.commit()
        logger.info('Created token exchange policy %s for client %s', policy.id, policy.client_id)
        return jsonify(policy.to_dict()), 201


@admin_bp.route('/token-exchange/policies/<policy_id>', methods=['GET', 'PUT', 'DELETE'])
def admin_policy_detail(policy_id):
    _require_admin()
    with get_provider().database.session() as db:
        policy = db.get(ExchangePolicy, policy_id)
        if not policy:
            abort(404)
        if request.method == 'GET':
            return jsonify(policy.to_dict())
        if request.method == 'DELETE':
            db.delete(policy)
            db.commit()
            return jsonify({'ok': True})
        for key, value in _policy_fields(request.get_json(silent=True) or {}, partial=True).items():
            setattr(policy, key, value)
        db.commit()
        return jsonify(policy.to_dict())


@admin_bp.route('/token-exchange/events', methods=['GET'])
def admin_exchange_events():
    _require_admin()
    try:
        limit = min(max(int(request.args.get('limit', 100)), 1), 1000)
    except ValueError:
        abort(400, 'limit must be an integer')
    with get_provider().database.session() as db:
        query = db.query(ExchangeEvent)
        client_id = request.args.get('client_id')
        if client_id:
            query = query.filter_by(client_id=client_id)
        items = query.order_by(ExchangeEvent.created_at.desc()).limit(limit).all()
        return jsonify([e.to_dict() for e in items])


@admin_bp.route('/grants/<grant_id>', methods=['DELETE'])
def admin_revoke_grant(grant_id):
    _require_admin()
    get_provider().revoke_grant(grant_id)
    return jsonify({'ok': True})


@admin_bp.route('/maintenance/clean-expired', methods=['POST'])
def admin_clean_expired():
    _require_admin()
    get_provider().clean_expired()
    return jsonify({'ok': True})
