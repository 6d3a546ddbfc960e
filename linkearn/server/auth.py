from quart import Blueprint, request, session, jsonify
from linkearn.server.security import get_client_ip
from linkearn.server.services import get_services
from linkearn.server.admin.utils import get_json_body

bp = Blueprint('auth', __name__)

def regenerate_session(user: dict):
    """Clear the old session before binding a user, so a pre-login cookie cannot be fixated"""
    session.clear()
    session['user_id'] = user['id']
    session['user_email'] = user['email']
    session['is_admin'] = user['is_admin']
    session.permanent = True

def get_user_agent() -> str:
    return request.headers.get('User-Agent', 'Unknown')

@bp.route('/register', methods=['POST'])
async def register():
    data = await get_json_body()
    user = await get_services().accounts.create_user(
        data.get('email', ''),
        data.get('password', ''),
        registration_ip=get_client_ip(request),
        user_agent=get_user_agent(),
        referral_code=(data.get('referral_code') or request.args.get('ref') or '').strip() or None
    )
    regenerate_session(user)
    return jsonify({'status': 'success', 'user': user}), 201

@bp.route('/login', methods=['POST'])
async def login():
    data = await get_json_body()
    user = await get_services().accounts.authenticate(
        data.get('email', ''),
        data.get('password', ''),
        ip=get_client_ip(request),
        user_agent=get_user_agent()
    )
    if user is None:
        return jsonify({'status': 'error', 'message': 'Invalid email or password'}), 401

    regenerate_session(user)
    return jsonify({'status': 'success', 'user': user})

@bp.route('/logout', methods=['POST'])
async def logout():
    session.clear()
    return jsonify({'status': 'success'})
