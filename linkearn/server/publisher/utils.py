from quart import jsonify, request, session
from linkearn.errors import PreconditionFailed
from linkearn.models import User
from linkearn.server.services import get_services
from functools import wraps

def require_publisher(func):
    @wraps(func)
    async def wrapper(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'status': 'error', 'message': 'Login required'}), 401

        async with get_services().accounts.session_factory() as db_session:
            user = await db_session.get(User, session['user_id'])

            if not user or not user.is_active:
                session.clear()
                return jsonify({'status': 'error', 'message': 'Account is inactive'}), 401

        return await func(*args, **kwargs)
    return wrapper

def current_user_id():
    return session.get('user_id')

def get_int_arg(name: str, default: int) -> int:
    try:
        return max(1, int(request.args.get(name, default)))
    except (TypeError, ValueError):
        return default

async def get_json_body() -> dict:
    data = await request.get_json(silent=True)
    if not isinstance(data, dict):
        raise PreconditionFailed('JSON body required', reason='invalid_request')
    return data
