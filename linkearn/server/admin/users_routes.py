from quart import Blueprint, jsonify
from linkearn.server.services import get_services
from .utils import require_admin, current_admin_id, get_json_body

bp = Blueprint('admin_users', __name__)

@bp.route('/users/<int:user_id>')
@require_admin
async def user_detail(user_id):
    user = await get_services().accounts.get_user(user_id)
    return jsonify({'status': 'success', 'user': user})

@bp.route('/users/<int:user_id>/balance', methods=['POST'])
@require_admin
async def adjust_balance(user_id):
    data = await get_json_body()
    user = await get_services().accounts.adjust_balance(
        user_id, data.get('amount'), current_admin_id(), data.get('note')
    )
    return jsonify({'status': 'success', 'user': user})

@bp.route('/users/<int:user_id>/toggle', methods=['POST'])
@require_admin
async def toggle_user(user_id):
    accounts = get_services().accounts
    user = await accounts.get_user(user_id)
    user = await accounts.set_active(user_id, not user['is_active'], current_admin_id())
    return jsonify({'status': 'success', 'user': user})
