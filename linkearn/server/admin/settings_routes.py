from quart import Blueprint, jsonify
from linkearn.server.services import get_services
from .utils import require_admin, current_admin_id, get_json_body

bp = Blueprint('admin_settings', __name__)

@bp.route('/settings')
@require_admin
async def settings():
    current = await get_services().settings.get_settings()
    return jsonify({'status': 'success', 'settings': current.to_dict()})

@bp.route('/settings', methods=['PUT'])
@require_admin
async def update_settings():
    data = await get_json_body()
    updated = await get_services().settings.update_settings(data, current_admin_id())
    return jsonify({'status': 'success', 'settings': updated.to_dict()})
