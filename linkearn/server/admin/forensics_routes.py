from quart import Blueprint, jsonify
from linkearn.errors import PreconditionFailed
from linkearn.server.services import get_services
from .utils import require_admin, current_admin_id, get_json_body

bp = Blueprint('admin_forensics', __name__)

@bp.route('/decrypt-visit-ip', methods=['POST'])
@require_admin
async def decrypt_visit_ip():
    data = await get_json_body()
    try:
        visit_id = int(data.get('visit_id'))
    except (TypeError, ValueError):
        raise PreconditionFailed('visit_id is required', reason='invalid_request')

    visit = await get_services().forensics.decrypt_visit_ip(visit_id, current_admin_id())
    return jsonify({'status': 'success', 'visit': visit})

@bp.route('/search-by-ip', methods=['POST'])
@require_admin
async def search_by_ip():
    data = await get_json_body()
    result = await get_services().forensics.search_by_ip(data.get('ip'), current_admin_id())
    return jsonify({'status': 'success', **result})
