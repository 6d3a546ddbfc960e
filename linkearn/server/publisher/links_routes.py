from quart import Blueprint, jsonify
from linkearn.server.services import get_services
from .utils import require_publisher, current_user_id, get_json_body

bp = Blueprint('publisher_links', __name__)

@bp.route('/links')
@require_publisher
async def links():
    user_links = await get_services().links.list_user_links(current_user_id())
    return jsonify({'status': 'success', 'links': user_links})

@bp.route('/links', methods=['POST'])
@require_publisher
async def create_link():
    data = await get_json_body()
    link = await get_services().links.create_link(
        current_user_id(),
        data.get('url', ''),
        title=data.get('title'),
        description=data.get('description')
    )
    return jsonify({'status': 'success', 'link': link}), 201

@bp.route('/links/<int:link_id>/active', methods=['POST'])
@require_publisher
async def set_link_active(link_id):
    data = await get_json_body()
    link = await get_services().links.set_link_active(link_id, current_user_id(), bool(data.get('active', True)))
    return jsonify({'status': 'success', 'link': link})
