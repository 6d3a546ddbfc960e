from quart import Blueprint, jsonify
from linkearn.server.services import get_services
from .utils import require_publisher, current_user_id, get_int_arg

bp = Blueprint('publisher_stats', __name__)

@bp.route('/stats/overview')
@require_publisher
async def overview():
    stats = await get_services().stats.overview(current_user_id())
    return jsonify({'status': 'success', 'stats': stats})

@bp.route('/stats/countries')
@require_publisher
async def countries():
    days = min(get_int_arg('days', 30), 365)
    stats = await get_services().stats.countries(current_user_id(), days)
    return jsonify({'status': 'success', 'days': days, 'countries': stats})

@bp.route('/stats/devices')
@require_publisher
async def devices():
    days = min(get_int_arg('days', 30), 365)
    stats = await get_services().stats.devices(current_user_id(), days)
    return jsonify({'status': 'success', 'days': days, 'devices': stats})

@bp.route('/stats/links')
@require_publisher
async def top_links():
    links = await get_services().stats.top_links(current_user_id(), get_int_arg('limit', 10))
    return jsonify({'status': 'success', 'links': links})
