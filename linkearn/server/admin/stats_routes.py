from quart import Blueprint, jsonify
from linkearn.server.services import get_services
from .utils import require_admin, get_int_arg

bp = Blueprint('admin_stats', __name__)

@bp.route('/stats/countries')
@require_admin
async def country_stats():
    days = min(get_int_arg('days', 30), 365)
    stats = await get_services().ledger.earnings_stats_by_country(days)
    return jsonify({'status': 'success', 'days': days, 'countries': stats})
