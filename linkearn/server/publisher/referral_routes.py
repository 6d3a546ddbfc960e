from quart import Blueprint, jsonify
from linkearn.server.services import get_services
from .utils import require_publisher, current_user_id, get_int_arg

bp = Blueprint('publisher_referrals', __name__)

@bp.route('/referrals')
@require_publisher
async def referrals():
    stats = await get_services().referrals.get_user_referral_stats(current_user_id())
    return jsonify({'status': 'success', **stats})

@bp.route('/referrals/commissions')
@require_publisher
async def commissions():
    page = await get_services().referrals.get_user_commissions(
        current_user_id(),
        page=get_int_arg('page', 1),
        limit=get_int_arg('limit', 20)
    )
    return jsonify({'status': 'success', **page})
