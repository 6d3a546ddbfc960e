from quart import Blueprint, request, jsonify
from linkearn.server.services import get_services
from .utils import require_admin, current_admin_id, get_int_arg, get_json_body

bp = Blueprint('admin_referrals', __name__)

@bp.route('/fraud-alerts')
@require_admin
async def fraud_alerts():
    referrals = get_services().referrals
    alerts = await referrals.get_fraud_alerts(
        request.args.get('status') or None,
        page=get_int_arg('page', 1),
        limit=get_int_arg('limit', 20)
    )
    alerts['stats'] = await referrals.get_fraud_alert_stats()
    return jsonify({'status': 'success', **alerts})

@bp.route('/fraud-alerts/<int:user_id>/resolve', methods=['POST'])
@require_admin
async def resolve_fraud_alert(user_id):
    data = await get_json_body()
    result = await get_services().referrals.resolve_fraud_flag(
        user_id, data.get('action', ''), current_admin_id(), data.get('notes')
    )
    return jsonify({'status': 'success', 'result': result})

@bp.route('/referrals/stats')
@require_admin
async def referral_stats():
    stats = await get_services().referrals.get_admin_stats()
    return jsonify({'status': 'success', 'stats': stats})
