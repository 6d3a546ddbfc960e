from quart import Blueprint, request, jsonify
from linkearn.server.services import get_services
from .utils import require_admin, current_admin_id, get_int_arg, get_json_body

bp = Blueprint('admin_payouts', __name__)

@bp.route('/payouts')
@require_admin
async def payouts():
    status_filter = request.args.get('status', 'all')
    page = await get_services().payouts.list_payouts(
        None if status_filter == 'all' else status_filter,
        page=get_int_arg('page', 1),
        limit=get_int_arg('limit', 50)
    )
    return jsonify({'status': 'success', **page})

@bp.route('/payouts/<int:payout_id>/status', methods=['POST'])
@require_admin
async def update_payout_status(payout_id):
    data = await get_json_body()
    payout = await get_services().payouts.update_status(
        payout_id, data.get('status', ''), current_admin_id(), data.get('admin_note')
    )
    return jsonify({'status': 'success', 'payout': payout})
