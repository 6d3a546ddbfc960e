from quart import Blueprint, jsonify
from linkearn.server.services import get_services
from .utils import require_publisher, current_user_id, get_json_body

bp = Blueprint('publisher_payouts', __name__)

@bp.route('/payouts')
@require_publisher
async def payouts():
    services = get_services()
    user_id = current_user_id()
    user = await services.accounts.get_user(user_id)
    history = await services.payouts.list_user_payouts(user_id)
    return jsonify({
        'status': 'success',
        'balance': user['balance'],
        'min_payout': str(services.payouts.min_payout),
        'payouts': history,
    })

@bp.route('/payouts', methods=['POST'])
@require_publisher
async def request_payout():
    data = await get_json_body()
    payout = await get_services().payouts.request_payout(
        current_user_id(),
        data.get('amount'),
        data.get('method', ''),
        data.get('address', '')
    )
    return jsonify({'status': 'success', 'payout': payout}), 201
