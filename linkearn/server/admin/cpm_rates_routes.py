from quart import Blueprint, request, jsonify
from linkearn.errors import PreconditionFailed
from linkearn.server.services import get_services
from .utils import require_admin, current_admin_id, get_int_arg, get_json_body

bp = Blueprint('admin_cpm_rates', __name__)

@bp.route('/cpm-rates')
@require_admin
async def cpm_rates():
    rates = await get_services().rate_admin.list_rates()
    return jsonify({'status': 'success', 'rates': {str(tier): entries for tier, entries in rates.items()}})

@bp.route('/cpm-rates', methods=['POST'])
@require_admin
async def add_cpm_rate():
    data = await get_json_body()
    rate = await get_services().rate_admin.add_country(
        data.get('country_code'),
        data.get('country_name', ''),
        data.get('tier', 3),
        data.get('rate'),
        current_admin_id()
    )
    return jsonify({'status': 'success', 'rate': rate}), 201

@bp.route('/cpm-rates/<country_code>', methods=['PUT'])
@require_admin
async def update_cpm_rate(country_code):
    data = await get_json_body()
    rate = await get_services().rate_admin.update_rate(
        country_code, data.get('rate'), current_admin_id(), user_cpm=data.get('user_cpm')
    )
    return jsonify({'status': 'success', 'rate': rate})

@bp.route('/cpm-rates/<country_code>/toggle', methods=['POST'])
@require_admin
async def toggle_cpm_rate(country_code):
    rate = await get_services().rate_admin.toggle_rate(country_code, current_admin_id())
    return jsonify({'status': 'success', 'rate': rate})

@bp.route('/cpm-rates/bulk', methods=['POST'])
@require_admin
async def bulk_update_cpm_rates():
    data = await get_json_body()
    rates = data.get('rates')
    if not isinstance(rates, list) or not rates:
        raise PreconditionFailed('rates must be a non-empty list', reason='invalid_request')

    results = await get_services().rate_admin.bulk_update(rates, current_admin_id())
    return jsonify({
        'status': 'success',
        'updated': sum(1 for r in results if r['success']),
        'failed': sum(1 for r in results if not r['success']),
        'results': results,
    })

@bp.route('/cpm-rates/history')
@require_admin
async def cpm_rate_history():
    history = await get_services().rate_admin.get_history(
        request.args.get('country') or None,
        limit=get_int_arg('limit', 50)
    )
    return jsonify({'status': 'success', 'history': history})
