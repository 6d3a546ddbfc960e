from quart import Blueprint, request, jsonify, redirect, abort
from linkearn.database import SHORT_CODE_ALPHABET, SHORT_CODE_LENGTH
from linkearn.modules.helpers import display_money
from linkearn.server.security import get_client_ip
from linkearn.server.services import get_services

bp = Blueprint('redirect', __name__)

_ALPHABET = set(SHORT_CODE_ALPHABET)

def is_short_code(value: str) -> bool:
    return len(value) == SHORT_CODE_LENGTH and set(value) <= _ALPHABET

async def record_request_visit(short_code: str):
    if not is_short_code(short_code):
        abort(404)

    services = get_services()
    link = await services.links.get_by_short_code(short_code)

    client_ip = get_client_ip(request)
    user_agent = request.headers.get('User-Agent', '')

    # Cloudflare already geo-locates the visitor; only fall back to the lookup API without it
    country_code = request.headers.get('CF-IPCountry', '').strip().upper()
    if not country_code or country_code in ('XX', 'T1'):
        country_code, _ = await services.geo_lookup(client_ip)

    return await services.ledger.record_visit_from_ip(link.id, client_ip, country_code, user_agent)

@bp.route('/<short_code>')
async def visit(short_code: str):
    result = await record_request_visit(short_code)
    return jsonify({
        'status': 'success',
        'redirect_url': result.redirect_url,
        'earned': str(display_money(result.earnings.earned)),
    })

@bp.route('/go/<short_code>')
async def go(short_code: str):
    result = await record_request_visit(short_code)
    return redirect(result.redirect_url, 302)
