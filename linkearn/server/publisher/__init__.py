from quart import Blueprint
from linkearn.server.publisher import links_routes, payout_routes, referral_routes, stats_routes

bp = Blueprint('publisher', __name__, url_prefix='/publisher')

bp.register_blueprint(links_routes.bp)
bp.register_blueprint(payout_routes.bp)
bp.register_blueprint(referral_routes.bp)
bp.register_blueprint(stats_routes.bp)
