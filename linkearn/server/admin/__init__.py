from quart import Blueprint
from . import cpm_rates_routes
from . import settings_routes
from . import referral_routes
from . import payouts_routes
from . import users_routes
from . import stats_routes
from . import forensics_routes

bp = Blueprint('admin', __name__, url_prefix='/admin')

bp.register_blueprint(cpm_rates_routes.bp)
bp.register_blueprint(settings_routes.bp)
bp.register_blueprint(referral_routes.bp)
bp.register_blueprint(payouts_routes.bp)
bp.register_blueprint(users_routes.bp)
bp.register_blueprint(stats_routes.bp)
bp.register_blueprint(forensics_routes.bp)
