from quart import Quart, jsonify, request
from uvicorn import Server as UvicornServer, Config
from logging import getLogger
from linkearn.config import Server, LOGGER_CONFIG_JSON
from linkearn.database import init_db, close_db
from linkearn.errors import LinkEarnError
from linkearn.server.services import EXTENSION_KEY, Services, build_services
from datetime import timedelta
from os import environ
from typing import Optional

from . import redirect_routes, auth, admin, publisher

logger = getLogger('uvicorn')

# Development fallback only; production must set SECRET_KEY
DEFAULT_SECRET_KEY = 'dev_secret_key_not_for_production_replace_me_123456'

def create_app(services: Optional[Services] = None, init_database: bool = True) -> Quart:
    app = Quart(__name__)

    app.config['SECRET_KEY'] = Server.SECRET_KEY or DEFAULT_SECRET_KEY
    app.config['SESSION_COOKIE_SECURE'] = environ.get('ENVIRONMENT', 'production') != 'development'
    app.config['SESSION_COOKIE_HTTPONLY'] = True
    app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
    app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(days=7)

    app.extensions[EXTENSION_KEY] = services or build_services()

    @app.after_request
    async def add_security_headers(response):
        """Add security headers to all responses"""
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'

        # Prevent caching of account data
        if request.path.startswith('/admin') or request.path.startswith('/publisher'):
            response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, private'
            response.headers['Pragma'] = 'no-cache'

        return response

    @app.before_serving
    async def before_serve():
        if init_database:
            await init_db()

        # Visits committed before a crash may still carry pending commission events
        drained = await app.extensions[EXTENSION_KEY].referrals.drain_pending_events()
        if drained:
            logger.info(f'Processed {drained} pending visit events left from a previous run')

        if not Server.SECRET_KEY:
            logger.warning('Using default SECRET_KEY - set SECRET_KEY for production!')

        logger.info('Web server is started!')
        logger.info(f'Server running on {Server.BIND_ADDRESS}:{Server.PORT}')

    @app.after_serving
    async def after_serve():
        if init_database:
            await close_db()
        logger.info('Web server is shutting down!')

    app.register_blueprint(auth.bp)
    app.register_blueprint(admin.bp)
    app.register_blueprint(publisher.bp)
    app.register_blueprint(redirect_routes.bp)

    @app.errorhandler(LinkEarnError)
    async def handle_domain_error(e):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(400)
    async def handle_invalid_request(e):
        return jsonify({'status': 'error', 'message': 'Invalid request.'}), 400

    @app.errorhandler(404)
    async def handle_not_found(e):
        return jsonify({'status': 'error', 'message': 'Not found.'}), 404

    @app.errorhandler(405)
    async def handle_invalid_method(e):
        return jsonify({'status': 'error', 'message': 'Invalid request method.'}), 405

    return app

instance = create_app()

server = UvicornServer (
    Config (
        app=instance,
        host=Server.BIND_ADDRESS,
        port=Server.PORT,
        log_config=LOGGER_CONFIG_JSON,
        timeout_keep_alive=300,
        timeout_graceful_shutdown=30
    )
)
