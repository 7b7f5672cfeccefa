"""
Punchcard Frequent-Buyer Loyalty Service
Flask application factory
"""
import os
from flask import Flask

from .extensions import db, migrate
from .config import get_config, validate_config
from .utils.cache import init_cache
from .utils.errors import handle_loyalty_error, error_response, ErrorCode
from .utils.exceptions import PunchcardError
from .utils.logging_config import setup_logging
from .utils.scheduler import init_scheduler, get_scheduler_status


def create_app(config_name: str = None) -> Flask:
    """
    Application factory for creating Flask app instances.

    Args:
        config_name: Configuration environment (development, production, testing)

    Returns:
        Configured Flask application
    """
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    # Setup logging before anything else
    setup_logging()
    validate_config(config_name)

    app = Flask(__name__)
    app.config.from_object(get_config(config_name))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Offer lookup cache (Redis with in-memory fallback)
    init_cache(app)

    # Register blueprints
    register_blueprints(app)

    # Register CLI commands
    from .commands import init_app as init_commands
    init_commands(app)

    # Background jobs: discount outbox drain, expirations
    init_scheduler(app)

    # Register error handlers
    register_error_handlers(app)

    @app.route('/health')
    def health_check():
        return {
            'status': 'healthy',
            'service': 'punchcard',
            'scheduler_running': get_scheduler_status()['running']
        }

    return app


def register_blueprints(app: Flask) -> None:
    """Register all API blueprints."""
    from .api.offers import offers_bp
    from .api.rewards import rewards_bp
    from .webhooks.square import square_webhooks_bp

    # Admin API
    app.register_blueprint(offers_bp, url_prefix='/api/loyalty')
    app.register_blueprint(rewards_bp, url_prefix='/api/loyalty')

    # POS webhooks
    app.register_blueprint(square_webhooks_bp, url_prefix='/webhooks')


def register_error_handlers(app: Flask) -> None:
    """Register error handlers."""

    @app.errorhandler(PunchcardError)
    def loyalty_error(error):
        return handle_loyalty_error(error)

    @app.errorhandler(400)
    def bad_request(error):
        return error_response(str(error), ErrorCode.INVALID_REQUEST, 400, log_error=False)

    @app.errorhandler(404)
    def not_found(error):
        return error_response(str(error), ErrorCode.NOT_FOUND, 404, log_error=False)

    @app.errorhandler(500)
    def internal_error(error):
        return error_response('Internal server error', ErrorCode.INTERNAL_ERROR, 500)
