from flask import Flask, jsonify
from flask_migrate import Migrate
from flask_login import LoginManager
from app.extensions import db
from app.config import Config
from app.errors import FulfillmentError
from app.middleware import setup_auth_middleware
from app.services.audit_service import configure_major_events_log
import logging

logger = logging.getLogger(__name__)

migrate = Migrate()
login_manager = LoginManager()


def configure_logging(app):
    handlers = [logging.StreamHandler()]
    if app.config.get('LOG_FILE'):
        handlers.append(logging.FileHandler(app.config['LOG_FILE']))
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )
    configure_major_events_log(app.config.get('MAJOR_EVENTS_LOG_FILE'))


def register_error_handlers(app):

    @app.errorhandler(FulfillmentError)
    def handle_fulfillment_error(err):
        if err.status_code >= 500:
            logger.error("%s: %s %s", err.code, err.message, err.details)
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(404)
    def handle_not_found(err):
        return jsonify({'error': 'Not found', 'code': 'NOT_FOUND'}), 404

    @app.errorhandler(413)
    def handle_too_large(err):
        return jsonify({
            'error': 'Upload too large',
            'code': 'VALIDATION_ERROR',
        }), 413


def create_app(config_class=Config, refund_handlers=None):
    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_logging(app)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    # Setup user loader
    from app.models import User

    @login_manager.user_loader
    def load_user(user_id):
        user = db.session.get(User, int(user_id))
        if user is None or not user.is_active:
            return None
        return user

    from app.services.fulfillment import init_services
    init_services(app, refund_handlers=refund_handlers)

    # Register blueprints
    from app.blueprints import after_sales, balances, orders, shipping

    # Blueprints use absolute routes.
    app.register_blueprint(orders.bp)
    app.register_blueprint(shipping.bp)
    app.register_blueprint(balances.bp)
    app.register_blueprint(after_sales.bp)

    register_error_handlers(app)

    # Setup authentication middleware (API-wide login protection)
    setup_auth_middleware(app)

    from app.cli import register_commands
    register_commands(app)

    # Note: Database tables are managed via Flask-Migrate
    # Use 'flask db upgrade' to create/update tables

    logger.info("Flask application initialized")
    return app
