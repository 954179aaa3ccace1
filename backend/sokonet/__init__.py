# backend/sokonet/__init__.py
from flask import Flask

from .config import Config
from .extensions import db, migrate
from .logging_config import configure_logging


def create_app(test_config=None) -> Flask:
    """
    Application factory.

    test_config (mapping) overrides Config before any extension is
    initialised, so tests can point SQLAlchemy at their own database and
    swap the payment gateway.
    """
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.from_mapping(test_config)

    configure_logging(app)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    from .services.gateway_client import PesapalClient
    gateway = app.config.get("PAYMENT_GATEWAY")
    if gateway is None:
        PesapalClient().init_app(app)
    else:
        app.extensions["payment_gateway"] = gateway

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.orders import orders_bp
    from .routes.payments import payments_bp
    from .routes.qr import qr_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(qr_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
