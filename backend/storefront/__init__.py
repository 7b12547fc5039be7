# backend/storefront/__init__.py
import logging

from flask import Flask, request

from .config import Config
from .extensions import db, migrate
from .services.ledger_store import VALID_DISCOUNT_SCHEMAS


def create_app(overrides: dict | None = None, scheduler=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    if app.config["DISCOUNT_SCHEMA"] not in VALID_DISCOUNT_SCHEMAS:
        raise RuntimeError(
            f"DISCOUNT_SCHEMA must be one of {list(VALID_DISCOUNT_SCHEMAS)}, "
            f"got {app.config['DISCOUNT_SCHEMA']!r}"
        )

    app.logger.setLevel(getattr(logging, str(app.config["LOG_LEVEL"]).upper(), logging.INFO))
    logging.getLogger("storefront").setLevel(app.logger.level)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Long-lived checkout and notification services
    from .runtime import build_runtime
    runtime = build_runtime(app, scheduler=scheduler)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.checkout import checkout_bp
    from .routes.discounts import discounts_bp
    from .routes.notifications import notifications_bp
    from .routes.orders import orders_bp
    from .routes.payments import payments_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(checkout_bp)
    app.register_blueprint(discounts_bp)
    app.register_blueprint(notifications_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(payments_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:4173",
            "http://127.0.0.1:4173",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type, Idempotency-Key"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    if app.config["NOTIFICATIONS_AUTOSTART"]:
        with app.app_context():
            runtime.notifications.load()
        runtime.supervisor.start()

    return app
