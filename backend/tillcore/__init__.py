# backend/tillcore/__init__.py
from __future__ import annotations

from flask import Flask, request

from .config import Config
from .extensions import db


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    # Initialize extensions
    db.init_app(app)

    # Import models so metadata is complete before create_all()
    from . import models  # noqa: F401

    # Per-app services
    from .services.checkout_service import REGISTRY_EXTENSION_KEY, CheckoutRegistry
    from .services.init_service import SEQUENCER_EXTENSION_KEY, InitializationSequencer
    from .services.product_cache import CACHE_EXTENSION_KEY, ProductCache

    app.extensions[CACHE_EXTENSION_KEY] = ProductCache(
        ttl_seconds=app.config["PRODUCT_CACHE_TTL_SECONDS"],
        max_entries=app.config["PRODUCT_CACHE_MAX_ENTRIES"],
        page_size=app.config["PRODUCT_PAGE_SIZE"],
    )
    app.extensions[REGISTRY_EXTENSION_KEY] = CheckoutRegistry(app.config)
    app.extensions[SEQUENCER_EXTENSION_KEY] = InitializationSequencer(app)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.products import products_bp
    from .routes.transactions import transactions_bp
    from .routes.checkout import checkout_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(transactions_bp)
    app.register_blueprint(checkout_bp)

    from .routes.errors import register_error_handlers
    register_error_handlers(app)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:8081",
            "http://127.0.0.1:8081",
            "http://localhost:19006",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    if app.config.get("TILLCORE_AUTO_INIT"):
        app.extensions[SEQUENCER_EXTENSION_KEY].initialize()

    return app
