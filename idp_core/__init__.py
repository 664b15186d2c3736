"""Identity provider core: token store adapter, exchange policies and the OAuth runtime."""
from __future__ import annotations

from datetime import timedelta

from flask import Flask

from .config import Settings, configure_logging
from .provider import Provider, get_provider, init_provider

__all__ = ['Settings', 'Provider', 'create_app', 'get_provider', 'init_provider']


def create_app(settings: Settings | None = None) -> Flask:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    app = Flask(__name__)
    app.secret_key = settings.secret_key
    app.permanent_session_lifetime = timedelta(seconds=settings.session_ttl)

    init_provider(app, settings)

    from .routes import admin_bp, interaction_bp, oauth_bp
    app.register_blueprint(oauth_bp)
    app.register_blueprint(interaction_bp)
    app.register_blueprint(admin_bp)
    return app
