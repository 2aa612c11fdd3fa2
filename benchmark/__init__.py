from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_cors import CORS
import os

db = SQLAlchemy()
migrate = Migrate()

def create_app(config_name: str | None = None, overrides: dict | None = None):
    from .config import config
    from .errors import register_error_handlers
    from .logging_config import configure_logging

    app = Flask(__name__)
    config_name = config_name or os.environ.get("APP_ENV", "development")
    app.config.from_object(config[config_name])
    app.config.update(overrides or {})
    configure_logging(app)

    CORS(app, origins=app.config["CORS_ORIGINS"])
    db.init_app(app)
    migrate.init_app(app, db)
    register_error_handlers(app)

    from . import models  # noqa: F401
    from .routes import bp as main_bp
    from .api import api as api_bp
    from .billing_api import billing as billing_bp
    app.register_blueprint(main_bp)
    app.register_blueprint(api_bp, url_prefix="/api/workflow")
    app.register_blueprint(billing_bp, url_prefix="/api")

    return app
