import sys
import logging
from flask import Flask
from dotenv import load_dotenv


def create_app(container=None):
    load_dotenv()
    app = Flask(__name__)

    # =========================================================
    # Logging: gunicorn's handlers plus stdout
    # =========================================================
    gunicorn_error = logging.getLogger("gunicorn.error")
    app.logger.handlers = gunicorn_error.handlers
    app.logger.setLevel(logging.INFO)

    sh = logging.StreamHandler(sys.stdout)
    sh.setLevel(logging.INFO)
    sh.setFormatter(logging.Formatter("[%(asctime)s][%(levelname)s] %(message)s", "%H:%M:%S"))
    app.logger.addHandler(sh)

    # =========================================================
    # Services
    # =========================================================
    if container is None:
        from .container import get_container
        container = get_container()
    app.extensions["feedsync"] = container

    # =========================================================
    # Errors
    # =========================================================
    from .errors import NotFoundError, StageTransitionError, ValidationError

    @app.errorhandler(ValidationError)
    def validation_error(e):
        return {"error": str(e)}, 400

    @app.errorhandler(ValueError)
    def value_error(e):
        return {"error": str(e)}, 400

    @app.errorhandler(NotFoundError)
    def not_found(e):
        return {"error": str(e)}, 404

    @app.errorhandler(StageTransitionError)
    def stage_conflict(e):
        return {"error": str(e)}, 409

    # =========================================================
    # Blueprints
    # =========================================================
    from .routes.sync import bp as sync_bp
    from .routes.sessions import bp as sessions_bp
    from .routes.queues import bp as queues_bp

    app.register_blueprint(sync_bp, url_prefix="/sync")
    app.register_blueprint(sessions_bp, url_prefix="/sessions")
    app.register_blueprint(queues_bp, url_prefix="/queues")

    # =========================================================
    # Health check
    # =========================================================
    @app.get("/health")
    def health():
        app.logger.info("Health check endpoint called")
        return {"ok": True}, 200

    return app
