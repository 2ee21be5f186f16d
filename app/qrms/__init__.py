import logging
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, request, session

from app.qrms.config import ensure_production_ready, load_config
from app.qrms.db import init_db, teardown_db_session
from app.qrms.exceptions import IntegrityError, QRMSError
from app.qrms.routes import bp as routes_bp
from app.qrms.auth import load_current_user
from app.qrms.admin import bp as admin_bp
from app.qrms.collaborators import document_generator_from_config, signature_embedder_from_config
from app.qrms.modules.items.admin import bp as items_bp
from app.qrms.modules.change_requests.admin import bp as change_requests_bp
from app.qrms.modules.quality_approval.admin import bp as quality_approval_bp
from app.qrms.modules.notifications.admin import bp as notifications_bp
from app.qrms.modules.lineage.admin import bp as lineage_bp
from app.qrms.modules.data_files.admin import bp as data_files_bp


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    app.json.sort_keys = False

    level = logging.getLevelName(app.config.get("LOG_LEVEL") or "INFO")
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("app.qrms").setLevel(level)
    app.logger.setLevel(level)

    # CSRF protection (minimal)
    from app.qrms.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            if not validate_csrf(request):
                return {"error": "CSRF token missing or invalid.", "code": "ERR_CSRF"}, 400

    # Production guardrails (fail fast with clear logs)
    ensure_production_ready(
        env=app.config.get("ENV"),
        database_url=app.config.get("DATABASE_URL"),
        secret_key=app.config.get("SECRET_KEY"),
    )

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        import os

        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # External collaborators (document path assignment, signature stamping)
    app.extensions["qrms_document_generator"] = document_generator_from_config(app.config)
    app.extensions["qrms_signature_embedder"] = signature_embedder_from_config(app.config)

    app.register_blueprint(routes_bp)
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(items_bp)
    app.register_blueprint(change_requests_bp)
    app.register_blueprint(quality_approval_bp)
    app.register_blueprint(notifications_bp)
    app.register_blueprint(lineage_bp)
    app.register_blueprint(data_files_bp)

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(QRMSError)
    def _err_qrms(e: QRMSError):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        if isinstance(e, IntegrityError):
            app.logger.error("Integrity violation (request_id=%s): %s", rid, e.message)
        else:
            app.logger.info("%s (request_id=%s): %s", e.code, rid, e.message)
        return {"error": e.message, "code": e.code, "details": e.details}, e.http_status

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return {"error": "Not found.", "code": "ERR_NOT_FOUND", "details": {}}, 404

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return {"error": "Internal server error.", "code": "ERR_INTERNAL", "details": {"request_id": rid}}, 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
