import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

from flask import Flask, current_app, jsonify, session
from supabase import create_client

from extensions import db
from finds import create_finds_blueprint
from finds.errors import FindLedgerError, TransientFailure
from models import Profile
from trails import create_trails_blueprint, ensure_content_cache
from trails.service import TrailNotFound


# ====== Environment helpers ======
def _env_flag(name: str, default: bool) -> bool:
    """Parse truthy feature-toggle values from the environment."""
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        print(f"⚠️ Invalid {name} value: {value!r}. Using default {default}.")
        return default


def _database_url_from_env() -> Optional[str]:
    url = (os.environ.get("DATABASE_URL") or "").strip()
    if not url:
        return None
    # Heroku/Supabase style URLs still use the legacy scheme SQLAlchemy rejects.
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


# ====== Supabase setup ======
def _init_supabase_client(app: Flask):
    if not app.config.get("USE_SUPABASE"):
        return None
    url = app.config.get("SUPABASE_URL")
    key = app.config.get("SUPABASE_KEY")
    if not (url and key):
        app.logger.warning("USE_SUPABASE is on but SUPABASE_URL/SUPABASE_KEY are missing; using SQL storage.")
        return None
    try:
        return create_client(url, key)
    except Exception as exc:
        app.logger.warning("Could not init Supabase client: %s", exc)
        return None


# ====== Identity ======
def get_current_user() -> Optional[dict]:
    """Return the signed-in profile for the session, or None.

    The identity layer owns sign-in and stores the authenticated profile id in
    ``session["user_id"]``; this app trusts that value.
    """
    user_id = session.get("user_id")
    if not user_id:
        return None
    profile = db.session.get(Profile, str(user_id))
    if profile:
        return profile.to_public_dict()
    if current_app.config.get("SUPABASE_CLIENT"):
        # Profiles live in Supabase; the ledger validates the id on write.
        return {"id": str(user_id)}
    return None


# ====== Flask setup ======
def create_app(test_config: Optional[dict[str, Any]] = None) -> Flask:
    app = Flask(__name__)
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SECRET_KEY") or os.urandom(24),
        USE_SUPABASE=_env_flag("USE_SUPABASE", False),
        SUPABASE_URL=os.environ.get("SUPABASE_URL"),
        SUPABASE_KEY=os.environ.get("SUPABASE_KEY"),
        FIND_LEDGER_TIMEOUT_SECONDS=_env_float("FIND_LEDGER_TIMEOUT_SECONDS", 5.0),
        CONTENT_CACHE_MAX_AGE_SECONDS=int(_env_float("CONTENT_CACHE_MAX_AGE_SECONDS", 90)),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
    )
    database_url = _database_url_from_env()
    if database_url:
        app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    if test_config:
        app.config.update(test_config)

    if not app.config.get("SQLALCHEMY_DATABASE_URI"):
        data_dir = Path(app.root_path) / "data"
        data_dir.mkdir(parents=True, exist_ok=True)
        app.config["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{data_dir / 'app.db'}"

    app.permanent_session_lifetime = timedelta(days=365)
    app.logger.setLevel((os.environ.get("LOG_LEVEL") or "INFO").upper())

    if "SUPABASE_CLIENT" not in app.config:
        app.config["SUPABASE_CLIENT"] = _init_supabase_client(app)

    db.init_app(app)

    app.register_blueprint(create_finds_blueprint(get_current_user))
    app.register_blueprint(create_trails_blueprint(get_current_user))
    _register_error_handlers(app)

    @app.get("/healthz")
    def healthz():
        backend = "supabase" if app.config.get("USE_SUPABASE") and app.config.get("SUPABASE_CLIENT") else "sql"
        return jsonify({"status": "ok", "storage": backend})

    with app.app_context():
        import finds.models  # noqa: F401  (register the finds table before create_all)

        db.create_all()
        try:
            ensure_content_cache(force=True)
        except Exception as exc:
            app.logger.warning("Initial content sync skipped: %s", exc)

    return app


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(FindLedgerError)
    def handle_find_ledger_error(exc: FindLedgerError):
        response = jsonify(exc.payload)
        response.status_code = exc.status_code
        if isinstance(exc, TransientFailure):
            response.headers["Retry-After"] = str(exc.retry_after_seconds)
        return response

    @app.errorhandler(TrailNotFound)
    def handle_trail_not_found(exc: TrailNotFound):
        return jsonify(exc.payload), exc.status_code

    @app.errorhandler(404)
    @app.errorhandler(405)
    @app.errorhandler(500)
    def show_json_error(err):
        status_code = getattr(err, "code", 500) or 500
        name = getattr(err, "name", "Internal Server Error")
        return jsonify({"error": name.lower().replace(" ", "_")}), status_code


# ====== Entrypoint ======
if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=int(os.environ.get("PORT", 8080)), debug=True)
