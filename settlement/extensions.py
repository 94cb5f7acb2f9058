import logging
from typing import Any, Callable

from flask_cors import CORS
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

log = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────
# Core singletons
# ─────────────────────────────────────────────────────────────
db = SQLAlchemy()
migrate = Migrate()
cors = CORS()


# ─────────────────────────────────────────────────────────────
# Safe DB helpers
# ─────────────────────────────────────────────────────────────
def safe_commit() -> bool:
    try:
        db.session.commit()
        return True
    except Exception as e:
        log.error("DB commit failed: %s", e, exc_info=True)
        db.session.rollback()
        return False


def secondary_write(label: str, fn: Callable[[], Any]) -> Any:
    """
    Run a non-critical write inside a SAVEPOINT.

    A failure rolls back only the savepoint, logs a warning and returns None,
    so the surrounding (primary) unit of work can still commit.
    """
    try:
        with db.session.begin_nested():
            return fn()
    except Exception as e:
        log.warning("%s failed (non-fatal): %s", label, e)
        return None


# ─────────────────────────────────────────────────────────────
# Init all extensions
# ─────────────────────────────────────────────────────────────
def init_all_extensions(app: Any, *, cors_origins: Any = "*") -> None:
    db.init_app(app)
    migrate.init_app(app, db, compare_type=True, render_as_batch=True)

    # Browser rule: cannot use credentials with wildcard origin
    cors.init_app(
        app,
        resources={r"/admin/*": {"origins": cors_origins}},
        supports_credentials=cors_origins != "*",
        expose_headers=["X-Request-ID"],
        allow_headers=["Content-Type", "Authorization", "X-Cron-Secret", "X-Request-ID"],
        methods=["GET", "POST", "OPTIONS"],
    )


__all__ = [
    "db",
    "migrate",
    "cors",
    "safe_commit",
    "secondary_write",
    "init_all_extensions",
]
