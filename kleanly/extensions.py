# kleanly/extensions.py
from __future__ import annotations

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

# --- SQLAlchemy -------------------------------------------------------------
db = SQLAlchemy()

# --- Flask-Migrate ----------------------------------------------------------
migrate = Migrate()

# --- Rate limiting ----------------------------------------------------------
# Storage and default limits come from RATELIMIT_* config keys at init_app().
limiter = Limiter(key_func=get_remote_address)

__all__ = ["db", "migrate", "limiter"]
