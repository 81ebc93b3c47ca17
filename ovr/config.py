"""
OVR Tracker
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'ovr_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Per-process key for development; tokens do not survive a restart
_DEV_SECRET = secrets.token_hex(32)


def _database_url(default=None):
    """DATABASE_URL with the legacy ``postgres://`` scheme SQLAlchemy 2 rejects rewritten."""
    raw = os.getenv("DATABASE_URL", "")
    if not raw:
        return default
    return raw.replace("postgres://", "postgresql://", 1)


def _parse_group_role_map(raw: str) -> dict[str, list[str]]:
    """Parse ``IDP_GROUP_ROLE_MAP`` ("group-a:quality_manager,group-b:supervisor")."""
    mapping: dict[str, list[str]] = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry or ":" not in entry:
            continue
        group, role = entry.rsplit(":", 1)
        mapping.setdefault(group.strip(), []).append(role.strip().lower())
    return mapping


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,   # recycle connections every 5 min
    }

    # Flask-Limiter storage; point at redis:// when running several workers
    RATELIMIT_STORAGE_URI = os.getenv("REDIS_URL", "memory://")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Access tokens issued by /api/v1/auth/token
    JWT_ACCESS_EXPIRES = int(os.getenv("JWT_ACCESS_EXPIRES", "3600"))

    # Identity provider token exchange
    IDP_SHARED_SECRET = os.getenv("IDP_SHARED_SECRET", "")
    IDP_AUDIENCE = os.getenv("IDP_AUDIENCE", "ovr-tracker")
    IDP_GROUP_ROLE_MAP = _parse_group_role_map(os.getenv("IDP_GROUP_ROLE_MAP", ""))

    # Shared access invitations
    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:3000")
    SHARED_ACCESS_TOKEN_DAYS = int(os.getenv("SHARED_ACCESS_TOKEN_DAYS", "30"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(_SQLITE_DEV)
    IDP_SHARED_SECRET = os.getenv("IDP_SHARED_SECRET", "dev-idp-secret")


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SECRET_KEY = "test-secret-key"
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    IDP_SHARED_SECRET = "test-idp-secret"
    IDP_GROUP_ROLE_MAP = {
        "grp-qi-managers": ["quality_manager"],
        "grp-qi-analysts": ["quality_analyst"],
        "grp-supervisors": ["supervisor"],
        "grp-admins": ["super_admin"],
    }
    APP_BASE_URL = "http://ovr.test"


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    REQUIRED_ENV = ("DATABASE_URL", "SECRET_KEY", "IDP_SHARED_SECRET")

    def __init__(self):
        missing = [name for name in self.REQUIRED_ENV if not os.getenv(name)]
        if missing:
            raise RuntimeError(f"Production requires environment variables: {', '.join(missing)}")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
