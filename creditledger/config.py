import os

class BaseConfig:
    # Secrets (env in prod; dev/test may use defaults)
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-not-secure")
    WTF_CSRF_SECRET_KEY = SECRET_KEY
    WTF_CSRF_TIME_LIMIT = None

    # Database (env in prod; dev/test may use default)
    try:
        from dotenv import dotenv_values
        _ENV_FALLBACK = dotenv_values(".env")
    except Exception:
        _ENV_FALLBACK = {}
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or _ENV_FALLBACK.get("DATABASE_URL") or "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging / misc
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Cookies: the host app owns the session, we only read it
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"

    # Flask-Limiter default: off globally; prefer per-route limits
    RATELIMIT_DEFAULT = None

    # --- Stripe (processor collaborator) ---
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    # Forward recorded usage to Stripe billing meters
    STRIPE_METER_EVENTS = (os.getenv("STRIPE_METER_EVENTS", "false").lower() == "true")

    # --- Plan catalog ---
    # JSON file: {"test": {"plans": [...]}, "production": {"plans": [...]}}
    BILLING_PLANS_FILE = os.getenv("BILLING_PLANS_FILE")
    BILLING_PLANS = None  # inline list of plan dicts; wins over the file when set
    BILLING_MODE = os.getenv("BILLING_MODE", "test")

    # --- Credit policies ---
    PLAN_CHANGE_POLICY = os.getenv("PLAN_CHANGE_POLICY", "reset")        # reset | add
    CANCELLATION_POLICY = os.getenv("CANCELLATION_POLICY", "retain")     # retain | reclaim
    DETECT_DUPLICATE_SUBSCRIPTIONS = (os.getenv("DETECT_DUPLICATE_SUBSCRIPTIONS", "true").lower() == "true")

    # --- Top-up retry throttling ---
    TOPUP_COOLDOWN_BASE_SECONDS = int(os.getenv("TOPUP_COOLDOWN_BASE_SECONDS", "3600"))
    TOPUP_COOLDOWN_MAX_SECONDS = int(os.getenv("TOPUP_COOLDOWN_MAX_SECONDS", str(7 * 24 * 3600)))
    TOPUP_MAX_SOFT_FAILURES = int(os.getenv("TOPUP_MAX_SOFT_FAILURES", "3"))

class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")
    SESSION_COOKIE_SECURE = False

class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")
    # REQUIRE env vars in production (fail fast if missing)
    SECRET_KEY = os.environ.get("SECRET_KEY")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL")
    SESSION_COOKIE_SECURE = True
    BILLING_MODE = os.getenv("BILLING_MODE", "production")

class TestingConfig(BaseConfig):
    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    SESSION_COOKIE_SECURE = False
    WTF_CSRF_ENABLED = False
    RATELIMIT_ENABLED = False
    DETECT_DUPLICATE_SUBSCRIPTIONS = False

_ENV_MAP = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}

def get_config():
    env = os.environ.get("APP_ENV", "development").lower()
    return _ENV_MAP.get(env, DevelopmentConfig)
