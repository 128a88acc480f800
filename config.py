import os
import sys

# ====================================================================================
# ENVIRONMENT CONFIGURATION: PROD / STAGE / LOCAL isolation via prefixes
# ====================================================================================
# Every variable is read with the environment prefix:
#   - PROD: PROD_DATABASE_URL, PROD_REDIS_URL, PROD_ATTRIBUTION_SECRET
#   - STAGE: STAGE_DATABASE_URL, STAGE_REDIS_URL, ...
#   - LOCAL: LOCAL_DATABASE_URL, LOCAL_REDIS_URL, ...
#
# A stage deployment can never pick up PROD_DATABASE_URL by accident.
# ====================================================================================

APP_ENV = os.getenv("APP_ENV", "prod").lower()
if APP_ENV not in ("prod", "stage", "local"):
    print(f"ERROR: Invalid APP_ENV={APP_ENV}. Must be one of: prod, stage, local", file=sys.stderr)
    sys.exit(1)

IS_LOCAL = APP_ENV == "local"
IS_STAGE = APP_ENV == "stage"
IS_PROD = APP_ENV == "prod"


def env(key: str, default: str = "") -> str:
    """
    Read an environment variable with the environment prefix.

    Args:
        key: Variable name without prefix (e.g. "DATABASE_URL")
        default: Value returned when the variable is not set

    Returns:
        Value of "<ENV>_<key>" (e.g. "STAGE_DATABASE_URL" when APP_ENV=stage)
    """
    env_key = f"{APP_ENV.upper()}_{key}"
    return os.getenv(env_key, default)


def _int(key: str, default: int) -> int:
    raw = env(key, default=str(default))
    try:
        return int(raw)
    except ValueError:
        print(f"ERROR: {APP_ENV.upper()}_{key} must be an integer, got: {raw}", file=sys.stderr)
        sys.exit(1)


def _float(key: str, default: float) -> float:
    raw = env(key, default=str(default))
    try:
        return float(raw)
    except ValueError:
        print(f"ERROR: {APP_ENV.upper()}_{key} must be a number, got: {raw}", file=sys.stderr)
        sys.exit(1)


def _bool(key: str, default: bool) -> bool:
    return env(key, default="true" if default else "false").lower() in ("1", "true", "yes")


# Unprefixed secrets are rejected so PROD/STAGE configuration cannot be mixed up
_direct_usage_vars = ["DATABASE_URL", "REDIS_URL", "ATTRIBUTION_SECRET", "ADMIN_API_KEY"]
for var in _direct_usage_vars:
    if os.getenv(var):
        print(f"ERROR: Direct usage of {var} is FORBIDDEN!", file=sys.stderr)
        print(f"ERROR: Use {APP_ENV.upper()}_{var} instead (via env('{var}'))", file=sys.stderr)
        sys.exit(1)

print(f"INFO: Config loaded for environment: {APP_ENV.upper()}", flush=True)

# ====================================================================================
# SECRETS: validated at startup, never logged
# ====================================================================================

DATABASE_URL = env("DATABASE_URL")
REDIS_URL = env("REDIS_URL", default="")

# HMAC key for the referral attribution cookie
ATTRIBUTION_SECRET = env("ATTRIBUTION_SECRET")
if not ATTRIBUTION_SECRET:
    if IS_PROD:
        print(f"ERROR: {APP_ENV.upper()}_ATTRIBUTION_SECRET is REQUIRED in PROD!", file=sys.stderr)
        sys.exit(1)
    print(
        f"WARNING: {APP_ENV.upper()}_ATTRIBUTION_SECRET is not set - using an insecure development key",
        file=sys.stderr,
    )
    ATTRIBUTION_SECRET = "insecure-development-attribution-key"

if IS_PROD and not REDIS_URL:
    print(f"ERROR: {APP_ENV.upper()}_REDIS_URL is REQUIRED in PROD!", file=sys.stderr)
    sys.exit(1)

# Admin endpoints are disabled when no key is configured
ADMIN_API_KEY = env("ADMIN_API_KEY")

# ====================================================================================
# POSITIONS & REFERRALS
# ====================================================================================

# Regular positions start right after the floor
POSITION_FLOOR = _int("POSITION_FLOOR", 300)
# KOL lane covers positions 1..KOL_MAX_POSITION
KOL_MAX_POSITION = _int("KOL_MAX_POSITION", 75)

REFERRAL_CODE_PREFIX = env("REFERRAL_CODE_PREFIX", default="SIGN").upper()
REFERRAL_CODE_MAX_ATTEMPTS = _int("REFERRAL_CODE_MAX_ATTEMPTS", 10)

KOL_LIST_PATH = env(
    "KOL_LIST_PATH",
    default=os.path.join(os.path.dirname(os.path.abspath(__file__)), "data", "kols", "kol.reserve.json"),
)

# Follower gate for first sign-in
MIN_FOLLOWERS = _int("MIN_FOLLOWERS", 50)

# ====================================================================================
# SIGN-IN PROCESSING
# ====================================================================================

SIGNUP_TIMEOUT_SECONDS = _float("SIGNUP_TIMEOUT_SECONDS", 4.0)
WALLET_LOOKUP_TIMEOUT_SECONDS = _float("WALLET_LOOKUP_TIMEOUT_SECONDS", 2.0)

SESSION_COOKIE_NAME = env("SESSION_COOKIE_NAME", default="signature_session")
SESSION_TTL_SECONDS = _int("SESSION_TTL_SECONDS", 30 * 24 * 3600)

ATTRIBUTION_COOKIE_NAME = env("ATTRIBUTION_COOKIE_NAME", default="referral_context")
ATTRIBUTION_TTL_SECONDS = _int("ATTRIBUTION_TTL_SECONDS", 30 * 24 * 3600)

COOKIE_SECURE = _bool("COOKIE_SECURE", IS_PROD)
LANDING_URL = env("LANDING_URL", default="/")

# ====================================================================================
# REFERRAL CREATION QUEUE
# ====================================================================================

QUEUE_NAME = env("QUEUE_NAME", default="referral-creation")
QUEUE_PREFIX = env("QUEUE_PREFIX", default=f"queue:{APP_ENV}")
QUEUE_CONCURRENCY = _int("QUEUE_CONCURRENCY", 5)
QUEUE_RATE_LIMIT_MAX = _int("QUEUE_RATE_LIMIT_MAX", 10)
QUEUE_RATE_LIMIT_WINDOW_MS = _int("QUEUE_RATE_LIMIT_WINDOW_MS", 1000)
QUEUE_MAX_ATTEMPTS = _int("QUEUE_MAX_ATTEMPTS", 5)
QUEUE_BACKOFF_BASE_MS = _int("QUEUE_BACKOFF_BASE_MS", 2000)
QUEUE_JOB_TIMEOUT_SECONDS = _float("QUEUE_JOB_TIMEOUT_SECONDS", 30.0)
QUEUE_LOCK_SECONDS = _int("QUEUE_LOCK_SECONDS", 60)
QUEUE_POLL_INTERVAL_SECONDS = _float("QUEUE_POLL_INTERVAL_SECONDS", 0.5)
QUEUE_MAINTENANCE_INTERVAL_SECONDS = _int("QUEUE_MAINTENANCE_INTERVAL_SECONDS", 60)
QUEUE_COMPLETED_RETENTION_SECONDS = _int("QUEUE_COMPLETED_RETENTION_SECONDS", 3600)
QUEUE_COMPLETED_RETENTION_COUNT = _int("QUEUE_COMPLETED_RETENTION_COUNT", 1000)
QUEUE_FAILED_RETENTION_SECONDS = _int("QUEUE_FAILED_RETENTION_SECONDS", 86400)

# Average seconds a job occupies one consumer (status ETA)
STATUS_AVG_SERVICE_SECONDS = _float("STATUS_AVG_SERVICE_SECONDS", 2.0)

# Run queue consumers inside the API process
WORKER_ENABLED = _bool("WORKER_ENABLED", True)

# Shared by API requests, queue consumers and the rate limiter
REDIS_MAX_CONNECTIONS = _int("REDIS_MAX_CONNECTIONS", 50)

# ====================================================================================
# HTTP
# ====================================================================================

HTTP_HOST = env("HTTP_HOST", default="0.0.0.0")
HTTP_PORT = int(os.getenv("PORT") or env("HTTP_PORT") or "8080")
