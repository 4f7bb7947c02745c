import os


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "database")
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "plataforma_fiscal.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", False)
    SQLITE_BUSY_TIMEOUT_SECONDS = _int_env("SQLITE_BUSY_TIMEOUT_SECONDS", 30)

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-plataforma-fiscal")
    AUTH_ENABLED = _bool_env("AUTH_ENABLED", True)
    APP_USERS = os.environ.get("APP_USERS", "admin@demo.com:admin123:tenant-demo:Admin:admin")
    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    FISCAL_SEFAZ_MODE = os.environ.get("FISCAL_SEFAZ_MODE", "simulator")
    FISCAL_SEFAZ_TIMEOUT_SECONDS = _int_env("FISCAL_SEFAZ_TIMEOUT_SECONDS", 60)
    FISCAL_SEFAZ_VERIFY_SSL = _bool_env("FISCAL_SEFAZ_VERIFY_SSL", True)
    FISCAL_SEFAZ_CA_BUNDLE = os.environ.get("FISCAL_SEFAZ_CA_BUNDLE")
    FISCAL_SEFAZ_URL_OVERRIDES = os.environ.get("FISCAL_SEFAZ_URL_OVERRIDES")
    FISCAL_SEFAZ_SYNC_SUBMISSION = _bool_env("FISCAL_SEFAZ_SYNC_SUBMISSION", False)
    FISCAL_DEFAULT_ENVIRONMENT = os.environ.get("FISCAL_DEFAULT_ENVIRONMENT", "homologation")
    FISCAL_ARTIFACT_DIR = os.environ.get("FISCAL_ARTIFACT_DIR") or os.path.join(BASE_DIR, "database", "fiscal_artifacts")
    FISCAL_CERTIFICATES_DIR = os.environ.get("FISCAL_CERTIFICATES_DIR") or os.path.join(BASE_DIR, "database", "certificates")
    FISCAL_CERTIFICATE_PASSWORD = os.environ.get("FISCAL_CERTIFICATE_PASSWORD")
    FISCAL_CERTIFICATE_PASSWORDS = os.environ.get("FISCAL_CERTIFICATE_PASSWORDS")
    FISCAL_CERTIFICATE_CACHE_SECONDS = _int_env("FISCAL_CERTIFICATE_CACHE_SECONDS", 900)
    FISCAL_SIMULATOR_SEED = _int_env("FISCAL_SIMULATOR_SEED", 42)
    FISCAL_SIMULATOR_PROCESSING_POLLS = _int_env("FISCAL_SIMULATOR_PROCESSING_POLLS", 1)

    JOB_MAX_ATTEMPTS = _int_env("JOB_MAX_ATTEMPTS", 5)
    JOB_POLL_MAX_ATTEMPTS = _int_env("JOB_POLL_MAX_ATTEMPTS", 10)
    JOB_BACKOFF_BASE_MINUTES = _int_env("JOB_BACKOFF_BASE_MINUTES", 1)
    JOB_MAX_BACKOFF_SECONDS = _int_env("JOB_MAX_BACKOFF_SECONDS", 3600)
    JOB_BACKOFF_JITTER_RATIO = _float_env("JOB_BACKOFF_JITTER_RATIO", 0.0)
    JOB_WORKER_POLL_INTERVAL_SECONDS = _int_env("JOB_WORKER_POLL_INTERVAL_SECONDS", 5)
    JOB_WORKER_BATCH_SIZE = _int_env("JOB_WORKER_BATCH_SIZE", 10)
    JOB_STALE_LOCK_SECONDS = _int_env("JOB_STALE_LOCK_SECONDS", 900)
    JOB_QUEUE_CRITICAL_AGE_SECONDS = _int_env("JOB_QUEUE_CRITICAL_AGE_SECONDS", 900)
    JOB_QUEUE_CRITICAL_PENDING_JOBS = _int_env("JOB_QUEUE_CRITICAL_PENDING_JOBS", 50)

    SEFAZ_CIRCUIT_ENABLED = _bool_env("SEFAZ_CIRCUIT_ENABLED", True)
    SEFAZ_CIRCUIT_ERROR_RATE_THRESHOLD = _float_env("SEFAZ_CIRCUIT_ERROR_RATE_THRESHOLD", 0.6)
    SEFAZ_CIRCUIT_MIN_SAMPLES = _int_env("SEFAZ_CIRCUIT_MIN_SAMPLES", 5)
    SEFAZ_CIRCUIT_WINDOW_SECONDS = _int_env("SEFAZ_CIRCUIT_WINDOW_SECONDS", 120)
    SEFAZ_CIRCUIT_OPEN_SECONDS = _int_env("SEFAZ_CIRCUIT_OPEN_SECONDS", 60)
    SEFAZ_CIRCUIT_HALF_OPEN_MAX_CALLS = _int_env("SEFAZ_CIRCUIT_HALF_OPEN_MAX_CALLS", 1)

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL nao definida para ambiente de producao.")
        if env == "production" and self.SECRET_KEY == "dev-secret-plataforma-fiscal":
            raise RuntimeError("SECRET_KEY insegura para producao.")
        if env == "production" and str(self.FISCAL_SEFAZ_MODE).strip().lower() != "soap":
            raise RuntimeError("FISCAL_SEFAZ_MODE=soap obrigatorio em producao.")
