import os

# (config key, default) pairs read verbatim from the environment.
_STRING_SETTINGS = (
    ("SECRET_KEY", "change-me"),
    ("ENV", "development"),
    ("DATABASE_URL", "sqlite:///portcall.db"),
    ("STORAGE_BACKEND", "local"),
    ("STORAGE_ROOT", ""),
    ("PUBLIC_BASE_URL", ""),
    ("S3_ENDPOINT", ""),
    ("S3_REGION", "nyc3"),
    ("S3_BUCKET", ""),
    ("S3_ACCESS_KEY_ID", ""),
    ("S3_SECRET_ACCESS_KEY", ""),
    ("S3_PUBLIC_BASE_URL", ""),
)


def env_str(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def env_number(name: str, default: float) -> float:
    raw = env_str(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable {name} should be a number, got {raw!r}.") from None


def load_config() -> dict:
    """Flask config mapping built from environment variables (and .env via python-dotenv)."""
    cfg = {key: env_str(key, default) for key, default in _STRING_SETTINGS}
    cfg["FILE_FETCH_TIMEOUT_SECONDS"] = env_number("FILE_FETCH_TIMEOUT_SECONDS", 30.0)
    cfg["ARCHIVE_FETCH_WORKERS"] = max(1, int(env_number("ARCHIVE_FETCH_WORKERS", 8)))

    cfg["SESSION_COOKIE_HTTPONLY"] = True
    cfg["SESSION_COOKIE_SAMESITE"] = "Lax"
    cfg["SESSION_COOKIE_SECURE"] = cfg["ENV"].lower() in ("prod", "production")
    # Single documents are capped at 500KB by the upload path; whole archives are not.
    cfg["MAX_CONTENT_LENGTH"] = 50 * 1024 * 1024
    return cfg
