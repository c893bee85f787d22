import os


def _env(*names: str, default: str = "") -> str:
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return default


def _env_list(*names: str) -> list[str]:
    raw = _env(*names)
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


class Config:
    SUPABASE_URL = _env("SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL").rstrip("/")
    SUPABASE_ANON_KEY = _env("SUPABASE_ANON_KEY", "NEXT_PUBLIC_SUPABASE_ANON_KEY")
    SUPABASE_SERVICE_ROLE_KEY = _env(
        "SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_SERVICE_KEY"
    ).strip("\"'")
    SUPABASE_JWT_SECRET = _env("SUPABASE_JWT_SECRET")
    SUPABASE_JWT_AUDIENCE = _env("SUPABASE_JWT_AUDIENCE", default="authenticated")
    ADMIN_EMAILS = _env_list("ADMIN_EMAILS", "NEXT_PUBLIC_ADMIN_EMAILS")
    UPSTREAM_TIMEOUT = float(os.environ.get("UPSTREAM_TIMEOUT", "15"))
    IMPORT_CHUNK_SIZE = int(os.environ.get("IMPORT_CHUNK_SIZE", "200"))
    IMPORT_MIN_CHUNK_SIZE = int(os.environ.get("IMPORT_MIN_CHUNK_SIZE", "50"))
    IMPORT_WORKERS = int(os.environ.get("IMPORT_WORKERS", "15"))
    IMPORT_LOOKUP_BATCH = int(os.environ.get("IMPORT_LOOKUP_BATCH", "50"))
    LINK_CHECK_WORKERS = int(os.environ.get("LINK_CHECK_WORKERS", "8"))
    LINK_CHECK_TIMEOUT = float(os.environ.get("LINK_CHECK_TIMEOUT", "7"))
    ADMIN_LINK_CHECK_WORKERS = int(os.environ.get("ADMIN_LINK_CHECK_WORKERS", "10"))
    ADMIN_LINK_CHECK_TIMEOUT = float(os.environ.get("ADMIN_LINK_CHECK_TIMEOUT", "8"))
    SCHEDULER_ENABLED = os.environ.get("SCHEDULER_ENABLED", "1") == "1"
    LINK_SWEEP_INTERVAL_MINUTES = int(
        os.environ.get("LINK_SWEEP_INTERVAL_MINUTES", "1440")
    )
    MAX_CONTENT_LENGTH = int(os.environ.get("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


class TestConfig(Config):
    TESTING = True
    SUPABASE_URL = "https://supabase.test"
    SUPABASE_ANON_KEY = "anon-key"
    SUPABASE_SERVICE_ROLE_KEY = "service-role-key"
    SUPABASE_JWT_SECRET = "test-jwt-secret"
    SUPABASE_JWT_AUDIENCE = "authenticated"
    ADMIN_EMAILS = ["admin@example.com"]
    IMPORT_WORKERS = 4
    SCHEDULER_ENABLED = False
