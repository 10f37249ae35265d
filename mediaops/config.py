# ----------------------------------------------------------------
# Import configuration variables to be used throughout the project
# ----------------------------------------------------------------
import os
from dotenv import load_dotenv

# Load .env (allow container env to override file values)
load_dotenv(override=True)


def _rstrip_slash(s: str) -> str:
    return (s or "").rstrip("/")


def _get_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip().lower() in {"1", "true", "yes", "on", "y"}


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw.strip() else default
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw) if raw.strip() else default
    except ValueError:
        return default


class Settings:
    # ── Database ─────────────────────────────────────────────────────────────
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")

    # ── HDR processing provider ──────────────────────────────────────────────
    PROCESSING_API_URL: str = _rstrip_slash(os.getenv("PROCESSING_API_URL", ""))
    PROCESSING_API_KEY: str = os.getenv("PROCESSING_API_KEY", "")
    PROCESSING_CALLBACK_URL: str = os.getenv("PROCESSING_CALLBACK_URL", "")
    PROCESSING_INTEGRATION_TYPE: str = os.getenv("PROCESSING_INTEGRATION_TYPE", "hdr")
    PROCESSING_PRESET: str = os.getenv("PROCESSING_PRESET", "real_estate_standard")
    PROCESSING_HTTP_TIMEOUT: float = _get_float("PROCESSING_HTTP_TIMEOUT", 20.0)

    # Callback HMAC secret; when empty, callbacks are accepted unsigned
    PROCESSING_WEBHOOK_SECRET: str = os.getenv("PROCESSING_WEBHOOK_SECRET", "")

    # Timeout ceiling = SLA × factor
    PROCESSING_SLA_MINUTES: float = _get_float("PROCESSING_SLA_MINUTES", 10.0)
    PROCESSING_TIMEOUT_FACTOR: float = _get_float("PROCESSING_TIMEOUT_FACTOR", 3.0)

    # Raw callback archival (best-effort)
    ARCHIVE_CALLBACKS: bool = _get_bool("ARCHIVE_CALLBACKS", False)
    CALLBACK_ARCHIVE_DIR: str = os.getenv("CALLBACK_ARCHIVE_DIR", "/code/data/inbox/processing_raw")

    # ── Editing / QC ─────────────────────────────────────────────────────────
    EDITOR_WORKLOAD_CAP: int = _get_int("EDITOR_WORKLOAD_CAP", 5)
    QC_MAX_REVISIONS: int = _get_int("QC_MAX_REVISIONS", 3)

    # ── Lifecycle ────────────────────────────────────────────────────────────
    # Optional JSON file replacing the bundled status transition table
    STATUS_TRANSITIONS_PATH: str = os.getenv("STATUS_TRANSITIONS_PATH", "")

    # ── Notifications ────────────────────────────────────────────────────────
    MESSAGING_API_URL: str = _rstrip_slash(os.getenv("MESSAGING_API_URL", ""))
    MESSAGING_API_KEY: str = os.getenv("MESSAGING_API_KEY", "")
    OPS_EMAIL: str = os.getenv("OPS_EMAIL", "")
    OPS_PHONE: str = os.getenv("OPS_PHONE", "")

    # ── Background sweeps ────────────────────────────────────────────────────
    SWEEP_INTERVAL_SECONDS: float = _get_float("SWEEP_INTERVAL_SECONDS", 60.0)
    RUN_BACKGROUND_WORKERS: bool = _get_bool("RUN_BACKGROUND_WORKERS", True)

    # ── Admin Panel ──────────────────────────────────────────────────────────
    ADMIN_USER: str = os.getenv("ADMIN_USER", "admin")
    ADMIN_PASS: str = os.getenv("ADMIN_PASS", "changeme")

    # ── CORS ─────────────────────────────────────────────────────────────────
    # Comma-separated list in .env, e.g. "https://example.com, https://foo.bar"
    CORS_ORIGINS: list[str] = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

    @property
    def processing_timeout_minutes(self) -> float:
        return self.PROCESSING_SLA_MINUTES * self.PROCESSING_TIMEOUT_FACTOR


settings = Settings()
