from dotenv import load_dotenv
load_dotenv()

import logging
import os
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

# ---------------- Worker configuration ----------------
# Every tunable the pipeline reads lives here. Values come from the
# environment (or .env) once at startup and are validated before any job work.


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_bool(name: str, default: bool = False) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    database_url: str = "sqlite:///./estimator.db"

    # model provider
    model_provider: str = "anthropic"
    anthropic_api_key: Optional[str] = None
    claude_model: str = "claude-sonnet-4-5-20250929"
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-5-mini"
    model_response_max_tokens: int = 8192
    model_timeout_seconds: float = 120.0

    # documents
    fetch_timeout_seconds: float = 30.0
    max_prompt_chars: int = 35000
    max_document_bytes: int = 25 * 1024 * 1024
    ocr_fallback: bool = False

    # claiming
    stale_minutes: int = 20

    # pricing policy
    default_tax_rate: Decimal = Decimal("0")
    tax_rule_key: str = "tax_rate"
    trip_fee_code: str = "TRIP_FEE"
    catalog_shortlist_limit: int = 600
    email_template_key: str = "estimate_email"

    # delivery
    company_name: str = "BINSR Pros"
    internal_copy_email: str = "BINSR@dignhomes.com"
    email_from: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None

    log_level: str = "INFO"

    @field_validator("model_provider")
    @classmethod
    def _known_provider(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in ("anthropic", "openai"):
            raise ValueError(f"model_provider must be 'anthropic' or 'openai', got {v!r}")
        return v

    @field_validator(
        "model_timeout_seconds",
        "fetch_timeout_seconds",
        "max_prompt_chars",
        "max_document_bytes",
        "stale_minutes",
        "catalog_shortlist_limit",
        "model_response_max_tokens",
    )
    @classmethod
    def _positive(cls, v):
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("default_tax_rate")
    @classmethod
    def _tax_fraction(cls, v: Decimal) -> Decimal:
        if v < 0 or v >= 1:
            raise ValueError("default_tax_rate must be a fraction in [0, 1)")
        return v

    @field_validator("log_level")
    @classmethod
    def _log_level(cls, v: str) -> str:
        v = (v or "INFO").upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {v!r}")
        return v

    @classmethod
    def from_env(cls) -> "Settings":
        raw = {
            "database_url": _env("DATABASE_URL"),
            "model_provider": _env("MODEL_PROVIDER"),
            "anthropic_api_key": _env("ANTHROPIC_API_KEY"),
            "claude_model": _env("CLAUDE_MODEL"),
            "openai_api_key": _env("OPENAI_API_KEY"),
            "openai_model": _env("OPENAI_MODEL"),
            "model_response_max_tokens": _env("MODEL_RESPONSE_MAX_TOKENS"),
            "model_timeout_seconds": _env("MODEL_TIMEOUT_SECONDS"),
            "fetch_timeout_seconds": _env("FETCH_TIMEOUT_SECONDS"),
            "max_prompt_chars": _env("MAX_PROMPT_CHARS"),
            "max_document_bytes": _env("MAX_DOCUMENT_BYTES"),
            "stale_minutes": _env("STALE_MINUTES"),
            "default_tax_rate": _env("DEFAULT_TAX_RATE"),
            "tax_rule_key": _env("TAX_RULE_KEY"),
            "trip_fee_code": _env("TRIP_FEE_CODE"),
            "catalog_shortlist_limit": _env("CATALOG_SHORTLIST_LIMIT"),
            "email_template_key": _env("EMAIL_TEMPLATE_KEY"),
            "company_name": _env("COMPANY_NAME"),
            "internal_copy_email": _env("INTERNAL_COPY_EMAIL"),
            "email_from": _env("EMAIL_FROM"),
            "smtp_host": _env("SMTP_HOST"),
            "smtp_port": _env("SMTP_PORT"),
            "smtp_user": _env("SMTP_USER"),
            "smtp_password": _env("SMTP_PASSWORD"),
            "log_level": _env("LOG_LEVEL"),
        }
        values = {k: v for k, v in raw.items() if v is not None}
        values["ocr_fallback"] = _env_bool("OCR_FALLBACK")
        return cls(**values)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


def configure_logging(level: Optional[str] = None) -> None:
    resolved = (level or get_settings().log_level).upper()
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for noisy in ("httpx", "httpcore", "anthropic", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
