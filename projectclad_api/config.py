from __future__ import annotations

import os
from dataclasses import dataclass


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class Settings:
    api_prefix: str = "/apps/project-clad/api"
    db_url: str = os.getenv("PROJECTCLAD_DB_URL", "sqlite:///data/projectclad.db")
    proxy_path: str = os.getenv("PROJECTCLAD_PROXY_PATH", "/apps/project-clad")
    login_path: str = os.getenv("PROJECTCLAD_LOGIN_PATH", "/account/login")
    smtp_host: str = os.getenv("PROJECTCLAD_SMTP_HOST", "")
    smtp_port: int = int(os.getenv("PROJECTCLAD_SMTP_PORT", 587))
    smtp_user: str = os.getenv("PROJECTCLAD_SMTP_USER", "")
    smtp_password: str = os.getenv("PROJECTCLAD_SMTP_PASSWORD", "")
    smtp_from: str = os.getenv(
        "PROJECTCLAD_SMTP_FROM", os.getenv("PROJECTCLAD_SMTP_USER", "") or "noreply@localhost"
    )
    smtp_secure: bool = _flag("PROJECTCLAD_SMTP_SECURE")
    shopify_admin_token: str = os.getenv("PROJECTCLAD_SHOPIFY_ADMIN_TOKEN", "")
    shopify_api_version: str = os.getenv("PROJECTCLAD_SHOPIFY_API_VERSION", "2024-10")
    lookup_timeout_s: float = float(os.getenv("PROJECTCLAD_LOOKUP_TIMEOUT_S", 10))
    pricing_cookie_max_age_s: int = int(os.getenv("PROJECTCLAD_PRICING_COOKIE_MAX_AGE_S", 60 * 60))


settings = Settings()
