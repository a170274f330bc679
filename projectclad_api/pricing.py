from __future__ import annotations

import bcrypt
from sqlalchemy import select
from sqlalchemy.orm import Session

from projectclad_api.auth import Customer, require_member
from projectclad_api.db import shop_settings
from projectclad_api.errors import not_configured, validation_error

PRICING_COOKIE = "projectclad_pricing"
# bcrypt refuses anything longer.
MAX_PASSWORD_BYTES = 72


def hash_password(plain_password: str) -> str:
    encoded = plain_password.encode("utf-8")
    if not encoded:
        raise ValueError("Pricing password cannot be empty")
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Pricing password must be at most {MAX_PASSWORD_BYTES} bytes")
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=12)).decode("utf-8")


def verify_password(plain_password: str, password_hash: str) -> bool:
    encoded = plain_password.encode("utf-8")
    if not encoded or not password_hash or len(encoded) > MAX_PASSWORD_BYTES:
        return False
    return bcrypt.checkpw(encoded, password_hash.encode("utf-8"))


def has_pricing_access(cookie_value: str | None) -> bool:
    return cookie_value == "1"


def unlock_pricing(session: Session, customer: Customer, project_id: str, password: str) -> None:
    require_member(session, customer, project_id)
    stored = session.execute(
        select(shop_settings.c.pricing_password_hash).where(shop_settings.c.shop == customer.shop)
    ).scalar_one_or_none()
    if not stored:
        raise not_configured("pricing_not_configured", "Pricing is not configured.")
    if not verify_password(password.strip(), stored):
        raise validation_error("invalid_password", "Invalid password.", {"field": "password"})
