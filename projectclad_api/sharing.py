from __future__ import annotations

import secrets

from sqlalchemy import select
from sqlalchemy.orm import Session

from projectclad_api.auth import Customer, require_edit, require_owner
from projectclad_api.catalog import LookupUnavailable, MemberDirectory
from projectclad_api.config import settings
from projectclad_api.db import new_id, now_ms, project, project_member, project_share_token
from projectclad_api.errors import dependency_error, not_found, required, validation_error
from projectclad_api.observability import log_event

TOKEN_BYTES = 16


def share_path(token: str) -> str:
    return f"{settings.proxy_path}/share/{token}"


def share_project(session: Session, customer: Customer, project_id: str, role: str) -> dict:
    require_edit(session, customer, project_id)
    token = secrets.token_hex(TOKEN_BYTES)
    session.execute(
        project_share_token.insert().values(
            id=new_id(),
            project_id=project_id,
            token=token,
            role="edit" if role == "edit" else "view",
            created_at=now_ms(),
        )
    )
    log_event("project.share", project_id=project_id, customer_id=customer.customer_id, role=role)
    return {"shareLink": share_path(token), "token": token, "role": role}


def upsert_member(session: Session, project_id: str, customer_id: str, role: str) -> None:
    existing = session.execute(
        select(project_member.c.id).where(
            project_member.c.project_id == project_id,
            project_member.c.customer_id == customer_id,
        )
    ).scalar_one_or_none()
    if existing is None:
        session.execute(
            project_member.insert().values(
                id=new_id(), project_id=project_id, customer_id=customer_id, role=role
            )
        )
    else:
        session.execute(
            project_member.update().where(project_member.c.id == existing).values(role=role)
        )


def redeem(session: Session, customer: Customer, token: str) -> dict:
    row = session.execute(
        select(project_share_token.c.project_id, project_share_token.c.role, project.c.owner_customer_id)
        .join(project, project.c.id == project_share_token.c.project_id)
        .where(project_share_token.c.token == token, project.c.shop == customer.shop)
    ).one_or_none()
    if row is None:
        raise not_found("Share link")
    # The owner is always an implicit member; a row would shadow that.
    if customer.customer_id != row.owner_customer_id:
        upsert_member(session, row.project_id, customer.customer_id, row.role)
    log_event(
        "project.share.redeem",
        project_id=row.project_id,
        customer_id=customer.customer_id,
        role=row.role,
    )
    return {
        "projectId": row.project_id,
        "role": row.role,
        "redirect": f"{settings.proxy_path}/projects/{row.project_id}",
    }


def add_member(
    session: Session,
    customer: Customer,
    project_id: str,
    email: str,
    role: str,
    directory: MemberDirectory,
) -> dict:
    project_row = require_owner(session, customer, project_id)
    email = email.strip()
    if not email:
        raise required("email", "Email is required.")
    try:
        member_id = directory.find_customer_id_by_email(customer.shop, email)
    except LookupUnavailable as exc:
        raise dependency_error(str(exc) or "Customer lookup failed.") from exc
    if not member_id:
        raise not_found("Customer")
    if member_id == project_row.owner_customer_id:
        raise validation_error(
            "already_owner", "This customer already owns the project.", {"field": "email"}
        )
    upsert_member(session, project_id, member_id, role)
    log_event("project.member.add", project_id=project_id, member_id=member_id, role=role)
    return {"ok": True, "customerId": member_id, "role": role}


def remove_member(session: Session, customer: Customer, project_id: str, member_id: str) -> dict:
    project_row = require_owner(session, customer, project_id)
    if not member_id or member_id == project_row.owner_customer_id:
        raise validation_error("invalid_member", "Invalid member.", {"field": "memberCustomerId"})
    result = session.execute(
        project_member.delete().where(
            project_member.c.project_id == project_id,
            project_member.c.customer_id == member_id,
        )
    )
    log_event("project.member.remove", project_id=project_id, member_id=member_id)
    return {"ok": True, "removed": bool(result.rowcount)}
