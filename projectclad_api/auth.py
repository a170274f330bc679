from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header
from sqlalchemy import select
from sqlalchemy.orm import Session

from projectclad_api.db import project, project_member
from projectclad_api.errors import forbidden, not_found, unauthorized

OWNER = "owner"
EDIT = "edit"
VIEW = "view"
NONE = "none"


@dataclass(frozen=True)
class Customer:
    shop: str
    customer_id: str


def get_customer(
    x_shop_domain: str | None = Header(default=None),
    x_customer_id: str | None = Header(default=None),
) -> Customer:
    # The storefront proxy has already verified the signature by the time a
    # request reaches us; it forwards the identity in these headers.
    if not x_shop_domain or not x_customer_id:
        raise unauthorized()
    return Customer(shop=x_shop_domain.strip(), customer_id=x_customer_id.strip())


def load_project(session: Session, shop: str, project_id: str):
    row = session.execute(
        select(project).where(project.c.id == project_id, project.c.shop == shop)
    ).one_or_none()
    if row is None:
        raise not_found("Project")
    return row


def member_rows(session: Session, project_id: str):
    return session.execute(
        select(project_member)
        .where(project_member.c.project_id == project_id)
        .order_by(project_member.c.customer_id.asc())
    ).all()


def effective_role(session: Session, project_row, customer_id: str) -> str:
    if customer_id == project_row.owner_customer_id:
        return OWNER
    role = session.execute(
        select(project_member.c.role).where(
            project_member.c.project_id == project_row.id,
            project_member.c.customer_id == customer_id,
        )
    ).scalar_one_or_none()
    return role or NONE


def effective_member_ids(session: Session, project_row) -> list[str]:
    ids = [project_row.owner_customer_id]
    ids.extend(
        r.customer_id
        for r in member_rows(session, project_row.id)
        if r.customer_id != project_row.owner_customer_id
    )
    return ids


def can_edit(role: str) -> bool:
    return role in {OWNER, EDIT}


def require_member(session: Session, customer: Customer, project_id: str):
    row = load_project(session, customer.shop, project_id)
    role = effective_role(session, row, customer.customer_id)
    if role == NONE:
        raise forbidden("You are not a member of this project")
    return row, role


def require_edit(session: Session, customer: Customer, project_id: str):
    row, role = require_member(session, customer, project_id)
    if not can_edit(role):
        raise forbidden()
    return row, role


def require_owner(session: Session, customer: Customer, project_id: str):
    row, role = require_member(session, customer, project_id)
    if role != OWNER:
        raise forbidden("Only the project owner can do this")
    return row
