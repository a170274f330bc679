from __future__ import annotations

from sqlalchemy.orm import Session

from projectclad_api.auth import Customer, require_edit
from projectclad_api.db import is_job_locked, new_id, now_ms, project
from projectclad_api.errors import required, validation_error
from projectclad_api.jobs import (
    CartLine,
    create_job,
    duplicate_job,
    invalidate_approvals,
    load_job,
    merge_items,
    replace_items,
)
from projectclad_api.observability import log_event
from projectclad_api.schemas import CartLineIn, SaveCartRequest


def normalize_lines(items: list[CartLineIn]) -> list[CartLine]:
    merged: dict[str, CartLine] = {}
    for item in items:
        variant_id = str(item.variant_id or "").strip()
        if not variant_id or item.quantity <= 0:
            continue
        previous = merged.get(variant_id)
        quantity = item.quantity + (previous.quantity if previous else 0)
        merged[variant_id] = CartLine(variant_id, quantity, item.price_snapshot)
    return list(merged.values())


def _overwrite_details(session: Session, project_id: str, po_number: str, company_name: str) -> None:
    session.execute(
        project.update()
        .where(project.c.id == project_id)
        .values(po_number=po_number, company_name=company_name, updated_at=now_ms())
    )


def save_cart(session: Session, customer: Customer, payload: SaveCartRequest) -> dict:
    lines = normalize_lines(payload.items)
    po_number = payload.po_number.strip()
    company_name = payload.company_name.strip()

    if not lines:
        raise validation_error("empty_cart", "Cart has no items.", {"field": "items"})
    if not po_number:
        raise required("po_number", "PO number is required.")
    if not company_name:
        raise required("company_name", "Company name is required.")

    if payload.mode == "newProject":
        out = _save_new_project(session, customer, payload, lines, po_number, company_name)
    elif payload.mode == "existingProject":
        out = _save_new_job(session, customer, payload, lines, po_number, company_name)
    else:
        out = _save_into_job(session, customer, payload, lines, po_number, company_name)

    log_event(
        "cart.save",
        shop=customer.shop,
        customer_id=customer.customer_id,
        mode=payload.mode,
        quantity_mode=payload.quantity_mode,
        lines=len(lines),
        **out,
    )
    return out


def _save_new_project(session, customer, payload, lines, po_number, company_name) -> dict:
    project_name = payload.project_name.strip()
    if not project_name:
        raise required("project_name", "Project name is required.")
    if not payload.job_name.strip():
        raise required("job_name", "Order name is required.")
    project_id = new_id()
    t = now_ms()
    session.execute(
        project.insert().values(
            id=project_id,
            shop=customer.shop,
            name=project_name,
            owner_customer_id=customer.customer_id,
            po_number=po_number,
            company_name=company_name,
            created_at=t,
            updated_at=t,
        )
    )
    job_id = create_job(session, project_id, payload.job_name, lines)
    return {"projectId": project_id, "jobId": job_id, "copied": False}


def _save_new_job(session, customer, payload, lines, po_number, company_name) -> dict:
    if not payload.project_id:
        raise required("project_id", "Select a project.")
    if not payload.job_name.strip():
        raise required("job_name", "Order name is required.")
    project_row, _ = require_edit(session, customer, payload.project_id)
    job_id = create_job(session, project_row.id, payload.job_name, lines)
    _overwrite_details(session, project_row.id, po_number, company_name)
    return {"projectId": project_row.id, "jobId": job_id, "copied": False}


def _save_into_job(session, customer, payload, lines, po_number, company_name) -> dict:
    if not payload.project_id:
        raise required("project_id", "Select a project.")
    if not payload.job_id:
        raise required("job_id", "Select an order.")
    project_row, _ = require_edit(session, customer, payload.project_id)
    job_row = load_job(session, project_row.id, payload.job_id)

    target_job_id = job_row.id
    copied = False
    if is_job_locked(session, job_row):
        target_job_id = duplicate_job(session, job_row, project_row.id)
        copied = True

    if payload.quantity_mode == "replace":
        replace_items(session, target_job_id, lines)
    else:
        merge_items(session, target_job_id, lines)

    invalidate_approvals(session, project_row.id, target_job_id)
    _overwrite_details(session, project_row.id, po_number, company_name)
    return {"projectId": project_row.id, "jobId": target_job_id, "copied": copied}
