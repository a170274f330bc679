from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from projectclad_api.db import (
    approval_request,
    delete_item_rows,
    delete_job_rows,
    is_job_locked,
    job,
    job_item,
    new_id,
    now_ms,
)
from projectclad_api.errors import locked, not_found, required, validation_error
from projectclad_api.ordering import next_job_sort_order, next_item_sort_order
from projectclad_api.schemas import OrderEditRequest


@dataclass(frozen=True)
class CartLine:
    variant_id: str
    quantity: int
    price_snapshot: Decimal


def _job_names(session: Session, project_id: str) -> set[str]:
    # Folded in Python; sqlite lower() only folds ASCII.
    return {
        n.casefold()
        for n in session.execute(select(job.c.name).where(job.c.project_id == project_id)).scalars()
    }


def ensure_unique_job_name(session: Session, project_id: str, name: str) -> None:
    if name.strip().casefold() in _job_names(session, project_id):
        raise validation_error(
            "duplicate_job_name", "This order already exists.", {"field": "jobName"}
        )


def _copy_name(session: Session, project_id: str, name: str) -> str:
    existing = _job_names(session, project_id)
    candidate = f"{name} (Copy)"
    n = 2
    while candidate.casefold() in existing:
        candidate = f"{name} (Copy {n})"
        n += 1
    return candidate


def insert_items(session: Session, job_id: str, lines: Iterable[CartLine], start: int = 1) -> None:
    rows = [
        {
            "id": new_id(),
            "job_id": job_id,
            "variant_id": line.variant_id,
            "quantity": line.quantity,
            "price_snapshot": line.price_snapshot,
            "sort_order": position,
        }
        for position, line in enumerate(lines, start=start)
    ]
    if rows:
        session.execute(job_item.insert(), rows)


def create_job(
    session: Session, project_id: str, name: str, lines: Iterable[CartLine] = ()
) -> str:
    name = name.strip()
    if not name:
        raise required("job_name", "Order name is required.")
    ensure_unique_job_name(session, project_id, name)
    job_id = new_id()
    session.execute(
        job.insert().values(
            id=job_id,
            project_id=project_id,
            name=name,
            created_at=now_ms(),
            is_locked=False,
            sort_order=next_job_sort_order(session, project_id),
        )
    )
    insert_items(session, job_id, lines)
    return job_id


def load_job(session: Session, project_id: str, job_id: str):
    row = session.execute(
        select(job).where(job.c.id == job_id, job.c.project_id == project_id)
    ).one_or_none()
    if row is None:
        raise not_found("Order")
    return row


def load_item(session: Session, project_id: str, item_id: str):
    row = session.execute(
        select(job_item, job.c.project_id)
        .join(job, job.c.id == job_item.c.job_id)
        .where(job_item.c.id == item_id, job.c.project_id == project_id)
    ).one_or_none()
    if row is None:
        raise not_found("Item")
    return row


def require_unlocked(session: Session, job_row) -> None:
    if is_job_locked(session, job_row):
        raise locked()


def duplicate_job(session: Session, source, target_project_id: str) -> str:
    job_id = new_id()
    session.execute(
        job.insert().values(
            id=job_id,
            project_id=target_project_id,
            name=_copy_name(session, target_project_id, source.name),
            created_at=now_ms(),
            is_locked=False,
            sort_order=next_job_sort_order(session, target_project_id),
        )
    )
    items = session.execute(
        select(job_item).where(job_item.c.job_id == source.id).order_by(job_item.c.sort_order)
    ).all()
    if items:
        session.execute(
            job_item.insert(),
            [
                {
                    "id": new_id(),
                    "job_id": job_id,
                    "variant_id": i.variant_id,
                    "quantity": i.quantity,
                    "price_snapshot": i.price_snapshot,
                    "sort_order": i.sort_order,
                }
                for i in items
            ],
        )
    return job_id


def invalidate_approvals(session: Session, project_id: str, job_id: str | None = None) -> int:
    """Drop the project-wide request, and the job-wide one for ``job_id``.

    A request describes the contents it was raised against, so any structural
    change to those contents voids it whatever its state.
    """
    scopes = [approval_request.c.job_id.is_(None)]
    if job_id:
        scopes.append(
            (approval_request.c.job_id == job_id) & approval_request.c.item_id.is_(None)
        )
    result = session.execute(
        approval_request.delete().where(
            approval_request.c.project_id == project_id, or_(*scopes)
        )
    )
    return result.rowcount or 0


def replace_items(session: Session, job_id: str, lines: list[CartLine]) -> None:
    existing = list(session.execute(select(job_item.c.id).where(job_item.c.job_id == job_id)).scalars())
    delete_item_rows(session, existing)
    insert_items(session, job_id, lines)


def merge_items(session: Session, job_id: str, lines: list[CartLine]) -> None:
    next_sort = next_item_sort_order(session, job_id)
    for line in lines:
        existing = session.execute(
            select(job_item.c.id, job_item.c.quantity).where(
                job_item.c.job_id == job_id, job_item.c.variant_id == line.variant_id
            )
        ).one_or_none()
        if existing is not None:
            session.execute(
                job_item.update()
                .where(job_item.c.id == existing.id)
                .values(
                    quantity=existing.quantity + line.quantity,
                    price_snapshot=line.price_snapshot,
                )
            )
            continue
        insert_items(session, job_id, [line], start=next_sort)
        next_sort += 1


def delete_job(session: Session, project_id: str, job_id: str) -> None:
    row = load_job(session, project_id, job_id)
    require_unlocked(session, row)
    delete_job_rows(session, job_id)
    invalidate_approvals(session, project_id)


def delete_item(session: Session, project_id: str, item_id: str) -> str:
    item_row = load_item(session, project_id, item_id)
    parent = load_job(session, project_id, item_row.job_id)
    require_unlocked(session, parent)
    delete_item_rows(session, [item_id])
    invalidate_approvals(session, project_id, parent.id)
    return parent.id


def move_job(session: Session, source_project_id: str, job_id: str, target_project_id: str) -> None:
    row = load_job(session, source_project_id, job_id)
    if target_project_id == source_project_id:
        return
    session.execute(
        approval_request.delete().where(
            approval_request.c.project_id == source_project_id,
            approval_request.c.job_id == job_id,
        )
    )
    session.execute(
        job.update()
        .where(job.c.id == row.id)
        .values(
            project_id=target_project_id,
            sort_order=next_job_sort_order(session, target_project_id),
        )
    )
    invalidate_approvals(session, source_project_id)
    invalidate_approvals(session, target_project_id)


def copy_job(session: Session, source_project_id: str, job_id: str, target_project_id: str) -> str:
    row = load_job(session, source_project_id, job_id)
    return duplicate_job(session, row, target_project_id)


def save_order_edit(session: Session, project_id: str, job_id: str, body: OrderEditRequest) -> dict:
    row = load_job(session, project_id, job_id)
    require_unlocked(session, row)

    if body.delete_job:
        delete_job_rows(session, job_id)
        invalidate_approvals(session, project_id)
        return {"deleted": True, "updated": 0, "removed": 0}

    updates = {u.item_id: u.quantity for u in body.updates}
    removals = set(body.remove_item_ids)
    if len(updates) != len(body.updates):
        raise validation_error(
            "duplicate_item_update", "An item may only be updated once.", {"field": "updates"}
        )
    if updates.keys() & removals:
        raise validation_error(
            "conflicting_item_edit",
            "An item cannot be both updated and removed.",
            {"field": "removeItemIds"},
        )
    owned = set(session.execute(select(job_item.c.id).where(job_item.c.job_id == job_id)).scalars())
    if (updates.keys() | removals) - owned:
        raise not_found("Item")

    for item_id, quantity in updates.items():
        session.execute(job_item.update().where(job_item.c.id == item_id).values(quantity=quantity))
    delete_item_rows(session, sorted(removals))
    if updates or removals:
        invalidate_approvals(session, project_id, job_id)
    return {"deleted": False, "updated": len(updates), "removed": len(removals)}
