from __future__ import annotations

from sqlalchemy import Table, func, select
from sqlalchemy.orm import Session

from projectclad_api.db import job, job_item
from projectclad_api.errors import invalid_order


def _next_sort_order(session: Session, table: Table, parent_col, parent_id: str) -> int:
    current = session.execute(
        select(func.max(table.c.sort_order)).where(parent_col == parent_id)
    ).scalar_one()
    return (current or 0) + 1


def next_job_sort_order(session: Session, project_id: str) -> int:
    return _next_sort_order(session, job, job.c.project_id, project_id)


def next_item_sort_order(session: Session, job_id: str) -> int:
    return _next_sort_order(session, job_item, job_item.c.job_id, job_id)


def ordered_jobs(project_id: str):
    return (
        select(job)
        .where(job.c.project_id == project_id)
        .order_by(job.c.sort_order.asc(), job.c.created_at.asc(), job.c.id.asc())
    )


def ordered_items(job_ids: list[str]):
    return (
        select(job_item)
        .where(job_item.c.job_id.in_(job_ids))
        .order_by(job_item.c.job_id.asc(), job_item.c.sort_order.asc(), job_item.c.id.asc())
    )


def _apply_permutation(
    session: Session, table: Table, parent_col, parent_id: str, ids: list[str]
) -> None:
    current = set(session.execute(select(table.c.id).where(parent_col == parent_id)).scalars())
    if len(ids) != len(set(ids)) or set(ids) != current:
        raise invalid_order()
    # Caller commits; nothing is visible to other sessions until the whole
    # permutation has been written.
    for position, row_id in enumerate(ids, start=1):
        session.execute(table.update().where(table.c.id == row_id).values(sort_order=position))


def reorder_jobs(session: Session, project_id: str, job_ids: list[str]) -> None:
    _apply_permutation(session, job, job.c.project_id, project_id, job_ids)


def reorder_items(session: Session, job_id: str, item_ids: list[str]) -> None:
    _apply_permutation(session, job_item, job_item.c.job_id, job_id, item_ids)
