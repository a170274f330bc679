from __future__ import annotations

from dataclasses import dataclass

from projectclad_api.errors import validation_error


@dataclass(frozen=True)
class ProjectScope:
    kind = "project"
    job_id = None
    item_id = None

    @property
    def key(self) -> str:
        return "project"


@dataclass(frozen=True)
class JobScope:
    job_id: str
    kind = "job"
    item_id = None

    @property
    def key(self) -> str:
        return f"job:{self.job_id}"


@dataclass(frozen=True)
class ItemScope:
    job_id: str
    item_id: str
    kind = "item"

    @property
    def key(self) -> str:
        return f"item:{self.job_id}:{self.item_id}"


ApprovalScope = ProjectScope | JobScope | ItemScope


def scope_from_ids(job_id: str | None = None, item_id: str | None = None) -> ApprovalScope:
    job_id = (job_id or "").strip()
    item_id = (item_id or "").strip()
    if item_id and not job_id:
        raise validation_error(
            "invalid_scope", "An item scope requires its order", {"field": "jobId"}
        )
    if item_id:
        return ItemScope(job_id=job_id, item_id=item_id)
    if job_id:
        return JobScope(job_id=job_id)
    return ProjectScope()


def scope_of_row(row) -> ApprovalScope:
    return scope_from_ids(row.job_id, row.item_id)
