from __future__ import annotations

from urllib.parse import urlencode

from sqlalchemy import select
from sqlalchemy.orm import Session

from projectclad_api.auth import Customer, effective_member_ids, require_edit, require_member
from projectclad_api.catalog import Catalog, CustomerInfo, LookupUnavailable, MemberDirectory
from projectclad_api.config import settings
from projectclad_api.db import approval_request, job, job_item, new_id, now_ms
from projectclad_api.errors import (
    already_approved,
    delivery_failed,
    dependency_error,
    forbidden,
    no_approvers,
    not_configured,
    not_found,
)
from projectclad_api.jobs import load_item, load_job
from projectclad_api.notifications import NotificationError, Notifier
from projectclad_api.observability import log_event, log_warning
from projectclad_api.ordering import ordered_items, ordered_jobs
from projectclad_api.scope import ApprovalScope, ItemScope, JobScope, scope_of_row

AWAITING = "awaiting"
APPROVED = "approved"


def find_request(session: Session, project_id: str, scope: ApprovalScope):
    return session.execute(
        select(approval_request).where(
            approval_request.c.project_id == project_id,
            approval_request.c.scope_key == scope.key,
        )
    ).one_or_none()


def _lookup_members(directory: MemberDirectory, shop: str, member_ids: list[str]):
    try:
        return directory.lookup_customers(shop, member_ids)
    except LookupUnavailable as exc:
        raise dependency_error(f"Could not load project members: {exc}") from exc


def _display_name(info: CustomerInfo | None) -> str:
    if info is None:
        return "A team member"
    return info.full_name or "A team member"


def _product_labels(catalog: Catalog, shop: str, variant_ids: list[str]) -> dict[str, str]:
    try:
        info = catalog.lookup_variants(shop, variant_ids)
    except LookupUnavailable:
        info = {}
    return {v: info[v].label if v in info else "Item" for v in variant_ids}


def _job_name(session: Session, project_id: str, job_id: str) -> str | None:
    return session.execute(
        select(job.c.name).where(job.c.id == job_id, job.c.project_id == project_id)
    ).scalar_one_or_none()


def context_label(session: Session, catalog: Catalog, project_row, scope: ApprovalScope) -> str:
    if scope.job_id is None:
        return project_row.name
    job_name = _job_name(session, project_row.id, scope.job_id)
    if scope.item_id is None:
        return f"{job_name or 'an order'} in {project_row.name}"
    variant_id = session.execute(
        select(job_item.c.variant_id).where(
            job_item.c.id == scope.item_id, job_item.c.job_id == scope.job_id
        )
    ).scalar_one_or_none()
    if variant_id is None or job_name is None:
        return f"item in {job_name or 'an order'}, {project_row.name}"
    product = _product_labels(catalog, project_row.shop, [variant_id])[variant_id]
    return f"{product} in {job_name}, {project_row.name}"


def project_link(shop: str, project_id: str, scope: ApprovalScope | None = None) -> str:
    query = {"id": project_id}
    if scope is not None:
        query["approve"] = "1"
        if scope.job_id:
            query["approveJobId"] = scope.job_id
        if scope.item_id:
            query["approveItemId"] = scope.item_id
    return f"https://{shop}{settings.proxy_path}/project?{urlencode(query)}"


def _check_scope_resolves(session: Session, project_id: str, scope: ApprovalScope) -> None:
    if isinstance(scope, JobScope):
        load_job(session, project_id, scope.job_id)
    elif isinstance(scope, ItemScope):
        item_row = load_item(session, project_id, scope.item_id)
        if item_row.job_id != scope.job_id:
            raise not_found("Item")


def approvers(member_ids: list[str], info: dict[str, CustomerInfo], exclude: str) -> list[str]:
    emails = []
    for customer_id in member_ids:
        if customer_id == exclude:
            continue
        customer = info.get(customer_id)
        if customer is None or customer.is_not_an_approver:
            continue
        if customer.email and customer.email.strip():
            emails.append(customer.email.strip())
    return emails


def _member_emails(member_ids: list[str], info: dict[str, CustomerInfo]) -> list[str]:
    return [
        info[c].email.strip()
        for c in member_ids
        if c in info and info[c].email and info[c].email.strip()
    ]


def submit_for_approval(
    session: Session,
    customer: Customer,
    project_id: str,
    scope: ApprovalScope,
    catalog: Catalog,
    directory: MemberDirectory,
    notifier: Notifier,
) -> dict:
    project_row, _ = require_member(session, customer, project_id)
    if not notifier.is_configured():
        raise not_configured(
            "notifications_not_configured",
            "Email is not configured. Approval requests cannot be sent.",
        )
    _check_scope_resolves(session, project_id, scope)
    existing = find_request(session, project_id, scope)
    if existing is not None and existing.approved_at is not None:
        raise already_approved()

    member_ids = effective_member_ids(session, project_row)
    info = _lookup_members(directory, customer.shop, member_ids)
    recipients = approvers(member_ids, info, exclude=customer.customer_id)
    if not recipients:
        raise no_approvers()

    label = context_label(session, catalog, project_row, scope)
    requester = _display_name(info.get(customer.customer_id))
    subject = f"Approval request: {label}"
    text = (
        f"{requester} has submitted the following for approval: {label}\n\n"
        f"View and approve: {project_link(customer.shop, project_id, scope)}"
    )
    try:
        for to in recipients:
            notifier.send(to, subject, text)
    except NotificationError as exc:
        raise delivery_failed(str(exc)) from exc

    t = now_ms()
    if existing is None:
        session.execute(
            approval_request.insert().values(
                id=new_id(),
                project_id=project_id,
                job_id=scope.job_id,
                item_id=scope.item_id,
                scope_key=scope.key,
                requested_at=t,
            )
        )
    else:
        session.execute(
            approval_request.update()
            .where(approval_request.c.id == existing.id)
            .values(requested_at=t)
        )
    session.commit()
    log_event(
        "approval.submit",
        project_id=project_id,
        scope=scope.key,
        customer_id=customer.customer_id,
        recipients=len(recipients),
    )
    return {"ok": True, "status": AWAITING, "recipients": len(recipients)}


def cancel_approval_request(
    session: Session,
    customer: Customer,
    project_id: str,
    scope: ApprovalScope,
    catalog: Catalog,
    directory: MemberDirectory,
    notifier: Notifier,
    reason: str | None = None,
) -> dict:
    # A reason, even an empty one, makes this a rejection that notifies every member.
    project_row, _ = require_edit(session, customer, project_id)
    existing = find_request(session, project_id, scope)
    if existing is None:
        raise not_found("Approval request")
    if existing.approved_at is not None:
        raise already_approved()

    label = context_label(session, catalog, project_row, scope)
    session.execute(approval_request.delete().where(approval_request.c.id == existing.id))
    session.commit()
    log_event(
        "approval.cancel",
        project_id=project_id,
        scope=scope.key,
        customer_id=customer.customer_id,
        rejected=reason is not None,
    )

    notified = 0
    if reason is not None and notifier.is_configured():
        notified = _notify_rejection(session, customer, project_row, label, reason.strip(), directory, notifier)
    return {"ok": True, "status": "none", "notified": notified}


def _notify_rejection(session, customer, project_row, label, reason, directory, notifier) -> int:
    member_ids = effective_member_ids(session, project_row)
    try:
        info = directory.lookup_customers(customer.shop, member_ids)
    except LookupUnavailable as exc:
        log_warning("notification.failed", kind="rejection", project_id=project_row.id, error=str(exc))
        return 0
    reason_text = f"\n\nRejection reason:\n{reason}\n" if reason else ""
    text = (
        f"{_display_name(info.get(customer.customer_id))} has rejected: {label}{reason_text}\n"
        f"View project: {project_link(customer.shop, project_row.id)}"
    )
    return _deliver_best_effort(
        notifier, _member_emails(member_ids, info), f"Order rejected: {label}", text, "rejection"
    )


def _deliver_best_effort(notifier: Notifier, recipients: list[str], subject: str, text: str, kind: str) -> int:
    sent = 0
    for to in recipients:
        try:
            notifier.send(to, subject, text)
        except NotificationError as exc:
            log_warning("notification.failed", kind=kind, to=to, error=str(exc))
            continue
        sent += 1
    return sent


def approve(
    session: Session,
    customer: Customer,
    project_id: str,
    scope: ApprovalScope,
    catalog: Catalog,
    directory: MemberDirectory,
    notifier: Notifier,
) -> dict:
    project_row, _ = require_member(session, customer, project_id)
    member_ids = effective_member_ids(session, project_row)
    info = _lookup_members(directory, customer.shop, member_ids)
    caller = info.get(customer.customer_id)
    if caller is not None and caller.is_not_an_approver:
        raise forbidden("Only approvers (members without NA tag) can approve.")

    existing = find_request(session, project_id, scope)
    if existing is None:
        raise not_found("Approval request")
    if existing.approved_at is not None:
        return _already_approved(existing)

    approved_at = now_ms()
    result = session.execute(
        approval_request.update()
        .where(approval_request.c.id == existing.id, approval_request.c.approved_at.is_(None))
        .values(approved_at=approved_at, approved_by_customer_id=customer.customer_id)
    )
    session.commit()
    if result.rowcount == 0:
        # Another approver got there first, or the request was withdrawn.
        current = find_request(session, project_id, scope)
        if current is None:
            raise not_found("Approval request")
        return _already_approved(current)
    log_event(
        "approval.approve",
        project_id=project_id,
        scope=scope.key,
        customer_id=customer.customer_id,
    )

    notified = 0
    if notifier.is_configured():
        label = context_label(session, catalog, project_row, scope)
        lines = approved_lines(session, catalog, project_row, scope)
        text = (
            f"{_display_name(caller)} has approved: {label}{format_lines(lines)}\n"
            f"View project: {project_link(customer.shop, project_id)}"
        )
        notified = _deliver_best_effort(
            notifier, _member_emails(member_ids, info), f"Order approved: {label}", text, "approval"
        )
    return {
        "ok": True,
        "alreadyApproved": False,
        "approvedAt": approved_at,
        "approvedBy": customer.customer_id,
        "notified": notified,
    }


def _already_approved(row) -> dict:
    return {
        "ok": True,
        "alreadyApproved": True,
        "approvedAt": row.approved_at,
        "approvedBy": row.approved_by_customer_id,
        "notified": 0,
    }


def approved_lines(session: Session, catalog: Catalog, project_row, scope: ApprovalScope) -> list[dict]:
    if scope.job_id is None:
        jobs = session.execute(ordered_jobs(project_row.id)).all()
    else:
        jobs = session.execute(
            select(job).where(job.c.id == scope.job_id, job.c.project_id == project_row.id)
        ).all()
    names = {j.id: j.name for j in jobs}
    if not names:
        return []
    items = [
        i
        for i in session.execute(ordered_items(list(names))).all()
        if i.quantity > 0 and (scope.item_id is None or i.id == scope.item_id)
    ]
    labels = _product_labels(catalog, project_row.shop, [i.variant_id for i in items])
    by_job: dict[str, list] = {j.id: [] for j in jobs}
    for i in items:
        by_job[i.job_id].append(i)
    return [
        {"jobName": names[job_id], "displayName": labels[i.variant_id], "quantity": i.quantity}
        for job_id, job_items in by_job.items()
        for i in job_items
    ]


def format_lines(lines: list[dict]) -> str:
    if not lines:
        return ""
    several_jobs = len({line["jobName"] for line in lines}) > 1
    rendered = [
        f"  • {line['displayName']} (×{line['quantity']})"
        + (f" - {line['jobName']}" if several_jobs else "")
        for line in lines
    ]
    return "\n\nItems:\n" + "\n".join(rendered) + "\n"


def approval_states(session: Session, project_id: str, info: dict[str, CustomerInfo]) -> list[dict]:
    rows = session.execute(
        select(approval_request)
        .where(approval_request.c.project_id == project_id)
        .order_by(approval_request.c.requested_at.asc(), approval_request.c.id.asc())
    ).all()
    out = []
    for r in rows:
        approver = info.get(r.approved_by_customer_id) if r.approved_by_customer_id else None
        out.append(
            {
                "scope": scope_of_row(r).kind,
                "jobId": r.job_id,
                "itemId": r.item_id,
                "status": APPROVED if r.approved_at is not None else AWAITING,
                "requestedAt": r.requested_at,
                "approvedAt": r.approved_at,
                "approvedBy": (
                    (approver.full_name or approver.email) if approver else r.approved_by_customer_id
                ),
            }
        )
    return out
