from __future__ import annotations

import time
import uuid
from decimal import Decimal

from fastapi import Cookie, Depends, FastAPI, Query
from fastapi.requests import Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError

from projectclad_api import approvals, cart, jobs, pricing, sharing
from projectclad_api.auth import (
    OWNER,
    Customer,
    can_edit,
    effective_member_ids,
    get_customer,
    member_rows,
    require_edit,
    require_member,
    require_owner,
)
from projectclad_api.catalog import (
    Catalog,
    LookupUnavailable,
    MemberDirectory,
    get_catalog,
    get_directory,
    has_na_tag,
)
from projectclad_api.config import settings
from projectclad_api.db import (
    delete_project_rows,
    job_order_link,
    now_ms,
    project,
    project_member,
    session_scope,
)
from projectclad_api.errors import not_found, required
from projectclad_api.notifications import Notifier, get_notifier
from projectclad_api.observability import increment, log_event, observe_ms, snapshot, timed
from projectclad_api.ordering import ordered_items, ordered_jobs
from projectclad_api.ordering import reorder_items as apply_item_order
from projectclad_api.ordering import reorder_jobs as apply_job_order
from projectclad_api.pricing import PRICING_COOKIE, has_pricing_access
from projectclad_api.schemas import (
    ApprovalScopeIn,
    CreateJobRequest,
    JobTransferRequest,
    MemberAddRequest,
    OrderEditRequest,
    ProjectDetailsRequest,
    RejectRequest,
    ReorderItemsRequest,
    ReorderJobsRequest,
    SaveCartRequest,
    ShareRequest,
    UnlockPricingRequest,
)
from projectclad_api.scope import scope_from_ids

app = FastAPI(title="projectclad")
P = settings.api_prefix


@app.middleware("http")
async def request_observability(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    t0 = time.perf_counter()
    response = None
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        duration_ms = (time.perf_counter() - t0) * 1000.0
        increment("http.requests.total")
        observe_ms("http.request.latency_ms", duration_ms)
        log_event(
            "http.request",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status=status_code,
            duration_ms=round(duration_ms, 2),
            shop=request.headers.get("x-shop-domain"),
            customer_id=request.headers.get("x-customer-id"),
        )
        if response is not None:
            response.headers["x-request-id"] = request_id


@app.exception_handler(IntegrityError)
async def integrity_conflict(request: Request, exc: IntegrityError):
    # Two requests raced on a unique key; the loser is rolled back whole.
    log_event("db.conflict", path=request.url.path, error=str(exc.orig))
    return JSONResponse(
        status_code=409,
        content={
            "detail": {
                "error": {
                    "code": "conflict",
                    "message": "The resource was modified concurrently, retry the request",
                    "details": {},
                }
            }
        },
    )


@app.get("/metrics")
def metrics():
    return snapshot()


@app.get("/health")
def health():
    return {"ok": True, "ts": now_ms()}


def _locked_job_ids(session, job_rows) -> set[str]:
    ids = [j.id for j in job_rows]
    if not ids:
        return set()
    linked = set(
        session.execute(select(job_order_link.c.job_id).where(job_order_link.c.job_id.in_(ids))).scalars()
    )
    return linked | {j.id for j in job_rows if j.is_locked}


def _visible_projects(customer: Customer):
    membership = select(project_member.c.project_id).where(
        project_member.c.customer_id == customer.customer_id
    )
    return select(project).where(
        project.c.shop == customer.shop,
        or_(project.c.owner_customer_id == customer.customer_id, project.c.id.in_(membership)),
    )


@app.get(f"{P}/projects")
def list_projects(customer: Customer = Depends(get_customer)):
    with session_scope() as session:
        rows = session.execute(
            _visible_projects(customer).order_by(project.c.created_at.desc(), project.c.id.asc())
        ).all()
        out = []
        for r in rows:
            job_rows = session.execute(ordered_jobs(r.id)).all()
            locked_ids = _locked_job_ids(session, job_rows)
            out.append(
                {
                    "id": r.id,
                    "name": r.name,
                    "poNumber": r.po_number,
                    "companyName": r.company_name,
                    "isOwner": r.owner_customer_id == customer.customer_id,
                    "jobs": [
                        {"id": j.id, "name": j.name, "isLocked": j.id in locked_ids}
                        for j in job_rows
                    ],
                }
            )
        return {"projects": out}


def _money(value: Decimal | None, visible: bool) -> str | None:
    if not visible or value is None:
        return None
    return str(Decimal(value).quantize(Decimal("0.01")))


@app.get(f"{P}/projects/{{project_id}}")
def get_project(
    project_id: str,
    pricing_cookie: str | None = Cookie(default=None, alias=PRICING_COOKIE),
    customer: Customer = Depends(get_customer),
    catalog: Catalog = Depends(get_catalog),
    directory: MemberDirectory = Depends(get_directory),
):
    with timed("projects.get"), session_scope() as session:
        project_row, role = require_member(session, customer, project_id)
        job_rows = session.execute(ordered_jobs(project_id)).all()
        item_rows = session.execute(ordered_items([j.id for j in job_rows])).all() if job_rows else []
        locked_ids = _locked_job_ids(session, job_rows)

        warnings: list[str] = []
        try:
            variants = catalog.lookup_variants(customer.shop, [i.variant_id for i in item_rows])
        except LookupUnavailable as exc:
            warnings.append(f"Product details unavailable: {exc}")
            variants = {}
        member_ids = effective_member_ids(session, project_row)
        try:
            people = directory.lookup_customers(customer.shop, member_ids)
        except LookupUnavailable as exc:
            warnings.append(f"Member details unavailable: {exc}")
            people = {}

        viewer = people.get(customer.customer_id)
        viewer_is_na = has_na_tag(viewer.tags) if viewer else False
        show_prices = not viewer_is_na or has_pricing_access(pricing_cookie)

        items_by_job: dict[str, list] = {j.id: [] for j in job_rows}
        for i in item_rows:
            items_by_job[i.job_id].append(i)

        jobs_out = []
        project_total = Decimal("0")
        for j in job_rows:
            job_total = sum(
                (Decimal(i.price_snapshot) * i.quantity for i in items_by_job[j.id]), Decimal("0")
            )
            project_total += job_total
            rendered = []
            for i in items_by_job[j.id]:
                info = variants.get(i.variant_id)
                rendered.append(
                    {
                        "id": i.id,
                        "variantId": i.variant_id,
                        "quantity": i.quantity,
                        "priceSnapshot": _money(i.price_snapshot, show_prices),
                        "sortOrder": i.sort_order,
                        "displayName": info.display_name if info else f"Variant {i.variant_id}",
                        "imageUrl": info.image_url if info else None,
                        "imageAlt": info.image_alt if info else None,
                        "productUrl": (
                            f"https://{customer.shop}/products/{info.product_handle}?variant={i.variant_id}"
                            if info and info.product_handle
                            else None
                        ),
                    }
                )
            jobs_out.append(
                {
                    "id": j.id,
                    "name": j.name,
                    "createdAt": j.created_at,
                    "sortOrder": j.sort_order,
                    "isLocked": j.id in locked_ids,
                    "subtotal": _money(job_total, show_prices),
                    "items": rendered,
                }
            )

        roles = {r.customer_id: r.role for r in member_rows(session, project_id)}
        members_out = []
        for member_id in member_ids:
            person = people.get(member_id)
            members_out.append(
                {
                    "customerId": member_id,
                    "role": OWNER if member_id == project_row.owner_customer_id else roles.get(member_id),
                    "email": person.email if person else None,
                    "firstName": person.first_name if person else None,
                    "lastName": person.last_name if person else None,
                    "tags": list(person.tags) if person else [],
                }
            )

        return {
            "project": {
                "id": project_row.id,
                "name": project_row.name,
                "poNumber": project_row.po_number,
                "companyName": project_row.company_name,
                "createdAt": project_row.created_at,
                "subtotal": _money(project_total, show_prices),
                "jobs": jobs_out,
                "members": members_out,
            },
            "approvalRequests": approvals.approval_states(session, project_id, people),
            "role": role,
            "canEdit": can_edit(role),
            "isOwner": role == OWNER,
            "canViewPricing": show_prices,
            "hideAddToCart": viewer_is_na,
            "warnings": warnings,
        }


@app.patch(f"{P}/projects/{{project_id}}")
def update_project_details(
    project_id: str, body: ProjectDetailsRequest, customer: Customer = Depends(get_customer)
):
    name = body.name.strip()
    if not name:
        raise required("name", "Project name is required.")
    with session_scope() as session:
        require_edit(session, customer, project_id)
        session.execute(
            project.update()
            .where(project.c.id == project_id)
            .values(
                name=name,
                po_number=body.po_number.strip() or None,
                company_name=body.company_name.strip() or None,
                updated_at=now_ms(),
            )
        )
        session.commit()
        log_event("project.update", project_id=project_id, customer_id=customer.customer_id)
        return {"ok": True}


@app.delete(f"{P}/projects/{{project_id}}")
def delete_project(project_id: str, customer: Customer = Depends(get_customer)):
    with timed("projects.delete"), session_scope() as session:
        require_owner(session, customer, project_id)
        delete_project_rows(session, project_id)
        session.commit()
        log_event("project.delete", project_id=project_id, customer_id=customer.customer_id)
        return {"ok": True}


@app.post(f"{P}/cart")
def save_cart(payload: SaveCartRequest, customer: Customer = Depends(get_customer)):
    with timed("cart.save"), session_scope() as session:
        out = cart.save_cart(session, customer, payload)
        session.commit()
        return out


@app.post(f"{P}/projects/{{project_id}}/jobs")
def create_job(project_id: str, body: CreateJobRequest, customer: Customer = Depends(get_customer)):
    with session_scope() as session:
        require_edit(session, customer, project_id)
        job_id = jobs.create_job(session, project_id, body.job_name)
        session.commit()
        log_event("job.create", project_id=project_id, job_id=job_id)
        return {"ok": True, "jobId": job_id}


@app.delete(f"{P}/projects/{{project_id}}/jobs/{{job_id}}")
def delete_job(project_id: str, job_id: str, customer: Customer = Depends(get_customer)):
    with timed("jobs.delete"), session_scope() as session:
        require_edit(session, customer, project_id)
        jobs.delete_job(session, project_id, job_id)
        session.commit()
        log_event("job.delete", project_id=project_id, job_id=job_id)
        return {"ok": True}


@app.delete(f"{P}/projects/{{project_id}}/items/{{item_id}}")
def delete_item(project_id: str, item_id: str, customer: Customer = Depends(get_customer)):
    with timed("items.delete"), session_scope() as session:
        require_edit(session, customer, project_id)
        job_id = jobs.delete_item(session, project_id, item_id)
        session.commit()
        log_event("item.delete", project_id=project_id, job_id=job_id, item_id=item_id)
        return {"ok": True, "jobId": job_id}


def _target_project(session, customer: Customer, target_project_id: str):
    row = session.execute(
        select(project.c.id).where(
            project.c.id == target_project_id, project.c.shop == customer.shop
        )
    ).one_or_none()
    if row is None:
        raise not_found("Target project")
    return row.id


@app.post(f"{P}/projects/{{project_id}}/jobs/{{job_id}}/move")
def move_job(
    project_id: str,
    job_id: str,
    body: JobTransferRequest,
    customer: Customer = Depends(get_customer),
):
    with session_scope() as session:
        require_edit(session, customer, project_id)
        target_id = _target_project(session, customer, body.target_project_id)
        jobs.move_job(session, project_id, job_id, target_id)
        session.commit()
        log_event("job.move", project_id=project_id, job_id=job_id, target_project_id=target_id)
        return {"ok": True, "projectId": target_id, "jobId": job_id}


@app.post(f"{P}/projects/{{project_id}}/jobs/{{job_id}}/copy")
def copy_job(
    project_id: str,
    job_id: str,
    body: JobTransferRequest,
    customer: Customer = Depends(get_customer),
):
    with session_scope() as session:
        require_edit(session, customer, project_id)
        target_id = _target_project(session, customer, body.target_project_id)
        new_job_id = jobs.copy_job(session, project_id, job_id, target_id)
        session.commit()
        log_event("job.copy", project_id=project_id, job_id=job_id, new_job_id=new_job_id)
        return {"ok": True, "projectId": target_id, "jobId": new_job_id}


@app.put(f"{P}/projects/{{project_id}}/jobs/order")
def reorder_jobs(
    project_id: str, body: ReorderJobsRequest, customer: Customer = Depends(get_customer)
):
    with timed("jobs.reorder"), session_scope() as session:
        require_edit(session, customer, project_id)
        apply_job_order(session, project_id, body.job_ids)
        session.commit()
        return {"ok": True, "jobIds": body.job_ids}


@app.put(f"{P}/projects/{{project_id}}/jobs/{{job_id}}/items/order")
def reorder_items(
    project_id: str,
    job_id: str,
    body: ReorderItemsRequest,
    customer: Customer = Depends(get_customer),
):
    with timed("items.reorder"), session_scope() as session:
        require_edit(session, customer, project_id)
        jobs.load_job(session, project_id, job_id)
        apply_item_order(session, job_id, body.item_ids)
        session.commit()
        return {"ok": True, "itemIds": body.item_ids}


@app.post(f"{P}/projects/{{project_id}}/jobs/{{job_id}}/edit")
def save_order_edit(
    project_id: str,
    job_id: str,
    body: OrderEditRequest,
    customer: Customer = Depends(get_customer),
):
    with timed("jobs.edit"), session_scope() as session:
        require_edit(session, customer, project_id)
        out = jobs.save_order_edit(session, project_id, job_id, body)
        session.commit()
        log_event("job.edit", project_id=project_id, job_id=job_id, **out)
        return {"ok": True, **out}


@app.post(f"{P}/projects/{{project_id}}/share")
def share_project(project_id: str, body: ShareRequest, customer: Customer = Depends(get_customer)):
    with session_scope() as session:
        out = sharing.share_project(session, customer, project_id, body.role)
        session.commit()
        return out


@app.get(f"{P}/share/{{token}}")
def redeem_share_token(token: str, customer: Customer = Depends(get_customer)):
    with session_scope() as session:
        out = sharing.redeem(session, customer, token)
        session.commit()
        return out


@app.post(f"{P}/projects/{{project_id}}/members")
def add_member(
    project_id: str,
    body: MemberAddRequest,
    customer: Customer = Depends(get_customer),
    directory: MemberDirectory = Depends(get_directory),
):
    with session_scope() as session:
        out = sharing.add_member(session, customer, project_id, body.email, body.role, directory)
        session.commit()
        return out


@app.delete(f"{P}/projects/{{project_id}}/members/{{member_id}}")
def remove_member(project_id: str, member_id: str, customer: Customer = Depends(get_customer)):
    with session_scope() as session:
        out = sharing.remove_member(session, customer, project_id, member_id)
        session.commit()
        return out


@app.post(f"{P}/projects/{{project_id}}/approvals")
def submit_for_approval(
    project_id: str,
    body: ApprovalScopeIn,
    customer: Customer = Depends(get_customer),
    catalog: Catalog = Depends(get_catalog),
    directory: MemberDirectory = Depends(get_directory),
    notifier: Notifier = Depends(get_notifier),
):
    scope = scope_from_ids(body.job_id, body.item_id)
    with timed("approvals.submit"), session_scope() as session:
        return approvals.submit_for_approval(
            session, customer, project_id, scope, catalog, directory, notifier
        )


@app.delete(f"{P}/projects/{{project_id}}/approvals")
def cancel_approval_request(
    project_id: str,
    job_id: str | None = Query(default=None, alias="jobId"),
    item_id: str | None = Query(default=None, alias="itemId"),
    customer: Customer = Depends(get_customer),
    catalog: Catalog = Depends(get_catalog),
    directory: MemberDirectory = Depends(get_directory),
    notifier: Notifier = Depends(get_notifier),
):
    scope = scope_from_ids(job_id, item_id)
    with timed("approvals.cancel"), session_scope() as session:
        return approvals.cancel_approval_request(
            session, customer, project_id, scope, catalog, directory, notifier
        )


@app.post(f"{P}/projects/{{project_id}}/approvals/reject")
def reject_approval_request(
    project_id: str,
    body: RejectRequest,
    customer: Customer = Depends(get_customer),
    catalog: Catalog = Depends(get_catalog),
    directory: MemberDirectory = Depends(get_directory),
    notifier: Notifier = Depends(get_notifier),
):
    scope = scope_from_ids(body.job_id, body.item_id)
    with timed("approvals.reject"), session_scope() as session:
        return approvals.cancel_approval_request(
            session, customer, project_id, scope, catalog, directory, notifier, reason=body.reason
        )


@app.post(f"{P}/projects/{{project_id}}/approvals/approve")
def approve(
    project_id: str,
    body: ApprovalScopeIn,
    customer: Customer = Depends(get_customer),
    catalog: Catalog = Depends(get_catalog),
    directory: MemberDirectory = Depends(get_directory),
    notifier: Notifier = Depends(get_notifier),
):
    scope = scope_from_ids(body.job_id, body.item_id)
    with timed("approvals.approve"), session_scope() as session:
        return approvals.approve(session, customer, project_id, scope, catalog, directory, notifier)


@app.post(f"{P}/projects/{{project_id}}/pricing/unlock")
def unlock_pricing(
    project_id: str,
    body: UnlockPricingRequest,
    response: Response,
    customer: Customer = Depends(get_customer),
):
    with session_scope() as session:
        pricing.unlock_pricing(session, customer, project_id, body.password)
    response.set_cookie(
        PRICING_COOKIE,
        "1",
        max_age=settings.pricing_cookie_max_age_s,
        path="/",
        samesite="lax",
    )
    log_event("pricing.unlock", project_id=project_id, customer_id=customer.customer_id)
    return {"pricingUnlocked": True}
