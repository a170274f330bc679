from __future__ import annotations

import pytest
from fastapi import HTTPException
from fastapi.responses import Response
from sqlalchemy import select

from conftest import SHOP, TEAM, FakeCatalog, FakeDirectory, customer, new_project
from projectclad_api.auth import get_customer
from projectclad_api.db import project_member, session_scope, set_pricing_password
from projectclad_api.main import (
    add_member,
    get_project,
    list_projects,
    redeem_share_token,
    remove_member,
    share_project,
    unlock_pricing,
)
from projectclad_api.schemas import MemberAddRequest, ShareRequest, UnlockPricingRequest

OWNER = customer("1001")
EDITOR = customer("1002")
VIEWER = customer("1003")
NA_VIEWER = customer("1004")
OUTSIDER = customer("1005")


def _read(project_id, who, catalog, directory, cookie=None):
    return get_project(
        project_id=project_id,
        pricing_cookie=cookie,
        customer=who,
        catalog=catalog,
        directory=directory,
    )


def _roles(project_id: str) -> dict[str, str]:
    with session_scope() as session:
        rows = session.execute(
            select(project_member.c.customer_id, project_member.c.role).where(
                project_member.c.project_id == project_id
            )
        ).all()
    return {r.customer_id: r.role for r in rows}


def test_missing_identity_is_unauthorized_with_login_url():
    with pytest.raises(HTTPException) as exc:
        get_customer(x_shop_domain=None, x_customer_id="1001")
    assert exc.value.status_code == 401
    assert exc.value.detail["error"]["details"]["login_url"] == "/account/login"


def test_project_listing_is_scoped_to_membership_and_shop():
    out = new_project(members=TEAM)
    new_project(owner="1005", name="Private")
    new_project(shop="other-shop.myshopify.com", name="Elsewhere")

    assert [p["id"] for p in list_projects(customer=VIEWER)["projects"]] == [out["projectId"]]
    assert {p["name"] for p in list_projects(customer=OWNER)["projects"]} == {"Tower"}
    assert [p["name"] for p in list_projects(customer=OUTSIDER)["projects"]] == ["Private"]


def test_project_read_roles(catalog, directory):
    out = new_project(members=TEAM)
    pid = out["projectId"]

    owner_view = _read(pid, OWNER, catalog, directory)
    assert (owner_view["role"], owner_view["canEdit"], owner_view["isOwner"]) == ("owner", True, True)

    editor_view = _read(pid, EDITOR, catalog, directory)
    assert (editor_view["role"], editor_view["canEdit"], editor_view["isOwner"]) == ("edit", True, False)

    viewer_view = _read(pid, VIEWER, catalog, directory)
    assert (viewer_view["role"], viewer_view["canEdit"]) == ("view", False)

    with pytest.raises(HTTPException) as exc:
        _read(pid, OUTSIDER, catalog, directory)
    assert exc.value.status_code == 403

    with pytest.raises(HTTPException) as exc:
        _read(pid, customer("1001", shop="other-shop.myshopify.com"), catalog, directory)
    assert exc.value.status_code == 404


def test_project_read_renders_items_members_and_totals(catalog, directory):
    out = new_project(
        members=TEAM,
        lines=[
            {"variantId": "40001", "quantity": 2, "priceSnapshot": "10.00"},
            {"variantId": "40002", "quantity": 5, "priceSnapshot": "3.50"},
            {"variantId": "40077", "quantity": 1, "priceSnapshot": "1.25"},
        ],
    )
    view = _read(out["projectId"], OWNER, catalog, directory)

    items = view["project"]["jobs"][0]["items"]
    assert [i["displayName"] for i in items] == [
        "Cladding Board - Black / 3m",
        "Corner Trim",
        "Variant 40077",
    ]
    assert items[0]["productUrl"] == f"https://{SHOP}/products/cladding-board?variant=40001"
    assert view["project"]["jobs"][0]["subtotal"] == "38.75"
    assert view["project"]["subtotal"] == "38.75"
    assert [m["customerId"] for m in view["project"]["members"]] == ["1001", "1002", "1003", "1004"]
    assert view["project"]["members"][0]["role"] == "owner"
    assert view["warnings"] == []


def test_project_read_survives_lookup_failures():
    out = new_project(members=TEAM)
    view = _read(out["projectId"], OWNER, FakeCatalog(fail=True), FakeDirectory(fail=True))
    assert [i["displayName"] for i in view["project"]["jobs"][0]["items"]] == [
        "Variant 40001",
        "Variant 40002",
    ]
    assert len(view["warnings"]) == 2
    assert view["project"]["members"][0]["email"] is None


def test_na_viewer_sees_prices_only_with_cookie(catalog, directory):
    out = new_project(members=TEAM)

    hidden = _read(out["projectId"], NA_VIEWER, catalog, directory)
    assert hidden["canViewPricing"] is False
    assert hidden["hideAddToCart"] is True
    assert hidden["project"]["subtotal"] is None
    assert all(i["priceSnapshot"] is None for i in hidden["project"]["jobs"][0]["items"])

    shown = _read(out["projectId"], NA_VIEWER, catalog, directory, cookie="1")
    assert shown["canViewPricing"] is True
    assert shown["project"]["jobs"][0]["items"][0]["priceSnapshot"] == "10.00"

    assert _read(out["projectId"], VIEWER, catalog, directory)["canViewPricing"] is True


def test_unlock_pricing_requires_configuration():
    out = new_project(members=TEAM)
    with pytest.raises(HTTPException) as exc:
        unlock_pricing(
            project_id=out["projectId"],
            body=UnlockPricingRequest(password="anything"),
            response=Response(),
            customer=NA_VIEWER,
        )
    assert exc.value.status_code == 503
    assert exc.value.detail["error"]["code"] == "pricing_not_configured"


def test_unlock_pricing_with_overlong_password_is_invalid():
    out = new_project(members=TEAM)
    set_pricing_password(SHOP, "s3cret")
    with pytest.raises(HTTPException) as exc:
        unlock_pricing(
            project_id=out["projectId"],
            body=UnlockPricingRequest(password="x" * 100),
            response=Response(),
            customer=NA_VIEWER,
        )
    assert exc.value.status_code == 422
    assert exc.value.detail["error"]["code"] == "invalid_password"


def test_setting_overlong_pricing_password_is_refused():
    out = new_project(members=TEAM)
    with pytest.raises(ValueError, match="at most 72 bytes"):
        set_pricing_password(SHOP, "é" * 40)
    with pytest.raises(HTTPException) as exc:
        unlock_pricing(
            project_id=out["projectId"],
            body=UnlockPricingRequest(password="anything"),
            response=Response(),
            customer=NA_VIEWER,
        )
    assert exc.value.detail["error"]["code"] == "pricing_not_configured"


def test_unlock_pricing_checks_password_and_sets_cookie():
    out = new_project(members=TEAM)
    set_pricing_password(SHOP, "s3cret")

    with pytest.raises(HTTPException) as exc:
        unlock_pricing(
            project_id=out["projectId"],
            body=UnlockPricingRequest(password="wrong"),
            response=Response(),
            customer=NA_VIEWER,
        )
    assert exc.value.status_code == 422
    assert exc.value.detail["error"]["code"] == "invalid_password"

    response = Response()
    result = unlock_pricing(
        project_id=out["projectId"],
        body=UnlockPricingRequest(password="s3cret"),
        response=response,
        customer=NA_VIEWER,
    )
    assert result == {"pricingUnlocked": True}
    cookie = response.headers["set-cookie"]
    assert "projectclad_pricing=1" in cookie
    assert "Max-Age=3600" in cookie
    assert "Path=/" in cookie
    assert "samesite=lax" in cookie.lower()


def test_share_and_redeem_grants_role():
    out = new_project(members=TEAM)
    shared = share_project(project_id=out["projectId"], body=ShareRequest(role="edit"), customer=EDITOR)
    assert shared["shareLink"] == f"/apps/project-clad/share/{shared['token']}"
    assert len(shared["token"]) == 32

    redeemed = redeem_share_token(token=shared["token"], customer=OUTSIDER)
    assert redeemed["projectId"] == out["projectId"]
    assert _roles(out["projectId"])["1005"] == "edit"


def test_viewer_cannot_share():
    out = new_project(members=TEAM)
    with pytest.raises(HTTPException) as exc:
        share_project(project_id=out["projectId"], body=ShareRequest(role="view"), customer=VIEWER)
    assert exc.value.status_code == 403


def test_owner_redeeming_own_link_adds_no_row():
    out = new_project()
    shared = share_project(project_id=out["projectId"], body=ShareRequest(role="view"), customer=OWNER)
    redeem_share_token(token=shared["token"], customer=OWNER)
    assert _roles(out["projectId"]) == {}


def test_redeem_from_another_shop_is_not_found():
    out = new_project()
    shared = share_project(project_id=out["projectId"], body=ShareRequest(role="view"), customer=OWNER)
    with pytest.raises(HTTPException) as exc:
        redeem_share_token(token=shared["token"], customer=customer("1005", shop="other-shop.myshopify.com"))
    assert exc.value.status_code == 404


def test_redeem_updates_existing_role():
    out = new_project(members=TEAM)
    shared = share_project(project_id=out["projectId"], body=ShareRequest(role="edit"), customer=OWNER)
    redeem_share_token(token=shared["token"], customer=VIEWER)
    assert _roles(out["projectId"])["1003"] == "edit"


def test_add_member_by_email(directory):
    out = new_project()
    added = add_member(
        project_id=out["projectId"],
        body=MemberAddRequest(email=" Viewer@Example.com ", role="view"),
        customer=OWNER,
        directory=directory,
    )
    assert added["customerId"] == "1003"
    assert _roles(out["projectId"]) == {"1003": "view"}


@pytest.mark.parametrize(
    "email, status, code",
    [
        ("nobody@example.com", 404, "not_found"),
        ("owner@example.com", 422, "already_owner"),
        ("", 422, "email_required"),
    ],
)
def test_add_member_rejections(directory, email, status, code):
    out = new_project()
    with pytest.raises(HTTPException) as exc:
        add_member(
            project_id=out["projectId"],
            body=MemberAddRequest(email=email, role="view"),
            customer=OWNER,
            directory=directory,
        )
    assert exc.value.status_code == status
    assert exc.value.detail["error"]["code"] == code


def test_add_member_directory_down_is_dependency_error():
    out = new_project()
    with pytest.raises(HTTPException) as exc:
        add_member(
            project_id=out["projectId"],
            body=MemberAddRequest(email="viewer@example.com"),
            customer=OWNER,
            directory=FakeDirectory(fail=True),
        )
    assert exc.value.status_code == 502


def test_member_management_is_owner_only(directory):
    out = new_project(members=TEAM)
    with pytest.raises(HTTPException) as exc:
        add_member(
            project_id=out["projectId"],
            body=MemberAddRequest(email="outsider@example.com"),
            customer=EDITOR,
            directory=directory,
        )
    assert exc.value.status_code == 403
    with pytest.raises(HTTPException) as exc:
        remove_member(project_id=out["projectId"], member_id="1003", customer=EDITOR)
    assert exc.value.status_code == 403


def test_remove_member():
    out = new_project(members=TEAM)
    assert remove_member(project_id=out["projectId"], member_id="1003", customer=OWNER)["removed"] is True
    assert "1003" not in _roles(out["projectId"])

    with pytest.raises(HTTPException) as exc:
        remove_member(project_id=out["projectId"], member_id="1001", customer=OWNER)
    assert exc.value.detail["error"]["code"] == "invalid_member"
