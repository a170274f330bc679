from __future__ import annotations

import os
import tempfile
from pathlib import Path

# Must be set before projectclad_api.config is imported anywhere.
_TEST_DIR = Path(tempfile.mkdtemp(prefix="projectclad-tests-"))
os.environ.setdefault("PROJECTCLAD_DB_URL", f"sqlite:///{_TEST_DIR / 'test.db'}")

import pytest  # noqa: E402

from projectclad_api.auth import Customer  # noqa: E402
from projectclad_api.catalog import CustomerInfo, LookupUnavailable, VariantInfo  # noqa: E402
from projectclad_api.db import get_engine, metadata, session_scope  # noqa: E402
from projectclad_api.main import save_cart  # noqa: E402
from projectclad_api.notifications import NotificationError  # noqa: E402
from projectclad_api.schemas import SaveCartRequest  # noqa: E402
from projectclad_api.sharing import upsert_member  # noqa: E402

SHOP = "test-shop.myshopify.com"
TEAM = {"1002": "edit", "1003": "view", "1004": "view"}
DEFAULT_LINES = [
    {"variantId": "40001", "quantity": 2, "priceSnapshot": "10.00"},
    {"variantId": "40002", "quantity": 5, "priceSnapshot": "3.50"},
]


class FakeCatalog:
    def __init__(self, variants: dict[str, VariantInfo] | None = None, fail: bool = False):
        self.variants = variants or {}
        self.fail = fail

    def lookup_variants(self, shop, variant_ids):
        if self.fail:
            raise LookupUnavailable("catalog offline")
        return {v: self.variants[v] for v in variant_ids if v in self.variants}


class FakeDirectory:
    def __init__(self, customers: dict[str, CustomerInfo] | None = None, fail: bool = False):
        self.customers = customers or {}
        self.fail = fail

    def lookup_customers(self, shop, customer_ids):
        if self.fail:
            raise LookupUnavailable("directory offline")
        return {c: self.customers[c] for c in customer_ids if c in self.customers}

    def find_customer_id_by_email(self, shop, email):
        if self.fail:
            raise LookupUnavailable("directory offline")
        for c in self.customers.values():
            if c.email and c.email.lower() == email.strip().lower():
                return c.customer_id
        return None


class FakeNotifier:
    def __init__(self, configured: bool = True, failing: set[str] | None = None):
        self.configured = configured
        self.failing = failing or set()
        self.sent: list[tuple[str, str, str]] = []

    def is_configured(self) -> bool:
        return self.configured

    def send(self, to, subject, text):
        if to in self.failing:
            raise NotificationError(f"mailbox {to} unavailable")
        self.sent.append((to, subject, text))


def customer(customer_id: str, shop: str = SHOP) -> Customer:
    return Customer(shop=shop, customer_id=customer_id)


def new_project(
    owner: str = "1001",
    name: str = "Tower",
    job_name: str = "Phase 1",
    lines: list[dict] | None = None,
    members: dict[str, str] | None = None,
    shop: str = SHOP,
) -> dict:
    payload = SaveCartRequest.model_validate(
        {
            "mode": "newProject",
            "poNumber": "PO-1",
            "companyName": "Acme Cladding",
            "projectName": name,
            "jobName": job_name,
            "items": DEFAULT_LINES if lines is None else lines,
        }
    )
    out = save_cart(payload=payload, customer=customer(owner, shop))
    if members:
        with session_scope() as session:
            for member_id, role in members.items():
                upsert_member(session, out["projectId"], member_id, role)
            session.commit()
    return out


@pytest.fixture(autouse=True)
def _fresh_schema() -> None:
    engine = get_engine()
    metadata.drop_all(engine)
    metadata.create_all(engine)


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog(
        {
            "40001": VariantInfo(title="Black / 3m", product_title="Cladding Board", product_handle="cladding-board"),
            "40002": VariantInfo(title="Default Title", product_title="Corner Trim", product_handle="corner-trim"),
        }
    )


@pytest.fixture
def directory() -> FakeDirectory:
    people = [
        CustomerInfo("1001", "owner@example.com", "Olive", "Owner"),
        CustomerInfo("1002", "editor@example.com", "Ed", "Editor"),
        CustomerInfo("1003", "viewer@example.com", "Vic", "Viewer"),
        CustomerInfo("1004", "na@example.com", "Nora", "Assistant", tags=(" na ",)),
        CustomerInfo("1005", "outsider@example.com", "Otto", "Outsider"),
    ]
    return FakeDirectory({p.customer_id: p for p in people})


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()
