from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from projectclad_api.config import settings

BATCH_SIZE = 50
NOT_AN_APPROVER_TAG = "NA"

VARIANTS_QUERY = """
query ProjectCladVariantInfo($ids: [ID!]!) {
  nodes(ids: $ids) {
    ... on ProductVariant {
      id
      title
      image { url altText }
      product { title handle featuredImage { url altText } }
    }
  }
}
"""

CUSTOMERS_QUERY = """
query ProjectCladCustomersById($ids: [ID!]!) {
  nodes(ids: $ids) {
    ... on Customer { id email firstName lastName tags }
  }
}
"""

CUSTOMER_BY_EMAIL_QUERY = """
query ProjectCladCustomerByEmail($query: String!) {
  customers(first: 1, query: $query) { edges { node { id } } }
}
"""


class LookupUnavailable(Exception):
    pass


@dataclass(frozen=True)
class VariantInfo:
    title: str
    product_title: str
    image_url: str | None = None
    image_alt: str | None = None
    product_handle: str | None = None

    @property
    def display_name(self) -> str:
        if self.title and self.title != "Default Title":
            return f"{self.product_title} - {self.title}"
        return self.product_title

    @property
    def label(self) -> str:
        return self.product_title or self.title or "Item"


@dataclass(frozen=True)
class CustomerInfo:
    customer_id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    tags: tuple[str, ...] = field(default_factory=tuple)

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p).strip()

    @property
    def is_not_an_approver(self) -> bool:
        return has_na_tag(self.tags)


def has_na_tag(tags: Iterable[str]) -> bool:
    return any(str(t).strip().upper() == NOT_AN_APPROVER_TAG for t in tags)


class Catalog(Protocol):
    def lookup_variants(self, shop: str, variant_ids: list[str]) -> dict[str, VariantInfo]: ...


class MemberDirectory(Protocol):
    def lookup_customers(self, shop: str, customer_ids: list[str]) -> dict[str, CustomerInfo]: ...

    def find_customer_id_by_email(self, shop: str, email: str) -> str | None: ...


def _chunks(items: list[str], size: int) -> Iterator[list[str]]:
    for index in range(0, len(items), size):
        yield items[index : index + size]


def _legacy_id(gid: str) -> str:
    return gid.rsplit("/", 1)[-1]


class ShopifyAdminClient:
    def __init__(
        self,
        access_token: str | None = None,
        api_version: str | None = None,
        timeout_s: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.access_token = settings.shopify_admin_token if access_token is None else access_token
        self.api_version = api_version or settings.shopify_api_version
        self.timeout_s = timeout_s or settings.lookup_timeout_s
        self.transport = transport

    def _graphql(self, shop: str, query: str, variables: dict[str, Any]) -> dict[str, Any] | None:
        if not self.access_token:
            raise LookupUnavailable("Shop details unavailable. Reauthorize the app.")
        endpoint = f"https://{shop}/admin/api/{self.api_version}/graphql.json"
        try:
            with httpx.Client(timeout=self.timeout_s, transport=self.transport) as client:
                response = client.post(
                    endpoint,
                    json={"query": query, "variables": variables},
                    headers={"X-Shopify-Access-Token": self.access_token},
                )
        except httpx.HTTPError as exc:
            raise LookupUnavailable(f"Shop lookup failed: {exc}") from exc
        if response.status_code in (401, 403):
            raise LookupUnavailable("Lookup unavailable. Reauthorize the app with read access.")
        if response.is_error:
            return None
        payload = response.json()
        errors = payload.get("errors") or []
        if errors:
            raise LookupUnavailable(
                ", ".join(str(e.get("message", "")) for e in errors if e.get("message"))
                or "Shop lookup failed."
            )
        return payload.get("data") or {}

    def lookup_variants(self, shop: str, variant_ids: list[str]) -> dict[str, VariantInfo]:
        unique = list(dict.fromkeys(v for v in variant_ids if v))
        out: dict[str, VariantInfo] = {}
        for group in _chunks(unique, BATCH_SIZE):
            gids = [f"gid://shopify/ProductVariant/{v}" for v in group]
            data = self._graphql(shop, VARIANTS_QUERY, {"ids": gids})
            if data is None:
                raise LookupUnavailable("Product details unavailable.")
            for node in data.get("nodes") or []:
                if not node or not node.get("id"):
                    continue
                product = node.get("product") or {}
                image = node.get("image") or product.get("featuredImage") or {}
                out[_legacy_id(node["id"])] = VariantInfo(
                    title=node.get("title") or "",
                    product_title=product.get("title") or "Product",
                    image_url=image.get("url"),
                    image_alt=image.get("altText") or product.get("title"),
                    product_handle=product.get("handle"),
                )
        return out

    def lookup_customers(self, shop: str, customer_ids: list[str]) -> dict[str, CustomerInfo]:
        unique = list(dict.fromkeys(c for c in customer_ids if c))
        out: dict[str, CustomerInfo] = {}
        for group in _chunks(unique, BATCH_SIZE):
            gids = [f"gid://shopify/Customer/{c}" for c in group]
            data = self._graphql(shop, CUSTOMERS_QUERY, {"ids": gids})
            if data is None:
                # A failed batch leaves those customers unresolved.
                continue
            for node in data.get("nodes") or []:
                if not node or not node.get("id"):
                    continue
                customer_id = _legacy_id(node["id"])
                out[customer_id] = CustomerInfo(
                    customer_id=customer_id,
                    email=node.get("email"),
                    first_name=node.get("firstName"),
                    last_name=node.get("lastName"),
                    tags=tuple(node.get("tags") or ()),
                )
        return out

    def find_customer_id_by_email(self, shop: str, email: str) -> str | None:
        trimmed = email.strip().lower()
        if not trimmed:
            return None
        data = self._graphql(shop, CUSTOMER_BY_EMAIL_QUERY, {"query": f'email:"{trimmed}"'})
        if not data:
            return None
        edges = (data.get("customers") or {}).get("edges") or []
        if not edges:
            return None
        gid = (edges[0].get("node") or {}).get("id")
        return _legacy_id(gid) if gid else None


_admin_client = ShopifyAdminClient()


def get_catalog() -> Catalog:
    return _admin_client


def get_directory() -> MemberDirectory:
    return _admin_client
