from __future__ import annotations

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    # The storefront script posts camelCase keys.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CartLineIn(CamelModel):
    variant_id: str = ""
    quantity: int = 0
    price_snapshot: Decimal = Decimal("0")


class SaveCartRequest(CamelModel):
    mode: Literal["newProject", "existingProject", "existingJob"]
    po_number: str = ""
    company_name: str = ""
    project_name: str = ""
    job_name: str = ""
    project_id: str = ""
    job_id: str = ""
    quantity_mode: Literal["add", "replace"] = "add"
    items: list[CartLineIn] = Field(default_factory=list, max_length=250)


class CreateJobRequest(CamelModel):
    job_name: str = ""


class ReorderJobsRequest(CamelModel):
    job_ids: list[str] = Field(default_factory=list)


class ReorderItemsRequest(CamelModel):
    item_ids: list[str] = Field(default_factory=list)


class JobTransferRequest(CamelModel):
    target_project_id: str


class ItemUpdate(CamelModel):
    item_id: str
    quantity: int = Field(gt=0)


class OrderEditRequest(CamelModel):
    updates: list[ItemUpdate] = Field(default_factory=list)
    remove_item_ids: list[str] = Field(default_factory=list)
    delete_job: bool = False


class ProjectDetailsRequest(CamelModel):
    name: str = ""
    po_number: str = ""
    company_name: str = ""


class ShareRequest(CamelModel):
    role: Literal["edit", "view"] = "view"


class MemberAddRequest(CamelModel):
    email: str = ""
    role: Literal["edit", "view"] = "view"


class ApprovalScopeIn(CamelModel):
    job_id: str | None = None
    item_id: str | None = None


class RejectRequest(ApprovalScopeIn):
    reason: str = Field(default="", max_length=2000)


class UnlockPricingRequest(CamelModel):
    password: str = ""
