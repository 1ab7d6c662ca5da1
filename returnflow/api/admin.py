"""Admin return management API routes."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from returnflow.api.deps import get_workflows, run
from returnflow.schemas import Actor, DecisionType, Deduction, ReturnStatus, Role
from returnflow.services.auth import require_role

router = APIRouter(prefix="/admin/returns", tags=["admin-returns"])

admin_only = require_role(Role.ADMIN)


# --- Schemas ---

class Versioned(BaseModel):
    expected_version: Optional[int] = None


class ReviewBody(Versioned):
    decision: str = Field(..., pattern="^(approve|reject)$")
    comments: str = ""
    pickup_override: Optional[bool] = None


class PickupChargeBody(Versioned):
    is_free: bool
    reason: str = ""


class AssignBody(Versioned):
    manager_id: str = Field(..., min_length=1)


class FinalDecisionBody(Versioned):
    decision: DecisionType
    refund_percentage: Optional[Decimal] = None
    deductions: list[Deduction] = Field(default_factory=list)
    notes: str = ""


class BulkSettleBody(BaseModel):
    return_ids: list[str] = Field(default_factory=list)


# --- Endpoints ---

@router.get("/")
async def list_returns(
    status: Optional[ReturnStatus] = None,
    customer_id: Optional[str] = None,
    assigned_manager: Optional[str] = None,
    reason: Optional[str] = None,
    actor: Actor = Depends(admin_only),
):
    returns = await run(get_workflows().admin.list_returns, status, customer_id, assigned_manager, reason)
    return [r.model_dump(mode="json") for r in returns]


@router.get("/stats")
async def return_stats(actor: Actor = Depends(admin_only)):
    return await run(get_workflows().admin.stats)


@router.get("/pending-approval")
async def pending_final_approval(actor: Actor = Depends(admin_only)):
    return [r.model_dump(mode="json") for r in await run(get_workflows().admin.pending_final_approval)]


@router.post("/settle-bulk")
async def settle_bulk(body: BulkSettleBody, actor: Actor = Depends(admin_only)):
    result = await run(get_workflows().admin.settle_many, actor, body.return_ids)
    return result.to_dict()


@router.post("/reconcile")
async def reconcile(actor: Actor = Depends(admin_only)):
    repaired = await run(get_workflows().admin.reconcile, actor)
    return {"repaired": repaired, "count": len(repaired)}


@router.get("/{return_id}")
async def get_return(return_id: str, actor: Actor = Depends(admin_only)):
    return await run(get_workflows().admin.get_return, actor, return_id)


@router.post("/{return_id}/start-review")
async def start_review(return_id: str, body: Versioned, actor: Actor = Depends(admin_only)):
    ret = await run(get_workflows().admin.start_review, actor, return_id, body.expected_version)
    return ret.model_dump(mode="json")


@router.post("/{return_id}/review")
async def review_return(return_id: str, body: ReviewBody, actor: Actor = Depends(admin_only)):
    ret = await run(
        get_workflows().admin.review,
        actor, return_id, body.decision, body.comments, body.pickup_override, body.expected_version,
    )
    return ret.model_dump(mode="json")


@router.post("/{return_id}/pickup-charge")
async def toggle_pickup_charge(return_id: str, body: PickupChargeBody, actor: Actor = Depends(admin_only)):
    ret = await run(
        get_workflows().admin.toggle_pickup_charge,
        actor, return_id, body.is_free, body.reason, body.expected_version,
    )
    return ret.model_dump(mode="json")


@router.post("/{return_id}/assign")
async def assign_warehouse(return_id: str, body: AssignBody, actor: Actor = Depends(admin_only)):
    ret = await run(get_workflows().admin.assign_warehouse, actor, return_id, body.manager_id, body.expected_version)
    return ret.model_dump(mode="json")


@router.post("/{return_id}/final-decision")
async def final_decision(return_id: str, body: FinalDecisionBody, actor: Actor = Depends(admin_only)):
    ret = await run(
        get_workflows().admin.final_decision,
        actor, return_id, body.decision, body.refund_percentage, body.deductions,
        body.notes, body.expected_version,
    )
    return ret.model_dump(mode="json")


@router.post("/{return_id}/settle")
async def settle(return_id: str, body: Versioned, actor: Actor = Depends(admin_only)):
    result = await run(get_workflows().admin.settle, actor, return_id, body.expected_version)
    return result.to_dict()
