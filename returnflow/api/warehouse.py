"""Warehouse return handling API routes."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from returnflow.api.deps import get_workflows, run
from returnflow.schemas import (
    Actor, ConditionDetails, DecisionType, Deduction, ItemCondition, PickupMethod, Recommendation,
    RefundEligibility, RestockDecision, ReturnStatus, Role,
)
from returnflow.services.auth import require_role

router = APIRouter(prefix="/warehouse/returns", tags=["warehouse-returns"])

warehouse_only = require_role(Role.WAREHOUSE)


# --- Schemas ---

class Versioned(BaseModel):
    expected_version: Optional[int] = None


class ReviewBody(Versioned):
    decision: str = Field(..., pattern="^(approve|reject)$")
    comments: str = ""


class SchedulePickupBody(Versioned):
    method: PickupMethod = PickupMethod.AGENT_ASSIGNED
    scheduled_date: datetime
    scheduled_slot: Optional[str] = None
    agent_id: Optional[str] = None
    notes: str = ""


class NotesBody(Versioned):
    notes: str = ""


class ReceiveBody(Versioned):
    initial_condition: Optional[str] = None
    notes: str = ""
    images: list[str] = Field(default_factory=list)


class AssessBody(Versioned):
    item_condition: ItemCondition
    refund_eligibility: RefundEligibility
    refund_percentage: Optional[Decimal] = None
    notes: str = ""
    images: list[str] = Field(default_factory=list)
    condition_details: Optional[ConditionDetails] = None
    restock_decision: Optional[RestockDecision] = None


class RecommendBody(Versioned):
    recommendation: Recommendation
    notes: str = ""


class FinalDecisionBody(Versioned):
    decision: DecisionType
    refund_percentage: Optional[Decimal] = None
    deductions: list[Deduction] = Field(default_factory=list)
    notes: str = ""


# --- Endpoints ---

@router.get("/")
async def assigned_returns(status: Optional[ReturnStatus] = None, actor: Actor = Depends(warehouse_only)):
    return [r.model_dump(mode="json") for r in await run(get_workflows().warehouse.assigned_returns, actor, status)]


@router.get("/{return_id}")
async def get_return(return_id: str, actor: Actor = Depends(warehouse_only)):
    return await run(get_workflows().warehouse.get_return, actor, return_id)


@router.get("/{return_id}/history")
async def status_history(return_id: str, actor: Actor = Depends(warehouse_only)):
    return await run(get_workflows().warehouse.status_history, actor, return_id)


@router.post("/{return_id}/review")
async def review_return(return_id: str, body: ReviewBody, actor: Actor = Depends(warehouse_only)):
    ret = await run(
        get_workflows().warehouse.review, actor, return_id, body.decision, body.comments, body.expected_version,
    )
    return ret.model_dump(mode="json")


@router.post("/{return_id}/schedule-pickup")
async def schedule_pickup(return_id: str, body: SchedulePickupBody, actor: Actor = Depends(warehouse_only)):
    ret = await run(
        get_workflows().warehouse.schedule_pickup,
        actor, return_id,
        method=body.method,
        scheduled_date=body.scheduled_date,
        scheduled_slot=body.scheduled_slot,
        agent_id=body.agent_id,
        notes=body.notes,
        expected_version=body.expected_version,
    )
    return ret.model_dump(mode="json")


@router.post("/{return_id}/picked-up")
async def mark_picked_up(return_id: str, body: NotesBody, actor: Actor = Depends(warehouse_only)):
    ret = await run(get_workflows().warehouse.mark_picked_up, actor, return_id, body.notes, body.expected_version)
    return ret.model_dump(mode="json")


@router.post("/{return_id}/receive")
async def mark_received(return_id: str, body: ReceiveBody, actor: Actor = Depends(warehouse_only)):
    ret = await run(
        get_workflows().warehouse.mark_received,
        actor, return_id, body.initial_condition, body.notes, body.images, body.expected_version,
    )
    return ret.model_dump(mode="json")


@router.post("/{return_id}/assess")
async def assess_quality(return_id: str, body: AssessBody, actor: Actor = Depends(warehouse_only)):
    ret = await run(
        get_workflows().warehouse.assess_quality,
        actor, return_id,
        item_condition=body.item_condition,
        refund_eligibility=body.refund_eligibility,
        refund_percentage=body.refund_percentage,
        notes=body.notes,
        images=body.images,
        condition_details=body.condition_details,
        restock_decision=body.restock_decision,
        expected_version=body.expected_version,
    )
    return ret.model_dump(mode="json")


@router.post("/{return_id}/recommend")
async def recommend_refund(return_id: str, body: RecommendBody, actor: Actor = Depends(warehouse_only)):
    ret = await run(
        get_workflows().warehouse.recommend_refund,
        actor, return_id, body.recommendation, body.notes, body.expected_version,
    )
    return ret.model_dump(mode="json")


@router.post("/{return_id}/final-decision")
async def final_decision(return_id: str, body: FinalDecisionBody, actor: Actor = Depends(warehouse_only)):
    ret = await run(
        get_workflows().warehouse.final_decision,
        actor, return_id, body.decision, body.refund_percentage, body.deductions,
        body.notes, body.expected_version,
    )
    return ret.model_dump(mode="json")


@router.post("/{return_id}/settle")
async def settle(return_id: str, body: Versioned, actor: Actor = Depends(warehouse_only)):
    result = await run(get_workflows().warehouse.settle, actor, return_id, body.expected_version)
    return result.to_dict()
