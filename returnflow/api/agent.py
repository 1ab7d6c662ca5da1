"""Delivery-agent pickup API routes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from returnflow.api.deps import get_workflows, run
from returnflow.schemas import Actor, PickupStatus, Role
from returnflow.services.auth import client_ip, require_role

router = APIRouter(prefix="/agent/pickups", tags=["agent-pickups"])

agent_only = require_role(Role.AGENT)


# --- Schemas ---

class Versioned(BaseModel):
    expected_version: Optional[int] = None


class OtpBody(Versioned):
    otp: str
    notes: str = ""


class FailureBody(Versioned):
    reason: str = Field(..., min_length=1)


class RescheduleBody(Versioned):
    notes: str = ""


# --- Endpoints ---

@router.get("/")
async def assigned_pickups(pickup_status: Optional[PickupStatus] = None, actor: Actor = Depends(agent_only)):
    return [r.model_dump(mode="json") for r in await run(get_workflows().agent.assigned_pickups, actor, pickup_status)]


@router.post("/deliveries/{order_id}/confirm")
async def confirm_delivery(order_id: str, body: OtpBody, request: Request, actor: Actor = Depends(agent_only)):
    order = await run(
        get_workflows().agent.confirm_delivery,
        actor, order_id, body.otp, client_ip(request), body.expected_version,
    )
    return {
        "order_id": order.id,
        "status": order.status.value,
        "delivered_at": order.delivered_at.isoformat() if order.delivered_at else None,
        "eligibility_expiry": (
            order.return_info.eligibility_expiry.isoformat() if order.return_info.eligibility_expiry else None
        ),
    }


@router.get("/{return_id}/instructions")
async def pickup_instructions(return_id: str, actor: Actor = Depends(agent_only)):
    return await run(get_workflows().agent.pickup_instructions, actor, return_id)


@router.post("/{return_id}/start")
async def start_pickup(return_id: str, body: Versioned, actor: Actor = Depends(agent_only)):
    ret = await run(get_workflows().agent.start_pickup, actor, return_id, body.expected_version)
    return ret.model_dump(mode="json")


@router.post("/{return_id}/verify-otp")
async def verify_pickup_otp(return_id: str, body: OtpBody, request: Request, actor: Actor = Depends(agent_only)):
    ret = await run(
        get_workflows().agent.verify_pickup_otp,
        actor, return_id, body.otp, client_ip(request), body.notes, body.expected_version,
    )
    return ret.model_dump(mode="json")


@router.post("/{return_id}/fail")
async def report_pickup_failure(return_id: str, body: FailureBody, actor: Actor = Depends(agent_only)):
    ret = await run(get_workflows().agent.report_pickup_failure, actor, return_id, body.reason, body.expected_version)
    return ret.model_dump(mode="json")


@router.post("/{return_id}/reschedule")
async def request_reschedule(return_id: str, body: RescheduleBody, actor: Actor = Depends(agent_only)):
    ret = await run(get_workflows().agent.request_reschedule, actor, return_id, body.notes, body.expected_version)
    return ret.model_dump(mode="json")
