"""Customer return API routes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from returnflow.api.deps import get_workflows, run
from returnflow.schemas import Actor, ReturnDraft, ReturnStatus, Role
from returnflow.services.auth import require_role

router = APIRouter(prefix="/returns", tags=["returns"])

customer_only = require_role(Role.CUSTOMER)


# --- Schemas ---

class ReturnCancel(BaseModel):
    reason: str = Field("", max_length=500)
    expected_version: Optional[int] = None


# --- Endpoints ---

@router.get("/policies")
async def return_policies():
    return await run(get_workflows().customer.return_policies)


@router.get("/eligibility/{order_id}")
async def check_eligibility(order_id: str, actor: Actor = Depends(customer_only)):
    return await run(get_workflows().customer.check_eligibility, order_id, actor.id)


@router.post("/", status_code=201)
async def create_return(body: ReturnDraft, actor: Actor = Depends(customer_only)):
    ret = await run(get_workflows().customer.create_return, actor.id, body)
    return ret.model_dump(mode="json")


@router.get("/")
async def list_returns(status: Optional[ReturnStatus] = None, actor: Actor = Depends(customer_only)):
    returns = await run(get_workflows().customer.list_returns, actor.id, status)
    return [r.model_dump(mode="json") for r in returns]


@router.get("/{return_id}")
async def get_return(return_id: str, actor: Actor = Depends(customer_only)):
    return await run(get_workflows().customer.get_return, actor.id, return_id)


@router.post("/{return_id}/cancel")
async def cancel_return(return_id: str, body: ReturnCancel, actor: Actor = Depends(customer_only)):
    ret = await run(get_workflows().customer.cancel_return, actor.id, return_id, body.reason, body.expected_version)
    return ret.model_dump(mode="json")
