"""Pydantic documents for returns, orders and wallets."""

from __future__ import annotations

import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise to UTC; timestamps without a zone are read as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def generate_request_id(now: Optional[datetime] = None) -> str:
    """Human-readable return id: RR-YYYYMMDD-NNNNN."""
    now = now or utcnow()
    return f"RR-{now.strftime('%Y%m%d')}-{random.randint(10000, 99999)}"


# ── Enums ────────────────────────────────────────────────

class ReturnStatus(str, Enum):
    REQUESTED = "requested"
    ADMIN_REVIEW = "admin_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    WAREHOUSE_ASSIGNED = "warehouse_assigned"
    PICKUP_SCHEDULED = "pickup_scheduled"
    PICKED_UP = "picked_up"
    IN_WAREHOUSE = "in_warehouse"
    QUALITY_CHECKED = "quality_checked"
    REFUND_APPROVED = "refund_approved"
    REFUND_PROCESSED = "refund_processed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    ReturnStatus.COMPLETED, ReturnStatus.REJECTED, ReturnStatus.CANCELLED,
})


class ReturnReason(str, Enum):
    DEFECTIVE = "defective"
    WRONG_ITEM = "wrong_item"
    NOT_AS_DESCRIBED = "not_as_described"
    QUALITY_ISSUE = "quality_issue"
    CHANGED_MIND = "changed_mind"
    SIZE_ISSUE = "size_issue"
    DAMAGED_IN_TRANSIT = "damaged_in_transit"


class Role(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"
    WAREHOUSE = "warehouse"
    AGENT = "agent"
    SYSTEM = "system"


class ItemKind(str, Enum):
    PRODUCT = "product"
    COMBO = "combo"


class PickupMethod(str, Enum):
    AGENT_ASSIGNED = "agent_assigned"
    DIRECT_WAREHOUSE = "direct_warehouse"
    CUSTOMER_DROPOFF = "customer_dropoff"


class PickupStatus(str, Enum):
    NOT_SCHEDULED = "not_scheduled"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    RESCHEDULED = "rescheduled"


PICKUP_SLOTS = (
    "9:00 AM - 12:00 PM",
    "12:00 PM - 3:00 PM",
    "3:00 PM - 6:00 PM",
    "6:00 PM - 9:00 PM",
)


class ItemCondition(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    DAMAGED = "damaged"
    UNUSABLE = "unusable"


class RefundEligibility(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    NONE = "none"


class Recommendation(str, Enum):
    APPROVE_FULL = "approve_full"
    APPROVE_PARTIAL = "approve_partial"
    REJECT = "reject"


class DecisionType(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    MODIFIED = "modified"


class DeductionType(str, Enum):
    PICKUP_CHARGE = "pickup_charge"
    DAMAGE_PENALTY = "damage_penalty"
    RESTOCKING_FEE = "restocking_fee"
    PROCESSING_FEE = "processing_fee"


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class OrderStatus(str, Enum):
    PENDING = "pending"
    SHIPPED = "shipped"
    DISPATCHED = "dispatched"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OtpPurpose(str, Enum):
    DELIVERY = "delivery"
    PICKUP = "pickup"


class LedgerEntryType(str, Enum):
    REFUND = "REFUND"


class LedgerEntryStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


# ── Return aggregate ─────────────────────────────────────

class ReturnItem(BaseModel):
    order_line_id: str
    product_id: str
    product_name: str = ""
    variant_id: Optional[str] = None
    variant_name: Optional[str] = None
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(ge=0)
    item_kind: ItemKind = ItemKind.PRODUCT

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class EligibilitySnapshot(BaseModel):
    is_eligible: bool = True
    days_remaining: int = Field(default=0, ge=0)
    eligibility_expiry: Optional[datetime] = None
    checked_at: datetime = Field(default_factory=utcnow)


class PickupCharge(BaseModel):
    is_free: bool = True
    amount: Decimal = Decimal("0")
    reason: str = ""
    source: str = "policy"  # policy | override
    toggled_by: Optional[str] = None
    toggled_at: Optional[datetime] = None


class AdminReview(BaseModel):
    reviewed_by: Optional[str] = None
    reviewer_role: Optional[Role] = None
    reviewed_at: Optional[datetime] = None
    approved: Optional[bool] = None
    comments: str = ""
    pickup_charge: PickupCharge = Field(default_factory=PickupCharge)


class OtpVerification(BaseModel):
    code_used: str
    verified_at: datetime
    verified_by: str


class Pickup(BaseModel):
    method: PickupMethod = PickupMethod.AGENT_ASSIGNED
    assigned_agent: Optional[str] = None
    scheduled_date: Optional[datetime] = None
    scheduled_slot: Optional[str] = None
    pickup_status: PickupStatus = PickupStatus.NOT_SCHEDULED
    started_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    notes: str = ""
    failure_reason: Optional[str] = None
    otp_verification: Optional[OtpVerification] = None

    @field_validator("scheduled_date", "started_at", "picked_up_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class ConditionDetails(BaseModel):
    packaging: Optional[str] = None  # intact | damaged | missing
    product_condition: Optional[str] = None  # new | used | damaged
    accessories: Optional[str] = None  # complete | partial | missing
    functionality: Optional[str] = None  # working | partial | not_working


class RestockDecision(BaseModel):
    can_restock: bool = False
    condition: Optional[str] = None
    value: Optional[Decimal] = None
    notes: str = ""


class QualityAssessment(BaseModel):
    received_at: Optional[datetime] = None
    initial_condition: Optional[str] = None
    received_notes: str = ""
    received_images: list[str] = Field(default_factory=list)
    assessed_at: Optional[datetime] = None
    assessed_by: Optional[str] = None
    item_condition: Optional[ItemCondition] = None
    refund_eligibility: Optional[RefundEligibility] = None
    refund_percentage: Decimal = Field(default=Decimal("100"), ge=0, le=100)
    notes: str = ""
    images: list[str] = Field(default_factory=list)
    condition_details: Optional[ConditionDetails] = None
    restock_decision: Optional[RestockDecision] = None


class WarehouseManagement(BaseModel):
    assigned_manager: Optional[str] = None
    assigned_at: Optional[datetime] = None
    pickup: Pickup = Field(default_factory=Pickup)
    quality: QualityAssessment = Field(default_factory=QualityAssessment)


class Deduction(BaseModel):
    """A fixed ``amount``, or a ``percentage`` of the refund that sets the amount."""

    type: DeductionType
    amount: Decimal = Field(default=Decimal("0"), ge=0)
    percentage: Optional[Decimal] = Field(default=None, ge=0, le=100)
    reason: str = ""
    calculated_at: Optional[datetime] = None


class WarehouseRecommendation(BaseModel):
    recommendation: Recommendation
    recommended_amount: Decimal
    recommended_coins: Decimal
    notes: str = ""
    recommended_by: Optional[str] = None
    recommended_at: datetime = Field(default_factory=utcnow)


class AdminDecision(BaseModel):
    decision: DecisionType
    refund_percentage: Decimal = Field(default=Decimal("100"), ge=0, le=100)
    final_amount: Optional[Decimal] = None
    final_coins: Optional[Decimal] = None
    deductions: list[Deduction] = Field(default_factory=list)
    notes: str = ""
    decided_by: Optional[str] = None
    decided_role: Optional[Role] = None
    decided_at: datetime = Field(default_factory=utcnow)
    backfilled_at: Optional[datetime] = None


class RefundProcessing(BaseModel):
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    processed_by: Optional[str] = None
    processed_at: Optional[datetime] = None
    ledger_entry_id: Optional[str] = None
    conversion_rate: Decimal = Decimal("5")
    original_amount: Optional[Decimal] = None
    coins_credited: Optional[Decimal] = None


class Refund(BaseModel):
    recommendation: Optional[WarehouseRecommendation] = None
    decision: Optional[AdminDecision] = None
    processing: RefundProcessing = Field(default_factory=RefundProcessing)


class StatusUpdate(BaseModel):
    from_status: Optional[ReturnStatus] = None
    to_status: ReturnStatus
    at: datetime = Field(default_factory=utcnow)
    actor_id: Optional[str] = None
    actor_role: Role
    notes: str = ""
    automatic: bool = False


class ReturnMetrics(BaseModel):
    total_processing_minutes: Optional[int] = None
    pickup_minutes: Optional[int] = None
    quality_assessment_minutes: Optional[int] = None
    refund_processing_minutes: Optional[int] = None


class ReturnRequest(BaseModel):
    """The Return aggregate.

    ``status`` is only ever changed by ``services.transitions.transition``,
    which appends to ``status_updates`` in the same step.
    """
    id: str = Field(default_factory=new_id)
    request_id: str = Field(default_factory=generate_request_id)
    order_id: str
    customer_id: str
    items: list[ReturnItem] = Field(min_length=1)
    reason: ReturnReason
    customer_comments: str = Field(default="", max_length=500)
    evidence_images: list[str] = Field(min_length=1)
    status: ReturnStatus = ReturnStatus.REQUESTED
    eligibility: EligibilitySnapshot = Field(default_factory=EligibilitySnapshot)
    admin_review: AdminReview = Field(default_factory=AdminReview)
    warehouse: WarehouseManagement = Field(default_factory=WarehouseManagement)
    refund: Refund = Field(default_factory=Refund)
    status_updates: list[StatusUpdate] = Field(default_factory=list)
    requested_at: datetime = Field(default_factory=utcnow)
    last_updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    metrics: ReturnMetrics = Field(default_factory=ReturnMetrics)
    version: int = 0

    @field_validator("evidence_images")
    @classmethod
    def _non_blank_images(cls, v: list[str]) -> list[str]:
        if any(not ref.strip() for ref in v):
            raise ValueError("Evidence image references must not be blank")
        return v

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def original_amount(self) -> Decimal:
        return sum((item.line_total for item in self.items), Decimal("0"))

    def history_consistent(self) -> bool:
        if not self.status_updates:
            return False
        return self.status_updates[-1].to_status == self.status

    def timeline(self) -> list[dict]:
        return [
            {
                "status": u.to_status.value,
                "date": u.at.isoformat(),
                "notes": u.notes,
                "updated_by": u.actor_id,
                "automatic": u.automatic,
            }
            for u in self.status_updates
        ]


# ── Order collaborator ───────────────────────────────────

class OrderLine(BaseModel):
    id: str = Field(default_factory=new_id)
    product_id: str
    name: str = ""
    variant_id: Optional[str] = None
    variant_name: Optional[str] = None
    unit_price: Decimal = Field(ge=0)
    quantity: int = Field(ge=1)
    item_kind: ItemKind = ItemKind.PRODUCT


class FailedOtpAttempt(BaseModel):
    attempted_at: datetime
    attempted_code: str
    actor_id: Optional[str] = None
    ip_address: Optional[str] = None
    purpose: OtpPurpose = OtpPurpose.DELIVERY


class DeliveryOtp(BaseModel):
    code: str
    generated_at: datetime = Field(default_factory=utcnow)
    consumed: dict[OtpPurpose, datetime] = Field(default_factory=dict)
    failed_attempts: list[FailedOtpAttempt] = Field(default_factory=list)
    lockout_until: Optional[datetime] = None


class ReturnHistoryEntry(BaseModel):
    return_id: str
    status: str
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class ReturnInfo(BaseModel):
    has_active_return: bool = False
    return_window_days: int = 7
    eligibility_expiry: Optional[datetime] = None
    history: list[ReturnHistoryEntry] = Field(default_factory=list)


class Order(BaseModel):
    id: str = Field(default_factory=new_id)
    customer_id: str
    status: OrderStatus = OrderStatus.PENDING
    lines: list[OrderLine] = Field(default_factory=list)
    delivered_at: Optional[datetime] = None
    otp: Optional[DeliveryOtp] = None
    return_info: ReturnInfo = Field(default_factory=ReturnInfo)
    version: int = 0

    def get_line(self, line_id: str) -> Optional[OrderLine]:
        for line in self.lines:
            if line.id == line_id:
                return line
        return None

    def history_entry(self, return_id: str) -> Optional[ReturnHistoryEntry]:
        for entry in self.return_info.history:
            if entry.return_id == return_id:
                return entry
        return None


# ── Wallet / ledger collaborator ─────────────────────────

class Wallet(BaseModel):
    user_id: str
    balance: Decimal = Decimal("0")
    total_earned: Decimal = Decimal("0")
    version: int = 0


class LedgerEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    type: LedgerEntryType = LedgerEntryType.REFUND
    amount: Decimal
    balance_after: Decimal
    order_id: Optional[str] = None
    return_id: Optional[str] = None
    description: str = ""
    details: dict = Field(default_factory=dict)
    status: LedgerEntryStatus = LedgerEntryStatus.COMPLETED
    created_at: datetime = Field(default_factory=utcnow)


# ── Acting principal ─────────────────────────────────────

@dataclass(frozen=True)
class Actor:
    """Who is performing an operation, as resolved by the auth layer."""
    id: str
    role: Role

    def __post_init__(self):
        object.__setattr__(self, "role", Role(self.role))


SYSTEM_ACTOR = Actor(id="system", role=Role.SYSTEM)


# ── Customer input ───────────────────────────────────────

class ReturnDraftItem(BaseModel):
    order_line_id: str
    quantity: int = 1


class ReturnDraft(BaseModel):
    """What a customer submits; checked by the workflow before anything is stored."""
    order_id: str
    reason: ReturnReason
    items: list[ReturnDraftItem] = Field(default_factory=list)
    customer_comments: str = ""
    evidence_images: list[str] = Field(default_factory=list)
