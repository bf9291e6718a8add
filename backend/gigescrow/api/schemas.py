from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


class EvidenceItem(CamelModel):
    type: str = "document"
    filename: str
    url: str = ""
    size: int | None = None
    mime_type: str | None = None


class CreateDisputeRequest(CamelModel):
    user_id: str
    type: str
    escrow_transaction_id: int
    reason: str
    evidence: list[EvidenceItem] = Field(default_factory=list)


class DisputeSummary(CamelModel):
    id: int
    case_number: str
    status: str
    type: str
    priority: str
    expected_resolution: datetime


class CreateDisputeResponse(CamelModel):
    success: bool = True
    dispute: DisputeSummary


class DisputeResponse(CamelModel):
    id: int
    case_number: str
    status: str
    type: str
    priority: str
    amount: int
    currency: str
    reason: str
    created_by: str
    respondent: str
    escrow_transaction_id: int
    expected_resolution: datetime
    assigned_agent: str
    resolution_type: str | None = None
    resolution_description: str | None = None
    resolution_payee_amount: int | None = None
    resolution_payer_amount: int | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    created_at: datetime
    available_actions: list[str] = Field(default_factory=list)


class DisputeMessageCreate(CamelModel):
    content: str


class DisputeMessageResponse(CamelModel):
    id: int
    dispute_id: int
    sender_id: str
    content: str
    is_from_admin: bool
    created_at: datetime


class DisputeEvidenceResponse(CamelModel):
    id: int
    dispute_id: int
    type: str
    filename: str
    url: str
    size: int | None = None
    mime_type: str | None = None
    uploaded_by: str
    is_post_resolution: bool
    created_at: datetime


class ResolveDisputeRequest(CamelModel):
    outcome: str
    description: str | None = None
    payee_amount: int | None = None
    payer_amount: int | None = None


# ---------------------------------------------------------------------------
# Escrow
# ---------------------------------------------------------------------------


class CreateEscrowRequest(CamelModel):
    payee_id: str
    amount: int = Field(gt=0)
    currency: str = "USD"
    payer_tier: str = "standard"
    payment_method: str = "credit_card"
    milestones: list[str] = Field(default_factory=list)
    auto_release_date: datetime | None = None
    release_on_completion: bool = False
    contract_ref: str | None = None
    title: str | None = None


class MilestoneResponse(CamelModel):
    id: int
    position: int
    title: str
    is_completed: bool
    completed_at: datetime | None = None


class EscrowResponse(CamelModel):
    id: int
    contract_ref: str | None = None
    title: str | None = None
    payer_id: str
    payee_id: str
    amount: int
    currency: str
    status: str
    platform_fee: int
    processing_fee: int
    auto_release_date: datetime | None = None
    release_on_completion: bool
    released_amount: int | None = None
    refunded_amount: int | None = None
    completion_percent: int = 0
    milestones: list[MilestoneResponse] = Field(default_factory=list)
    created_at: datetime


class ReleaseEscrowRequest(CamelModel):
    amount: int | None = Field(default=None, gt=0)
    override: bool = False


class RefundEscrowRequest(CamelModel):
    amount: int | None = Field(default=None, gt=0)


class WalletResponse(CamelModel):
    user_id: str
    currency: str
    balance: int
    frozen_amount: int


class FeeQuoteResponse(CamelModel):
    amount: int
    platform_fee_bps: int
    processing_fee_bps: int
    platform_fee: int
    processing_fee: int
    total_fees: int
    net_amount: int


# ---------------------------------------------------------------------------
# Payment processor callbacks
# ---------------------------------------------------------------------------


class PaymentSettledEvent(CamelModel):
    escrow_transaction_id: int
    payment_reference: str | None = None


class PaymentFailedEvent(CamelModel):
    escrow_transaction_id: int
    reason: str | None = None
