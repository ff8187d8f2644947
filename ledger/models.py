from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field, ConfigDict


class EntryType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class Account(BaseModel):
    id: str
    email: str = "No Email"
    name: str = "New User"
    balance: int = Field(..., ge=0)
    total_acquired: int = Field(default=0, ge=0)
    last_claim_at: Optional[datetime] = None
    last_refund_at: Optional[datetime] = None
    referral_code: str
    referred_by: Optional[str] = None
    referral_count: int = 0
    highest_milestone_claimed: int = 0
    lifetime_generations: int = 0
    plan: str = "Free"
    is_admin: bool = False
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LedgerEntry(BaseModel):
    id: str
    account_id: str
    entry_type: EntryType
    delta: int
    reason: str
    balance_after: int
    actor: str
    created_at: datetime
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True, frozen=True)


class AuditRecord(BaseModel):
    id: str
    admin_id: str
    action: str
    target_account_id: Optional[str] = None
    amount: Optional[int] = None
    details: str = ""
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class CreditPack(BaseModel):
    name: str
    credits: int = Field(..., ge=0)
    bonus: int = Field(default=0, ge=0)
    price: int = Field(default=0, ge=0)
    is_plan: bool = False

    @property
    def total_credits(self) -> int:
        return self.credits + self.bonus


class AppConfig(BaseModel):
    feature_costs: dict[str, int] = Field(default_factory=dict)
    feature_toggles: dict[str, bool] = Field(default_factory=dict)
    credit_packs: list[CreditPack] = Field(default_factory=list)


class AccountBalance(BaseModel):
    account_id: str
    balance: int
    total_acquired: int
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    account_id: str
    entries: list[LedgerEntry]
    total_count: int
    current_balance: int


class SignInRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None


class GenerateRequest(BaseModel):
    feature: str = Field(default="Unknown", description="Feature identifier used for pricing")
    model: str
    contents: Any
    config: dict = Field(default_factory=dict)
    cost: Optional[int] = Field(default=None, ge=0, description="Only honored for unlisted features")
    request_id: Optional[str] = Field(default=None, description="Replays of the same id are rejected")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "feature": "Pixa Product Shots",
            "model": "llama-3.3-70b-versatile",
            "contents": [{"role": "user", "content": "A bottle of perfume on marble"}],
            "config": {"temperature": 0.4},
            "request_id": "req-2024-0001",
        }
    })


class GenerateResponse(BaseModel):
    feature: str
    cost: int
    balance: int
    entry_id: str
    generation: int = 0
    milestone_bonus: Optional[int] = None
    output: Any = None


class ReferralClaimRequest(BaseModel):
    code: str = Field(..., min_length=1)


class MilestoneClaimRequest(BaseModel):
    generation_count: Optional[int] = Field(default=None, ge=0)


class AdminGrantRequest(BaseModel):
    target_account_id: str
    amount: int
    reason: Optional[str] = None


class PackageGrantRequest(BaseModel):
    target_account_id: str
    pack_name: str


class RefundClaimRequest(BaseModel):
    cost: int = Field(..., gt=0, description="Credits charged for the generation being refunded")
    reason: str = ""


class SupportRefundRequest(BaseModel):
    target_account_id: str
    amount: int
    reference: str = ""


class FeatureCostUpdate(BaseModel):
    cost: int = Field(..., ge=0)


class FeatureToggleUpdate(BaseModel):
    enabled: bool


class GrantResponse(BaseModel):
    account: Account
    ledger_entries: list[LedgerEntry] = Field(default_factory=list)
    awarded: int = 0
    message: str
