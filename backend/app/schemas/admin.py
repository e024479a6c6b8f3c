from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator


class RejectRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)


class ActivateRequest(BaseModel):
    actual_pickup_datetime: datetime | None = None
    notes: str | None = Field(None, max_length=2000)


class CompleteRequest(BaseModel):
    actual_return_datetime: datetime | None = None
    extra_fee: Decimal | None = Field(None, ge=0)
    extra_fee_reason: str | None = Field(None, max_length=500)
    notes: str | None = Field(None, max_length=2000)

    @model_validator(mode="after")
    def reason_with_fee(self) -> "CompleteRequest":
        if self.extra_fee and not (self.extra_fee_reason or "").strip():
            raise ValueError("extra_fee_reason is required when extra_fee is set")
        return self


class RefundRequest(BaseModel):
    amount: Decimal = Field(gt=0, description="VND")
    reason: str | None = Field(None, max_length=500)


class RefundResponse(BaseModel):
    refund_id: int
    transaction_id: str
    original_payment_id: int
    amount_vnd: Decimal
    amount_usd: Decimal
    exchange_rate: Decimal
    status: str
