from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator

from app.models.enums import PaymentMethod, PaymentType


class ProcessPaymentRequest(BaseModel):
    booking_id: int
    payment_method: PaymentMethod
    payment_type: PaymentType = PaymentType.DEPOSIT
    amount: Decimal | None = Field(None, gt=0, description="VND, only for partial payments")

    @model_validator(mode="after")
    def check_type(self) -> "ProcessPaymentRequest":
        if self.payment_type == PaymentType.REFUND:
            raise ValueError("payment_type cannot be refund")
        if self.payment_type == PaymentType.PARTIAL and self.amount is None:
            raise ValueError("amount is required for partial payments")
        return self


class ProcessPaymentResponse(BaseModel):
    payment_id: int
    transaction_id: str
    status: str
    payment_method: PaymentMethod
    payment_type: PaymentType
    amount_vnd: Decimal
    amount_usd: Decimal
    exchange_rate: Decimal
    approval_url: str | None = None
    client_secret: str | None = None


class PaymentDetailResponse(BaseModel):
    id: int
    booking_id: int
    parent_payment_id: int | None = None
    transaction_id: str
    payment_method: str
    payment_type: str
    status: str
    amount_vnd: Decimal
    amount_usd: Decimal
    exchange_rate: Decimal
    refunded_amount_vnd: Decimal
    gateway_order_id: str | None = None
    payer_email: str | None = None
    notes: str | None = None
    paid_at: datetime | None = None
    refunded_at: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class CallbackResponse(BaseModel):
    status: str
    booking_id: int
    booking_code: str
    booking_status: str
    transaction_id: str
    amount_paid: Decimal
    balance_due: Decimal
    redirect_url: str


class ExchangeRateResponse(BaseModel):
    rate: Decimal
    mode: str
    sample_vnd: Decimal
    sample_usd: Decimal
    formatted_vnd: str
    formatted_usd: str
