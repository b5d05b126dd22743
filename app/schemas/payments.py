from datetime import datetime

from pydantic import BaseModel, Field


class CreateOrderIn(BaseModel):
    package_id: str
    # Parked encrypted in the handoff record; handed back once on return.
    refresh_token: str = Field(..., min_length=1)


class CreateOrderOut(BaseModel):
    order_id: str
    handoff_id: str
    redirect_url: str
    expires_at: datetime


class ReconciliationOut(BaseModel):
    order_id: str
    status: str
    credits_requested: int
    granted: bool
    balance: int
    transaction_id: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None


class OrderOut(BaseModel):
    order_id: str
    status: str
    amount: str
    credits_requested: int
    failure_reason: str | None
    created_at: datetime
    confirmed_at: datetime | None
