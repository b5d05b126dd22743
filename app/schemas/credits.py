from datetime import datetime

from pydantic import BaseModel, Field


class BalanceOut(BaseModel):
    balance: int


class CreditTransactionOut(BaseModel):
    id: str
    type: str
    amount: int
    remark: str | None
    order_id: str | None
    balance_after: int | None
    created_at: datetime


class ConsumeIn(BaseModel):
    amount: int = Field(..., gt=0)
    remark: str = Field("", max_length=255)


class ConsumeOut(BaseModel):
    balance: int
    transaction_id: str


class CreditPackageOut(BaseModel):
    id: str
    name: str
    price: str
    credits: int
