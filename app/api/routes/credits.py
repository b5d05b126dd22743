from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_principal
from app.core.errors import InsufficientBalance
from app.db.session import get_db
from app.schemas.credits import (
    BalanceOut,
    ConsumeIn,
    ConsumeOut,
    CreditPackageOut,
    CreditTransactionOut,
)
from app.services.access.gate import CONSUME, VIEW, AccessGate
from app.services.auth.tokens import Principal
from app.services.credits.ledger import CreditLedger
from app.services.credits.packages import get_credit_packages


router = APIRouter(prefix="/credits", tags=["credits"])


def _require(db: Session, principal: Principal, action: str) -> None:
    if not AccessGate(db).authorize(principal.user_id, action):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")


@router.get("", response_model=BalanceOut)
def get_balance(
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> BalanceOut:
    _require(db, principal, VIEW)
    return BalanceOut(balance=CreditLedger(db).balance(principal.user_id))


@router.get("/transactions", response_model=list[CreditTransactionOut])
def list_transactions(
    limit: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> list[CreditTransactionOut]:
    _require(db, principal, VIEW)
    return [
        CreditTransactionOut(
            id=tx.id,
            type=tx.type,
            amount=tx.amount,
            remark=tx.remark,
            order_id=tx.order_id,
            balance_after=tx.balance_after,
            created_at=tx.created_at,
        )
        for tx in CreditLedger(db).transactions(principal.user_id, limit=limit)
    ]


@router.post("/consume", response_model=ConsumeOut)
def consume_credits(
    body: ConsumeIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> ConsumeOut:
    _require(db, principal, CONSUME)
    try:
        result = CreditLedger(db).consume(principal.user_id, body.amount, body.remark)
        db.commit()
    except InsufficientBalance as e:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"message": "Insufficient balance", "balance": e.balance, "requested": e.requested},
        )
    return ConsumeOut(balance=result.balance, transaction_id=result.transaction_id)


@router.get("/packages", response_model=list[CreditPackageOut])
def list_packages() -> list[CreditPackageOut]:
    return [
        CreditPackageOut(id=p.id, name=p.name, price=p.price, credits=p.credits)
        for p in get_credit_packages()
    ]
