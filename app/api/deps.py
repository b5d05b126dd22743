"""Shared FastAPI dependencies: bearer principal, gateway, reconciler."""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.services.auth.tokens import InvalidAccessToken, Principal, decode_access_token
from app.services.payment_gateway.base import PaymentGateway
from app.services.payment_gateway.factory import get_payment_gateway
from app.services.payments.reconciler import PaymentReconciler

bearer_scheme = HTTPBearer(auto_error=False)


def get_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return decode_access_token(credentials.credentials)
    except InvalidAccessToken:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired access token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_gateway() -> PaymentGateway:
    return get_payment_gateway()


def get_reconciler(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> PaymentReconciler:
    return PaymentReconciler(db, gateway)
