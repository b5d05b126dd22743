"""
Credit package catalogue — typed wrappers over app.core.config.settings.
A purchase must match one of these rows exactly; clients never pick their own rate.
"""
from __future__ import annotations

import json
from dataclasses import dataclass

from app.core.config import settings
from app.core.errors import InvalidPurchase
from app.utils.currency import format_cents, to_cents


@dataclass(frozen=True)
class CreditPackage:
    id: str
    name: str
    price_cents: int
    credits: int

    @property
    def price(self) -> str:
        """Price in yuan with two decimals, as the gateway expects it."""
        return format_cents(self.price_cents)


def get_credit_packages() -> list[CreditPackage]:
    raw = json.loads(settings.credit_packages)
    return [
        CreditPackage(
            id=str(item["id"]),
            name=str(item.get("name") or item["id"]),
            price_cents=to_cents(item["price"]),
            credits=int(item["credits"]),
        )
        for item in raw
    ]


def get_package(package_id: str) -> CreditPackage:
    for package in get_credit_packages():
        if package.id == package_id:
            return package
    raise InvalidPurchase(f"unknown credit package: {package_id}")


def match_package(amount_cents: int, credits: int) -> CreditPackage:
    """Return the package for an (amount, credits) pair or raise InvalidPurchase."""
    for package in get_credit_packages():
        if package.price_cents == amount_cents and package.credits == credits:
            return package
    raise InvalidPurchase(
        f"no credit package for amount {format_cents(amount_cents)} and {credits} credits"
    )
