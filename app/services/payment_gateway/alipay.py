"""
Alipay open-platform adapter: page pay redirect and server-to-server trade query.
All requests are RSA2 signed (SHA256withRSA, PKCS#1 v1.5).
"""
import base64
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

import httpx
import pybreaker
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from app.services.payment_gateway.base import (
    GatewayError,
    GatewayQueryResult,
    GatewayStatus,
    PayableOrder,
    PaymentGateway,
)
from app.utils.currency import format_cents, to_cents
from app.utils.metrics import payment_gateway_request_duration_seconds, payment_gateway_requests_total

logger = logging.getLogger(__name__)

DEFAULT_GATEWAY_URL = "https://openapi.alipay.com/gateway.do"
# Alipay expects Beijing wall-clock timestamps.
CHINA_TZ = timezone(timedelta(hours=8))

PAGE_PAY_METHOD = "alipay.trade.page.pay"
QUERY_METHOD = "alipay.trade.query"
QUERY_RESPONSE_KEY = "alipay_trade_query_response"

SUCCESS_CODE = "10000"

# Explicit trade_status table; anything else is ambiguous and raises.
TRADE_STATUS_MAP = {
    "WAIT_BUYER_PAY": GatewayStatus.UNPAID,
    "TRADE_SUCCESS": GatewayStatus.PAID,
    "TRADE_FINISHED": GatewayStatus.PAID,
    "TRADE_CLOSED": GatewayStatus.FAILED,
}
# Buyer has not opened the cashier yet: the trade does not exist on Alipay's side.
UNPAID_SUB_CODES = frozenset({"ACQ.TRADE_NOT_EXIST"})
RETRYABLE_CODES = frozenset({"20000"})  # service temporarily unavailable
RETRYABLE_SUB_CODES = frozenset({"ACQ.SYSTEM_ERROR"})


def _pem(value: str, kind: str) -> bytes:
    """Accept a full PEM, a PEM with literal \\n, or the bare base64 body Alipay's console hands out."""
    value = value.replace("\\n", "\n").strip()
    if "-----BEGIN" not in value:
        body = "".join(value.split())
        lines = [body[i:i + 64] for i in range(0, len(body), 64)]
        value = "\n".join([f"-----BEGIN {kind}-----", *lines, f"-----END {kind}-----"])
    return value.encode()


def signing_content(params: dict[str, str], exclude: tuple[str, ...] = ("sign",)) -> str:
    """Sorted k=v pairs joined by &, skipping excluded keys and empty values."""
    return "&".join(
        f"{key}={params[key]}"
        for key in sorted(params)
        if key not in exclude and params[key] not in (None, "")
    )


def extract_response_content(text: str, key: str) -> str | None:
    """Raw JSON text of the `key` node exactly as sent; the response signature covers these bytes."""
    marker = f'"{key}"'
    idx = text.find(marker)
    if idx < 0:
        return None
    colon = text.find(":", idx + len(marker))
    if colon < 0:
        return None
    start = colon + 1
    while start < len(text) and text[start] in " \t\r\n":
        start += 1
    try:
        _, end = json.JSONDecoder().raw_decode(text, start)
    except ValueError:
        return None
    return text[start:end]


class AlipayGateway(PaymentGateway):
    """Alipay page-pay + trade query adapter."""

    name = "alipay"

    def __init__(
        self,
        config: dict,
        client: httpx.Client | None = None,
        breaker: pybreaker.CircuitBreaker | None = None,
    ):
        super().__init__(config)
        self.gateway_url = config.get("gateway_url") or DEFAULT_GATEWAY_URL
        self.app_id = config.get("app_id") or ""
        self.notify_url = config.get("notify_url") or ""
        self.subject = config.get("subject") or "Credits"
        self.timeout = float(config.get("timeout", 5.0))
        self.timeout_minutes = max(1, int(config.get("timeout_minutes", 10)))
        private_key = config.get("private_key") or ""
        public_key = config.get("public_key") or ""
        self._private_key = (
            serialization.load_pem_private_key(_pem(private_key, "PRIVATE KEY"), password=None)
            if private_key else None
        )
        self._public_key = (
            serialization.load_pem_public_key(_pem(public_key, "PUBLIC KEY"))
            if public_key else None
        )
        self._client = client
        self.breaker = breaker

    def is_available(self) -> bool:
        return bool(self.app_id and self._private_key is not None)

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def sign(self, params: dict[str, str]) -> str:
        content = signing_content(params).encode("utf-8")
        signature = self._private_key.sign(content, padding.PKCS1v15(), hashes.SHA256())
        return base64.b64encode(signature).decode()

    def _verify(self, content: str, signature: str) -> bool:
        if self._public_key is None:
            return False
        try:
            self._public_key.verify(
                base64.b64decode(signature),
                content.encode("utf-8"),
                padding.PKCS1v15(),
                hashes.SHA256(),
            )
            return True
        except (InvalidSignature, ValueError):
            return False

    def _common_params(self, method: str, biz_content: dict) -> dict[str, str]:
        return {
            "app_id": self.app_id,
            "method": method,
            "format": "JSON",
            "charset": "utf-8",
            "sign_type": "RSA2",
            "timestamp": datetime.now(CHINA_TZ).strftime("%Y-%m-%d %H:%M:%S"),
            "version": "1.0",
            "biz_content": json.dumps(biz_content, ensure_ascii=False, separators=(",", ":")),
        }

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def build_payment_url(self, order: PayableOrder, return_url: str) -> str:
        if not self.is_available():
            raise GatewayError("Alipay gateway not configured")
        biz_content = {
            "out_trade_no": order.id,
            "product_code": "FAST_INSTANT_TRADE_PAY",
            "total_amount": format_cents(order.amount_cents),
            "subject": self.subject,
            "body": self.subject,
        }
        expires_at = getattr(order, "expires_at", None)
        if expires_at is not None:
            # Alipay closes the trade at the handoff expiry.
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            biz_content["time_expire"] = expires_at.astimezone(CHINA_TZ).strftime("%Y-%m-%d %H:%M:%S")
        else:
            biz_content["timeout_express"] = f"{self.timeout_minutes}m"
        params = self._common_params(PAGE_PAY_METHOD, biz_content)
        params["return_url"] = return_url
        if self.notify_url:
            params["notify_url"] = self.notify_url
        params["sign"] = self.sign(params)
        return f"{self.gateway_url}?{urlencode(sorted(params.items()))}"

    def query_status(self, order_id: str) -> GatewayQueryResult:
        if not self.is_available():
            raise GatewayError("Alipay gateway not configured")
        params = self._common_params(QUERY_METHOD, {"out_trade_no": order_id})
        params["sign"] = self.sign(params)

        if self.breaker is not None:
            try:
                text = self.breaker.call(self._post, QUERY_METHOD, params)
            except pybreaker.CircuitBreakerError as exc:
                raise GatewayError(
                    "payment gateway circuit open",
                    retryable=False,
                    detail={"order_id": order_id},
                ) from exc
        else:
            text = self._post(QUERY_METHOD, params)
        return self._parse_query_response(order_id, text)

    def _post(self, method: str, params: dict[str, str]) -> str:
        started = time.monotonic()
        try:
            if self._client is not None:
                response = self._client.post(self.gateway_url, data=params, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.gateway_url, data=params)
        except httpx.TimeoutException as exc:
            payment_gateway_requests_total.labels(method=method, status="timeout").inc()
            raise GatewayError(
                "Alipay request timed out", retryable=True, detail={"error": type(exc).__name__}
            ) from exc
        except httpx.HTTPError as exc:
            payment_gateway_requests_total.labels(method=method, status="transport_error").inc()
            raise GatewayError(
                f"Alipay transport error: {exc}", retryable=True, detail={"error": type(exc).__name__}
            ) from exc
        finally:
            payment_gateway_request_duration_seconds.labels(method=method).observe(
                time.monotonic() - started
            )

        payment_gateway_requests_total.labels(method=method, status=str(response.status_code)).inc()
        if response.status_code == 429 or response.status_code >= 500:
            raise GatewayError(
                f"Alipay HTTP {response.status_code}",
                retryable=True,
                detail={"http_status": response.status_code},
            )
        if response.status_code >= 400:
            raise GatewayError(
                f"Alipay HTTP {response.status_code}",
                retryable=False,
                detail={"http_status": response.status_code},
            )
        return response.text

    def _parse_query_response(self, order_id: str, text: str) -> GatewayQueryResult:
        try:
            body = json.loads(text)
        except ValueError as exc:
            raise GatewayError("Alipay returned a non-JSON body", retryable=True) from exc
        node = body.get(QUERY_RESPONSE_KEY) if isinstance(body, dict) else None
        if not isinstance(node, dict):
            raise GatewayError("Alipay response missing query node", retryable=False)

        code = str(node.get("code") or "")
        sub_code = str(node.get("sub_code") or "")

        if code == SUCCESS_CODE:
            if self._public_key is not None:
                raw = extract_response_content(text, QUERY_RESPONSE_KEY)
                sign = body.get("sign")
                if not raw or not sign or not self._verify(raw, sign):
                    raise GatewayError(
                        "Alipay response signature invalid",
                        retryable=False,
                        detail={"order_id": order_id},
                    )
            out_trade_no = node.get("out_trade_no")
            if out_trade_no and out_trade_no != order_id:
                raise GatewayError(
                    f"Alipay answered for {out_trade_no}, expected {order_id}", retryable=False
                )
            raw_status = str(node.get("trade_status") or "")
            status = TRADE_STATUS_MAP.get(raw_status)
            if status is None:
                raise GatewayError(
                    f"unknown Alipay trade_status: {raw_status!r}",
                    retryable=False,
                    detail={"trade_status": raw_status},
                )
            total_amount = node.get("total_amount")
            try:
                total_amount_cents = to_cents(total_amount) if total_amount not in (None, "") else None
            except ValueError as exc:
                raise GatewayError(
                    f"Alipay total_amount unparseable: {total_amount!r}", retryable=False
                ) from exc
            return GatewayQueryResult(
                order_id=order_id,
                status=status,
                provider_trade_no=node.get("trade_no"),
                total_amount_cents=total_amount_cents,
                raw_status=raw_status,
            )

        if sub_code in UNPAID_SUB_CODES:
            return GatewayQueryResult(order_id=order_id, status=GatewayStatus.UNPAID, raw_status=sub_code)

        retryable = code in RETRYABLE_CODES or sub_code in RETRYABLE_SUB_CODES
        raise GatewayError(
            f"Alipay trade query failed: code={code} sub_code={sub_code}",
            retryable=retryable,
            detail={"code": code, "sub_code": sub_code, "msg": node.get("sub_msg") or node.get("msg")},
        )

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def verify_notification(self, params: dict[str, str]) -> bool:
        sign = params.get("sign")
        if not sign or params.get("sign_type") != "RSA2":
            return False
        return self._verify(signing_content(params, exclude=("sign", "sign_type")), sign)
