"""Payment / verification provider adapter.

Calls that carry an idempotency key are safe to repeat and get a bounded
retry with exponential backoff. Session and onboarding initiation have no
key, so they are attempted once and the caller is told to poll.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import httpx
from prometheus_client import Counter

from rentals_shared.internal_hmac import canonical_json, sign_internal_request_headers

from ..config import settings
from ..errors import ExternalProviderFailure


log = logging.getLogger("rentals.provider")

PROVIDER_CALLS = Counter(
    "rentals_provider_calls_total",
    "Payment/verification provider calls",
    ["op", "result"],  # result: ok|pending|declined|error
)

SUCCEEDED = "succeeded"
PENDING = "pending"
FAILED = "failed"


class ProviderError(Exception):
    """Transport-level failure (timeout, 5xx); the call may or may not have landed."""


@dataclass
class ProviderResult:
    status: str  # succeeded|pending|failed
    ref: Optional[str] = None
    reason: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == SUCCEEDED


class PaymentProvider:
    def initiate_charge(self, booking_id: str, renter_email: str, amount_cents: int, idempotency_key: str) -> ProviderResult:
        raise NotImplementedError

    def initiate_deposit_hold(self, booking_id: str, renter_email: str, amount_cents: int, idempotency_key: str) -> ProviderResult:
        raise NotImplementedError

    def release_deposit_hold(self, hold_ref: str, idempotency_key: str) -> ProviderResult:
        raise NotImplementedError

    def refund_charge(self, charge_ref: str, amount_cents: int, idempotency_key: str) -> ProviderResult:
        raise NotImplementedError

    def initiate_identity_session(self, email: str) -> ProviderResult:
        raise NotImplementedError

    def initiate_payout_onboarding(self, email: str) -> ProviderResult:
        raise NotImplementedError


class DevPaymentProvider(PaymentProvider):
    """Local stand-in used when no provider URL is configured; every leg succeeds."""

    def _ok(self, prefix: str, **data: Any) -> ProviderResult:
        return ProviderResult(status=SUCCEEDED, ref=f"{prefix}_{uuid.uuid4().hex[:16]}", data=data)

    def initiate_charge(self, booking_id, renter_email, amount_cents, idempotency_key):
        return self._ok("dev_ch", amount_cents=amount_cents)

    def initiate_deposit_hold(self, booking_id, renter_email, amount_cents, idempotency_key):
        return self._ok("dev_hold", amount_cents=amount_cents)

    def release_deposit_hold(self, hold_ref, idempotency_key):
        return self._ok("dev_rel")

    def refund_charge(self, charge_ref, amount_cents, idempotency_key):
        return self._ok("dev_rf", amount_cents=amount_cents)

    def initiate_identity_session(self, email):
        return self._ok("dev_idv", url=f"https://verify.invalid/session?email={email}")

    def initiate_payout_onboarding(self, email):
        return self._ok("dev_acct", url=f"https://onboard.invalid/payout?email={email}")


class HttpPaymentProvider(PaymentProvider):
    def __init__(self, base_url: str, secret: str, timeout: float, transport: httpx.BaseTransport | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.secret = secret
        self.timeout = timeout
        self.transport = transport

    def _post(self, path: str, body: Dict[str, Any], idempotency_key: Optional[str] = None) -> ProviderResult:
        headers = sign_internal_request_headers(body, self.secret, idempotency_key=idempotency_key)
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                resp = client.post(f"{self.base_url}{path}", content=canonical_json(body), headers=headers)
        except httpx.HTTPError as exc:
            raise ProviderError(f"{path}: {exc}") from exc
        if resp.status_code >= 500:
            raise ProviderError(f"{path}: status {resp.status_code}")
        js = resp.json() if resp.content else {}
        if resp.status_code >= 400:
            return ProviderResult(status=FAILED, reason=js.get("detail") or f"status_{resp.status_code}", data=js)
        return ProviderResult(status=js.get("status") or SUCCEEDED, ref=js.get("id"), reason=js.get("reason"), data=js)

    def initiate_charge(self, booking_id, renter_email, amount_cents, idempotency_key):
        body = {"booking_id": booking_id, "customer": renter_email, "amount_cents": int(amount_cents), "capture": True}
        return self._post("/charges", body, idempotency_key)

    def initiate_deposit_hold(self, booking_id, renter_email, amount_cents, idempotency_key):
        body = {"booking_id": booking_id, "customer": renter_email, "amount_cents": int(amount_cents), "capture": False}
        return self._post("/holds", body, idempotency_key)

    def release_deposit_hold(self, hold_ref, idempotency_key):
        return self._post(f"/holds/{hold_ref}/release", {"id": hold_ref}, idempotency_key)

    def refund_charge(self, charge_ref, amount_cents, idempotency_key):
        return self._post(f"/charges/{charge_ref}/refund", {"id": charge_ref, "amount_cents": int(amount_cents)}, idempotency_key)

    def initiate_identity_session(self, email):
        return self._post("/identity/sessions", {"email": email})

    def initiate_payout_onboarding(self, email):
        return self._post("/payouts/onboarding", {"email": email})


_provider: PaymentProvider | None = None


def get_provider() -> PaymentProvider:
    global _provider
    if _provider is None:
        if settings.PROVIDER_BASE_URL:
            _provider = HttpPaymentProvider(settings.PROVIDER_BASE_URL, settings.PROVIDER_INTERNAL_SECRET, settings.PROVIDER_TIMEOUT_SECS)
        else:
            _provider = DevPaymentProvider()
    return _provider


def set_provider(provider: PaymentProvider | None) -> None:
    global _provider
    _provider = provider


def _count(op: str, result: str) -> None:
    try:
        PROVIDER_CALLS.labels(op, result).inc()
    except Exception:
        pass


def call(op: str, fn: Callable[[], ProviderResult], idempotent: bool) -> ProviderResult:
    """Invoke a provider operation.

    Transport errors on idempotent calls are retried up to
    PROVIDER_MAX_ATTEMPTS; a declined result is returned as-is and never
    retried. Exhausted or non-retryable transport errors raise
    ExternalProviderFailure.
    """
    attempts = max(1, int(settings.PROVIDER_MAX_ATTEMPTS)) if idempotent else 1
    backoff = float(settings.PROVIDER_BACKOFF_SECS)
    last_err: Exception | None = None
    for attempt in range(attempts):
        try:
            result = fn()
        except ProviderError as exc:
            last_err = exc
            _count(op, "error")
            log.warning("provider op=%s attempt=%d failed: %s", op, attempt + 1, exc)
            if attempt + 1 < attempts:
                time.sleep(backoff * (2 ** attempt))
            continue
        _count(op, {SUCCEEDED: "ok", PENDING: "pending"}.get(result.status, "declined"))
        return result
    raise ExternalProviderFailure(
        op,
        f"Provider call {op} failed: {last_err}",
        attempts=attempts,
        poll=not idempotent,
    )
