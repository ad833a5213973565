import json
import time
import uuid

from rentals_shared import sign_webhook

from app.config import settings
from app.services import provider
from app.services.provider import DevPaymentProvider, ProviderError, ProviderResult


def unique_email(prefix: str = "user") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}@example.com"


def login(client, email: str, name: str = "Test") -> dict:
    r = client.post("/auth/dev_login", json={"email": email, "name": name})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['access_token']}"}


def send_event(client, event: str, data: dict, token: str | None = None, secret: str | None = None):
    payload = {"token": token or uuid.uuid4().hex, "data": data}
    body = json.dumps(payload, separators=(",", ":"))
    ts = str(int(time.time()))
    sign = sign_webhook(secret or settings.PROVIDER_WEBHOOK_SECRET, ts, event, body.encode())
    return client.post(
        "/provider/webhooks",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Webhook-Ts": ts,
            "X-Webhook-Event": event,
            "X-Webhook-Sign": sign,
        },
    )


def verified_owner(client):
    email = unique_email("owner")
    h = login(client, email, "Owner")
    r = client.post("/me/payout/submit", headers=h)
    assert r.status_code == 200, r.text
    r = send_event(client, "payout.status", {"email": email, "status": "verified"})
    assert r.status_code == 200, r.text
    assert r.json()["result"] == "applied"
    return email, h


def renter_with_card(client):
    email = unique_email("renter")
    h = login(client, email, "Renter")
    r = client.post("/me/payment_method", headers=h, json={"method_ref": f"pm_{uuid.uuid4().hex[:8]}"})
    assert r.status_code == 200, r.text
    return email, h


def create_item(client, headers, **overrides) -> dict:
    body = {"title": "Camping tent", "daily_rate_cents": 1500, "deposit_cents": 5000}
    body.update(overrides)
    r = client.post("/items", headers=headers, json=body)
    assert r.status_code == 200, r.text
    return r.json()


def book(client, headers, item_id: str, start: str, end: str):
    return client.post("/bookings", headers=headers, json={"item_id": item_id, "start_date": start, "end_date": end})


class RecordingProvider(DevPaymentProvider):
    def __init__(self, charge_failures=0, hold_result=None, charge_status=provider.SUCCEEDED):
        self.charge_failures = charge_failures
        self.hold_result = hold_result
        self.charge_status = charge_status
        self.charge_keys = []
        self.hold_keys = []
        self.refunds = []
        self.releases = []

    def initiate_charge(self, booking_id, renter_email, amount_cents, idempotency_key):
        self.charge_keys.append(idempotency_key)
        if self.charge_failures > 0:
            self.charge_failures -= 1
            raise ProviderError("connect timeout")
        return ProviderResult(status=self.charge_status, ref=f"ch_{booking_id[:8]}")

    def initiate_deposit_hold(self, booking_id, renter_email, amount_cents, idempotency_key):
        self.hold_keys.append(idempotency_key)
        if self.hold_result is not None:
            return self.hold_result
        return ProviderResult(status=provider.SUCCEEDED, ref=f"hold_{booking_id[:8]}")

    def refund_charge(self, charge_ref, amount_cents, idempotency_key):
        self.refunds.append((charge_ref, amount_cents))
        return ProviderResult(status=provider.SUCCEEDED, ref="rf_1")

    def release_deposit_hold(self, hold_ref, idempotency_key):
        self.releases.append(hold_ref)
        return ProviderResult(status=provider.SUCCEEDED, ref="rel_1")
