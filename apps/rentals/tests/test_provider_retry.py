import hashlib
import hmac
import json

import httpx

from app.services import provider
from app.services.provider import HttpPaymentProvider, ProviderResult

from utils import RecordingProvider, book, create_item, renter_with_card, verified_owner


def _instant_booking(client, deposit_cents=5000):
    _, h_owner = verified_owner(client)
    item = create_item(client, h_owner, instant_booking_enabled=True, deposit_cents=deposit_cents)
    _, h_r = renter_with_card(client)
    b = book(client, h_r, item["id"], "2024-06-01", "2024-06-03").json()
    assert b["state"] == "instantConfirmed"
    return b, h_r, h_owner


def test_transient_charge_errors_are_retried_with_same_key(client):
    fake = RecordingProvider(charge_failures=2)
    provider.set_provider(fake)
    b, h_r, _ = _instant_booking(client)
    r = client.post(f"/bookings/{b['id']}/confirm_payment", headers=h_r)
    assert r.status_code == 200, r.text
    assert r.json()["state"] == "active"
    assert len(fake.charge_keys) == 3
    assert len(set(fake.charge_keys)) == 1


def test_exhausted_retries_surface_failure(client):
    fake = RecordingProvider(charge_failures=10)
    provider.set_provider(fake)
    b, h_r, _ = _instant_booking(client)
    r = client.post(f"/bookings/{b['id']}/confirm_payment", headers=h_r)
    assert r.status_code == 502
    body = r.json()
    assert body["kind"] == "ExternalProviderFailure"
    assert body["attempts"] == 3
    assert body["poll"] is False
    assert len(fake.charge_keys) == 3
    assert fake.hold_keys == []
    got = client.get(f"/bookings/{b['id']}", headers=h_r).json()
    assert got["state"] == "instantConfirmed"
    assert got["payment_error"]

    provider.set_provider(None)
    r = client.post(f"/bookings/{b['id']}/confirm_payment", headers=h_r)
    assert r.status_code == 200
    assert r.json()["state"] == "active"


def test_declined_hold_keeps_captured_charge(client):
    fake = RecordingProvider(hold_result=ProviderResult(status=provider.FAILED, reason="insufficient_funds"))
    provider.set_provider(fake)
    b, h_r, _ = _instant_booking(client)
    r = client.post(f"/bookings/{b['id']}/confirm_payment", headers=h_r)
    assert r.status_code == 502
    assert r.json()["declined"] is True
    got = client.get(f"/bookings/{b['id']}", headers=h_r).json()
    assert got["state"] == "instantConfirmed"
    assert got["charge_status"] == "succeeded"
    assert got["hold_status"] == "failed"

    # retry only the failed leg
    fake.hold_result = None
    r = client.post(f"/bookings/{b['id']}/confirm_payment", headers=h_r)
    assert r.status_code == 200, r.text
    assert r.json()["state"] == "active"
    assert len(fake.charge_keys) == 1
    assert len(fake.hold_keys) == 2
    assert fake.hold_keys[0] != fake.hold_keys[1]


def test_zero_deposit_skips_hold(client):
    fake = RecordingProvider()
    provider.set_provider(fake)
    b, h_r, _ = _instant_booking(client, deposit_cents=0)
    r = client.post(f"/bookings/{b['id']}/confirm_payment", headers=h_r)
    assert r.json()["state"] == "active"
    assert fake.hold_keys == []


def test_cancel_releases_authorized_hold(client):
    fake = RecordingProvider(charge_status=provider.PENDING)
    provider.set_provider(fake)
    b, h_r, h_owner = _instant_booking(client)
    r = client.post(f"/bookings/{b['id']}/confirm_payment", headers=h_r)
    assert r.status_code == 200
    assert r.json()["state"] == "instantConfirmed"
    assert r.json()["charge_status"] == "pending"
    assert r.json()["hold_status"] == "succeeded"

    r = client.post(f"/bookings/{b['id']}/cancel", headers=h_owner)
    assert r.status_code == 200, r.text
    assert r.json()["state"] == "cancelled"
    assert r.json()["hold_status"] == "released"
    assert fake.releases == [f"hold_{b['id'][:8]}"]


def _signed_handler(seen):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/charges" and len(seen) == 1:
            return httpx.Response(503, json={"detail": "busy"})
        if request.url.path == "/holds":
            return httpx.Response(402, json={"detail": "card_declined"})
        return httpx.Response(200, json={"id": "ch_remote", "status": "succeeded"})
    return handler


def test_http_provider_signs_and_retries_5xx():
    seen = []
    p = HttpPaymentProvider("https://provider.invalid", "s3cret", 2.0, transport=httpx.MockTransport(_signed_handler(seen)))
    res = provider.call("initiate_charge", lambda: p.initiate_charge("b1", "r@example.com", 1000, "rentals:b1:charge:1"), idempotent=True)
    assert res.ok
    assert res.ref == "ch_remote"
    assert len(seen) == 2
    req = seen[-1]
    assert req.headers["X-Idempotency-Key"] == "rentals:b1:charge:1"
    body = req.content.decode()
    expect = hmac.new(b"s3cret", (req.headers["X-Internal-Ts"] + body).encode(), hashlib.sha256).hexdigest()
    assert req.headers["X-Internal-Sign"] == expect
    assert json.loads(body)["amount_cents"] == 1000

    res = p.initiate_deposit_hold("b1", "r@example.com", 500, "rentals:b1:hold:1")
    assert res.status == provider.FAILED
    assert res.reason == "card_declined"
