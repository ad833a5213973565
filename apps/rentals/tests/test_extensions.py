from app.services import provider

from utils import RecordingProvider, book, create_item, renter_with_card, verified_owner


def _active_booking(client, **item_overrides):
    _, h_owner = verified_owner(client)
    item = create_item(client, h_owner, instant_booking_enabled=True, max_rental_days=7, **item_overrides)
    _, h_r = renter_with_card(client)
    b = book(client, h_r, item["id"], "2025-06-01", "2025-06-05").json()
    r = client.post(f"/bookings/{b['id']}/confirm_payment", headers=h_r)
    assert r.json()["state"] == "active", r.text
    return item, r.json(), h_owner, h_r


def test_approved_extension_moves_end_date_and_total(client):
    item, b, h_owner, h_r = _active_booking(client, daily_rate_cents=2000)
    fake = RecordingProvider()
    provider.set_provider(fake)

    r = client.post(f"/bookings/{b['id']}/extensions", headers=h_r, json={"new_end_date": "2025-06-07", "message": "Two more days please"})
    assert r.status_code == 200, r.text
    ext = r.json()
    assert ext["status"] == "pending"
    assert ext["previous_end_date"] == "2025-06-05"
    assert ext["extra_days"] == 2
    assert ext["extra_cents"] == 4000

    r = client.post(f"/bookings/{b['id']}/extensions/{ext['id']}/decide", headers=h_owner, json={"approve": True})
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "approved"
    assert r.json()["charge_status"] == "succeeded"
    assert fake.charge_keys == [f"rentals:{b['id']}:extension:{ext['id']}"]

    booking = client.get(f"/bookings/{b['id']}", headers=h_r).json()
    assert booking["state"] == "active"
    assert booking["end_date"] == "2025-06-07"
    assert booking["days"] == 7
    assert booking["total_cents"] == b["total_cents"] + 4000

    # the extended dates are now held
    _, h_r2 = renter_with_card(client)
    assert book(client, h_r2, item["id"], "2025-06-06", "2025-06-07").status_code == 400
    assert book(client, h_r2, item["id"], "2025-06-08", "2025-06-09").status_code == 200

    listed = client.get(f"/bookings/{b['id']}/extensions", headers=h_owner).json()
    assert [e["status"] for e in listed] == ["approved"]


def test_extension_request_rules(client):
    item, b, h_owner, h_r = _active_booking(client)
    url = f"/bookings/{b['id']}/extensions"

    r = client.post(url, headers=h_owner, json={"new_end_date": "2025-06-06"})
    assert r.status_code == 403
    r = client.post(url, headers=h_r, json={"new_end_date": "2025-06-05"})
    assert r.status_code == 400
    # 2025-06-01..09 is nine days, over the item's maximum of seven
    r = client.post(url, headers=h_r, json={"new_end_date": "2025-06-09"})
    assert r.status_code == 400
    assert "Maximum rental" in r.json()["detail"]

    assert client.post(url, headers=h_r, json={"new_end_date": "2025-06-06"}).status_code == 200
    r = client.post(url, headers=h_r, json={"new_end_date": "2025-06-07"})
    assert r.status_code == 400
    assert r.json()["kind"] == "ValidationError"


def test_extension_requires_active_booking(client):
    _, h_owner = verified_owner(client)
    item = create_item(client, h_owner, instant_booking_enabled=True)
    _, h_r = renter_with_card(client)
    b = book(client, h_r, item["id"], "2025-06-01", "2025-06-02").json()
    assert b["state"] == "instantConfirmed"
    r = client.post(f"/bookings/{b['id']}/extensions", headers=h_r, json={"new_end_date": "2025-06-03"})
    assert r.status_code == 409
    assert r.json()["kind"] == "InvalidTransition"


def test_extension_request_rejects_booked_dates(client):
    item, b, _, h_r = _active_booking(client)
    _, h_r2 = renter_with_card(client)
    assert book(client, h_r2, item["id"], "2025-06-06", "2025-06-06").status_code == 200
    r = client.post(f"/bookings/{b['id']}/extensions", headers=h_r, json={"new_end_date": "2025-06-06"})
    assert r.status_code == 400


def test_approval_rechecks_overlap(client):
    item, b, h_owner, h_r = _active_booking(client)
    ext = client.post(f"/bookings/{b['id']}/extensions", headers=h_r, json={"new_end_date": "2025-06-07"}).json()

    # another renter takes the dates while the request is pending
    _, h_r2 = renter_with_card(client)
    assert book(client, h_r2, item["id"], "2025-06-07", "2025-06-08").status_code == 200

    r = client.post(f"/bookings/{b['id']}/extensions/{ext['id']}/decide", headers=h_owner, json={"approve": True})
    assert r.status_code == 400
    assert r.json()["kind"] == "ValidationError"
    listed = client.get(f"/bookings/{b['id']}/extensions", headers=h_r).json()
    assert listed[0]["status"] == "pending"
    assert client.get(f"/bookings/{b['id']}", headers=h_r).json()["end_date"] == "2025-06-05"

    r = client.post(f"/bookings/{b['id']}/extensions/{ext['id']}/decide", headers=h_owner, json={"approve": False})
    assert r.status_code == 200
    assert r.json()["status"] == "declined"
    r = client.post(f"/bookings/{b['id']}/extensions/{ext['id']}/decide", headers=h_owner, json={"approve": True})
    assert r.status_code == 409


def test_only_owner_decides_extension(client):
    _, b, _, h_r = _active_booking(client)
    ext = client.post(f"/bookings/{b['id']}/extensions", headers=h_r, json={"new_end_date": "2025-06-06"}).json()
    r = client.post(f"/bookings/{b['id']}/extensions/{ext['id']}/decide", headers=h_r, json={"approve": True})
    assert r.status_code == 403


def test_declined_extension_charge_leaves_booking_unchanged(client):
    _, b, h_owner, h_r = _active_booking(client)
    ext = client.post(f"/bookings/{b['id']}/extensions", headers=h_r, json={"new_end_date": "2025-06-06"}).json()
    provider.set_provider(RecordingProvider(charge_status=provider.FAILED))

    r = client.post(f"/bookings/{b['id']}/extensions/{ext['id']}/decide", headers=h_owner, json={"approve": True})
    assert r.status_code == 502
    assert r.json()["kind"] == "ExternalProviderFailure"
    booking = client.get(f"/bookings/{b['id']}", headers=h_r).json()
    assert booking["end_date"] == "2025-06-05"
    assert booking["total_cents"] == b["total_cents"]
    assert client.get(f"/bookings/{b['id']}/extensions", headers=h_r).json()[0]["status"] == "pending"
