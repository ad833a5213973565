from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta

from sqlalchemy import update

from app.database import session_scope
from app.errors import ConcurrencyConflict, InvalidTransition, ValidationError
from app.models import Booking
from app.services import bookings as svc
from app.utils.ids import as_uuid

from utils import book, create_item, login, renter_with_card, send_event, unique_email, verified_owner


ADMIN = {"X-Admin-Token": "dev_admin"}


def test_instant_booking_and_overlap_scenario(client):
    _, h_owner = verified_owner(client)
    item = create_item(client, h_owner, instant_booking_enabled=True, daily_rate_cents=2000)
    _, h_r = renter_with_card(client)
    r = book(client, h_r, item["id"], "2024-06-01", "2024-06-05")
    assert r.status_code == 200, r.text
    b = r.json()
    assert b["mode"] == "instant"
    assert b["state"] == "instantConfirmed"
    assert b["days"] == 5
    assert b["total_cents"] == 10000
    assert b["deposit_cents"] == 5000

    _, h_r2 = renter_with_card(client)
    r = book(client, h_r2, item["id"], "2024-06-03", "2024-06-04")
    assert r.status_code == 400
    assert r.json()["kind"] == "ValidationError"


def test_payout_regression_fails_capture_closed(client):
    owner, h_owner = verified_owner(client)
    item = create_item(client, h_owner)
    _, h_r = renter_with_card(client)
    b = book(client, h_r, item["id"], "2024-06-10", "2024-06-12").json()
    r = client.post(f"/bookings/{b['id']}/decide", headers=h_owner, json={"approve": True})
    assert r.json()["state"] == "awaitingPayment"

    send_event(client, "payout.status", {"email": owner, "status": "revoked"})

    r = client.post(f"/bookings/{b['id']}/confirm_payment", headers=h_r)
    assert r.status_code == 403
    assert r.json()["kind"] == "GatingFailure"
    assert r.json()["precondition"] == "payout_verification"
    got = client.get(f"/bookings/{b['id']}", headers=h_r).json()
    assert got["state"] == "awaitingPayment"
    assert got["charge_status"] == "none"


def test_unverified_owner_yields_request_mode(client):
    h_owner = login(client, unique_email("owner"))
    item = create_item(client, h_owner)
    _, h_r = renter_with_card(client)
    b = book(client, h_r, item["id"], "2024-06-01", "2024-06-01").json()
    assert b["mode"] == "request"
    assert b["state"] == "pendingReview"
    assert b["days"] == 1


def test_request_flow_to_active(client):
    _, h_owner = verified_owner(client)
    item = create_item(client, h_owner)
    _, h_r = renter_with_card(client)
    b = book(client, h_r, item["id"], "2024-10-01", "2024-10-03").json()

    r = client.post(f"/bookings/{b['id']}/confirm_payment", headers=h_r)
    assert r.status_code == 409
    assert r.json()["kind"] == "InvalidTransition"

    r = client.post(f"/bookings/{b['id']}/decide", headers=h_owner, json={"approve": True})
    assert r.status_code == 200
    r = client.post(f"/bookings/{b['id']}/confirm_payment", headers=h_r)
    assert r.status_code == 200, r.text
    paid = r.json()
    assert paid["state"] == "active"
    assert paid["charge_status"] == "succeeded"
    assert paid["hold_status"] == "succeeded"
    assert paid["paid_at"] is not None


def test_reject_then_decide_again_is_invalid(client):
    _, h_owner = verified_owner(client)
    item = create_item(client, h_owner)
    _, h_r = renter_with_card(client)
    b = book(client, h_r, item["id"], "2024-06-01", "2024-06-02").json()
    r = client.post(f"/bookings/{b['id']}/decide", headers=h_owner, json={"approve": False})
    assert r.json()["state"] == "rejected"
    r = client.post(f"/bookings/{b['id']}/decide", headers=h_owner, json={"approve": False})
    assert r.status_code == 409
    assert r.json()["kind"] == "InvalidTransition"


def test_only_owner_decides(client):
    _, h_owner = verified_owner(client)
    item = create_item(client, h_owner)
    _, h_r = renter_with_card(client)
    b = book(client, h_r, item["id"], "2024-06-01", "2024-06-02").json()
    r = client.post(f"/bookings/{b['id']}/decide", headers=h_r, json={"approve": True})
    assert r.status_code == 403
    assert r.json()["kind"] == "Forbidden"


def test_rental_length_limits(client):
    _, h_owner = verified_owner(client)
    item = create_item(client, h_owner, min_rental_days=2, max_rental_days=3)
    _, h_r = renter_with_card(client)
    assert book(client, h_r, item["id"], "2024-06-01", "2024-06-01").status_code == 400
    assert book(client, h_r, item["id"], "2024-06-01", "2024-06-04").status_code == 400
    assert book(client, h_r, item["id"], "2024-06-05", "2024-06-04").status_code == 400
    assert book(client, h_r, item["id"], "2024-06-01", "2024-06-03").status_code == 200


def test_owner_cannot_book_own_item(client):
    _, h_owner = verified_owner(client)
    item = create_item(client, h_owner)
    r = book(client, h_owner, item["id"], "2024-06-01", "2024-06-02")
    assert r.status_code == 400


def test_unavailable_item(client):
    _, h_owner = verified_owner(client)
    item = create_item(client, h_owner)
    client.patch(f"/items/{item['id']}", headers=h_owner, json={"availability": False})
    _, h_r = renter_with_card(client)
    r = book(client, h_r, item["id"], "2024-06-01", "2024-06-02")
    assert r.status_code == 400


def test_adjacent_ranges_and_freed_dates(client):
    _, h_owner = verified_owner(client)
    item = create_item(client, h_owner)
    _, h_r = renter_with_card(client)
    first = book(client, h_r, item["id"], "2024-11-01", "2024-11-03").json()
    # shares 2024-11-03 under inclusive ranges
    assert book(client, h_r, item["id"], "2024-11-03", "2024-11-04").status_code == 400
    assert book(client, h_r, item["id"], "2024-11-04", "2024-11-05").status_code == 200

    r = client.post(f"/bookings/{first['id']}/decide", headers=h_owner, json={"approve": False})
    assert r.json()["state"] == "rejected"
    assert book(client, h_r, item["id"], "2024-11-01", "2024-11-03").status_code == 200


def test_cancel_rules(client):
    _, h_owner = verified_owner(client)
    item = create_item(client, h_owner, instant_booking_enabled=True)
    _, h_r = renter_with_card(client)
    b = book(client, h_r, item["id"], "2024-12-01", "2024-12-02").json()
    r = client.post(f"/bookings/{b['id']}/cancel", headers=h_r)
    assert r.status_code == 200
    assert r.json()["state"] == "cancelled"
    r = client.post(f"/bookings/{b['id']}/cancel", headers=h_r)
    assert r.status_code == 409

    b = book(client, h_r, item["id"], "2024-12-01", "2024-12-02").json()
    assert client.post(f"/bookings/{b['id']}/confirm_payment", headers=h_r).json()["state"] == "active"
    r = client.post(f"/bookings/{b['id']}/cancel", headers=h_owner)
    assert r.status_code == 409
    assert r.json()["state"] == "active"


def test_outsider_cannot_see_booking(client):
    _, h_owner = verified_owner(client)
    item = create_item(client, h_owner)
    _, h_r = renter_with_card(client)
    b = book(client, h_r, item["id"], "2024-06-01", "2024-06-02").json()
    h_x = login(client, unique_email())
    assert client.get(f"/bookings/{b['id']}", headers=h_x).status_code == 403
    assert client.post(f"/bookings/{b['id']}/cancel", headers=h_x).status_code == 403


def test_list_bookings_by_role(client):
    owner, h_owner = verified_owner(client)
    item = create_item(client, h_owner)
    renter, h_r = renter_with_card(client)
    b = book(client, h_r, item["id"], "2024-06-01", "2024-06-02").json()
    mine = client.get("/bookings?role=renter", headers=h_r).json()["bookings"]
    assert [x["id"] for x in mine] == [b["id"]]
    assert client.get("/bookings?role=renter", headers=h_owner).json()["bookings"] == []
    assert len(client.get("/bookings?role=owner", headers=h_owner).json()["bookings"]) == 1
    assert client.get("/bookings?role=admin", headers=h_owner).status_code == 400


def test_conversation_ref(client):
    owner, h_owner = verified_owner(client)
    item = create_item(client, h_owner)
    renter, h_r = renter_with_card(client)
    b = book(client, h_r, item["id"], "2024-06-01", "2024-06-02").json()
    r = client.get(f"/bookings/{b['id']}/conversation", headers=h_owner)
    assert r.status_code == 200
    body = r.json()
    assert body["conversation_ref"] == f"booking:{b['id']}"
    assert set(body["participants"]) == {owner, renter}


def test_blocked_renter_cannot_book(client):
    owner, h_owner = verified_owner(client)
    item = create_item(client, h_owner)
    renter, h_r = renter_with_card(client)
    r = client.put("/relations/block", headers=h_owner, json={"target": renter, "desired": True})
    assert r.status_code == 200
    assert book(client, h_r, item["id"], "2024-06-01", "2024-06-02").status_code == 400


def test_expire_unpaid(client):
    _, h_owner = verified_owner(client)
    item = create_item(client, h_owner)
    _, h_r = renter_with_card(client)
    b = book(client, h_r, item["id"], "2024-06-01", "2024-06-02").json()
    client.post(f"/bookings/{b['id']}/decide", headers=h_owner, json={"approve": True})
    with session_scope() as db:
        db.execute(
            update(Booking)
            .where(Booking.id == as_uuid(b["id"]))
            .values(decided_at=datetime.utcnow() - timedelta(hours=25))
        )
    r = client.post("/admin/bookings/expire_unpaid", headers=ADMIN)
    assert r.status_code == 200, r.text
    assert b["id"] in r.json()["expired"]
    got = client.get(f"/bookings/{b['id']}", headers=h_r).json()
    assert got["state"] == "cancelled"


def _decide(booking_id, owner):
    try:
        with session_scope() as db:
            svc.decide(db, booking_id, owner, True)
        return "ok"
    except (InvalidTransition, ConcurrencyConflict) as exc:
        return exc.kind


def test_concurrent_decide_has_one_winner(client):
    owner, h_owner = verified_owner(client)
    item = create_item(client, h_owner)
    _, h_r = renter_with_card(client)
    b = book(client, h_r, item["id"], "2024-06-01", "2024-06-02").json()
    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(lambda _: _decide(b["id"], owner), range(2)))
    assert results.count("ok") == 1
    assert "InvalidTransition" in results
    assert client.get(f"/bookings/{b['id']}", headers=h_r).json()["state"] == "awaitingPayment"


def _create(item_id, renter, start, end):
    try:
        with session_scope() as db:
            svc.create_booking(db, item_id, renter, start, end)
        return "ok"
    except ValidationError as exc:
        return exc.kind


def test_concurrent_overlapping_creations(client):
    _, h_owner = verified_owner(client)
    item = create_item(client, h_owner)
    r1, _ = renter_with_card(client)
    r2, _ = renter_with_card(client)
    args = [(r1, date(2024, 5, 1), date(2024, 5, 4)), (r2, date(2024, 5, 3), date(2024, 5, 6))]
    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(lambda a: _create(item["id"], *a), args))
    assert sorted(results) == ["ValidationError", "ok"]
