import json
import logging

from fastapi import APIRouter, Header, HTTPException, status, Depends
from sqlalchemy.orm import Session

from rentals_shared import verify_webhook_signature

from ..config import settings
from ..database import get_db
from ..errors import ValidationError
from ..services import bookings, verification


log = logging.getLogger("rentals.webhooks")

router = APIRouter(prefix="/provider", tags=["provider-webhook"])

EVENTS = ("charge.result", "identity.status", "payout.status")


@router.post("/webhooks")
def receive_webhook(
    payload: dict,
    db: Session = Depends(get_db),
    ts: str | None = Header(default=None, alias="X-Webhook-Ts"),
    event: str | None = Header(default=None, alias="X-Webhook-Event"),
    sign: str | None = Header(default=None, alias="X-Webhook-Sign"),
):
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    ok = bool(ts and event and sign) and verify_webhook_signature(
        settings.PROVIDER_WEBHOOK_SECRET, ts, event, raw, sign,
        max_age_secs=settings.PROVIDER_WEBHOOK_MAX_AGE_SECS,
    )
    if not ok:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")
    if event not in EVENTS:
        log.info("ignoring provider event %s", event)
        return {"detail": "ok", "result": "ignored"}
    data = payload.get("data") or {}
    token = payload.get("token") or data.get("token")
    if event == "charge.result":
        result = bookings.apply_charge_result(
            db,
            data.get("booking_id"),
            data.get("leg") or "charge",
            data.get("status"),
            token,
            ref=data.get("ref"),
            reason=data.get("reason"),
        )
    else:
        email = (data.get("email") or "").strip().lower()
        if not email:
            raise ValidationError("email is required")
        sequence = data.get("sequence")
        if sequence is not None:
            try:
                sequence = int(sequence)
            except (TypeError, ValueError):
                raise ValidationError("sequence must be an integer")
        result = verification.apply_callback(db, event.split(".", 1)[0], email, data.get("status"), token, sequence)
    log.info("provider event %s token=%s -> %s", event, token, result)
    return {"detail": "ok", "result": result}
