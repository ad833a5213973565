"""Identity and payout verification ledgers.

Both machines share one shape::

    unverified -> pending -> verified | failed
    failed -> pending            (re-submission)
    verified -> failed           (provider revocation only)

Local submissions move a record to ``pending``; everything else arrives
through provider callbacks, which are deduplicated by token and ordered by
an optional monotonic sequence.
"""

import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..errors import InvalidTransition, ValidationError
from ..models import FAILED, PENDING, UNVERIFIED, VERIFIED, User
from ..utils.audit import record_event
from ..utils.notify import emit
from . import events, provider
from .gating import load_user


log = logging.getLogger("rentals.verification")

LEDGERS = {
    "identity": ("identity_status", "identity_seq", "identity_session_ref"),
    "payout": ("payout_status", "payout_seq", "payout_account_ref"),
}

SUBMITTABLE = (UNVERIFIED, FAILED)

# callback status -> states it may be applied from, and resulting state
CALLBACK_TRANSITIONS = {
    "verified": ((UNVERIFIED, PENDING), VERIFIED),
    "failed": ((UNVERIFIED, PENDING), FAILED),
    "revoked": ((VERIFIED,), FAILED),
}


def _columns(kind: str):
    if kind not in LEDGERS:
        raise ValidationError(f"Unknown verification kind: {kind}")
    return LEDGERS[kind]


def _set_status(db: Session, email: str, kind: str, from_states, to_state: str, **values) -> bool:
    status_col, _seq_col, _ref_col = _columns(kind)
    col = getattr(User, status_col)
    res = db.execute(
        update(User)
        .where(User.email == email, col.in_(list(from_states)))
        .values(**{status_col: to_state}, **values)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def status_of(user: User, kind: str) -> str:
    return getattr(user, _columns(kind)[0])


def submit(db: Session, email: str, kind: str) -> dict:
    """Local onboarding submission: unverified|failed -> pending."""
    status_col, _seq_col, ref_col = _columns(kind)
    user = load_user(db, email)
    current = getattr(user, status_col)
    if current == PENDING:
        return {"status": PENDING, "session_ref": getattr(user, ref_col), "url": None}
    if current not in SUBMITTABLE:
        raise InvalidTransition(f"{kind} verification already {current}", state=current)

    p = provider.get_provider()
    if kind == "identity":
        result = provider.call("initiate_identity_session", lambda: p.initiate_identity_session(email), idempotent=False)
    else:
        result = provider.call("initiate_payout_onboarding", lambda: p.initiate_payout_onboarding(email), idempotent=False)
    if result.status == provider.FAILED:
        raise ValidationError(f"{kind} submission rejected: {result.reason or 'declined'}")

    if not _set_status(db, email, kind, SUBMITTABLE, PENDING, **{ref_col: result.ref}):
        user = load_user(db, email)
        now = getattr(user, status_col)
        if now == PENDING:
            return {"status": PENDING, "session_ref": getattr(user, ref_col), "url": None}
        raise InvalidTransition(f"{kind} verification already {now}", state=now)
    record_event(db, f"{kind}.submitted", email, actor=email, data={"from": current})
    return {"status": PENDING, "session_ref": result.ref, "url": result.data.get("url")}


def apply_callback(db: Session, kind: str, email: str, status: str, token: str, sequence: Optional[int] = None) -> str:
    """Apply a provider status callback.

    Returns one of ``applied``, ``duplicate``, ``stale`` or ``ignored``.
    """
    status_col, seq_col, _ref_col = _columns(kind)
    if status not in CALLBACK_TRANSITIONS:
        raise ValidationError(f"Unknown {kind} status: {status}")
    if not token:
        raise ValidationError("Missing dedup token")
    if not events.claim(db, f"{kind}.status", token, subject=email):
        return "duplicate"
    user = load_user(db, email)
    if sequence is not None and sequence <= getattr(user, seq_col):
        log.info("stale %s callback for %s: seq=%s <= %s", kind, email, sequence, getattr(user, seq_col))
        return "stale"
    from_states, to_state = CALLBACK_TRANSITIONS[status]
    current = getattr(user, status_col)
    extra = {seq_col: sequence} if sequence is not None else {}
    if not _set_status(db, email, kind, from_states, to_state, **extra):
        log.info("ignored %s callback %s for %s in state %s", kind, status, email, current)
        return "ignored"
    record_event(db, f"{kind}.{status}", email, data={"from": current, "to": to_state, "token": token})
    if kind == "payout" and status == "revoked":
        emit(db, "payout.revoked", {"email": email})
    else:
        emit(db, f"{kind}.{to_state}", {"email": email})
    return "applied"
