import hashlib
import hmac
import json
import time
from typing import Dict, Optional


def canonical_json(obj: dict) -> str:
    # Compact separators, insertion order preserved; both signer and verifier use this
    return json.dumps(obj, separators=(",", ":"))


def sign_internal_request_headers(payload: dict, secret: str, ts: Optional[str] = None, request_id: Optional[str] = None, idempotency_key: Optional[str] = None) -> Dict[str, str]:
    ts_val = ts or str(int(time.time()))
    msg = (ts_val + canonical_json(payload)).encode()
    sign = hmac.new(secret.encode(), msg, hashlib.sha256).hexdigest()
    headers = {
        "X-Internal-Ts": ts_val,
        "X-Internal-Sign": sign,
        "Content-Type": "application/json",
    }
    if request_id:
        headers["X-Request-ID"] = request_id
    if idempotency_key:
        headers["X-Idempotency-Key"] = idempotency_key
    return headers


def sign_webhook(secret: str, ts: str, event: str, body: bytes) -> str:
    msg = (ts + event).encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    secret: Optional[str],
    ts: Optional[str],
    event: Optional[str],
    body: bytes,
    sign: Optional[str],
    max_age_secs: int = 0,
) -> bool:
    """Check an inbound webhook signed as HMAC-SHA256(ts + event + body).

    With ``max_age_secs`` > 0 the timestamp must also be recent.
    """
    if not secret or not ts or not event or not sign:
        return False
    if max_age_secs > 0:
        try:
            age = abs(int(time.time()) - int(ts))
        except ValueError:
            return False
        if age > max_age_secs:
            return False
    expect = sign_webhook(secret, ts, event, body)
    return hmac.compare_digest(expect, sign)
