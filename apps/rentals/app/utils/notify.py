import json
import logging
from typing import Any, Dict, Optional, Tuple

import redis
from sqlalchemy import event
from sqlalchemy.orm import Session

from ..config import settings


log = logging.getLogger("rentals.notify")

_OUTBOX_KEY = "rentals_outbox"

# (url, client); rebuilt only when REDIS_URL changes
_client_cache: Tuple[Optional[str], Optional[redis.Redis]] = (None, None)


def _redis_client() -> Optional[redis.Redis]:
    global _client_cache
    url = settings.REDIS_URL
    if not url:
        return None
    cached_url, cli = _client_cache
    if cli is not None and cached_url == url:
        return cli
    try:
        cli = redis.from_url(url)
    except Exception as e:
        log.warning("notify(redis): cannot build client: %s", e)
        return None
    _client_cache = (url, cli)
    return cli


def notify(event_name: str, payload: Dict[str, Any]) -> None:
    """Fire-and-forget delivery to the notification collaborator; never raises."""
    try:
        if settings.NOTIFY_MODE == "redis":
            cli = _redis_client()
            if cli is None:
                log.warning("notify(redis): no client available; falling back to log")
            else:
                cli.publish(settings.NOTIFY_REDIS_CHANNEL, json.dumps({"event": event_name, "data": payload}, default=str))
                return
        log.info("event=%s payload=%s", event_name, payload)
    except Exception as e:
        log.warning("notify(%s) failed: %s", event_name, e)


def emit(db: Session, event_name: str, payload: Dict[str, Any]) -> None:
    """Queue an event on the session; it is delivered only once the transaction commits."""
    db.info.setdefault(_OUTBOX_KEY, []).append((event_name, payload))


@event.listens_for(Session, "after_commit")
def _flush_outbox(session: Session) -> None:
    pending = session.info.pop(_OUTBOX_KEY, None) or []
    for event_name, payload in pending:
        notify(event_name, payload)


@event.listens_for(Session, "after_soft_rollback")
def _drop_outbox(session: Session, previous_transaction) -> None:
    if previous_transaction.parent is None:
        session.info.pop(_OUTBOX_KEY, None)
