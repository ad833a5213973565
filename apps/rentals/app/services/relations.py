"""Idempotent favorite / follow / block toggles.

``set_relation`` converges the (kind, actor, target) membership to the
desired value. Creating what exists and deleting what is absent are both
successful no-ops, including when duplicate calls race each other.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import ConcurrencyConflict, NotFound, ValidationError
from ..models import Item, Relation, User


log = logging.getLogger("rentals.relations")

# kind -> what the target addresses
KINDS = {"favorite": "item", "follow": "user", "block": "user"}


@dataclass
class Locator:
    name: str
    find: Callable[[], List[Relation]]


def _target_key(db: Session, kind: str, actor_email: str, target: str) -> str:
    if kind not in KINDS:
        raise ValidationError(f"Unknown relation kind: {kind}")
    target = (target or "").strip()
    if not target:
        raise ValidationError("target is required")
    if KINDS[kind] == "item":
        try:
            item_id = UUID(target)
        except ValueError:
            raise NotFound("Item not found")
        if db.get(Item, item_id) is None:
            raise NotFound("Item not found")
        return str(item_id)
    target = target.lower()
    if target == actor_email:
        raise ValidationError(f"Cannot {kind} yourself")
    if db.get(User, target) is None:
        raise NotFound("User not found")
    return target


def _locators(db: Session, kind: str, actor_email: str, target_key: str, relation_id: Optional[UUID]) -> Iterator[Locator]:
    yield Locator(
        "composite",
        lambda: db.query(Relation)
        .filter(Relation.kind == kind, Relation.actor_email == actor_email, Relation.target_key == target_key)
        .all(),
    )
    if relation_id is not None:
        yield Locator(
            "surrogate",
            lambda: db.query(Relation)
            .filter(Relation.id == relation_id, Relation.kind == kind, Relation.actor_email == actor_email)
            .all(),
        )


def _ensure(db: Session, kind: str, actor_email: str, target_key: str) -> dict:
    existing = (
        db.query(Relation)
        .filter(Relation.kind == kind, Relation.actor_email == actor_email, Relation.target_key == target_key)
        .one_or_none()
    )
    if existing is not None:
        return {"active": True, "changed": False, "id": str(existing.id)}
    rel = Relation(kind=kind, actor_email=actor_email, target_key=target_key)
    try:
        with db.begin_nested():
            db.add(rel)
    except IntegrityError:
        # a duplicate call inserted it first
        winner = (
            db.query(Relation)
            .filter(Relation.kind == kind, Relation.actor_email == actor_email, Relation.target_key == target_key)
            .one()
        )
        return {"active": True, "changed": False, "id": str(winner.id)}
    return {"active": True, "changed": True, "id": str(rel.id)}


def _remove(db: Session, kind: str, actor_email: str, target_key: str, relation_id: Optional[UUID]) -> dict:
    """Try each addressing scheme in turn.

    Absent under every scheme means already removed. The call only fails
    when no scheme removed the record and at least one of them could not
    give a definite answer or found the record but failed to delete it.
    """
    failures: List[str] = []
    for loc in _locators(db, kind, actor_email, target_key, relation_id):
        try:
            rows = loc.find()
        except SQLAlchemyError as exc:
            failures.append(f"{loc.name}: lookup failed ({exc.__class__.__name__})")
            continue
        if len(rows) > 1:
            failures.append(f"{loc.name}: ambiguous ({len(rows)} rows)")
            continue
        if not rows:
            continue
        try:
            with db.begin_nested():
                db.delete(rows[0])
        except SQLAlchemyError as exc:
            failures.append(f"{loc.name}: delete failed ({exc.__class__.__name__})")
            continue
        if failures:
            log.info("relation %s %s->%s removed via %s after %s", kind, actor_email, target_key, loc.name, failures)
        return {"active": False, "changed": True, "id": str(rows[0].id)}
    if failures:
        log.warning("relation %s %s->%s not removed: %s", kind, actor_email, target_key, failures)
        raise ConcurrencyConflict("Relation could not be removed", attempts=failures)
    return {"active": False, "changed": False, "id": None}


def set_relation(db: Session, kind: str, actor_email: str, target: str, desired: bool, relation_id: Optional[str] = None) -> dict:
    key = _target_key(db, kind, actor_email, target)
    rid: Optional[UUID] = None
    if relation_id:
        try:
            rid = UUID(str(relation_id))
        except ValueError:
            raise ValidationError("relation_id must be a UUID")
    if desired:
        out = _ensure(db, kind, actor_email, key)
    else:
        out = _remove(db, kind, actor_email, key, rid)
    out.update({"kind": kind, "target": key})
    return out


def list_relations(db: Session, kind: str, actor_email: str) -> List[Relation]:
    if kind not in KINDS:
        raise ValidationError(f"Unknown relation kind: {kind}")
    return (
        db.query(Relation)
        .filter(Relation.kind == kind, Relation.actor_email == actor_email)
        .order_by(Relation.created_at.desc())
        .all()
    )
