from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..models import User
from ..schemas import RelationIn, RelationOut, RelationsListOut
from ..services import relations


router = APIRouter(prefix="/relations", tags=["relations"])


@router.put("/{kind}", response_model=RelationOut)
def set_relation(kind: str, payload: RelationIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    out = relations.set_relation(db, kind, user.email, payload.target, payload.desired, payload.relation_id)
    return RelationOut(**out)


@router.get("/{kind}", response_model=RelationsListOut)
def list_relations(kind: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    rows = relations.list_relations(db, kind, user.email)
    return RelationsListOut(kind=kind, targets=[r.target_key for r in rows])
