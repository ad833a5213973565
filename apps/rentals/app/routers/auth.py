from fastapi import APIRouter, HTTPException, status, Depends
from sqlalchemy.orm import Session

from ..schemas import DevLoginIn, TokenOut
from ..auth import create_access_token
from ..database import get_db
from ..models import User
from ..config import settings


router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/dev_login", response_model=TokenOut)
def dev_login(payload: DevLoginIn, db: Session = Depends(get_db)):
    """Issue a token for an email, creating the account on first use. Dev only."""
    if not settings.DEV_MODE:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    email = (payload.email or "").strip().lower()
    if "@" not in email:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid email")
    user = db.get(User, email)
    if user is None:
        user = User(email=email, name=payload.name)
        db.add(user)
        db.flush()
    elif payload.name and not user.name:
        user.name = payload.name
    return TokenOut(access_token=create_access_token(email))
