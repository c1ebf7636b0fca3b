from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException
from jose import jwt
from sqlalchemy.orm import Session

from donation_service.config import get_settings
from donation_service.database import get_db
from donation_service.models import Account, Role, OVERSIGHT_ROLES


@dataclass(frozen=True)
class Actor:
    id: str
    role: Role
    name: str = ""
    email: str = ""

    @property
    def is_oversight(self) -> bool:
        return self.role in OVERSIGHT_ROLES


def _decode(authorization: str, db: Session) -> Actor:
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        claims = jwt.decode(token, get_settings().jwt_secret, algorithms=["HS256"])
        account = db.get(Account, claims["id"])
        if account is None:
            raise ValueError("unknown account")
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return Actor(id=account.id, role=account.role, name=account.name, email=account.email)


def verify_token(authorization: str = Header(...), db: Session = Depends(get_db)) -> Actor:
    return _decode(authorization, db)


def optional_token(authorization: str | None = Header(None),
                   db: Session = Depends(get_db)) -> Actor | None:
    if not authorization:
        return None
    return _decode(authorization, db)
