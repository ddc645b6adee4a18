import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from recording_ingest import models

DEFAULT_SESSION_TTL = timedelta(days=30)


def generate_session_token() -> str:
    return secrets.token_urlsafe(48)


def hash_session_token(token: str) -> str:
    return hashlib.sha256((token or "").encode("utf-8")).hexdigest()


def issue_session(session: Session, user: models.User, ttl: timedelta = DEFAULT_SESSION_TTL) -> str:
    """
    Create an auth session for ``user`` and return the raw bearer token. Only the hash is stored.
    """
    token = generate_session_token()
    session.add(
        models.AuthSession(
            user_id=user.id,
            token_hash=hash_session_token(token),
            expires_at=datetime.utcnow() + ttl,
        )
    )
    session.commit()
    return token


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def resolve_user(session: Session, token: str) -> Optional[models.User]:
    auth_session = session.scalar(
        select(models.AuthSession).where(models.AuthSession.token_hash == hash_session_token(token))
    )
    if auth_session is None or auth_session.expires_at <= datetime.utcnow():
        return None
    return auth_session.user
