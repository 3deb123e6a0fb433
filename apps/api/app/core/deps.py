"""FastAPI dependencies for database access and internal authentication."""

from typing import Generator

from fastapi import Header, HTTPException
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.session import SessionLocal


INTERNAL_SECRET_HEADER = "X-Internal-Secret"


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def verify_internal_secret(
    x_internal_secret: str | None = Header(None, alias=INTERNAL_SECRET_HEADER),
) -> None:
    """
    Coordinator routes are called server-to-server with a shared secret.

    Raises:
        HTTPException 501: INTERNAL_SECRET not configured
        HTTPException 403: Missing or wrong secret
    """
    expected = settings.INTERNAL_SECRET
    if not expected:
        raise HTTPException(status_code=501, detail="INTERNAL_SECRET not configured")
    if x_internal_secret != expected:
        raise HTTPException(status_code=403, detail="Invalid internal secret")
