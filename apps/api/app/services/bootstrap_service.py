"""Default organization and user for runs started on unowned flows.

Flows imported without an owner still need somewhere to attribute their
runs. The defaults are seeded explicitly (app startup with
BOOTSTRAP_DEFAULTS=true, or ``serviceflow seed-defaults``) and only looked up
at request time.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.models import Organization, User

logger = logging.getLogger(__name__)


@dataclass
class Defaults:
    organization: Organization
    user: User


def get_org_by_slug(db: Session, slug: str) -> Organization | None:
    return db.query(Organization).filter(Organization.slug == slug.lower()).first()


def get_user_by_email(db: Session, email: str) -> User | None:
    return db.query(User).filter(User.email == email.lower()).first()


def ensure_defaults(db: Session) -> Defaults:
    """Get or create the default organization and user. Commits."""
    org = get_org_by_slug(db, settings.DEFAULT_ORG_SLUG)
    if not org:
        org = Organization(name=settings.DEFAULT_ORG_NAME, slug=settings.DEFAULT_ORG_SLUG.lower())
        db.add(org)
        db.flush()
        logger.info("Created default organization %s", org.id)

    user = get_user_by_email(db, settings.DEFAULT_USER_EMAIL)
    if not user:
        user = User(
            email=settings.DEFAULT_USER_EMAIL.lower(),
            name=settings.DEFAULT_USER_NAME,
            active_organization_id=org.id,
        )
        db.add(user)
        db.flush()
        logger.info("Created default user %s", user.id)

    db.commit()
    return Defaults(organization=org, user=user)


def get_defaults(db: Session) -> Defaults | None:
    """Seeded defaults, or None when they were never created."""
    org = get_org_by_slug(db, settings.DEFAULT_ORG_SLUG)
    user = get_user_by_email(db, settings.DEFAULT_USER_EMAIL)
    if not org or not user:
        return None
    return Defaults(organization=org, user=user)
