"""Organizations, coordinators and contacts."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.enums import ContactStatus, ContactType
from app.db.types import new_id, utcnow


class Organization(Base):
    """
    A tenant that owns flows, runs and contacts.

    Every run is attributed to exactly one organization.
    """

    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    contacts: Mapped[list["Contact"]] = relationship(back_populates="organization")


class User(Base):
    """A coordinator account. Runs are started on behalf of a user."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    active_organization_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    active_organization: Mapped["Organization | None"] = relationship()


class Contact(Base):
    """External person (client, vendor) who can be assigned steps via magic link."""

    __tablename__ = "contacts"
    __table_args__ = (Index("idx_contacts_org_email", "organization_id", "email"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(
        String(20), default=ContactType.ASSIGNEE.value, nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), default=ContactStatus.ACTIVE.value, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    organization: Mapped["Organization"] = relationship(back_populates="contacts")
