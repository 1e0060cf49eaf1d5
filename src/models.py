import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import declarative_base

from projects import ProjectStatus

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_STATUS_VALUES = ", ".join(f"'{status.value}'" for status in ProjectStatus)


class Project(Base):
    __tablename__ = "projects"
    __table_args__ = (
        CheckConstraint(f"status in ({_STATUS_VALUES})", name="projects_status_check"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text)
    script = Column(Text)
    selected_hosts = Column(JSON, default=list)
    selected_template = Column(String)
    selected_language = Column(String)
    status = Column(String, nullable=False, default=ProjectStatus.DRAFT.value)
    generation_lease = Column(String)
    lease_expires_at = Column(DateTime(timezone=True))
    generation_error = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class ElevenLabsApiKey(Base):
    __tablename__ = "elevenlabs_api_keys"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    key = Column(String, nullable=False)
    name = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    quota_remaining = Column(Integer)
    last_used = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
