import os
from datetime import datetime

from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    Text,
    ForeignKey,
    DateTime,
    JSON,
    Enum,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import (
    declarative_base,
    relationship,
    sessionmaker,
    scoped_session,
)

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///policydesk.db")

engine = create_engine(DATABASE_URL)
SessionLocal = scoped_session(sessionmaker(bind=engine))
Base = declarative_base()


POLICY_STATUSES = ("Draft", "Review", "Published", "Archived")


def can_transition(old: str | None, new: str) -> bool:
    """Return ``True`` when moving a policy from ``old`` to ``new`` is allowed.

    Policies only move forward through Draft, Review, Published and Archived.
    Re-publishing a policy that is already published is allowed so that new
    versions can be added.
    """
    if new not in POLICY_STATUSES:
        return False
    if old is None:
        return True
    if old not in POLICY_STATUSES:
        return False
    if old == new:
        return new == "Published"
    return POLICY_STATUSES.index(new) > POLICY_STATUSES.index(old)


class Policy(Base):
    __tablename__ = "policies"
    id = Column(Integer, primary_key=True)
    title = Column(String(200), index=True, nullable=False)
    section = Column(String)
    number = Column(String, index=True)
    subject = Column(String)
    description = Column(Text)
    category = Column(String, index=True)
    status = Column(
        Enum(*POLICY_STATUSES, name="policy_status"),
        default="Draft",
        nullable=False,
    )
    # Plain integer rather than a foreign key; the versions table already
    # points back at policies.
    current_version_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    versions = relationship(
        "PolicyVersion",
        back_populates="policy",
        order_by="PolicyVersion.version_number",
    )


class PolicyVersion(Base):
    __tablename__ = "policy_versions"
    id = Column(Integer, primary_key=True)
    policy_id = Column(Integer, ForeignKey("policies.id"), nullable=False)
    version_number = Column(Integer, nullable=False)
    file_key = Column(String, nullable=False)
    file_name = Column(String, nullable=False)
    file_size = Column(Integer, default=0)
    page_count = Column(Integer)
    change_summary = Column(Text)
    published_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)

    policy = relationship(Policy, back_populates="versions")

    __table_args__ = (
        UniqueConstraint("policy_id", "version_number", name="uq_policy_version"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "policy_id": self.policy_id,
            "version_number": self.version_number,
            "file_key": self.file_key,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "page_count": self.page_count,
            "change_summary": self.change_summary,
            "published_at": self.published_at.isoformat() if self.published_at else None,
        }


class Brief(Base):
    __tablename__ = "briefs"
    id = Column(Integer, primary_key=True)
    title = Column(String, nullable=False, default="Untitled brief")
    content = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class IntakeForm(Base):
    __tablename__ = "intake_forms"
    id = Column(Integer, primary_key=True)
    project_name = Column(String, nullable=False)
    form_data = Column(JSON)
    html_content = Column(Text)
    file_key = Column(String)
    file_name = Column(String)
    file_size = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True)
    entity_type = Column(String)
    entity_id = Column(Integer)
    action = Column(String, nullable=False)
    payload = Column(JSON)
    endpoint = Column(String)
    at = Column(DateTime, default=datetime.utcnow, nullable=False)


def get_session():
    return SessionLocal()


def latest_version_number(session, policy_id: int) -> int:
    """Return the highest stored version number for ``policy_id`` (0 if none)."""
    value = (
        session.query(func.max(PolicyVersion.version_number))
        .filter(PolicyVersion.policy_id == policy_id)
        .scalar()
    )
    return int(value or 0)
