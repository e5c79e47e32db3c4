import os
from datetime import datetime
from enum import Enum as PyEnum
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
    Boolean,
    Table,
    event,
)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import (
    declarative_base,
    relationship,
    sessionmaker,
    scoped_session,
)

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///doccontrol.db")

engine = create_engine(DATABASE_URL)
SessionLocal = scoped_session(sessionmaker(bind=engine))
Base = declarative_base()


class RoleEnum(PyEnum):
    ADMIN = "admin"
    USER = "user"


class DocumentStatus(PyEnum):
    DRAFT = "DRAFT"
    IN_REVIEW = "IN_REVIEW"
    ON_APPROVAL = "ON_APPROVAL"
    ON_REVISION = "ON_REVISION"
    WAITING_VALIDATION = "WAITING_VALIDATION"
    APPROVED = "APPROVED"
    ACTIVE = "ACTIVE"
    OBSOLETE = "OBSOLETE"


class DocumentApprovalStatus(PyEnum):
    """Aggregate state of a document's approval chain."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    APPROVED = "APPROVED"
    NEEDS_REVISION = "NEEDS_REVISION"


class ApprovalStatus(PyEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ValidatedCategory(PyEnum):
    MANAGEMENT = "MANAGEMENT"
    DISTRIBUTED = "DISTRIBUTED"


user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("id", Integer, primary_key=True),
    Column("user_id", ForeignKey("users.id"), nullable=False),
    Column("role_id", ForeignKey("roles.id"), nullable=False),
    UniqueConstraint("user_id", "role_id", name="uq_user_role"),
)


class Role(Base):
    __tablename__ = "roles"
    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)
    users = relationship(
        "User", secondary=user_roles, back_populates="roles"
    )


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    username = Column(String, unique=True, nullable=False)
    email = Column(String, unique=True)
    name = Column(String)
    position = Column(String)
    # saved profile signature (data URI)
    signature = Column(Text)
    roles = relationship(
        Role, secondary=user_roles, back_populates="users"
    )

    @property
    def display_name(self) -> str:
        return self.name or self.username


class Document(Base):
    __tablename__ = "documents"
    id = Column(Integer, primary_key=True)
    document_number = Column(String, unique=True, nullable=False, index=True)
    title = Column(String, index=True)
    file_url = Column(String)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    status = Column(
        Enum(DocumentStatus, name="document_status"),
        default=DocumentStatus.DRAFT,
        nullable=False,
    )
    approval_status = Column(
        Enum(DocumentApprovalStatus, name="document_approval_status"),
        default=DocumentApprovalStatus.PENDING,
        nullable=False,
    )
    revision_cycle = Column(Integer, default=0, nullable=False)

    prepared_by_signature = Column(Text)
    prepared_by_signed_at = Column(DateTime)

    validated_category = Column(Enum(ValidatedCategory, name="validated_category"))
    company_stamp = Column(Text)
    final_pdf_url = Column(String)
    validated_at = Column(DateTime)
    validated_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    created_by = relationship("User", foreign_keys=[created_by_id])
    validated_by = relationship("User", foreign_keys=[validated_by_id])


class Approval(Base):
    __tablename__ = "document_approvals"
    id = Column(Integer, primary_key=True)
    document_id = Column(Integer, ForeignKey("documents.id"), nullable=False, index=True)
    approver_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    level = Column(Integer, nullable=False)
    status = Column(
        Enum(ApprovalStatus, name="approval_status"),
        default=ApprovalStatus.PENDING,
        nullable=False,
    )
    signature_image = Column(Text)
    signed_at = Column(DateTime)
    confirmed_at = Column(DateTime)
    approved_at = Column(DateTime)
    rejected_at = Column(DateTime)
    revision_cycle = Column(Integer, default=0, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    document = relationship(Document, back_populates="approvals")
    approver = relationship(User)

    @hybrid_property
    def is_active(self):
        """Soft-deleted approvals take no part in ordering or aggregates."""
        return not self.is_deleted

    @is_active.expression
    def is_active(cls):
        return cls.is_deleted.is_(False)

    @property
    def sequence_key(self):
        # unflushed rows sort after everything already persisted
        created = self.created_at or datetime.max
        return (self.level, created, self.id or 0)


class RevisionRequest(Base):
    __tablename__ = "document_revision_requests"
    id = Column(Integer, primary_key=True)
    document_id = Column(Integer, ForeignKey("documents.id"), nullable=False, index=True)
    requested_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    reason = Column(Text, nullable=False)
    # 0 marks an administrative rejection
    approval_level = Column(Integer, nullable=False)
    approval_id = Column(Integer, ForeignKey("document_approvals.id"), nullable=True)
    signature_snapshot = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    document = relationship(Document, back_populates="revision_requests")
    requested_by = relationship(User)
    approval = relationship(Approval)

    @property
    def snapshot(self):
        from revisions import SignatureSnapshot

        return SignatureSnapshot.from_dict(self.signature_snapshot)


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    kind = Column(String, default="INFO", nullable=False)
    title = Column(String)
    message = Column(String, nullable=False)
    link = Column(String)
    priority = Column(String, default="MEDIUM", nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    read = Column(Boolean, default=False, nullable=False)

    user = relationship("User")


class UserSetting(Base):
    __tablename__ = "user_settings"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    email_enabled = Column(Boolean, default=True)
    webhook_enabled = Column(Boolean, default=False)
    webhook_url = Column(String)

    user = relationship("User")


class ActivityLog(Base):
    __tablename__ = "activity_logs"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    doc_id = Column(Integer, ForeignKey("documents.id"))
    entity_type = Column(String)
    entity_id = Column(Integer)
    action = Column(String, nullable=False)
    description = Column(Text)
    payload = Column(JSON)
    endpoint = Column(String)
    at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User")
    document = relationship("Document")


# establish relationships defined after class declarations
Document.approvals = relationship(
    Approval,
    back_populates="document",
    order_by=(Approval.level, Approval.created_at, Approval.id),
    cascade="all, delete-orphan",
)
Document.revision_requests = relationship(
    RevisionRequest,
    back_populates="document",
    order_by=RevisionRequest.created_at.desc(),
    cascade="all, delete-orphan",
)


@event.listens_for(RevisionRequest, "before_update")
def _refuse_revision_request_update(mapper, connection, target):
    raise ValueError(
        f"Revision request {target.id} is an audit record and cannot be modified"
    )

# Database schema migrations are managed via Alembic. Tables are created
# through explicit migration scripts rather than automatic metadata creation.

def get_session():
    return SessionLocal()


def seed_roles(session) -> None:
    """Ensure all default roles exist."""
    for role in RoleEnum:
        if not session.query(Role).filter_by(name=role.value).first():
            session.add(Role(name=role.value))


__all__ = [
    "Base",
    "SessionLocal",
    "engine",
    "get_session",
    "seed_roles",
    "RoleEnum",
    "DocumentStatus",
    "DocumentApprovalStatus",
    "ApprovalStatus",
    "ValidatedCategory",
    "Role",
    "User",
    "Document",
    "Approval",
    "RevisionRequest",
    "Notification",
    "UserSetting",
    "ActivityLog",
]
