"""Initial database schema

Revision ID: 0001
Revises:
Create Date: 2026-10-18 00:00:00

"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

document_status = sa.Enum(
    "DRAFT",
    "IN_REVIEW",
    "ON_APPROVAL",
    "ON_REVISION",
    "WAITING_VALIDATION",
    "APPROVED",
    "ACTIVE",
    "OBSOLETE",
    name="document_status",
)
document_approval_status = sa.Enum(
    "PENDING", "IN_PROGRESS", "APPROVED", "NEEDS_REVISION", name="document_approval_status"
)
approval_status = sa.Enum("PENDING", "APPROVED", "REJECTED", name="approval_status")
validated_category = sa.Enum("MANAGEMENT", "DISTRIBUTED", name="validated_category")


def upgrade() -> None:
    op.create_table(
        "roles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False, unique=True),
    )
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("username", sa.String(), nullable=False, unique=True),
        sa.Column("email", sa.String(), unique=True),
        sa.Column("name", sa.String()),
        sa.Column("position", sa.String()),
        sa.Column("signature", sa.Text()),
    )
    op.create_table(
        "user_roles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id"), nullable=False),
        sa.UniqueConstraint("user_id", "role_id", name="uq_user_role"),
    )
    op.create_table(
        "documents",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("document_number", sa.String(), nullable=False, unique=True),
        sa.Column("title", sa.String()),
        sa.Column("file_url", sa.String()),
        sa.Column("created_by_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("status", document_status, nullable=False, server_default="DRAFT"),
        sa.Column(
            "approval_status",
            document_approval_status,
            nullable=False,
            server_default="PENDING",
        ),
        sa.Column("revision_cycle", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("prepared_by_signature", sa.Text()),
        sa.Column("prepared_by_signed_at", sa.DateTime()),
        sa.Column("validated_category", validated_category),
        sa.Column("company_stamp", sa.Text()),
        sa.Column("final_pdf_url", sa.String()),
        sa.Column("validated_at", sa.DateTime()),
        sa.Column("validated_by_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("created_at", sa.DateTime()),
        sa.Column("updated_at", sa.DateTime()),
    )
    op.create_index("ix_documents_document_number", "documents", ["document_number"])
    op.create_index("ix_documents_title", "documents", ["title"])

    op.create_table(
        "document_approvals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("document_id", sa.Integer(), sa.ForeignKey("documents.id"), nullable=False),
        sa.Column("approver_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("status", approval_status, nullable=False, server_default="PENDING"),
        sa.Column("signature_image", sa.Text()),
        sa.Column("signed_at", sa.DateTime()),
        sa.Column("confirmed_at", sa.DateTime()),
        sa.Column("approved_at", sa.DateTime()),
        sa.Column("rejected_at", sa.DateTime()),
        sa.Column("revision_cycle", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_document_approvals_document_id", "document_approvals", ["document_id"]
    )

    op.create_table(
        "document_revision_requests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("document_id", sa.Integer(), sa.ForeignKey("documents.id"), nullable=False),
        sa.Column("requested_by_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("approval_level", sa.Integer(), nullable=False),
        sa.Column("approval_id", sa.Integer(), sa.ForeignKey("document_approvals.id")),
        sa.Column("signature_snapshot", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_document_revision_requests_document_id",
        "document_revision_requests",
        ["document_id"],
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("kind", sa.String(), nullable=False, server_default="INFO"),
        sa.Column("title", sa.String()),
        sa.Column("message", sa.String(), nullable=False),
        sa.Column("link", sa.String()),
        sa.Column("priority", sa.String(), nullable=False, server_default="MEDIUM"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_table(
        "user_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False, unique=True),
        sa.Column("email_enabled", sa.Boolean()),
        sa.Column("webhook_enabled", sa.Boolean()),
        sa.Column("webhook_url", sa.String()),
    )
    op.create_table(
        "activity_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("doc_id", sa.Integer(), sa.ForeignKey("documents.id")),
        sa.Column("entity_type", sa.String()),
        sa.Column("entity_id", sa.Integer()),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("payload", sa.JSON()),
        sa.Column("endpoint", sa.String()),
        sa.Column("at", sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("activity_logs")
    op.drop_table("user_settings")
    op.drop_table("notifications")
    op.drop_index(
        "ix_document_revision_requests_document_id",
        table_name="document_revision_requests",
    )
    op.drop_table("document_revision_requests")
    op.drop_index("ix_document_approvals_document_id", table_name="document_approvals")
    op.drop_table("document_approvals")
    op.drop_index("ix_documents_title", table_name="documents")
    op.drop_index("ix_documents_document_number", table_name="documents")
    op.drop_table("documents")
    op.drop_table("user_roles")
    op.drop_table("users")
    op.drop_table("roles")

    bind = op.get_bind()
    for enum in (validated_category, approval_status, document_approval_status, document_status):
        enum.drop(bind, checkfirst=True)
