"""Seed default roles and admin user

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-18 00:00:00
"""

from alembic import op
import sqlalchemy as sa

revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    for role in ("admin", "user"):
        op.execute(
            sa.text(
                "INSERT INTO roles (name) VALUES (:name) "
                "ON CONFLICT (name) DO NOTHING"
            ).bindparams(name=role)
        )

    op.execute(
        sa.text(
            "INSERT INTO users (username, email) VALUES (:username, :email) "
            "ON CONFLICT (username) DO NOTHING"
        ).bindparams(username="admin", email="admin@example.com")
    )

    op.execute(
        """
        INSERT INTO user_roles (user_id, role_id)
        SELECT u.id, r.id FROM users u, roles r
        WHERE u.username='admin' AND r.name='admin'
        ON CONFLICT DO NOTHING
        """
    )


def downgrade() -> None:
    op.execute(
        "DELETE FROM user_roles WHERE user_id = (SELECT id FROM users WHERE username='admin')"
    )
    op.execute("DELETE FROM users WHERE username='admin'")
    op.execute("DELETE FROM roles WHERE name IN ('admin','user')")
