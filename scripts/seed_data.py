"""Seed default roles and create an initial admin user.

The default admin user's username and email can be configured via the
``INITIAL_ADMIN_USERNAME`` and ``INITIAL_ADMIN_EMAIL`` environment
variables.  If the user already exists it will simply be granted the
``admin`` role.
"""

import os
import sys
from pathlib import Path


def _get_models():
    """Import and return the models module lazily.

    The import happens at call time so the engine picks up whatever
    ``DATABASE_URL`` is active when the script runs.
    """

    module_dir = Path(__file__).resolve().parent.parent / "doccontrol"
    if str(module_dir) not in sys.path:
        sys.path.insert(0, str(module_dir))
    import models

    return models


def seed_admin_user(session, models) -> None:
    """Create initial admin user and ensure it has the ``admin`` role."""

    username = os.getenv("INITIAL_ADMIN_USERNAME", "admin")
    email = os.getenv("INITIAL_ADMIN_EMAIL", f"{username}@example.com")

    admin = session.query(models.User).filter_by(username=username).first()
    if not admin:
        admin = models.User(username=username, email=email, name="Administrator")
        session.add(admin)

    admin_role = session.query(models.Role).filter_by(name=models.RoleEnum.ADMIN.value).first()
    if admin_role and admin_role not in admin.roles:
        admin.roles.append(admin_role)


def seed() -> None:
    """Create tables if needed and seed default data."""

    models = _get_models()

    # Ensure all tables exist before attempting to seed data.
    models.Base.metadata.create_all(bind=models.engine)

    session = models.SessionLocal()
    try:
        models.seed_roles(session)
        session.flush()
        seed_admin_user(session, models)
        session.commit()
    finally:
        session.close()


if __name__ == "__main__":
    seed()
