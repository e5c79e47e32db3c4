import base64
import os
import sys
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from sqlalchemy.orm import sessionmaker

repo_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(repo_root))
sys.path.insert(0, str(repo_root / "doccontrol"))

db_path = repo_root / "test.db"
os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"
os.environ.setdefault("STORAGE__TYPE", "fs")
os.environ.setdefault("ENABLE_EMAIL_NOTIFIER", "0")

import models  # noqa: E402
import notifications  # noqa: E402
from services import DocumentWorkflow  # noqa: E402
from storage import FSBackend  # noqa: E402

SIGNATURE = "data:image/png;base64," + base64.b64encode(b"\x89PNG drawn").decode()
PROFILE_SIGNATURE = "data:image/png;base64," + base64.b64encode(b"\x89PNG saved").decode()
STAMP = "data:image/png;base64," + base64.b64encode(b"\x89PNG stamp").decode()
PDF = "data:application/pdf;base64," + base64.b64encode(b"%PDF-1.4 final").decode()


class TickingClock:
    """Clock that moves one second forward on every call."""

    def __init__(self, start=datetime(2024, 3, 1, 9, 0, 0)):
        self.current = start

    def __call__(self):
        self.current += timedelta(seconds=1)
        return self.current


@pytest.fixture(scope="session", autouse=True)
def setup_database():
    if db_path.exists():
        db_path.unlink()
    models.Base.metadata.create_all(bind=models.engine)
    yield
    models.Base.metadata.drop_all(bind=models.engine)


@pytest.fixture(autouse=True)
def reset_database():
    models.SessionLocal.remove()
    models.Base.metadata.drop_all(bind=models.engine)
    models.Base.metadata.create_all(bind=models.engine)
    session = models.SessionLocal()
    models.seed_roles(session)
    session.commit()
    session.close()
    yield
    models.SessionLocal.remove()


@pytest.fixture(autouse=True)
def fake_queue(monkeypatch):
    q = MagicMock()
    monkeypatch.setattr(notifications, "queue", q)
    return q


@pytest.fixture()
def clock():
    return TickingClock()


@pytest.fixture()
def file_store(tmp_path):
    return FSBackend(str(tmp_path / "files"), "/files")


@pytest.fixture()
def workflow(clock, file_store):
    return DocumentWorkflow(file_store=file_store, clock=clock)


@pytest.fixture()
def make_user():
    def _make(username, admin=False, signature=None, name=None):
        session = models.SessionLocal()
        try:
            user = models.User(
                username=username,
                email=f"{username}@example.com",
                name=name or username.title(),
                signature=signature,
            )
            if admin:
                role = session.query(models.Role).filter_by(name=models.RoleEnum.ADMIN.value).one()
                user.roles.append(role)
            session.add(user)
            session.commit()
            return user.id
        finally:
            session.close()

    return _make


@pytest.fixture()
def make_document(clock):
    """Create a document with an approval chain.

    ``approvers`` is a list of ``(user_id, level)`` pairs; the returned dict
    holds the document id and the approval ids in the same order.
    """

    def _make(
        creator_id,
        approvers,
        status=models.DocumentStatus.IN_REVIEW,
        prepared=True,
        number="DOC-001",
        file_url="/files/documents/DOC-001.pdf",
    ):
        session = models.SessionLocal()
        try:
            doc = models.Document(
                document_number=number,
                title=f"Procedure {number}",
                file_url=file_url,
                created_by_id=creator_id,
                status=status,
                prepared_by_signature=SIGNATURE if prepared else None,
                prepared_by_signed_at=clock() if prepared else None,
            )
            session.add(doc)
            session.flush()
            approvals = []
            for approver_id, level in approvers:
                approval = models.Approval(
                    document_id=doc.id,
                    approver_id=approver_id,
                    level=level,
                    created_at=clock(),
                )
                session.add(approval)
                session.flush()
                approvals.append(approval.id)
            session.commit()
            return {"document_id": doc.id, "approvals": approvals}
        finally:
            session.close()

    return _make


@pytest.fixture()
def db():
    """Session for assertions, separate from the scoped ``SessionLocal``.

    Call ``db.expire_all()`` before re-reading rows a workflow call changed.
    """
    session = sessionmaker(bind=models.engine)()
    yield session
    session.close()
