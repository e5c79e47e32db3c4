from pathlib import Path

import pytest

import models
from conftest import PDF, STAMP
from errors import AlreadyFinalized, DependencyFailure, Forbidden, InvalidState, ValidationError
from services import DocumentWorkflow
from storage import StorageError


@pytest.fixture()
def waiting(workflow, make_user, make_document):
    admin = make_user("admin", admin=True)
    creator = make_user("creator")
    reviewer = make_user("reviewer")
    doc = make_document(creator, [(reviewer, 1)], number="QP 7.5/01")
    workflow.send_to_validation(doc["document_id"], admin)
    return {"admin": admin, "creator": creator, **doc}


def test_finalize_with_pdf(workflow, waiting, file_store, db, fake_queue):
    fake_queue.reset_mock()
    result = workflow.finalize(waiting["document_id"], waiting["admin"], "MANAGEMENT", STAMP, PDF)

    assert result.status is models.DocumentStatus.APPROVED
    assert result.approval_status is models.DocumentApprovalStatus.APPROVED
    assert result.final_pdf_url.startswith("/files/documents/QP_7_5_01_final_")

    document = db.get(models.Document, waiting["document_id"])
    assert document.validated_category is models.ValidatedCategory.MANAGEMENT
    assert document.company_stamp == STAMP
    assert document.validated_by_id == waiting["admin"]
    assert document.validated_at is not None
    assert document.final_pdf_url == result.final_pdf_url

    stored = list(Path(file_store.base_path, "documents").iterdir())
    assert len(stored) == 1
    assert stored[0].read_bytes() == b"%PDF-1.4 final"

    assert fake_queue.enqueue.call_args.args[1] == waiting["creator"]
    assert "MANAGEMENT" in fake_queue.enqueue.call_args.args[3]


def test_finalize_without_pdf_keeps_file_url(workflow, waiting, db):
    result = workflow.finalize(waiting["document_id"], waiting["admin"], "DISTRIBUTED", STAMP)
    assert result.final_pdf_url == "/files/documents/DOC-001.pdf"


def test_finalize_twice(workflow, waiting):
    workflow.finalize(waiting["document_id"], waiting["admin"], "DISTRIBUTED", STAMP)
    with pytest.raises(AlreadyFinalized):
        workflow.finalize(waiting["document_id"], waiting["admin"], "DISTRIBUTED", STAMP)


def test_finalize_requires_waiting_validation(workflow, make_user, make_document):
    admin = make_user("admin", admin=True)
    creator = make_user("creator")
    doc = make_document(creator, [(creator, 1)])
    with pytest.raises(InvalidState):
        workflow.finalize(doc["document_id"], admin, "MANAGEMENT", STAMP)


def test_admin_checked_before_payload(workflow, waiting):
    with pytest.raises(Forbidden):
        workflow.finalize(waiting["document_id"], waiting["creator"], "BOGUS", "not a stamp")


@pytest.mark.parametrize(
    "category, stamp, pdf",
    [
        ("BOGUS", STAMP, None),
        ("MANAGEMENT", "data:text/plain;base64,aGk=", None),
        ("MANAGEMENT", STAMP, "data:image/png;base64,aGk="),
    ],
)
def test_invalid_payload(workflow, waiting, db, category, stamp, pdf):
    with pytest.raises(ValidationError):
        workflow.finalize(waiting["document_id"], waiting["admin"], category, stamp, pdf)
    document = db.get(models.Document, waiting["document_id"])
    assert document.status is models.DocumentStatus.WAITING_VALIDATION
    assert document.validated_at is None


def test_storage_failure_reported(waiting, clock):
    class BrokenStore:
        def key_for(self, name):
            return f"documents/{name}"

        def store(self, data, content_type, key):
            raise StorageError("disk full")

    workflow = DocumentWorkflow(file_store=BrokenStore(), clock=clock)
    with pytest.raises(DependencyFailure):
        workflow.finalize(waiting["document_id"], waiting["admin"], "MANAGEMENT", STAMP, PDF)


def test_failed_commit_removes_written_pdf(workflow, waiting, file_store, monkeypatch, db):
    import document_store

    def failing_commit(self):
        raise RuntimeError("commit failed")

    monkeypatch.setattr(document_store.DocumentStore, "commit", failing_commit)
    with pytest.raises(RuntimeError):
        workflow.finalize(waiting["document_id"], waiting["admin"], "MANAGEMENT", STAMP, PDF)

    folder = Path(file_store.base_path, "documents")
    assert not folder.exists() or not any(folder.iterdir())
    document = db.get(models.Document, waiting["document_id"])
    assert document.validated_at is None
