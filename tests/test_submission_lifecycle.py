import pytest

import models
from conftest import PROFILE_SIGNATURE, SIGNATURE
from errors import Forbidden, InvalidState, NoSavedSignature, NotFound, ValidationError

REASON = "Please attach the updated flow chart"


@pytest.fixture()
def draft(make_user, make_document):
    creator = make_user("creator", signature=PROFILE_SIGNATURE)
    reviewer = make_user("reviewer")
    approver = make_user("approver")
    doc = make_document(creator, [], status=models.DocumentStatus.DRAFT, prepared=False)
    return {"creator": creator, "reviewer": reviewer, "approver": approver, **doc}


def test_submit_with_reviewer_goes_to_review(workflow, draft, db, fake_queue):
    result = workflow.submit(
        draft["document_id"],
        draft["creator"],
        [(draft["approver"], 2), {"approver_id": draft["reviewer"], "level": 1}],
        signature=SIGNATURE,
    )
    assert result.status is models.DocumentStatus.IN_REVIEW
    assert result.approval_status is models.DocumentApprovalStatus.PENDING

    document = db.get(models.Document, draft["document_id"])
    assert document.prepared_by_signature == SIGNATURE
    assert document.prepared_by_signed_at is not None
    approvals = db.query(models.Approval).filter_by(document_id=draft["document_id"]).order_by(models.Approval.level).all()
    assert [(a.approver_id, a.level) for a in approvals] == [(draft["reviewer"], 1), (draft["approver"], 2)]
    assert all(a.status is models.ApprovalStatus.PENDING for a in approvals)

    assert fake_queue.enqueue.call_args.args[1] == draft["reviewer"]


def test_submit_without_reviewer_goes_to_approval(workflow, draft, db):
    result = workflow.submit(draft["document_id"], draft["creator"], [(draft["approver"], 2)])
    assert result.status is models.DocumentStatus.ON_APPROVAL
    document = db.get(models.Document, draft["document_id"])
    # no explicit signature: the profile one is used
    assert document.prepared_by_signature == PROFILE_SIGNATURE


def test_submit_validation(workflow, draft):
    doc_id, creator = draft["document_id"], draft["creator"]
    with pytest.raises(ValidationError):
        workflow.submit(doc_id, creator, [])
    with pytest.raises(ValidationError):
        workflow.submit(doc_id, creator, [(draft["reviewer"], 0)])
    with pytest.raises(ValidationError):
        workflow.submit(doc_id, creator, [(draft["reviewer"], 1), (draft["reviewer"], 1)])
    with pytest.raises(ValidationError):
        workflow.submit(doc_id, creator, [(9999, 1)])
    for malformed in ([[draft["reviewer"]]], "ab", 5, [(draft["reviewer"], 1, 2)]):
        with pytest.raises(ValidationError):
            workflow.submit(doc_id, creator, malformed)


def test_submit_rules(workflow, draft, make_user, make_document):
    with pytest.raises(Forbidden):
        workflow.submit(draft["document_id"], draft["reviewer"], [(draft["approver"], 1)])
    with pytest.raises(NotFound):
        workflow.submit(9999, draft["creator"], [(draft["approver"], 1)])

    nosig = make_user("nosig")
    other = make_document(nosig, [], status=models.DocumentStatus.DRAFT, prepared=False, number="DOC-002")
    with pytest.raises(NoSavedSignature):
        workflow.submit(other["document_id"], nosig, [(draft["approver"], 1)])

    workflow.submit(draft["document_id"], draft["creator"], [(draft["approver"], 1)])
    with pytest.raises(InvalidState):
        workflow.submit(draft["document_id"], draft["creator"], [(draft["approver"], 1)])


def test_full_lifecycle(workflow, draft, make_user, db):
    admin = make_user("admin", admin=True)
    doc_id = draft["document_id"]
    workflow.submit(doc_id, draft["creator"], [(draft["reviewer"], 1), (draft["approver"], 2)], SIGNATURE)
    approvals = [a.id for a in db.query(models.Approval).filter_by(document_id=doc_id).order_by(models.Approval.level)]

    workflow.sign(doc_id, approvals[0], draft["reviewer"], SIGNATURE)
    workflow.request_revision(doc_id, approvals[1], draft["approver"], REASON)

    with pytest.raises(Forbidden):
        workflow.resubmit(doc_id, draft["reviewer"])
    result = workflow.resubmit(doc_id, draft["creator"])
    assert result.status is models.DocumentStatus.IN_REVIEW
    assert result.approval_status is models.DocumentApprovalStatus.PENDING
    with pytest.raises(InvalidState):
        workflow.resubmit(doc_id, draft["creator"])

    workflow.sign(doc_id, approvals[0], draft["reviewer"], SIGNATURE)
    result = workflow.sign(doc_id, approvals[1], draft["approver"], SIGNATURE)
    assert result.status is models.DocumentStatus.APPROVED
    assert result.revision_cycle == 1

    with pytest.raises(InvalidState):
        workflow.send_to_validation(doc_id, admin)

    assert workflow.distribute(doc_id, admin).status is models.DocumentStatus.ACTIVE
    with pytest.raises(InvalidState):
        workflow.distribute(doc_id, admin)
    assert workflow.mark_obsolete(doc_id, admin).status is models.DocumentStatus.OBSOLETE
    with pytest.raises(InvalidState):
        workflow.mark_obsolete(doc_id, admin)

    actions = [
        log.action
        for log in db.query(models.ActivityLog).filter_by(doc_id=doc_id).order_by(models.ActivityLog.id)
    ]
    assert actions == [
        "DOCUMENT_SUBMITTED",
        "DOCUMENT_SIGNED",
        "REVISION_REQUESTED",
        "DOCUMENT_RESUBMITTED",
        "DOCUMENT_SIGNED",
        "DOCUMENT_SIGNED",
        "DOCUMENT_DISTRIBUTED",
        "DOCUMENT_OBSOLETED",
    ]


def test_lifecycle_transitions_need_admin(workflow, draft):
    with pytest.raises(Forbidden):
        workflow.distribute(draft["document_id"], draft["creator"])
    with pytest.raises(Forbidden):
        workflow.mark_obsolete(draft["document_id"], draft["creator"])


def test_document_summary(workflow, draft):
    workflow.submit(
        draft["document_id"], draft["creator"], [(draft["reviewer"], 1), (draft["approver"], 2)], SIGNATURE
    )
    summary = workflow.document_summary(draft["document_id"])
    assert summary["status"] == "IN_REVIEW"
    assert summary["prepared_by"]["user_id"] == draft["creator"]
    assert summary["prepared_by"]["signed_at"] is not None
    assert [a["level"] for a in summary["approvals"]] == [1, 2]
    assert [a["ready_to_sign"] for a in summary["approvals"]] == [True, False]
    with pytest.raises(NotFound):
        workflow.document_summary(9999)


def test_resubmit_notifies_first_active_signer(workflow, make_user, make_document, db, fake_queue):
    creator = make_user("creator")
    reviewer = make_user("reviewer")
    approver = make_user("approver")
    doc = make_document(creator, [(reviewer, 1), (approver, 2)], status=models.DocumentStatus.ON_REVISION)
    removed = db.get(models.Approval, doc["approvals"][0])
    removed.is_deleted = True
    db.commit()
    fake_queue.reset_mock()

    workflow.resubmit(doc["document_id"], creator)

    fake_queue.enqueue.assert_called_once()
    assert fake_queue.enqueue.call_args.args[1] == approver
