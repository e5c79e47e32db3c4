"""Document approval workflow.

:class:`DocumentWorkflow` owns every change to a document's ``status``,
``approval_status`` and ``revision_cycle`` and to the signature fields of its
approvals.  Each public method is one transaction:

* preconditions are checked first and raise a :mod:`errors` exception without
  touching the database;
* all writes of the action commit together (or not at all) while the
  document's lock is held;
* activity entries and notifications are emitted only after the commit and
  their failures are logged, never raised.

Lifecycle::

    DRAFT -> IN_REVIEW -> ON_APPROVAL -> WAITING_VALIDATION -> APPROVED -> ACTIVE
                 \\            |                 |                  |        |
                  +--------> ON_REVISION <-------+                  +--> OBSOLETE
"""

from __future__ import annotations

import logging
import os
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum as PyEnum
from typing import Iterable, List, Optional

from sqlalchemy.orm import sessionmaker

from approval_chain import (
    BlockReason,
    Blocked,
    active_approvals,
    aggregate,
    next_to_sign,
    ready_to_sign,
)
from directory import Directory
from document_store import DocumentStore, document_lock
from errors import (
    AlreadyFinalized,
    AlreadySigned,
    CreatorNotSigned,
    DependencyFailure,
    Forbidden,
    InvalidState,
    NotFound,
    OutOfOrder,
    ValidationError,
)
from events import ActivityEntry, Emitter
from models import (
    Approval,
    ApprovalStatus,
    DocumentApprovalStatus,
    DocumentStatus,
    RevisionRequest,
    ValidatedCategory,
    engine,
)
from notifications import render
from revisions import AdminRequester, ApproverRequester, SignatureSnapshot
from signing import (
    InlineSignature,
    ProfileSignature,
    decode_final_pdf,
    parse_signature_source,
    resolve_signature,
    validate_company_stamp,
)
from storage import StorageError, get_storage

logger = logging.getLogger(__name__)

REVISION_REASON_MIN_LENGTH = int(os.environ.get("REVISION_REASON_MIN_LENGTH", "10"))
ADMIN_REJECTION_REASON = "Admin rejected during validation"
# approvals at this level are the reviewers; a chain without them starts ON_APPROVAL
REVIEW_LEVEL = 1

SIGNABLE_STATES = frozenset({DocumentStatus.IN_REVIEW, DocumentStatus.ON_APPROVAL})
REVISABLE_STATES = frozenset({DocumentStatus.IN_REVIEW, DocumentStatus.ON_APPROVAL})


class ValidationAction(PyEnum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


def approval_summary(approval: Approval, ready: Optional[bool] = None) -> dict:
    data = {
        "id": approval.id,
        "level": approval.level,
        "approver_id": approval.approver_id,
        "status": approval.status.value,
        "signed_at": approval.signed_at.isoformat() if approval.signed_at else None,
        "revision_cycle": approval.revision_cycle,
    }
    if ready is not None:
        data["ready_to_sign"] = ready
    return data


@dataclass
class WorkflowResult:
    document_id: int
    status: DocumentStatus
    approval_status: DocumentApprovalStatus
    revision_cycle: int
    approval: Optional[dict] = None
    revision_request_id: Optional[int] = None
    final_pdf_url: Optional[str] = None

    @classmethod
    def of(cls, document, **extra) -> "WorkflowResult":
        return cls(
            document_id=document.id,
            status=document.status,
            approval_status=document.approval_status,
            revision_cycle=document.revision_cycle,
            **extra,
        )

    def to_dict(self) -> dict:
        data = {
            "document_id": self.document_id,
            "status": self.status.value,
            "approval_status": self.approval_status.value,
            "revision_cycle": self.revision_cycle,
        }
        if self.approval is not None:
            data["approval"] = self.approval
        if self.revision_request_id is not None:
            data["revision_request_id"] = self.revision_request_id
        if self.final_pdf_url is not None:
            data["final_pdf_url"] = self.final_pdf_url
        return data


@dataclass
class _Unit:
    store: DocumentStore
    directory: Directory
    activities: List[ActivityEntry] = field(default_factory=list)
    notices: List[tuple] = field(default_factory=list)

    def activity(self, document, user_id, action, description, entity_type="Document", entity_id=None, **metadata):
        metadata.setdefault("document_number", document.document_number)
        self.activities.append(
            ActivityEntry(
                user_id=user_id,
                action=action,
                entity_type=entity_type,
                entity_id=document.id if entity_id is None else entity_id,
                description=description,
                document_id=document.id,
                metadata=metadata,
            )
        )

    def notify(self, user_id, template_key, document, **context):
        if user_id is None:
            return
        context.setdefault("title", document.title or document.document_number)
        context.setdefault("number", document.document_number)
        # rendered after commit
        self.notices.append((user_id, template_key, document.id, context))


def _safe_file_name(document_number: str) -> str:
    return re.sub(r"[^a-zA-Z0-9-]", "_", document_number)


def _coerce_enum(enum_cls, value, label: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {label}: {value!r}. Expected one of {allowed}")


def _optional_text(value, label: str) -> Optional[str]:
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{label} must be text")
    return value


def _signature_source(value):
    if isinstance(value, (InlineSignature, ProfileSignature)):
        return value
    return parse_signature_source(value)


def _review_status(approvals: Iterable[Approval]) -> DocumentStatus:
    if any(a.level == REVIEW_LEVEL for a in approvals):
        return DocumentStatus.IN_REVIEW
    return DocumentStatus.ON_APPROVAL


class DocumentWorkflow:
    def __init__(self, session_factory=None, file_store=None, emitter=None, clock=None):
        self.session_factory = session_factory or sessionmaker(bind=engine)
        self._file_store = file_store
        self.emitter = emitter or Emitter()
        self.clock = clock or datetime.utcnow

    @property
    def file_store(self):
        return self._file_store or get_storage()

    # -- plumbing --------------------------------------------------------
    @contextmanager
    def _transaction(self, document_id: int):
        session = self.session_factory()
        unit = _Unit(DocumentStore(session), Directory(session))
        try:
            with document_lock(document_id):
                try:
                    yield unit
                    unit.store.commit()
                except Exception:
                    unit.store.rollback()
                    raise
        finally:
            session.close()
        self._emit(unit)

    @contextmanager
    def _reading(self):
        session = self.session_factory()
        try:
            yield DocumentStore(session)
        finally:
            session.close()

    def _emit(self, unit: _Unit) -> None:
        for entry in unit.activities:
            try:
                self.emitter.record_activity(entry)
            except Exception:
                logger.exception("Activity hook failed for %s", entry.action)
        for user_id, template_key, document_id, context in unit.notices:
            try:
                self.emitter.notify(user_id, render(template_key, document_id, **context))
            except Exception:
                logger.exception("Notification hook failed for user %s", user_id)

    @staticmethod
    def _document(store: DocumentStore, document_id: int):
        document = store.get_document(document_id, for_update=True)
        if document is None:
            raise NotFound("Document not found", document_id=document_id)
        return document

    @staticmethod
    def _approval(store: DocumentStore, document_id: int, approval_id: int) -> Approval:
        approval = store.get_approval(document_id, approval_id)
        if approval is None:
            raise NotFound("Approval not found", approval_id=approval_id)
        return approval

    @staticmethod
    def _require_admin(unit: _Unit, user_id: int) -> None:
        if not unit.directory.is_admin(user_id):
            raise Forbidden("Only administrators may perform this action", user_id=user_id)

    @staticmethod
    def _require_state(document, allowed, action: str) -> None:
        if document.status not in allowed:
            raise InvalidState(
                f"Cannot {action} a document in {document.status.value} status",
                status=document.status.value,
            )

    @staticmethod
    def _check_reason(reason) -> str:
        text = (_optional_text(reason, "Revision reason") or "").strip()
        if len(text) < REVISION_REASON_MIN_LENGTH:
            raise ValidationError(
                f"Revision reason must be at least {REVISION_REASON_MIN_LENGTH} characters",
                min_length=REVISION_REASON_MIN_LENGTH,
            )
        return text

    def _send_back(self, unit: _Unit, document, requester, reason: str) -> RevisionRequest:
        """Snapshot, record and reset the whole chain of ``document``."""
        store = unit.store
        approvals = store.get_approvals(document.id)
        snapshot = SignatureSnapshot.capture(document, approvals)
        record = store.create_revision_request(
            RevisionRequest(
                document_id=document.id,
                requested_by_id=requester.user_id,
                reason=reason,
                approval_level=requester.approval_level,
                approval_id=requester.approval_id,
                signature_snapshot=snapshot.to_dict(),
                created_at=self.clock(),
            )
        )
        store.update_approvals(
            document.id,
            signature_image=None,
            signed_at=None,
            status=ApprovalStatus.PENDING,
            confirmed_at=None,
            approved_at=None,
            rejected_at=None,
        )
        store.update_document(
            document,
            status=DocumentStatus.ON_REVISION,
            approval_status=DocumentApprovalStatus.NEEDS_REVISION,
            revision_cycle=document.revision_cycle + 1,
        )
        store.update_approvals(document.id, revision_cycle=document.revision_cycle)
        return record

    # -- chain ----------------------------------------------------------
    def sign(self, document_id: int, approval_id: int, signer_id: int, signature) -> WorkflowResult:
        """Sign ``approval_id`` on behalf of ``signer_id``.

        ``signature`` is a :data:`signing.SignatureSource` or the raw request
        value (an image or ``"use-profile"``).
        """
        with self._transaction(document_id) as unit:
            store = unit.store
            document = self._document(store, document_id)
            approval = self._approval(store, document_id, approval_id)
            if approval.approver_id != signer_id:
                raise Forbidden(
                    "You are not authorized to sign this approval",
                    approval_id=approval_id,
                )
            if approval.signed_at is not None:
                raise AlreadySigned("This approval has already been signed", approval_id=approval_id)
            self._require_state(document, SIGNABLE_STATES, "sign")

            approvals = store.get_approvals(document_id)
            readiness = ready_to_sign(document, approval, approvals)
            if isinstance(readiness, Blocked):
                if readiness.reason is BlockReason.CREATOR_NOT_SIGNED:
                    raise CreatorNotSigned("Document must be signed by the creator first")
                raise OutOfOrder(
                    "Previous approvals must be signed first",
                    waiting_on=list(readiness.waiting_on),
                )

            image = resolve_signature(unit.directory, signer_id, _signature_source(signature))
            now = self.clock()
            approval.signature_image = image
            approval.signed_at = now
            approval.status = ApprovalStatus.APPROVED
            approval.approved_at = now
            approval.confirmed_at = now
            approval.revision_cycle = document.revision_cycle

            state = aggregate(approvals)
            if state.all_approved:
                store.update_document(
                    document,
                    status=DocumentStatus.APPROVED,
                    approval_status=DocumentApprovalStatus.APPROVED,
                )
                unit.notify(document.created_by_id, "document_approved", document)
            else:
                store.update_document(
                    document, approval_status=DocumentApprovalStatus.IN_PROGRESS
                )
                upcoming = next_to_sign(document, approvals)
                if upcoming is not None:
                    unit.notify(
                        upcoming.approver_id, "approval_queue", document, level=upcoming.level
                    )

            unit.activity(
                document,
                signer_id,
                "DOCUMENT_SIGNED",
                f"Signed document: {document.title}",
                entity_type="Approval",
                entity_id=approval.id,
                approval_level=approval.level,
                revision_cycle=document.revision_cycle,
                document_status=document.status.value,
            )
            return WorkflowResult.of(document, approval=approval_summary(approval))

    def request_revision(self, document_id: int, approval_id: int, requester_id: int, reason: str) -> WorkflowResult:
        """Send the whole chain back to the creator from ``approval_id``."""
        reason = self._check_reason(reason)
        with self._transaction(document_id) as unit:
            store = unit.store
            document = self._document(store, document_id)
            approval = self._approval(store, document_id, approval_id)
            if approval.approver_id != requester_id:
                raise Forbidden(
                    "You are not authorized to request revision for this document",
                    approval_id=approval_id,
                )
            self._require_state(document, REVISABLE_STATES, "request revision for")

            requester = ApproverRequester(requester_id, approval.id, approval.level)
            record = self._send_back(unit, document, requester, reason)

            unit.activity(
                document,
                requester_id,
                "REVISION_REQUESTED",
                f"Requested revision for document: {document.title}",
                approval_level=approval.level,
                revision_request_id=record.id,
                reason=reason,
                revision_cycle=document.revision_cycle,
            )
            unit.notify(document.created_by_id, "revision_needed", document, reason=reason)
            return WorkflowResult.of(
                document,
                approval=approval_summary(approval),
                revision_request_id=record.id,
            )

    # -- administration --------------------------------------------------
    def admin_validate(self, document_id: int, admin_id: int, action, comments: Optional[str] = None) -> WorkflowResult:
        with self._transaction(document_id) as unit:
            self._require_admin(unit, admin_id)
            action = _coerce_enum(ValidationAction, action, "validation action")
            comments = _optional_text(comments, "Comments")
            store = unit.store
            document = self._document(store, document_id)
            self._require_state(document, {DocumentStatus.WAITING_VALIDATION}, "validate")

            if action is ValidationAction.APPROVE:
                store.update_document(
                    document,
                    status=DocumentStatus.APPROVED,
                    approval_status=DocumentApprovalStatus.APPROVED,
                )
                unit.activity(
                    document,
                    admin_id,
                    "DOCUMENT_VALIDATED",
                    f"Admin validated and approved document: {document.title}",
                    comments=comments,
                )
                unit.notify(document.created_by_id, "document_approved", document)
                return WorkflowResult.of(document)

            reason = comments.strip() if comments and comments.strip() else ADMIN_REJECTION_REASON
            record = self._send_back(unit, document, AdminRequester(admin_id), reason)
            unit.activity(
                document,
                admin_id,
                "DOCUMENT_REJECTED",
                f"Admin rejected document during validation: {document.title}",
                revision_request_id=record.id,
                comments=comments,
                revision_cycle=document.revision_cycle,
            )
            unit.notify(document.created_by_id, "admin_rejected", document, reason=reason)
            return WorkflowResult.of(document, revision_request_id=record.id)

    def finalize(
        self,
        document_id: int,
        admin_id: int,
        category,
        company_stamp: str,
        final_pdf: Optional[str] = None,
    ) -> WorkflowResult:
        """Stamp a document awaiting validation as approved.

        The optional final PDF is written to the file store before the
        database commit; if the commit does not happen the file is removed
        again.
        """
        stored_key = None
        try:
            with self._transaction(document_id) as unit:
                self._require_admin(unit, admin_id)
                category = _coerce_enum(ValidatedCategory, category, "category")
                stamp = validate_company_stamp(company_stamp)
                pdf = decode_final_pdf(final_pdf) if final_pdf else None
                store = unit.store
                document = self._document(store, document_id)
                if document.validated_at is not None:
                    raise AlreadyFinalized(
                        "Document has already been finalized", document_id=document_id
                    )
                self._require_state(document, {DocumentStatus.WAITING_VALIDATION}, "finalize")

                now = self.clock()
                final_pdf_url = document.file_url
                if pdf is not None:
                    stamp_ms = int(now.timestamp() * 1000)
                    key = self.file_store.key_for(
                        f"{_safe_file_name(document.document_number)}_final_{stamp_ms}.pdf"
                    )
                    try:
                        final_pdf_url = self.file_store.store(pdf, "application/pdf", key)
                    except StorageError as exc:
                        raise DependencyFailure("Failed to save final PDF file") from exc
                    stored_key = key
                    logger.info("Final PDF for document %s saved as %s", document_id, key)

                store.update_document(
                    document,
                    status=DocumentStatus.APPROVED,
                    approval_status=DocumentApprovalStatus.APPROVED,
                    validated_category=category,
                    company_stamp=stamp,
                    final_pdf_url=final_pdf_url,
                    validated_at=now,
                    validated_by_id=admin_id,
                )
                unit.activity(
                    document,
                    admin_id,
                    "DOCUMENT_FINALIZED",
                    f"Document finalized as {category.value}: {document.title}",
                    category=category.value,
                    final_pdf_url=final_pdf_url,
                )
                unit.notify(
                    document.created_by_id,
                    "document_finalized",
                    document,
                    category=category.value,
                )
                return WorkflowResult.of(document, final_pdf_url=final_pdf_url)
        except Exception:
            if stored_key is not None:
                self._discard_file(stored_key)
            raise

    def _discard_file(self, key: str) -> None:
        try:
            self.file_store.delete(key)
        except StorageError:
            logger.exception("Could not remove orphaned file %s", key)

    def send_to_validation(self, document_id: int, admin_id: int) -> WorkflowResult:
        """Hand an in-flight document to the administrators for validation."""
        with self._transaction(document_id) as unit:
            self._require_admin(unit, admin_id)
            document = self._document(unit.store, document_id)
            self._require_state(document, REVISABLE_STATES, "send to validation")
            unit.store.update_document(
                document,
                status=DocumentStatus.WAITING_VALIDATION,
                approval_status=DocumentApprovalStatus.IN_PROGRESS,
            )
            unit.activity(
                document,
                admin_id,
                "VALIDATION_REQUESTED",
                f"Sent document to validation: {document.title}",
            )
            return WorkflowResult.of(document)

    def distribute(self, document_id: int, admin_id: int) -> WorkflowResult:
        return self._admin_transition(
            document_id,
            admin_id,
            {DocumentStatus.APPROVED},
            DocumentStatus.ACTIVE,
            "DOCUMENT_DISTRIBUTED",
            "distribute",
        )

    def mark_obsolete(self, document_id: int, admin_id: int) -> WorkflowResult:
        return self._admin_transition(
            document_id,
            admin_id,
            {DocumentStatus.APPROVED, DocumentStatus.ACTIVE},
            DocumentStatus.OBSOLETE,
            "DOCUMENT_OBSOLETED",
            "make obsolete",
        )

    def _admin_transition(self, document_id, admin_id, allowed, target, action, verb) -> WorkflowResult:
        with self._transaction(document_id) as unit:
            self._require_admin(unit, admin_id)
            document = self._document(unit.store, document_id)
            self._require_state(document, allowed, verb)
            previous = document.status
            unit.store.update_document(document, status=target)
            unit.activity(
                document,
                admin_id,
                action,
                f"Document {document.document_number} moved to {target.value}",
                previous_status=previous.value,
            )
            return WorkflowResult.of(document)

    # -- creator ----------------------------------------------------------
    def submit(self, document_id: int, creator_id: int, approvers, signature=None) -> WorkflowResult:
        """Sign a draft as its creator and open the approval chain.

        ``approvers`` is an iterable of ``(approver_id, level)`` pairs.  Without
        an explicit ``signature`` the creator's saved profile signature is used,
        unless the document already carries a "prepared by" signature.
        """
        slots = self._check_approvers(approvers)
        source = ProfileSignature() if signature is None else _signature_source(signature)

        with self._transaction(document_id) as unit:
            store = unit.store
            document = self._document(store, document_id)
            if document.created_by_id != creator_id:
                raise Forbidden("Only the document creator may submit it", document_id=document_id)
            self._require_state(document, {DocumentStatus.DRAFT}, "submit")
            for approver_id in {approver_id for approver_id, _ in slots}:
                if unit.directory.get_user_profile(approver_id) is None:
                    raise ValidationError("Unknown approver", approver_id=approver_id)

            now = self.clock()
            if document.prepared_by_signed_at is None:
                image = resolve_signature(unit.directory, creator_id, source)
                store.update_document(
                    document, prepared_by_signature=image, prepared_by_signed_at=now
                )

            created = [
                store.add_approval(
                    Approval(
                        document_id=document.id,
                        approver_id=approver_id,
                        level=level,
                        status=ApprovalStatus.PENDING,
                        revision_cycle=document.revision_cycle,
                        created_at=now,
                    )
                )
                for approver_id, level in slots
            ]
            store.update_document(
                document,
                status=_review_status(created),
                approval_status=DocumentApprovalStatus.PENDING,
            )
            first = active_approvals(created)[0]
            unit.notify(first.approver_id, "approval_queue", document, level=first.level)
            unit.activity(
                document,
                creator_id,
                "DOCUMENT_SUBMITTED",
                f"Submitted document for review: {document.title}",
                approvers=[{"approver_id": a, "level": lvl} for a, lvl in slots],
            )
            return WorkflowResult.of(document)

    @staticmethod
    def _check_approvers(approvers) -> List[tuple]:
        if approvers is None:
            approvers = []
        if not isinstance(approvers, (list, tuple)):
            raise ValidationError("Approvers must be (approver_id, level) pairs")
        slots = []
        for item in approvers:
            if isinstance(item, dict):
                approver_id, level = item.get("approver_id"), item.get("level")
            elif isinstance(item, (list, tuple)) and len(item) == 2:
                approver_id, level = item
            else:
                raise ValidationError("Approvers must be (approver_id, level) pairs")
            if not isinstance(approver_id, int) or isinstance(approver_id, bool):
                raise ValidationError("Approver id must be an integer", approver_id=approver_id)
            if not isinstance(level, int) or isinstance(level, bool) or level < 1:
                raise ValidationError("Approval level must be an integer of at least 1", level=level)
            if (approver_id, level) in slots:
                raise ValidationError(
                    "Approver assigned twice to the same level",
                    approver_id=approver_id,
                    level=level,
                )
            slots.append((approver_id, level))
        if not slots:
            raise ValidationError("At least one approver is required")
        return sorted(slots, key=lambda slot: slot[1])

    def resubmit(self, document_id: int, creator_id: int) -> WorkflowResult:
        """Return a revised document to its (reset) approval chain."""
        with self._transaction(document_id) as unit:
            store = unit.store
            document = self._document(store, document_id)
            if document.created_by_id != creator_id:
                raise Forbidden("Only the document creator may resubmit it", document_id=document_id)
            self._require_state(document, {DocumentStatus.ON_REVISION}, "resubmit")
            approvals = store.get_approvals(document_id)
            if not approvals:
                raise InvalidState("Document has no approvals to resubmit to")

            store.update_document(
                document,
                status=_review_status(approvals),
                approval_status=DocumentApprovalStatus.PENDING,
            )
            first = next_to_sign(document, approvals)
            if first is not None:
                unit.notify(first.approver_id, "approval_queue", document, level=first.level)
            unit.activity(
                document,
                creator_id,
                "DOCUMENT_RESUBMITTED",
                f"Resubmitted document after revision: {document.title}",
                revision_cycle=document.revision_cycle,
            )
            return WorkflowResult.of(document)

    # -- queries ----------------------------------------------------------
    def revision_history(self, document_id: int) -> List[dict]:
        with self._reading() as store:
            if store.get_document(document_id) is None:
                raise NotFound("Document not found", document_id=document_id)
            return [
                {
                    "id": record.id,
                    "requested_by_id": record.requested_by_id,
                    "reason": record.reason,
                    "approval_level": record.approval_level,
                    "approval_id": record.approval_id,
                    "created_at": record.created_at.isoformat() if record.created_at else None,
                    "snapshot": record.snapshot,
                }
                for record in store.list_revision_requests(document_id)
            ]

    def document_summary(self, document_id: int) -> dict:
        with self._reading() as store:
            document = store.get_document(document_id)
            if document is None:
                raise NotFound("Document not found", document_id=document_id)
            approvals = store.get_approvals(document_id)
            chain = []
            for approval in approvals:
                readiness = ready_to_sign(document, approval, approvals)
                chain.append(
                    approval_summary(
                        approval,
                        ready=approval.signed_at is None and not isinstance(readiness, Blocked),
                    )
                )
            summary = WorkflowResult.of(document).to_dict()
            summary.update(
                {
                    "document_number": document.document_number,
                    "title": document.title,
                    "prepared_by": {
                        "user_id": document.created_by_id,
                        "signed_at": document.prepared_by_signed_at.isoformat()
                        if document.prepared_by_signed_at
                        else None,
                    },
                    "approvals": chain,
                    "validated_category": document.validated_category.value
                    if document.validated_category
                    else None,
                    "final_pdf_url": document.final_pdf_url,
                }
            )
            return summary
