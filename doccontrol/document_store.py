"""Repository over documents, their approvals and revision requests.

All reads and writes go through one SQLAlchemy session so a workflow action
commits or rolls back as a unit.  Approvals are always read through the
``Approval.is_active`` predicate.

Actions on the same document are serialized with :func:`document_lock`
(an in-process lock per document id) and, on databases that support it, a
``SELECT ... FOR UPDATE`` on the document row.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional

from models import Approval, Document, RevisionRequest

# document id -> [lock, number of holders and waiters]
_locks: dict[int, list] = {}
_locks_guard = threading.Lock()


@contextmanager
def document_lock(document_id: int) -> Iterator[None]:
    with _locks_guard:
        entry = _locks.setdefault(document_id, [threading.Lock(), 0])
        entry[1] += 1
    try:
        with entry[0]:
            yield
    finally:
        with _locks_guard:
            entry[1] -= 1
            if entry[1] == 0:
                del _locks[document_id]


class DocumentStore:
    def __init__(self, session) -> None:
        self.session = session

    def get_document(self, document_id: int, for_update: bool = False) -> Optional[Document]:
        query = self.session.query(Document).filter(Document.id == document_id)
        if for_update:
            query = query.with_for_update()
        return query.one_or_none()

    def get_approval(self, document_id: int, approval_id: int) -> Optional[Approval]:
        return (
            self.session.query(Approval)
            .filter(
                Approval.id == approval_id,
                Approval.document_id == document_id,
                Approval.is_active,
            )
            .one_or_none()
        )

    def get_approvals(self, document_id: int) -> List[Approval]:
        return (
            self.session.query(Approval)
            .filter(Approval.document_id == document_id, Approval.is_active)
            .order_by(Approval.level, Approval.created_at, Approval.id)
            .all()
        )

    def add_approval(self, approval: Approval) -> Approval:
        self.session.add(approval)
        self.session.flush()
        return approval

    def update_document(self, document: Document, **patch) -> Document:
        for key, value in patch.items():
            setattr(document, key, value)
        self.session.flush()
        return document

    def update_approvals(self, document_id: int, **patch) -> int:
        """Apply ``patch`` to every active approval of the document."""
        count = (
            self.session.query(Approval)
            .filter(Approval.document_id == document_id, Approval.is_active)
            .update(patch, synchronize_session="fetch")
        )
        return count

    def create_revision_request(self, record: RevisionRequest) -> RevisionRequest:
        self.session.add(record)
        self.session.flush()
        return record

    def list_revision_requests(self, document_id: int) -> List[RevisionRequest]:
        return (
            self.session.query(RevisionRequest)
            .filter(RevisionRequest.document_id == document_id)
            .order_by(RevisionRequest.created_at.desc(), RevisionRequest.id.desc())
            .all()
        )

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()
