"""Types recorded when an approval chain is sent back for revision.

A revision event stores a :class:`SignatureSnapshot` on its
``RevisionRequest`` row.  The snapshot is plain JSON in the database; the
dataclasses here are the only way the workflow reads or writes it so that the
shape is versioned and checked in one place.

Who asked for the revision is described by a :class:`Requester`: either the
approver holding a slot in the chain or an administrator rejecting the
document during validation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Tuple, Union

SNAPSHOT_VERSION = 1
ADMIN_APPROVAL_LEVEL = 0


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class PreparedBySnapshot:
    signature: Optional[str]
    signed_at: Optional[datetime]

    def to_dict(self) -> dict:
        return {"signature": self.signature, "signed_at": _dt(self.signed_at)}

    @classmethod
    def from_dict(cls, data: dict) -> "PreparedBySnapshot":
        return cls(
            signature=data.get("signature"),
            signed_at=_parse_dt(data.get("signed_at")),
        )


@dataclass(frozen=True)
class ApprovalSnapshot:
    id: int
    level: int
    approver_id: int
    approver_name: Optional[str]
    signature_image: Optional[str]
    signed_at: Optional[datetime]
    status: str
    confirmed_at: Optional[datetime]

    @classmethod
    def of(cls, approval) -> "ApprovalSnapshot":
        approver = approval.approver
        return cls(
            id=approval.id,
            level=approval.level,
            approver_id=approval.approver_id,
            approver_name=approver.display_name if approver else None,
            signature_image=approval.signature_image,
            signed_at=approval.signed_at,
            status=approval.status.value,
            confirmed_at=approval.confirmed_at,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "level": self.level,
            "approver_id": self.approver_id,
            "approver_name": self.approver_name,
            "signature_image": self.signature_image,
            "signed_at": _dt(self.signed_at),
            "status": self.status,
            "confirmed_at": _dt(self.confirmed_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ApprovalSnapshot":
        return cls(
            id=data["id"],
            level=data["level"],
            approver_id=data["approver_id"],
            approver_name=data.get("approver_name"),
            signature_image=data.get("signature_image"),
            signed_at=_parse_dt(data.get("signed_at")),
            status=data["status"],
            confirmed_at=_parse_dt(data.get("confirmed_at")),
        )


@dataclass(frozen=True)
class SignatureSnapshot:
    """Signature state of a document right before its chain was reset."""

    prepared_by: PreparedBySnapshot
    approvals: Tuple[ApprovalSnapshot, ...] = ()
    version: int = SNAPSHOT_VERSION

    @classmethod
    def capture(cls, document, approvals: Iterable) -> "SignatureSnapshot":
        return cls(
            prepared_by=PreparedBySnapshot(
                signature=document.prepared_by_signature,
                signed_at=document.prepared_by_signed_at,
            ),
            approvals=tuple(ApprovalSnapshot.of(a) for a in approvals),
        )

    @property
    def signed_count(self) -> int:
        return sum(1 for a in self.approvals if a.signed_at is not None)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "prepared_by": self.prepared_by.to_dict(),
            "approvals": [a.to_dict() for a in self.approvals],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SignatureSnapshot":
        version = data.get("version")
        if version != SNAPSHOT_VERSION:
            raise ValueError(f"Unsupported signature snapshot version: {version!r}")
        return cls(
            prepared_by=PreparedBySnapshot.from_dict(data.get("prepared_by") or {}),
            approvals=tuple(
                ApprovalSnapshot.from_dict(a) for a in data.get("approvals", [])
            ),
            version=version,
        )


@dataclass(frozen=True)
class ApproverRequester:
    """An approver sending the chain back from their own slot."""

    user_id: int
    approval_id: int
    level: int

    @property
    def approval_level(self) -> int:
        return self.level


@dataclass(frozen=True)
class AdminRequester:
    """An administrator rejecting the document during validation."""

    user_id: int
    approval_id: None = field(default=None, init=False)

    @property
    def approval_level(self) -> int:
        return ADMIN_APPROVAL_LEVEL


Requester = Union[ApproverRequester, AdminRequester]


__all__ = [
    "SNAPSHOT_VERSION",
    "ADMIN_APPROVAL_LEVEL",
    "PreparedBySnapshot",
    "ApprovalSnapshot",
    "SignatureSnapshot",
    "ApproverRequester",
    "AdminRequester",
    "Requester",
]
