"""Ordering rules for a document's approval chain.

Approvals are signed strictly one after another: by ``level`` first and, inside
a level, by creation time (row id settles identical timestamps).  The creator's
"prepared by" signature has to exist before anyone in the chain may sign.
Soft-deleted approvals are ignored everywhere through ``Approval.is_active``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Tuple, Union

from models import ApprovalStatus


class BlockReason(Enum):
    CREATOR_NOT_SIGNED = "creator-not-signed"
    PREVIOUS_UNSIGNED = "previous-unsigned"


@dataclass(frozen=True)
class Ready:
    ok = True


@dataclass(frozen=True)
class Blocked:
    reason: BlockReason
    # ids of earlier approvals still waiting for a signature
    waiting_on: Tuple[int, ...] = ()

    ok = False


SignReadiness = Union[Ready, Blocked]


@dataclass(frozen=True)
class ChainState:
    all_signed: bool
    all_approved: bool


def active_approvals(approvals: Iterable) -> List:
    """Return the non-deleted approvals in signing order."""
    return sorted((a for a in approvals if a.is_active), key=lambda a: a.sequence_key)


def precedes(earlier, later) -> bool:
    return earlier.sequence_key < later.sequence_key


def previous_approvals(approvals: Iterable, target) -> List:
    return [
        a
        for a in active_approvals(approvals)
        if a.id != target.id and precedes(a, target)
    ]


def ready_to_sign(document, approval, approvals: Optional[Iterable] = None) -> SignReadiness:
    """Decide whether ``approval`` may be signed right now.

    ``approvals`` defaults to the document's own approval collection.
    """
    if document.prepared_by_signed_at is None:
        return Blocked(BlockReason.CREATOR_NOT_SIGNED)
    chain = document.approvals if approvals is None else approvals
    unsigned = tuple(
        a.id for a in previous_approvals(chain, approval) if a.signed_at is None
    )
    if unsigned:
        return Blocked(BlockReason.PREVIOUS_UNSIGNED, unsigned)
    return Ready()


def aggregate(approvals: Iterable) -> ChainState:
    chain = active_approvals(approvals)
    return ChainState(
        all_signed=all(a.signed_at is not None for a in chain),
        all_approved=all(a.status == ApprovalStatus.APPROVED for a in chain),
    )


def next_to_sign(document, approvals: Optional[Iterable] = None):
    """First approval still waiting for a signature, if any."""
    chain = document.approvals if approvals is None else approvals
    for approval in active_approvals(chain):
        if approval.signed_at is None:
            return approval
    return None


__all__ = [
    "BlockReason",
    "Ready",
    "Blocked",
    "SignReadiness",
    "ChainState",
    "active_approvals",
    "previous_approvals",
    "ready_to_sign",
    "aggregate",
    "next_to_sign",
]
