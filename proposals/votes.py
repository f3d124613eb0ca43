"""Typed view over the JSON reviewer-approval map stored on a project."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from proposals.models import VoteStatus


@dataclass(frozen=True)
class Vote:
    status: VoteStatus
    review_comment: Optional[str] = None
    updated_at: Optional[str] = None

    def to_json(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "review_comment": self.review_comment,
            "updated_at": self.updated_at,
        }


PENDING = Vote(status=VoteStatus.PENDING)

ApprovalMap = dict[int, Vote]


def load_approvals(raw: Optional[Mapping[str, Any]]) -> ApprovalMap:
    """Parse the stored JSON map. Keys are reviewer ids, stored as strings."""
    approvals: ApprovalMap = {}
    for key, value in (raw or {}).items():
        value = value or {}
        approvals[int(key)] = Vote(
            status=VoteStatus(value.get("status", VoteStatus.PENDING.value)),
            review_comment=value.get("review_comment"),
            updated_at=value.get("updated_at"),
        )
    return approvals


def dump_approvals(approvals: ApprovalMap) -> dict[str, Any]:
    return {str(rid): vote.to_json() for rid, vote in sorted(approvals.items())}


def vote_of(approvals: ApprovalMap, reviewer_id: int) -> Vote:
    return approvals.get(reviewer_id, PENDING)


def with_vote(
    approvals: ApprovalMap,
    reviewer_id: int,
    status: VoteStatus,
    comment: Optional[str],
    at: datetime,
) -> ApprovalMap:
    merged = dict(approvals)
    merged[reviewer_id] = Vote(
        status=status, review_comment=comment, updated_at=at.isoformat()
    )
    return merged


def all_approved(approvals: ApprovalMap, reviewer_ids: Iterable[int]) -> bool:
    ids = list(reviewer_ids)
    return bool(ids) and all(
        vote_of(approvals, rid).status == VoteStatus.APPROVED for rid in ids
    )


def count_by_status(
    approvals: ApprovalMap, reviewer_ids: Iterable[int]
) -> dict[VoteStatus, int]:
    counts = {status: 0 for status in VoteStatus}
    for rid in reviewer_ids:
        counts[vote_of(approvals, rid).status] += 1
    return counts
