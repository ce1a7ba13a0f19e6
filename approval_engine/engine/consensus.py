"""Consensus Policies - How a committee's votes resolve a review round

A policy only sees the counted votes of a round: every polled member still
active, none of them pending. Votes of members deactivated after the round
opened are abstentions and never reach the policy.
"""
from typing import Dict, List, Optional
from pydantic import BaseModel, Field

from ..domain.models import CommitteeMember, CommitteeReview
from ..domain.enums import CommitteeRole, ConsensusOutcome, ReviewStatus
from ..domain.errors import ValidationError


class VoteTally(BaseModel):
    """Counted votes of a round"""
    votes: List[CommitteeReview] = Field(default_factory=list)
    members: Dict[str, CommitteeMember] = Field(default_factory=dict)
    abstentions: int = 0

    def count(self, status: ReviewStatus) -> int:
        return sum(1 for vote in self.votes if vote.status == status)

    @property
    def approvals(self) -> int:
        return self.count(ReviewStatus.APPROVED)

    @property
    def rejections(self) -> int:
        return self.count(ReviewStatus.REJECTED)

    @property
    def revisions(self) -> int:
        return self.count(ReviewStatus.NEEDS_REVISION)

    @property
    def pending(self) -> int:
        return self.count(ReviewStatus.PENDING)

    def vote_of(self, role: CommitteeRole) -> Optional[CommitteeReview]:
        for vote in self.votes:
            member = self.members.get(vote.member_id)
            if member and member.role == role:
                return vote
        return None

    def summary(self) -> Dict[str, int]:
        return {
            "approvals": self.approvals,
            "rejections": self.rejections,
            "revisions": self.revisions,
            "abstentions": self.abstentions,
        }


class ConsensusPolicy:
    """Base class for consensus strategies"""

    name = ""

    def decide(self, tally: VoteTally) -> ConsensusOutcome:
        """Outcome of a fully voted round; PENDING means held for revision"""
        raise NotImplementedError


class UnanimityPolicy(ConsensusPolicy):
    """Approved only when every counted vote approves"""

    name = "unanimity"

    def decide(self, tally: VoteTally) -> ConsensusOutcome:
        if tally.rejections:
            return ConsensusOutcome.REJECTED
        if tally.revisions:
            return ConsensusOutcome.PENDING
        return ConsensusOutcome.APPROVED


class MajorityPolicy(ConsensusPolicy):
    """Strict majority of counted votes; a tie without revision requests rejects"""

    name = "majority"

    def decide(self, tally: VoteTally) -> ConsensusOutcome:
        total = len(tally.votes)
        if tally.approvals * 2 > total:
            return ConsensusOutcome.APPROVED
        if tally.rejections * 2 > total:
            return ConsensusOutcome.REJECTED
        return self.no_majority(tally)

    def no_majority(self, tally: VoteTally) -> ConsensusOutcome:
        if tally.revisions:
            return ConsensusOutcome.PENDING
        return ConsensusOutcome.REJECTED


class PresidentTiebreakPolicy(MajorityPolicy):
    """Majority, with the president's vote deciding an approve/reject tie"""

    name = "president_tiebreak"

    def no_majority(self, tally: VoteTally) -> ConsensusOutcome:
        if tally.approvals and tally.approvals == tally.rejections:
            president_vote = tally.vote_of(CommitteeRole.PRESIDENT)
            if president_vote and president_vote.status == ReviewStatus.APPROVED:
                return ConsensusOutcome.APPROVED
            if president_vote and president_vote.status == ReviewStatus.REJECTED:
                return ConsensusOutcome.REJECTED
        return super().no_majority(tally)


_POLICIES = {
    policy.name: policy
    for policy in (UnanimityPolicy, MajorityPolicy, PresidentTiebreakPolicy)
}


def get_policy(name: str) -> ConsensusPolicy:
    """Policy registered under a name"""
    policy_class = _POLICIES.get((name or "").strip().lower())
    if policy_class is None:
        raise ValidationError(
            f"Unknown consensus policy '{name}'",
            details={"allowed": sorted(_POLICIES)}
        )
    return policy_class()
