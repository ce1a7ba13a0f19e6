"""Committee Repository - Data access for committee members, review rounds and reviews"""
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from .mongo_client import get_collection, to_document
from ..domain.models import CommitteeMember, ReviewRound, CommitteeReview
from ..domain.enums import RoundStatus, ReviewStatus
from ..domain.errors import (
    MemberNotFoundError, RoundNotFoundError, ReviewNotFoundError,
    ConcurrencyError, AlreadyRunningError
)
from ..utils.logger import get_logger

logger = get_logger(__name__)


class CommitteeRepository:
    """Repository for committee operations"""

    def __init__(self):
        self._members: Collection = get_collection("committee_members")
        self._rounds: Collection = get_collection("review_rounds")
        self._reviews: Collection = get_collection("committee_reviews")

    # =========================================================================
    # Members
    # =========================================================================

    def create_member(self, member: CommitteeMember) -> CommitteeMember:
        """Create a committee member"""
        doc = to_document(member)
        doc["_id"] = member.member_id
        self._members.insert_one(doc)
        logger.info(
            f"Appointed committee member {member.user_ref} as {member.role.value}",
            extra={"member_id": member.member_id}
        )
        return member

    def get_member(self, member_id: str) -> Optional[CommitteeMember]:
        """Get member by ID"""
        doc = self._members.find_one({"member_id": member_id})
        if doc:
            doc.pop("_id", None)
            return CommitteeMember.model_validate(doc)
        return None

    def get_member_or_raise(self, member_id: str) -> CommitteeMember:
        """Get member by ID or raise error"""
        member = self.get_member(member_id)
        if not member:
            raise MemberNotFoundError(
                f"Committee member {member_id} not found",
                details={"member_id": member_id}
            )
        return member

    def find_active_member_by_user(self, user_ref: str) -> Optional[CommitteeMember]:
        """Active seat held by a user, if any"""
        doc = self._members.find_one({"user_ref": user_ref, "active": True})
        if doc:
            doc.pop("_id", None)
            return CommitteeMember.model_validate(doc)
        return None

    def list_members(self, active_only: bool = True) -> List[CommitteeMember]:
        """List members"""
        query: Dict[str, Any] = {"active": True} if active_only else {}
        cursor = self._members.find(query).sort("appointed_at", ASCENDING)

        members = []
        for doc in cursor:
            doc.pop("_id", None)
            members.append(CommitteeMember.model_validate(doc))
        return members

    def update_member(self, member_id: str, updates: Dict[str, Any]) -> CommitteeMember:
        """Update member fields"""
        result = self._members.find_one_and_update(
            {"member_id": member_id},
            {"$set": updates},
            return_document=True
        )
        if result is None:
            raise MemberNotFoundError(f"Committee member {member_id} not found")
        result.pop("_id", None)
        return CommitteeMember.model_validate(result)

    # =========================================================================
    # Review Rounds
    # =========================================================================

    def create_round(self, review_round: ReviewRound, reviews: List[CommitteeReview]) -> ReviewRound:
        """Insert a round together with one pending review per polled member"""
        doc = to_document(review_round)
        doc["_id"] = review_round.round_id

        try:
            self._rounds.insert_one(doc)
        except DuplicateKeyError:
            raise AlreadyRunningError(
                f"Round {review_round.round_number} already exists for subject {review_round.subject_id}",
                details={"subject_id": review_round.subject_id}
            )

        review_docs = []
        for review in reviews:
            review_doc = to_document(review)
            review_doc["_id"] = review.review_id
            review_docs.append(review_doc)
        if review_docs:
            self._reviews.insert_many(review_docs)

        logger.info(
            f"Opened review round {review_round.round_number} with {len(reviews)} reviewers",
            extra={"round_id": review_round.round_id, "subject_id": review_round.subject_id}
        )
        return review_round

    def get_round(self, round_id: str) -> Optional[ReviewRound]:
        """Get round by ID"""
        doc = self._rounds.find_one({"round_id": round_id})
        if doc:
            doc.pop("_id", None)
            return ReviewRound.model_validate(doc)
        return None

    def get_latest_round(self, subject_id: str) -> Optional[ReviewRound]:
        """Most recent round for a subject"""
        cursor = self._rounds.find({"subject_id": subject_id}).sort("round_number", DESCENDING).limit(1)
        for doc in cursor:
            doc.pop("_id", None)
            return ReviewRound.model_validate(doc)
        return None

    def get_latest_round_or_raise(self, subject_id: str) -> ReviewRound:
        """Most recent round for a subject or raise error"""
        review_round = self.get_latest_round(subject_id)
        if not review_round:
            raise RoundNotFoundError(
                f"No review round for subject {subject_id}",
                details={"subject_id": subject_id}
            )
        return review_round

    def list_open_rounds_for_member(self, member_id: str) -> List[ReviewRound]:
        """Open rounds polling a member"""
        cursor = self._rounds.find({"member_ids": member_id, "status": RoundStatus.OPEN.value})

        rounds = []
        for doc in cursor:
            doc.pop("_id", None)
            rounds.append(ReviewRound.model_validate(doc))
        return rounds

    def find_open_round_for_instance(self, instance_id: str) -> Optional[ReviewRound]:
        """Open round linked to an instance step, if any"""
        doc = self._rounds.find_one({"instance_id": instance_id, "status": RoundStatus.OPEN.value})
        if doc:
            doc.pop("_id", None)
            return ReviewRound.model_validate(doc)
        return None

    def update_round(
        self,
        round_id: str,
        updates: Dict[str, Any],
        expected_version: Optional[int] = None,
        expected_status: Optional[RoundStatus] = None
    ) -> ReviewRound:
        """Update round with optimistic concurrency"""
        filter_query: Dict[str, Any] = {"round_id": round_id}
        if expected_version is not None:
            filter_query["version"] = expected_version
            updates["version"] = expected_version + 1
        if expected_status is not None:
            filter_query["status"] = expected_status.value

        result = self._rounds.find_one_and_update(
            filter_query,
            {"$set": updates},
            return_document=True
        )

        if result is None:
            if self._rounds.find_one({"round_id": round_id}):
                raise ConcurrencyError(
                    f"Review round {round_id} was modified. Please refresh and try again.",
                    details={"round_id": round_id, "expected_version": expected_version}
                )
            raise RoundNotFoundError(f"Review round {round_id} not found")

        result.pop("_id", None)
        return ReviewRound.model_validate(result)

    # =========================================================================
    # Reviews
    # =========================================================================

    def get_reviews_for_round(self, round_id: str) -> List[CommitteeReview]:
        """All reviews of a round"""
        cursor = self._reviews.find({"round_id": round_id}).sort("member_id", ASCENDING)

        reviews = []
        for doc in cursor:
            doc.pop("_id", None)
            reviews.append(CommitteeReview.model_validate(doc))
        return reviews

    def get_review_or_raise(self, round_id: str, member_id: str) -> CommitteeReview:
        """Review of a member inside a round or raise error"""
        doc = self._reviews.find_one({"round_id": round_id, "member_id": member_id})
        if not doc:
            raise ReviewNotFoundError(
                f"Member {member_id} has no review in round {round_id}",
                details={"round_id": round_id, "member_id": member_id}
            )
        doc.pop("_id", None)
        return CommitteeReview.model_validate(doc)

    def update_review(
        self,
        review_id: str,
        updates: Dict[str, Any],
        expected_version: int
    ) -> CommitteeReview:
        """Record a vote; only a still-pending review at the expected version is updated"""
        updates["version"] = expected_version + 1
        result = self._reviews.find_one_and_update(
            {
                "review_id": review_id,
                "version": expected_version,
                "status": ReviewStatus.PENDING.value,
            },
            {"$set": updates},
            return_document=True
        )

        if result is None:
            raise ConcurrencyError(
                f"Review {review_id} was already recorded or modified",
                details={"review_id": review_id, "expected_version": expected_version}
            )

        result.pop("_id", None)
        logger.info(
            f"Recorded review {review_id}: {result.get('status')}",
            extra={"subject_id": result.get("subject_id"), "member_id": result.get("member_id")}
        )
        return CommitteeReview.model_validate(result)

    def withdraw_review(self, review_id: str, expected_version: int) -> bool:
        """Put a just-recorded vote back to pending; False when the review moved on"""
        result = self._reviews.update_one(
            {"review_id": review_id, "version": expected_version},
            {"$set": {
                "status": ReviewStatus.PENDING.value,
                "comments": None,
                "rationale": None,
                "reviewed_by": None,
                "reviewed_at": None,
                "version": expected_version + 1,
            }}
        )
        return result.modified_count == 1
