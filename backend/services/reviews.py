"""
Trainer Reviews
===============
One review per (trainer, student) pair. Resubmitting updates the existing
review. The trainer's store.rating / store.totalReviews aggregate is
recomputed inside the same transaction as the review write, from every
review of that trainer, so concurrent submissions never leave a partial
aggregate behind.

The recompute reads all of a trainer's reviews on each write: linear in
the review count, kept for consistency.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import structlog

from schemas.documents import ReviewRecord
from services.auth import AuthContext
from services.errors import ReviewRejected, forbidden, unauthorized
from storage.document_store import SERVER_TIMESTAMP, DocumentSnapshot, DocumentStore, StoreTransaction, utcnow

logger = structlog.get_logger().bind(component="reviews")

MAX_COMMENT_LENGTH = 500
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 50

_TENTH = Decimal("0.1")


@dataclass(frozen=True)
class ReviewResult:
    id: str
    created: bool
    created_at: datetime


def coerce_rating(value: Any) -> Optional[int]:
    """Integer 1..5 (4, 4.0 and "4" all accepted) or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    if not number.is_finite() or number != number.to_integral_value():
        return None
    rating = int(number)
    return rating if 1 <= rating <= 5 else None


def average_rating(ratings: List[int]) -> float:
    """Mean rounded half-up to one decimal; 0 for no ratings."""
    if not ratings:
        return 0.0
    mean = Decimal(sum(ratings)) / Decimal(len(ratings))
    return float(mean.quantize(_TENTH, rounding=ROUND_HALF_UP))


def _iso(value: Any) -> Optional[str]:
    if isinstance(value, datetime):
        return value.isoformat()
    return value or None


def _is_active_trainer(doc: Optional[DocumentSnapshot]) -> bool:
    return doc is not None and doc.get("role") == "trainer" and doc.get("status") == "active"


def _trainer_not_found() -> ReviewRejected:
    return ReviewRejected("TRAINER_NOT_FOUND", "Trainer not found", 404)


class ReviewService:
    """Review upsert and listing over a DocumentStore"""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def _is_enrolled(self, trainer_id: str, student_id: str) -> bool:
        link = {"trainerId": trainer_id, "studentId": student_id}
        if await self.store.find_one("workouts", link):
            return True
        return await self.store.find_one("subscriptions", link) is not None

    async def submit_review(
        self,
        auth: Optional[AuthContext],
        trainer_id: str,
        rating: Any,
        comment: Optional[str] = None,
    ) -> ReviewResult:
        if auth is None:
            raise unauthorized()
        if auth.role != "student":
            raise forbidden("Only students can submit reviews")
        if auth.uid == trainer_id:
            raise forbidden("Cannot review yourself")

        value = coerce_rating(rating)
        if value is None:
            raise ReviewRejected("INVALID_RATING", "Rating must be an integer between 1 and 5", 400)

        text = (comment or "").strip()
        if comment and len(comment) > MAX_COMMENT_LENGTH:
            raise ReviewRejected(
                "COMMENT_TOO_LONG", f"Comment must be {MAX_COMMENT_LENGTH} characters or less", 400
            )

        trainer = await self.store.get("users", trainer_id)
        if not _is_active_trainer(trainer):
            raise _trainer_not_found()

        if not await self._is_enrolled(trainer_id, auth.uid):
            raise ReviewRejected(
                "NOT_ENROLLED", "You must be a student of this trainer to leave a review", 403
            )

        student = await self.store.get("users", auth.uid)
        if student is None:
            raise ReviewRejected("USER_NOT_FOUND", "Student profile not found", 404)

        async def apply(tx: StoreTransaction) -> ReviewResult:
            existing = await tx.find_one("reviews", {"trainerId": trainer_id, "studentId": auth.uid})

            if existing is not None:
                review_id = existing.id
                tx.update("reviews", review_id, {
                    "rating": value,
                    "comment": text,
                    "updatedAt": SERVER_TIMESTAMP,
                })
            else:
                review_id = self.store.new_id()
                review = ReviewRecord(
                    id=review_id,
                    trainer_id=trainer_id,
                    student_id=auth.uid,
                    student_name=student.get("displayName") or "",
                    student_photo_url=student.get("photoURL") or "",
                    rating=value,
                    comment=text,
                    created_at=SERVER_TIMESTAMP,
                    updated_at=SERVER_TIMESTAMP,
                )
                tx.create("reviews", review_id, review.to_document())

            # Buffered writes are not visible to reads: substitute this one
            ratings = [
                value if doc.id == review_id else int(doc.get("rating"))
                for doc in await tx.find("reviews", {"trainerId": trainer_id})
            ]
            if existing is None:
                ratings.append(value)

            tx.update("users", trainer_id, {
                "store.rating": average_rating(ratings),
                "store.totalReviews": len(ratings),
            })
            return ReviewResult(id=review_id, created=existing is None, created_at=utcnow())

        result = await self.store.run_transaction(apply)
        logger.info(
            "review_saved",
            review_id=result.id,
            trainer_id=trainer_id,
            student_id=auth.uid,
            rating=value,
            created=result.created,
        )
        return result

    async def list_reviews(
        self,
        trainer_id: str,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> Dict[str, Any]:
        trainer = await self.store.get("users", trainer_id)
        if not _is_active_trainer(trainer):
            raise _trainer_not_found()

        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        offset = max(offset, 0)
        filters = {"trainerId": trainer_id}

        total = await self.store.count("reviews", filters)
        docs = await self.store.find(
            "reviews", filters, order_by="createdAt", descending=True, offset=offset, limit=limit
        )
        reviews = [
            {
                "id": doc.id,
                "studentName": doc.get("studentName") or "",
                "studentPhotoURL": doc.get("studentPhotoURL") or None,
                "rating": doc.get("rating"),
                "comment": doc.get("comment") or None,
                "createdAt": _iso(doc.get("createdAt")),
            }
            for doc in docs
        ]
        return {
            "reviews": reviews,
            "total": total,
            "averageRating": float(trainer.get("store.rating") or 0),
        }
