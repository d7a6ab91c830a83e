"""Partner ratings aggregated on the rated user's document."""

import logging

from models.sessions import USERS, RatingSummary
from services.document_store import DocumentStore, Transaction, utc_now
from services.errors import DuplicateRatingError

logger = logging.getLogger(__name__)

RATING_RECEIPTS = "ratingReceipts"
MIN_RATING = 1
MAX_RATING = 5


def validate_rating(rating: int) -> int:
    if isinstance(rating, bool) or not isinstance(rating, int) or not MIN_RATING <= rating <= MAX_RATING:
        raise ValueError(f"Rating must be an integer between {MIN_RATING} and {MAX_RATING}.")
    return rating


def rating_receipt_id(session_id: str, rater_id: str) -> str:
    return f"{session_id}:{rater_id}"


async def submit_user_rating(
    store: DocumentStore,
    rated_user_id: str,
    rating: int,
    *,
    session_id: str,
    rater_id: str,
) -> RatingSummary:
    """
    Add one rating to ``rated_user_id`` in a single transaction.

    The receipt document keyed by session and rater is written in the same
    transaction, so a rater can only count once per session.
    """
    validate_rating(rating)
    receipt_id = rating_receipt_id(session_id, rater_id)

    async def _apply(txn: Transaction) -> RatingSummary:
        receipt = await txn.get(RATING_RECEIPTS, receipt_id)
        user = await txn.get(USERS, rated_user_id)
        if receipt is not None:
            raise DuplicateRatingError(f"{rater_id} already rated their partner for session {session_id}.")

        current = RatingSummary.from_document(rated_user_id, user)
        updated = RatingSummary(
            user_id=rated_user_id,
            total_ratings=current.total_ratings + 1,
            rating_sum=current.rating_sum + rating,
        )
        txn.set(
            USERS,
            rated_user_id,
            {"totalRatings": updated.total_ratings, "ratingSum": updated.rating_sum},
            merge=True,
        )
        txn.set(
            RATING_RECEIPTS,
            receipt_id,
            {
                "sessionId": session_id,
                "raterId": rater_id,
                "ratedUserId": rated_user_id,
                "rating": rating,
                "createdAt": utc_now(),
            },
        )
        return updated

    summary = await store.run_transaction(_apply)
    logger.info("Recorded rating %d for %s from %s", rating, rated_user_id, rater_id)
    return summary


async def get_rating_summary(store: DocumentStore, user_id: str) -> RatingSummary:
    return RatingSummary.from_document(user_id, await store.get(USERS, user_id))
