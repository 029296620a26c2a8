from datetime import datetime, timedelta, timezone

import pytest

from services.auth import AuthContext
from services.errors import ServiceError
from services.reviews import MAX_PAGE_SIZE, ReviewService, average_rating, coerce_rating
from tests.factories import STUDENT_ID, TRAINER_ID


async def enroll(store, student_id: str, name: str = "Student") -> AuthContext:
    await store.set("users", student_id, {"role": "student", "displayName": name})
    await store.set("workouts", f"w_{student_id}", {"trainerId": TRAINER_ID, "studentId": student_id})
    return AuthContext(uid=student_id, role="student")


@pytest.fixture
def reviews(store):
    return ReviewService(store)


async def rejected_code(coro) -> str:
    with pytest.raises(ServiceError) as exc:
        await coro
    return exc.value.code


# =============================================================================
# helpers
# =============================================================================

@pytest.mark.parametrize("raw,expected", [
    (4, 4), (4.0, 4), ("5", 5), (" 1 ", 1),
    (0, None), (6, None), (4.5, None), ("abc", None), (None, None), (True, None),
])
def test_coerce_rating(raw, expected):
    assert coerce_rating(raw) == expected


def test_average_rating_rounds_half_up():
    assert average_rating([]) == 0.0
    assert average_rating([5, 4, 3]) == 4.0
    assert average_rating([5, 2, 3]) == 3.3
    assert average_rating([4, 5]) == 4.5
    assert average_rating([5, 5, 4, 4, 4, 4]) == 4.3


# =============================================================================
# submit_review
# =============================================================================

@pytest.mark.asyncio
async def test_aggregate_tracks_every_review(store, reviews):
    for student_id, rating in (("s_a", 5), ("s_b", 4), ("s_c", 3)):
        auth = await enroll(store, student_id)
        result = await reviews.submit_review(auth, TRAINER_ID, rating, "Great coach")
        assert result.created

    trainer = await store.get("users", TRAINER_ID)
    assert trainer.get("store.rating") == 4.0
    assert trainer.get("store.totalReviews") == 3


@pytest.mark.asyncio
async def test_resubmission_updates_existing_review(store, reviews):
    auths = [await enroll(store, sid) for sid in ("s_a", "s_b", "s_c")]
    first = None
    for auth, rating in zip(auths, (5, 4, 3)):
        result = await reviews.submit_review(auth, TRAINER_ID, rating)
        if auth.uid == "s_b":
            first = result

    again = await reviews.submit_review(auths[1], TRAINER_ID, 2, "  changed my mind ")

    assert again.id == first.id
    assert again.created is False
    trainer = await store.get("users", TRAINER_ID)
    assert trainer.get("store.rating") == 3.3
    assert trainer.get("store.totalReviews") == 3

    review = await store.get("reviews", first.id)
    assert review.get("rating") == 2
    assert review.get("comment") == "changed my mind"
    assert await store.count("reviews", {"trainerId": TRAINER_ID}) == 3


@pytest.mark.asyncio
async def test_review_snapshots_student_profile(store, reviews):
    await store.set("workouts", "w1", {"trainerId": TRAINER_ID, "studentId": STUDENT_ID})

    result = await reviews.submit_review(AuthContext(STUDENT_ID, "student"), TRAINER_ID, "5")

    review = await store.get("reviews", result.id)
    assert review.get("studentName") == "Ana"
    assert review.get("studentPhotoURL") == "https://example.com/ana.png"
    assert review.get("trainerId") == TRAINER_ID


@pytest.mark.asyncio
async def test_enrollment_through_subscription(store, reviews):
    await store.set("subscriptions", "sub_1", {"trainerId": TRAINER_ID, "studentId": STUDENT_ID, "status": "canceled"})

    result = await reviews.submit_review(AuthContext(STUDENT_ID, "student"), TRAINER_ID, 4)

    assert result.created


@pytest.mark.asyncio
async def test_guards(store, reviews):
    student = AuthContext(STUDENT_ID, "student")

    assert await rejected_code(reviews.submit_review(None, TRAINER_ID, 5)) == "UNAUTHORIZED"
    assert await rejected_code(reviews.submit_review(AuthContext(TRAINER_ID, "trainer"), TRAINER_ID, 5)) == "FORBIDDEN"
    assert await rejected_code(reviews.submit_review(AuthContext("x", "student"), "x", 5)) == "FORBIDDEN"
    assert await rejected_code(reviews.submit_review(student, TRAINER_ID, 7)) == "INVALID_RATING"
    assert await rejected_code(reviews.submit_review(student, TRAINER_ID, 5, "x" * 501)) == "COMMENT_TOO_LONG"
    assert await rejected_code(reviews.submit_review(student, "nobody", 5)) == "TRAINER_NOT_FOUND"
    assert await rejected_code(reviews.submit_review(student, TRAINER_ID, 5)) == "NOT_ENROLLED"

    await store.set("workouts", "w_ghost", {"trainerId": TRAINER_ID, "studentId": "ghost"})
    ghost = AuthContext("ghost", "student")
    assert await rejected_code(reviews.submit_review(ghost, TRAINER_ID, 5)) == "USER_NOT_FOUND"

    assert await store.find("reviews", {}) == []
    assert (await store.get("users", TRAINER_ID)).get("store.totalReviews") == 0


@pytest.mark.asyncio
async def test_inactive_trainer_cannot_be_reviewed(store, reviews):
    await store.update("users", TRAINER_ID, {"status": "suspended"})
    await store.set("workouts", "w1", {"trainerId": TRAINER_ID, "studentId": STUDENT_ID})

    code = await rejected_code(reviews.submit_review(AuthContext(STUDENT_ID, "student"), TRAINER_ID, 5))

    assert code == "TRAINER_NOT_FOUND"


@pytest.mark.asyncio
async def test_comment_at_limit_is_accepted(store, reviews):
    auth = await enroll(store, "s_a")
    result = await reviews.submit_review(auth, TRAINER_ID, 3, "x" * 500)
    assert result.created


# =============================================================================
# list_reviews
# =============================================================================

async def seed_reviews(store, count: int) -> None:
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    for i in range(count):
        await store.set("reviews", f"r{i}", {
            "trainerId": TRAINER_ID,
            "studentId": f"s{i}",
            "studentName": f"Student {i}",
            "rating": 5,
            "comment": "" if i % 2 else f"comment {i}",
            "createdAt": base + timedelta(days=i),
        })


@pytest.mark.asyncio
async def test_list_newest_first(store, reviews):
    await seed_reviews(store, 3)
    await store.set("reviews", "other", {"trainerId": "trainer_2", "rating": 1, "createdAt": datetime.now(timezone.utc)})

    page = await reviews.list_reviews(TRAINER_ID)

    assert [r["id"] for r in page["reviews"]] == ["r2", "r1", "r0"]
    assert page["total"] == 3
    first = page["reviews"][0]
    assert first["createdAt"] == "2026-01-03T00:00:00+00:00"
    assert first["comment"] == "comment 2"
    assert page["reviews"][1]["comment"] is None
    assert first["studentPhotoURL"] is None


@pytest.mark.asyncio
async def test_list_paging_and_clamp(store, reviews):
    await seed_reviews(store, 60)

    page = await reviews.list_reviews(TRAINER_ID, limit=500)
    assert len(page["reviews"]) == MAX_PAGE_SIZE
    assert page["total"] == 60

    page = await reviews.list_reviews(TRAINER_ID, limit=5, offset=58)
    assert [r["id"] for r in page["reviews"]] == ["r1", "r0"]

    page = await reviews.list_reviews(TRAINER_ID, limit=0, offset=-3)
    assert [r["id"] for r in page["reviews"]] == ["r59"]


@pytest.mark.asyncio
async def test_list_reports_trainer_average(store, reviews):
    auth = await enroll(store, "s_a")
    await reviews.submit_review(auth, TRAINER_ID, 4)

    page = await reviews.list_reviews(TRAINER_ID)

    assert page["averageRating"] == 4.0
    assert page["reviews"][0]["rating"] == 4


@pytest.mark.asyncio
async def test_list_unknown_trainer(reviews):
    assert await rejected_code(reviews.list_reviews("nobody")) == "TRAINER_NOT_FOUND"
    assert await rejected_code(reviews.list_reviews(STUDENT_ID)) == "TRAINER_NOT_FOUND"
