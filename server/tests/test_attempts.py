from datetime import datetime, timedelta

import pytest
from sqlalchemy import func
from sqlmodel import select

from core import attempts as attempt_service
from core.errors import AttemptClosedError, AttemptDenied, ForbiddenError
from core.exam_models import ExamAttempt, ExamEnrollment, ExamEnrollmentStatus
from core.models import User, UserProgramEnrollment, utcnow

from conftest import persist

NOW = datetime(2025, 6, 1, 9, 0, 0)


def _enroll(db, user, exam, **kwargs):
    kwargs.setdefault("payment_status", "completed")
    return persist(db, ExamEnrollment(user_id=user.id, exam_id=exam.id, **kwargs))


def _user(session, user):
    return session.get(User, user.id)


def test_not_enrolled_is_denied(db, make_user, make_exam):
    user, _ = make_user()
    exam, _ = make_exam()
    with db.session() as session:
        with pytest.raises(AttemptDenied) as exc:
            attempt_service.start_attempt(session, _user(session, user), exam.id, NOW)
    assert exc.value.code == "not_enrolled"


def test_program_gate_runs_before_enrollment_check(db, make_user, make_exam, make_program):
    user, _ = make_user()
    program = make_program()
    exam, _ = make_exam(program_id=program.id)
    _enroll(db, user, exam)
    with db.session() as session:
        with pytest.raises(AttemptDenied) as exc:
            attempt_service.start_attempt(session, _user(session, user), exam.id, NOW)
    assert exc.value.code == "program_enrollment_required"
    assert exc.value.required_program_id == program.id


def test_pending_payment_is_denied(db, make_user, make_exam):
    user, _ = make_user()
    exam, _ = make_exam(price=500)
    _enroll(db, user, exam, payment_status="pending")
    with db.session() as session:
        with pytest.raises(AttemptDenied) as exc:
            attempt_service.start_attempt(session, _user(session, user), exam.id, NOW)
    assert exc.value.code == "payment_pending"


@pytest.mark.parametrize(
    "start_at,end_at,reason",
    [
        (NOW + timedelta(hours=1), None, "window_not_open"),
        (None, NOW - timedelta(seconds=1), "window_closed"),
    ],
)
def test_window_reasons(db, make_user, make_exam, start_at, end_at, reason):
    user, _ = make_user()
    exam, _ = make_exam(start_at=start_at, end_at=end_at)
    _enroll(db, user, exam)
    with db.session() as session:
        with pytest.raises(AttemptDenied) as exc:
            attempt_service.start_attempt(session, _user(session, user), exam.id, NOW)
    assert exc.value.code == reason


def test_start_inside_window_increments_attempts_used_once(db, make_user, make_exam):
    user, _ = make_user()
    exam, _ = make_exam(start_at=NOW - timedelta(days=1), end_at=NOW + timedelta(days=1))
    enrollment = _enroll(db, user, exam, max_attempts=3)

    with db.session() as session:
        attempt, resumed = attempt_service.start_attempt(session, _user(session, user), exam.id, NOW)
        assert resumed is False
        assert attempt.attempt_number == 1

    with db.session() as session:
        stored = session.get(ExamEnrollment, enrollment.id)
        assert stored.attempts_used == 1
        assert stored.status == ExamEnrollmentStatus.in_progress


def test_resume_returns_same_attempt(db, make_user, make_exam):
    user, _ = make_user()
    exam, _ = make_exam()
    enrollment = _enroll(db, user, exam)

    with db.session() as session:
        first, first_resumed = attempt_service.start_attempt(session, _user(session, user), exam.id, NOW)
        second, second_resumed = attempt_service.start_attempt(session, _user(session, user), exam.id, NOW)

    assert first.id == second.id
    assert (first_resumed, second_resumed) == (False, True)
    with db.session() as session:
        assert session.get(ExamEnrollment, enrollment.id).attempts_used == 1


def test_attempts_exhausted(db, make_user, make_exam):
    user, _ = make_user()
    exam, _ = make_exam()
    _enroll(db, user, exam, max_attempts=1, attempts_used=1)
    with db.session() as session:
        with pytest.raises(AttemptDenied) as exc:
            attempt_service.start_attempt(session, _user(session, user), exam.id, NOW)
    assert exc.value.code == "attempts_exhausted"


def test_zero_max_attempts_allows_nothing_and_none_is_unlimited(db, make_user, make_exam):
    user, _ = make_user()
    capped, _ = make_exam()
    unlimited, _ = make_exam()
    _enroll(db, user, capped, max_attempts=0)
    _enroll(db, user, unlimited, max_attempts=None, attempts_used=50)

    with db.session() as session:
        with pytest.raises(AttemptDenied):
            attempt_service.start_attempt(session, _user(session, user), capped.id, NOW)
        attempt, _ = attempt_service.start_attempt(session, _user(session, user), unlimited.id, NOW)
    assert attempt.attempt_number == 51


def test_submit_scores_and_second_submit_conflicts(db, make_user, make_exam):
    user, _ = make_user()
    exam, questions = make_exam(passing_marks=40)
    enrollment = _enroll(db, user, exam)

    with db.session() as session:
        attempt, _ = attempt_service.start_attempt(session, _user(session, user), exam.id, NOW)
        answers = {questions[0].id: "Bravo", questions[1].id: 1, questions[2].id: "Delta"}
        closed, result = attempt_service.submit_attempt(
            session, _user(session, user), attempt.id, answers=answers, now=NOW + timedelta(minutes=10)
        )
        assert (result.score, result.total_marks, result.percentage, result.passed) == (2, 3, 67, False)
        assert closed.is_completed
        assert closed.time_taken == 600

        with pytest.raises(AttemptClosedError):
            attempt_service.submit_attempt(session, _user(session, user), attempt.id)
        with pytest.raises(AttemptClosedError):
            attempt_service.save_progress(session, _user(session, user), attempt.id, {})

    with db.session() as session:
        stored = session.get(ExamAttempt, attempt.id)
        assert stored.score == 2
        assert session.get(ExamEnrollment, enrollment.id).status == ExamEnrollmentStatus.completed
        assert session.get(User, user.id).points == 2


def test_save_progress_replaces_answers(db, make_user, make_exam):
    user, _ = make_user()
    exam, questions = make_exam()
    _enroll(db, user, exam)
    with db.session() as session:
        attempt, _ = attempt_service.start_attempt(session, _user(session, user), exam.id, NOW)
        attempt_service.save_progress(session, _user(session, user), attempt.id, {questions[0].id: 0})
        saved = attempt_service.save_progress(
            session, _user(session, user), attempt.id, {questions[1].id: 1}, time_taken=30
        )
    assert saved.answers == {questions[1].id: 1}
    assert saved.time_taken == 30


def test_other_users_cannot_touch_attempt(db, make_user, make_exam):
    owner, _ = make_user()
    intruder, _ = make_user()
    exam, _ = make_exam()
    _enroll(db, owner, exam)
    with db.session() as session:
        attempt, _ = attempt_service.start_attempt(session, _user(session, owner), exam.id, NOW)
        with pytest.raises(ForbiddenError):
            attempt_service.get_owned_attempt(session, _user(session, intruder), attempt.id)
        with pytest.raises(ForbiddenError):
            attempt_service.submit_attempt(session, _user(session, intruder), attempt.id)


def test_one_in_progress_attempt_per_user_and_exam_in_storage(db, make_user, make_exam):
    from sqlalchemy.exc import IntegrityError

    user, _ = make_user()
    exam, _ = make_exam()
    persist(db, ExamAttempt(user_id=user.id, exam_id=exam.id))
    with pytest.raises(IntegrityError):
        persist(db, ExamAttempt(user_id=user.id, exam_id=exam.id))
    # completed attempts do not collide
    persist(db, ExamAttempt(user_id=user.id, exam_id=exam.id, is_completed=True, completed_at=utcnow()))


def test_concurrent_start_falls_back_to_existing_attempt(db, make_user, make_exam, monkeypatch):
    user, _ = make_user()
    exam, _ = make_exam()
    enrollment = _enroll(db, user, exam)
    with db.session() as session:
        first, _ = attempt_service.start_attempt(session, _user(session, user), exam.id, NOW)

    real_lookup = attempt_service.find_in_progress_attempt
    lookups = []

    def racing_lookup(session, user_id, exam_id):
        lookups.append(exam_id)
        # the pre-insert lookup misses the row a competing request just wrote
        return None if len(lookups) == 1 else real_lookup(session, user_id, exam_id)

    monkeypatch.setattr(attempt_service, "find_in_progress_attempt", racing_lookup)
    with db.session() as session:
        again, resumed = attempt_service.start_attempt(session, _user(session, user), exam.id, NOW)

    assert resumed is True
    assert again.id == first.id
    assert len(lookups) == 2
    with db.session() as session:
        assert session.get(ExamEnrollment, enrollment.id).attempts_used == 1
        assert session.exec(select(func.count()).select_from(ExamAttempt)).one() == 1


def test_attempt_counter_bump_respects_cap_in_storage(db, make_user, make_exam):
    user, _ = make_user()
    exam, _ = make_exam()
    enrollment = _enroll(db, user, exam, max_attempts=1)
    # another request used the last attempt after this one read the enrollment
    with db.session() as other:
        stored = other.get(ExamEnrollment, enrollment.id)
        stored.attempts_used = 1
        other.add(stored)
        other.commit()

    with db.session() as session:
        attempt = ExamAttempt(user_id=user.id, exam_id=exam.id, enrollment_id=enrollment.id, started_at=NOW)
        with pytest.raises(AttemptDenied) as exc:
            attempt_service._insert_attempt(session, attempt, enrollment, NOW)
    assert exc.value.code == "attempts_exhausted"

    with db.session() as session:
        assert session.get(ExamEnrollment, enrollment.id).attempts_used == 1
        assert session.exec(select(func.count()).select_from(ExamAttempt)).one() == 0


# ==================== HTTP ====================

def test_attempt_flow_over_http(client, db, make_user, make_exam):
    user, headers = make_user()
    exam, questions = make_exam()

    enrolled = client.post("/api/exams/enroll", json={"exam_id": exam.id}, headers=headers)
    assert enrolled.status_code == 201
    assert enrolled.json()["enrollment"]["payment_status"] == "completed"

    started = client.post(f"/api/exams/{exam.id}/attempt", headers=headers)
    assert started.status_code == 201
    attempt_id = started.json()["attempt"]["id"]
    assert all("correct_answer" not in q for q in started.json()["questions"])

    resumed = client.post(f"/api/exams/{exam.id}/attempt", headers=headers)
    assert resumed.status_code == 200
    assert resumed.json()["attempt"]["id"] == attempt_id

    saved = client.patch(f"/api/attempts/{attempt_id}", json={"answers": {questions[0].id: 1}}, headers=headers)
    assert saved.status_code == 200

    submitted = client.post(f"/api/attempts/{attempt_id}", json={}, headers=headers)
    assert submitted.status_code == 200
    body = submitted.json()
    assert body["score"] == 1
    assert body["is_completed"] is True
    assert len(body["results"]) == 3

    again = client.post(f"/api/attempts/{attempt_id}", json={}, headers=headers)
    assert again.status_code == 409
    assert again.json()["error"] == "attempt_completed"

    late_save = client.patch(f"/api/attempts/{attempt_id}", json={"answers": {}}, headers=headers)
    assert late_save.status_code == 409

    with_answers = client.get(f"/api/exams/{exam.id}/questions?include_answers=true", headers=headers)
    assert with_answers.json()[0]["correct_answer"] == "Bravo"


def test_denied_start_reports_reason(client, make_user, make_exam, make_program):
    program = make_program()
    exam, _ = make_exam(program_id=program.id)
    _, headers = make_user()

    response = client.post(f"/api/exams/{exam.id}/attempt", headers=headers)
    assert response.status_code == 403
    assert response.json()["reason"] == "program_enrollment_required"
    assert response.json()["required_program_id"] == program.id


def test_attempt_of_another_user_is_forbidden(client, make_user, make_exam):
    _, owner_headers = make_user()
    _, other_headers = make_user()
    exam, _ = make_exam()
    client.post("/api/exams/enroll", json={"exam_id": exam.id}, headers=owner_headers)
    attempt_id = client.post(f"/api/exams/{exam.id}/attempt", headers=owner_headers).json()["attempt"]["id"]

    assert client.get(f"/api/attempts/{attempt_id}", headers=other_headers).status_code == 403
    assert client.post(f"/api/attempts/{attempt_id}", json={}, headers=other_headers).status_code == 403


def test_questions_hidden_without_entitlement(client, db, make_user, make_exam, make_program):
    program = make_program()
    exam, _ = make_exam(program_id=program.id)
    user, headers = make_user()
    assert client.get(f"/api/exams/{exam.id}/questions", headers=headers).status_code == 403

    persist(db, UserProgramEnrollment(user_id=user.id, program_id=program.id))
    listed = client.get(f"/api/exams/{exam.id}/questions", headers=headers)
    assert listed.status_code == 200
    assert "correct_answer" not in listed.json()[0]


def test_preview_shows_first_questions_without_entitlement(client, make_user, make_exam, make_program):
    program = make_program()
    previewable, _ = make_exam(question_count=5, program_id=program.id, allow_preview=True)
    closed, _ = make_exam(program_id=program.id)
    _, headers = make_user()

    preview = client.get(f"/api/exams/{previewable.id}/preview", headers=headers)
    assert preview.status_code == 200
    body = preview.json()
    assert body["exam"]["id"] == previewable.id
    assert [q["order"] for q in body["questions"]] == [1, 2, 3]
    assert all("correct_answer" not in q for q in body["questions"])

    # the full question list still needs an enrollment
    assert client.get(f"/api/exams/{previewable.id}/questions", headers=headers).status_code == 403

    denied = client.get(f"/api/exams/{closed.id}/preview", headers=headers)
    assert denied.status_code == 403
    assert denied.json()["error"] == "preview_not_allowed"


def test_shared_exam_starts_without_enrollment(client, make_user, make_exam):
    exam, _ = make_exam(is_shareable=True, share_slug="mock-share")
    _, headers = make_user()

    assert client.get("/api/exams/share/mock-share").json()["id"] == exam.id
    first = client.post("/api/exams/share/mock-share/start", headers=headers)
    assert first.status_code == 201
    second = client.post("/api/exams/share/mock-share/start", headers=headers)
    assert second.status_code == 200
    assert second.json()["attempt"]["id"] == first.json()["attempt"]["id"]
