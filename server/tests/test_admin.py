from sqlmodel import select

from core.exam_models import Exam, ExamVersion, Question
from core.models import EnrollmentStatus, ProgramAdmin, User, UserProgramEnrollment, UserRole

from conftest import persist


def _create_exam(client, headers, **overrides):
    payload = {"title": "RN Mock A", "subject": "Nursing", "passing_marks": 2, **overrides}
    response = client.post("/api/admin/exams", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def _add_question(client, headers, exam_id, **overrides):
    payload = {
        "exam_id": exam_id,
        "question": "Normal adult resting heart rate?",
        "options": ["40-50", "60-100", "110-130"],
        "correct_answer": "60-100",
        **overrides,
    }
    response = client.post("/api/admin/questions", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_students_cannot_reach_admin_routes(client, make_user):
    _, headers = make_user()
    assert client.get("/api/admin/exams", headers=headers).status_code == 403
    assert client.get("/api/admin/stats", headers=headers).status_code == 403


def test_exam_defaults_and_question_ordering(client, make_user):
    _, headers = make_user(role=UserRole.super_admin)
    exam = _create_exam(client, headers)
    assert exam["status"] == "draft"
    assert exam["max_attempts"] == 3

    unlimited = _create_exam(client, headers, max_attempts=None)
    assert unlimited["max_attempts"] is None

    first = _add_question(client, headers, exam["id"])
    second = _add_question(client, headers, exam["id"], marks=2)
    assert (first["order"], second["order"]) == (1, 2)

    detail = client.get(f"/api/admin/exams/{exam['id']}", headers=headers).json()
    assert detail["total_marks"] == 3
    assert detail["question_count"] == 2


def test_publish_snapshot_and_diff(client, make_user):
    _, headers = make_user(role=UserRole.super_admin)
    exam = _create_exam(client, headers)

    empty = client.post(f"/api/admin/exams/{exam['id']}/publish", headers=headers)
    assert empty.status_code == 400

    question = _add_question(client, headers, exam["id"])
    v1 = client.post(f"/api/admin/exams/{exam['id']}/publish", json={"note": "first"}, headers=headers)
    assert v1.status_code == 200
    assert v1.json()["exam"]["status"] == "published"

    client.patch(f"/api/admin/questions/{question['id']}", json={"correct_answer": "40-50"}, headers=headers)
    added = _add_question(client, headers, exam["id"], question="Second?")
    client.patch(f"/api/admin/exams/{exam['id']}", json={"title": "RN Mock A (rev)"}, headers=headers)
    v2 = client.post(f"/api/admin/exams/{exam['id']}/publish", headers=headers)

    versions = client.get(f"/api/admin/exams/{exam['id']}/versions", headers=headers).json()
    assert len(versions) == 2

    diff = client.get(
        f"/api/admin/exams/{exam['id']}/versions/diff",
        params={"from_version": v1.json()["version_id"], "to_version": v2.json()["version_id"]},
        headers=headers,
    ).json()
    assert diff["fields"]["title"] == {"from": "RN Mock A", "to": "RN Mock A (rev)"}
    assert [q["id"] for q in diff["questions_added"]] == [added["id"]]
    assert diff["questions_removed"] == []
    assert diff["questions_changed"][0]["changes"]["correct_answer"] == {"from": "60-100", "to": "40-50"}


def test_patch_cannot_publish_without_snapshot(client, make_user):
    _, headers = make_user(role=UserRole.super_admin)
    exam = _create_exam(client, headers)
    _add_question(client, headers, exam["id"])

    patched = client.patch(f"/api/admin/exams/{exam['id']}", json={"status": "published"}, headers=headers)
    assert patched.status_code == 400
    assert "/publish" in patched.json()["detail"]
    assert client.get(f"/api/admin/exams/{exam['id']}", headers=headers).json()["status"] == "draft"
    assert client.get(f"/api/admin/exams/{exam['id']}/versions", headers=headers).json() == []

    # other fields on a published exam still update
    client.post(f"/api/admin/exams/{exam['id']}/publish", headers=headers)
    renamed = client.patch(
        f"/api/admin/exams/{exam['id']}", json={"title": "Renamed", "status": "published"}, headers=headers
    )
    assert renamed.status_code == 200
    assert renamed.json()["title"] == "Renamed"


def test_unlimited_exam_stays_unlimited_for_enrolled_students(client, make_user):
    _, headers = make_user(role=UserRole.super_admin)
    _, student_headers = make_user()
    exam = _create_exam(client, headers, max_attempts=None)
    _add_question(client, headers, exam["id"])
    client.post(f"/api/admin/exams/{exam['id']}/publish", headers=headers)

    assert client.get(f"/api/admin/exams/{exam['id']}", headers=headers).json()["max_attempts"] is None
    enrolled = client.post("/api/exams/enroll", json={"exam_id": exam["id"]}, headers=student_headers)
    assert enrolled.status_code == 201
    assert enrolled.json()["enrollment"]["max_attempts"] is None


def test_soft_deleted_exam_hidden_but_queryable(client, db, make_user):
    _, headers = make_user(role=UserRole.super_admin)
    exam = _create_exam(client, headers)
    _add_question(client, headers, exam["id"])
    client.post(f"/api/admin/exams/{exam['id']}/publish", headers=headers)
    assert [e["id"] for e in client.get("/api/exams").json()] == [exam["id"]]

    deleted = client.delete(f"/api/admin/exams/{exam['id']}", headers=headers)
    assert deleted.status_code == 200

    assert client.get("/api/exams").json() == []
    assert client.get(f"/api/exams/{exam['id']}").status_code == 404
    assert client.get("/api/admin/exams", headers=headers).json() == []
    assert [e["id"] for e in client.get("/api/admin/exams?include_inactive=true", headers=headers).json()] == [exam["id"]]

    by_id = client.get(f"/api/admin/exams/{exam['id']}", headers=headers)
    assert by_id.status_code == 200
    assert by_id.json()["is_active"] is False
    assert by_id.json()["version_count"] == 1
    assert len(client.get(f"/api/admin/exams/{exam['id']}/versions", headers=headers).json()) == 1

    with db.session() as session:
        assert session.get(Exam, exam["id"]) is not None
        assert len(session.exec(select(ExamVersion).where(ExamVersion.exam_id == exam["id"])).all()) == 1


def test_share_slug_is_stable(client, make_user):
    _, headers = make_user(role=UserRole.admin)
    exam = _create_exam(client, headers)
    first = client.post(f"/api/admin/exams/{exam['id']}/share", headers=headers).json()
    second = client.post(f"/api/admin/exams/{exam['id']}/share", headers=headers).json()
    assert first["share_slug"] == second["share_slug"]


def test_csv_upload(client, db, make_user):
    _, headers = make_user(role=UserRole.super_admin)
    exam = _create_exam(client, headers)
    csv_body = (
        "question,type,options,correct_answer,explanation,points\n"
        'Pick B,multiple_choice,"[""A"", ""B"", ""C""]",B,Because,2\n'
        "Sky is blue,true_false,,True,,\n"
        ",multiple_choice,,A,,\n"
        "Odd type,ranking,,A,,\n"
        'Comma list,multiple_choice,"X, Y, Z",Y,,\n'
    )
    response = client.post(
        "/api/admin/questions/upload",
        data={"exam_id": exam["id"]},
        files={"file": ("questions.csv", csv_body.encode(), "text/csv")},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    body = response.json()
    assert body["created"] == 3
    assert [e["line"] for e in body["errors"]] == [4, 5]

    with db.session() as session:
        questions = session.exec(select(Question).where(Question.exam_id == exam["id"]).order_by(Question.order)).all()
        stored_exam = session.get(Exam, exam["id"])
    assert [q.options for q in questions] == [["A", "B", "C"], None, ["X", "Y", "Z"]]
    assert [q.marks for q in questions] == [2, 1, 1]
    assert stored_exam.total_marks == 4


def test_csv_upload_rejects_other_files(client, make_user):
    _, headers = make_user(role=UserRole.super_admin)
    exam = _create_exam(client, headers)
    response = client.post(
        "/api/admin/questions/upload",
        data={"exam_id": exam["id"]},
        files={"file": ("questions.pdf", b"%PDF", "application/pdf")},
        headers=headers,
    )
    assert response.status_code == 400


def test_duplicate_institution_conflicts(client, make_user):
    _, headers = make_user(role=UserRole.admin)
    payload = {"name": "Lagos University", "code": "lu", "state": "Lagos", "city": "Lagos", "type": "University"}
    created = client.post("/api/admin/institutions", json=payload, headers=headers)
    assert created.status_code == 201
    assert created.json()["code"] == "LU"
    assert client.post("/api/admin/institutions", json=payload, headers=headers).status_code == 409

    removed = client.delete(f"/api/admin/institutions/{created.json()['id']}", headers=headers)
    assert removed.status_code == 200
    assert client.get("/api/institutions").json() == []


def test_program_management_rules(client, db, make_user, make_program):
    admin, admin_headers = make_user(role=UserRole.admin)
    _, super_headers = make_user(role=UserRole.super_admin)

    payload = {"code": "rn", "name": "Registered Nursing", "price": 15000}
    assert client.post("/api/admin/programs", json=payload, headers=admin_headers).status_code == 403
    created = client.post("/api/admin/programs", json=payload, headers=super_headers)
    assert created.status_code == 201
    program_id = created.json()["id"]
    assert created.json()["code"] == "RN"
    other = make_program("RM")

    # unassigned admin sees nothing and cannot edit
    assert client.get("/api/admin/programs", headers=admin_headers).json() == []
    assert client.patch(f"/api/admin/programs/{program_id}", json={"price": 1}, headers=admin_headers).status_code == 403

    assign = client.post("/api/admin/program-admins", json={"user_id": admin.id, "program_id": program_id}, headers=super_headers)
    assert assign.status_code == 201
    assert client.post("/api/admin/program-admins", json={"user_id": admin.id, "program_id": program_id}, headers=super_headers).status_code == 409

    assert [p["id"] for p in client.get("/api/admin/programs", headers=admin_headers).json()] == [program_id]
    updated = client.patch(f"/api/admin/programs/{program_id}", json={"price": 12000}, headers=admin_headers)
    assert updated.json()["price"] == 12000
    assert client.patch(f"/api/admin/programs/{other.id}", json={"price": 1}, headers=admin_headers).status_code == 403

    assert client.delete(f"/api/admin/programs/{program_id}", headers=admin_headers).status_code == 403
    assert client.delete(f"/api/admin/programs/{program_id}", headers=super_headers).status_code == 200
    assert program_id not in [p["id"] for p in client.get("/api/programs").json()]


def test_manual_enroll_and_scoped_listing(client, db, make_user, make_program):
    admin, admin_headers = make_user(role=UserRole.admin)
    student, _ = make_user()
    mine, theirs = make_program("RN"), make_program("RM")
    persist(db, ProgramAdmin(user_id=admin.id, program_id=mine.id))

    created = client.post("/api/admin/enrollments", json={"user_id": student.id, "program_id": mine.id}, headers=admin_headers)
    assert created.status_code == 201
    assert created.json()["status"] == "active"
    assert created.json()["expires_at"] is not None

    duplicate = client.post("/api/admin/enrollments", json={"user_id": student.id, "program_id": mine.id}, headers=admin_headers)
    assert duplicate.status_code == 409
    outside = client.post("/api/admin/enrollments", json={"user_id": student.id, "program_id": theirs.id}, headers=admin_headers)
    assert outside.status_code == 403

    persist(db, UserProgramEnrollment(user_id=student.id, program_id=theirs.id))
    listed = client.get("/api/admin/enrollments", headers=admin_headers).json()
    assert [e["program_id"] for e in listed] == [mine.id]


def test_approve_pending_enrollment(client, db, make_user, make_program):
    _, super_headers = make_user(role=UserRole.super_admin)
    student, _ = make_user()
    program = make_program()
    pending = persist(
        db, UserProgramEnrollment(user_id=student.id, program_id=program.id, status=EnrollmentStatus.pending_approval)
    )

    approved = client.patch(f"/api/admin/enrollments/{pending.id}/approve", headers=super_headers)
    assert approved.status_code == 200
    assert approved.json()["status"] == "active"
    assert client.patch(f"/api/admin/enrollments/{pending.id}/approve", headers=super_headers).status_code == 409


def test_revoke_enrollment(client, db, make_user, make_program):
    _, super_headers = make_user(role=UserRole.super_admin)
    student, _ = make_user()
    enrollment = persist(db, UserProgramEnrollment(user_id=student.id, program_id=make_program().id))

    revoked = client.patch(f"/api/admin/enrollments/{enrollment.id}/revoke", headers=super_headers)
    assert revoked.status_code == 200
    assert revoked.json()["status"] == "revoked"
    with db.session() as session:
        assert session.get(UserProgramEnrollment, enrollment.id).status == EnrollmentStatus.revoked


def test_user_role_rules(client, db, make_user):
    admin, admin_headers = make_user(role=UserRole.admin)
    root, root_headers = make_user(role=UserRole.super_admin)
    student, _ = make_user()

    # admins cannot touch super admins or grant super_admin
    assert client.patch(f"/api/admin/users/{root.id}/demote", headers=admin_headers).status_code == 403
    assert client.patch(f"/api/admin/users/{student.id}/promote", json={"role": "super_admin"}, headers=admin_headers).status_code == 403
    assert client.delete(f"/api/admin/users/{student.id}", headers=admin_headers).status_code == 403

    promoted = client.patch(f"/api/admin/users/{student.id}/promote", json={"role": "admin"}, headers=admin_headers)
    assert promoted.json()["role"] == "admin"
    demoted = client.patch(f"/api/admin/users/{student.id}/demote", headers=admin_headers)
    assert demoted.json()["role"] == "user"

    assert client.delete(f"/api/admin/users/{root.id}", headers=root_headers).status_code == 400
    assert client.delete(f"/api/admin/users/{student.id}", headers=root_headers).status_code == 200
    with db.session() as session:
        assert session.get(User, student.id).is_active is False


def test_premium_grant_opens_program_exams(client, make_user, make_exam, make_program):
    _, admin_headers = make_user(role=UserRole.admin)
    student, headers = make_user()
    exam, _ = make_exam(program_id=make_program("RN").id)
    client.post("/api/exams/enroll", json={"exam_id": exam.id}, headers=headers)

    denied = client.post(f"/api/exams/{exam.id}/attempt", headers=headers)
    assert denied.status_code == 403
    assert denied.json()["reason"] == "program_enrollment_required"

    granted = client.patch(f"/api/admin/users/{student.id}/premium", json={"duration_months": 3}, headers=admin_headers)
    assert granted.status_code == 200
    assert granted.json()["is_premium"] is True
    assert granted.json()["premium_expires_at"] is not None
    assert client.post(f"/api/exams/{exam.id}/attempt", headers=headers).status_code == 201

    past = client.patch(
        f"/api/admin/users/{student.id}/premium",
        json={"premium_expires_at": "2020-01-01T00:00:00Z"},
        headers=admin_headers,
    )
    assert past.status_code == 400

    revoked = client.patch(f"/api/admin/users/{student.id}/premium", json={"is_premium": False}, headers=admin_headers)
    assert revoked.json()["is_premium"] is False
    assert revoked.json()["premium_expires_at"] is None


def test_stats(client, make_user, make_exam):
    _, headers = make_user(role=UserRole.admin)
    make_user()
    make_exam()
    stats = client.get("/api/admin/stats", headers=headers).json()
    assert stats["users"] == 2
    assert stats["published_exams"] == 1
    assert stats["revenue"] == 0
    assert stats["unread_emails"] == 0
