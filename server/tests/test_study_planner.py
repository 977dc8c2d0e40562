from datetime import date, timedelta

import pytest
from sqlmodel import select

from core.content_models import AutomationRule, AutomationTrigger, Notification
from core.errors import ValidationFailed
from core.models import utcnow
from core.study_planner import EXAM_TOPICS, generate_study_plan

from conftest import persist

TODAY = date(2025, 6, 1)


def test_topics_are_spread_over_sessions():
    plan = generate_study_plan("RN Pathway", TODAY + timedelta(days=3), 4, TODAY)

    assert [d["date"] for d in plan] == ["2025-06-02", "2025-06-03", "2025-06-04"]
    assert [len(d["sessions"]) for d in plan] == [2, 2, 1]
    assert plan[0]["sessions"][0] == {"session": 1, "topics": EXAM_TOPICS["RN Pathway"][:2], "duration": 2}
    covered = [t for d in plan for s in d["sessions"] for t in s["topics"]]
    assert covered == EXAM_TOPICS["RN Pathway"]


def test_short_codes_and_long_plans():
    plan = generate_study_plan("jamb", TODAY + timedelta(days=30), 2, TODAY)
    assert len(plan) == 30
    # one topic a day until they run out
    assert plan[0]["sessions"][0]["topics"] == ["English Language"]
    assert plan[-1]["sessions"] == []


@pytest.mark.parametrize(
    "exam_type,days",
    [("Astronomy", 10), ("NCLEX", 0), ("NCLEX", -3), ("NCLEX", 400)],
)
def test_invalid_requests(exam_type, days):
    with pytest.raises(ValidationFailed):
        generate_study_plan(exam_type, TODAY + timedelta(days=days), 2, TODAY)


def test_study_plan_endpoint_notifies_the_student(client, db, make_user):
    user, headers = make_user(name="Ada", email="ada@example.com")
    persist(
        db,
        AutomationRule(
            name="Plan ready",
            trigger=AutomationTrigger.study_plan_created,
            template={"subject": "Your {{examType}} plan", "body": "{{daysUntilExam}} days to go, {{userName}}"},
        ),
    )
    exam_date = utcnow().date() + timedelta(days=5)

    response = client.post(
        "/api/study-planner",
        json={"exam_type": "rm", "exam_date": exam_date.isoformat(), "study_hours": 4, "knowledge_level": "beginner"},
        headers=headers,
    )
    assert response.status_code == 200
    assert len(response.json()["study_plan"]) == 5

    with db.session() as session:
        notification = session.exec(select(Notification)).one()
    assert notification.recipient_email == "ada@example.com"
    assert notification.title == "Your rm plan"
    assert notification.content == "5 days to go, Ada"


def test_study_plan_requires_login_and_valid_input(client, make_user):
    body = {"exam_type": "NCLEX", "exam_date": "2020-01-01"}
    assert client.post("/api/study-planner", json=body).status_code in (401, 403)

    _, headers = make_user()
    past = client.post("/api/study-planner", json=body, headers=headers)
    assert past.status_code == 400
    assert past.json()["error"] == "validation_error"
