import json
from types import SimpleNamespace
from uuid import uuid4

import httpx
import pytest
from fastapi.testclient import TestClient

from ai.config import AISettings
from ai.explanations import get_openai_client
from core.auth import get_password_hash, issue_token_for
from core.config import AppSettings
from core.db import Database
from core.exam_models import Exam, ExamStatus, Question, QuestionType
from core.models import Program, User, UserRole
from core.payments import PaystackClient, get_paystack_client
from main import create_app

WEBHOOK_SECRET = "whsec_test"
PAYSTACK_SECRET = "sk_test_paystack"
PASSWORD = "password123"
PASSWORD_HASH = get_password_hash(PASSWORD)


def persist(db: Database, *objs):
    """Commit ``objs`` in a short-lived session; returned objects are detached but loaded."""
    with db.session() as session:
        for obj in objs:
            session.add(obj)
        session.commit()
        for obj in objs:
            session.refresh(obj)
    return objs[0] if len(objs) == 1 else objs


class PaystackStub:
    """httpx MockTransport handler standing in for the Paystack API."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.amounts: dict[str, int] = {}
        self.verify_status = "success"
        self.paid_kobo = None
        self.fail_initialize = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/transaction/initialize":
            if self.fail_initialize:
                return httpx.Response(400, json={"status": False, "message": "Invalid key"})
            body = json.loads(request.content)
            self.amounts[body["reference"]] = body["amount"]
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "message": "Authorization URL created",
                    "data": {
                        "authorization_url": f"https://checkout.paystack.test/{body['reference']}",
                        "access_code": "ac_test",
                        "reference": body["reference"],
                    },
                },
            )
        if path.startswith("/transaction/verify/"):
            reference = path.rsplit("/", 1)[-1]
            amount = self.paid_kobo if self.paid_kobo is not None else self.amounts.get(reference, 0)
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "data": {"status": self.verify_status, "reference": reference, "amount": amount, "id": 4242},
                },
            )
        return httpx.Response(404, json={"status": False, "message": "Not found"})

    def client(self) -> PaystackClient:
        return PaystackClient(PAYSTACK_SECRET, "https://api.paystack.test", transport=httpx.MockTransport(self.handler))


class FakeCompletions:
    def __init__(self, content: str):
        self.content = content
        self.calls: list[dict] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeOpenAI:
    def __init__(self, content: str = "**Correct!** Oxytocin stimulates uterine contractions."):
        self.chat = SimpleNamespace(completions=FakeCompletions(content))


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings(
        database_url="sqlite://",
        jwt_secret="test-jwt-secret",
        webhook_secret=WEBHOOK_SECRET,
        paystack_secret_key=PAYSTACK_SECRET,
        paystack_base_url="https://api.paystack.test",
        rate_limit_max_requests=10000,
        default_max_attempts=3,
    )


@pytest.fixture
def db(settings):
    database = Database(settings.database_url).open()
    yield database
    database.close()


@pytest.fixture
def paystack() -> PaystackStub:
    return PaystackStub()


@pytest.fixture
def openai_client() -> FakeOpenAI:
    return FakeOpenAI()


@pytest.fixture
def app(settings, db, paystack, openai_client):
    application = create_app(
        settings=settings,
        database=db,
        ai_settings=AISettings(openai_api_key="sk-test"),
    )
    application.dependency_overrides[get_paystack_client] = paystack.client
    application.dependency_overrides[get_openai_client] = lambda: openai_client
    return application


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_user(db, settings):
    def _make(role: UserRole = UserRole.user, **kwargs):
        user = User(
            name=kwargs.pop("name", "Test User"),
            email=kwargs.pop("email", f"{uuid4().hex[:10]}@example.com"),
            password_hash=PASSWORD_HASH,
            role=role,
            **kwargs,
        )
        persist(db, user)
        return user, {"Authorization": f"Bearer {issue_token_for(user, settings)}"}

    return _make


@pytest.fixture
def make_program(db):
    def _make(code: str = "RN", price: float = 10000, **kwargs):
        return persist(db, Program(code=code, name=kwargs.pop("name", f"{code} program"), price=price, **kwargs))

    return _make


@pytest.fixture
def make_exam(db):
    """Published exam with three one-mark multiple-choice questions."""

    def _make(question_count: int = 3, **kwargs):
        kwargs.setdefault("title", "Midwifery Mock 1")
        kwargs.setdefault("status", ExamStatus.published)
        kwargs.setdefault("passing_marks", 2)
        exam = persist(db, Exam(**kwargs))
        questions = [
            Question(
                exam_id=exam.id,
                question=f"Question {i + 1}?",
                type=QuestionType.multiple_choice,
                options=["Alpha", "Bravo", "Charlie", "Delta"],
                correct_answer="Bravo",
                marks=1,
                order=i + 1,
            )
            for i in range(question_count)
        ]
        if questions:
            persist(db, *questions)
        with db.session() as session:
            stored = session.get(Exam, exam.id)
            stored.total_marks = question_count
            session.add(stored)
            session.commit()
            session.refresh(stored)
            return stored, questions

    return _make
