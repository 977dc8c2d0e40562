"""
시험 채점
- 완전 일치(문자열) 또는 보기 인덱스 일치만 정답 처리
- 부분 점수 없음, 주관식(essay)은 자동 채점하지 않음
"""
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from core.exam_models import Question, QuestionType


@dataclass
class QuestionResult:
    question_id: str
    answered: bool
    correct: bool
    marks_awarded: int
    marks: int


@dataclass
class ScoreResult:
    score: int
    total_marks: int
    percentage: int
    passed: bool
    results: list[QuestionResult] = field(default_factory=list)


def _is_index(value: Any) -> bool:
    # bool is an int subclass; True must not mean option 1
    return isinstance(value, int) and not isinstance(value, bool)


def is_correct(question: Question, answer: Any) -> bool:
    """Exact comparison, no case or whitespace normalization."""
    if answer is None or question.correct_answer is None:
        return False
    if question.type == QuestionType.essay:
        return False

    if _is_index(answer):
        options = question.options or []
        if 0 <= answer < len(options) and options[answer] == question.correct_answer:
            return True

    return str(answer) == question.correct_answer


def percentage_of(score: int, total_marks: int) -> int:
    if total_marks <= 0:
        return 0
    return round(score / total_marks * 100)


def total_marks_of(questions: Iterable[Question]) -> int:
    return sum(q.marks for q in questions if q.is_active)


def score_answers(
    answers: Optional[Mapping[str, Any]],
    questions: Iterable[Question],
    passing_marks: int,
) -> ScoreResult:
    """
    Score an answer map against the exam's questions.

    Inactive questions are skipped; answers keyed by unknown ids are ignored.
    The result depends only on the inputs.
    """
    answers = answers or {}
    score = 0
    total = 0
    results: list[QuestionResult] = []

    for question in questions:
        if not question.is_active:
            continue
        total += question.marks
        answered = question.id in answers and answers[question.id] is not None
        correct = answered and is_correct(question, answers[question.id])
        awarded = question.marks if correct else 0
        score += awarded
        results.append(
            QuestionResult(
                question_id=question.id,
                answered=answered,
                correct=correct,
                marks_awarded=awarded,
                marks=question.marks,
            )
        )

    return ScoreResult(
        score=score,
        total_marks=total,
        percentage=percentage_of(score, total),
        passed=score >= passing_marks,
        results=results,
    )
