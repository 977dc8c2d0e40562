"""
문제 해설 생성 (OpenAI chat completions)
- 정답/오답 여부에 따라 프롬프트 분기
- 가드레일: 마크다운 제거, 200단어 제한
"""
import logging
from typing import Any, Optional, Sequence, Union

from fastapi import Depends
from openai import APIError, OpenAI, RateLimitError

from ai.config import AISettings, get_ai_settings
from core.errors import ServiceUnavailable, UpstreamError
from core.guardrails import FilteredText, guardrails

logger = logging.getLogger(__name__)

AnswerRef = Union[int, str, None]

SYSTEM_PROMPT = (
    "You are an expert medical educator who provides clear, concise explanations "
    "for exam questions. Always be encouraging and focus on helping students learn."
)

PLAIN_TEXT_RULE = (
    "IMPORTANT: Keep your explanation under 200 words. Use simple language. "
    "Do NOT use markdown formatting (no **, *, #, etc). Write in plain text only."
)


def get_openai_client(settings: AISettings = Depends(get_ai_settings)) -> Optional[OpenAI]:
    """None when no API key is configured."""
    if not settings.configured:
        return None
    return OpenAI(api_key=settings.openai_api_key)


def _letter(index: int) -> str:
    return chr(ord("A") + index)


def describe_answer(options: Sequence[str], answer: AnswerRef) -> Optional[str]:
    """Render an answer as ``B. option text``; strings matching an option get their letter too."""
    if answer is None:
        return None
    if isinstance(answer, int) and not isinstance(answer, bool):
        if 0 <= answer < len(options):
            return f"{_letter(answer)}. {options[answer]}"
        return str(answer)
    if answer in options:
        index = list(options).index(answer)
        return f"{_letter(index)}. {answer}"
    return str(answer)


def build_explanation_prompt(
    question: str,
    options: Sequence[str],
    correct_answer: AnswerRef,
    user_answer: AnswerRef,
    is_correct: bool,
) -> str:
    option_lines = "\n".join(f"{_letter(i)}. {opt}" for i, opt in enumerate(options))
    correct = describe_answer(options, correct_answer) or "Not provided"

    if is_correct:
        return (
            "You are a helpful medical exam tutor. A student answered this question correctly, "
            "but wants to deepen their understanding.\n\n"
            f"Question: {question}\n\n"
            f"Options:\n{option_lines}\n\n"
            f"Correct Answer: {correct}\n\n"
            "Please provide a clear, concise explanation that:\n"
            "1. Confirms why their answer is correct\n"
            "2. Explains the key concept being tested\n"
            "3. Provides additional context to reinforce their understanding\n"
            "4. Is written in a friendly, encouraging tone\n\n"
            f"{PLAIN_TEXT_RULE}"
        )

    theirs = describe_answer(options, user_answer) or "Not answered"
    return (
        "You are a helpful medical exam tutor. A student got this question wrong and needs help "
        "understanding the correct answer.\n\n"
        f"Question: {question}\n\n"
        f"Options:\n{option_lines}\n\n"
        f"Their Answer: {theirs}\n"
        f"Correct Answer: {correct}\n\n"
        "Please provide a clear, helpful explanation that:\n"
        "1. Explains why their answer was incorrect (if they answered)\n"
        "2. Clearly explains why the correct answer is right\n"
        "3. Addresses common misconceptions\n"
        "4. Helps them understand the underlying concept\n"
        "5. Is written in a supportive, educational tone\n\n"
        f"{PLAIN_TEXT_RULE}"
    )


def complete_chat(
    client: Any,
    settings: AISettings,
    messages: list[dict[str, str]],
    max_tokens: int,
) -> str:
    """Single chat completion; OpenAI errors are mapped to 503 (quota) or 502."""
    try:
        resp = client.chat.completions.create(
            model=settings.llm_model,
            messages=messages,
            temperature=settings.temperature,
            max_tokens=max_tokens,
        )
    except RateLimitError as e:
        logger.error(f"[AI] ❌ OpenAI rate limit/quota: {e}")
        if getattr(e, "code", None) == "insufficient_quota":
            raise ServiceUnavailable("OpenAI quota exceeded", code="quota_exceeded") from e
        raise ServiceUnavailable("AI service is busy, please try again later") from e
    except APIError as e:
        logger.error(f"[AI] ❌ OpenAI API error: {e}", exc_info=True)
        raise UpstreamError("AI service error") from e

    return (resp.choices[0].message.content or "").strip() if resp.choices else ""


def generate_explanation(
    client: Any,
    settings: AISettings,
    *,
    question: str,
    options: Sequence[str],
    correct_answer: AnswerRef,
    user_answer: AnswerRef,
    is_correct: bool,
) -> FilteredText:
    prompt = build_explanation_prompt(question, options, correct_answer, user_answer, is_correct)
    raw = complete_chat(
        client,
        settings,
        [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        settings.explanation_max_tokens,
    )
    if not raw:
        raw = "No explanation generated."

    result = guardrails.filter_response(raw)
    if result.truncated:
        logger.warning(f"[AI] ⚠️ explanation exceeded word limit: {result.word_count} words")
    return result
