"""
AI 답변 가드레일 (Guardrails)
- 프롬프트 인젝션 방어
- 부적절한 질문 필터링
- 마크다운 제거 / 200단어 제한
"""
import re
from dataclasses import dataclass
from typing import Optional

MAX_EXPLANATION_WORDS = 200
MAX_QUESTION_CHARS = 2000


@dataclass
class FilteredText:
    text: str
    truncated: bool
    word_count: int


class Guardrails:
    """AI 답변 가드레일 클래스"""

    FORBIDDEN_KEYWORDS = [
        r"\bkill yourself\b",
        r"\bfuck\b",
        r"\bidiot\b",
    ]

    # 프롬프트 인젝션 패턴
    PROMPT_INJECTION_PATTERNS = [
        r"ignore\s*(all\s*)?previous",
        r"ignore\s*(the\s*)?above",
        r"forget\s*all",
        r"disregard\s*(your|the)\s*instructions",
        r"you\s*are\s*now",
        r"new\s*role",
        r"act\s*as",
        r"pretend\s*to\s*be",
        r"system\s*prompt",
        r"reveal\s*(your|the)\s*(prompt|instructions)",
    ]

    MARKDOWN_PATTERNS = [
        (re.compile(r"```[a-zA-Z]*\n?"), ""),
        (re.compile(r"`([^`]*)`"), r"\1"),
        (re.compile(r"\*\*([^*]+)\*\*"), r"\1"),
        (re.compile(r"__([^_]+)__"), r"\1"),
        (re.compile(r"(?<!\w)\*([^*\n]+)\*(?!\w)"), r"\1"),
        (re.compile(r"(?<!\w)_([^_\n]+)_(?!\w)"), r"\1"),
        (re.compile(r"^\s{0,3}#{1,6}\s*", re.MULTILINE), ""),
        (re.compile(r"^\s*[-*+]\s+", re.MULTILINE), ""),
        (re.compile(r"^\s*>\s?", re.MULTILINE), ""),
        (re.compile(r"\[([^\]]+)\]\([^)]+\)"), r"\1"),
    ]

    def __init__(self):
        self.forbidden_pattern = re.compile("|".join(self.FORBIDDEN_KEYWORDS), re.IGNORECASE)
        self.prompt_injection_pattern = re.compile("|".join(self.PROMPT_INJECTION_PATTERNS), re.IGNORECASE)

    def validate_question(self, question: str) -> tuple[bool, Optional[str]]:
        """
        사용자 질문 검증
        Returns: (is_valid, error_message)
        """
        if not question or not question.strip():
            return False, "Question is empty."
        if len(question) > MAX_QUESTION_CHARS:
            return False, f"Question is too long. Keep it under {MAX_QUESTION_CHARS} characters."
        if self.prompt_injection_pattern.search(question):
            return False, "Attempts to change the tutor's instructions are not allowed. Please ask about your studies."
        if self.forbidden_pattern.search(question):
            return False, "Your message contains inappropriate language. Please rephrase."
        return True, None

    def strip_markdown(self, text: str) -> str:
        stripped = text
        for pattern, replacement in self.MARKDOWN_PATTERNS:
            stripped = pattern.sub(replacement, stripped)
        stripped = stripped.replace("**", "").replace("##", "")
        # 연속된 빈 줄 정리
        stripped = re.sub(r"\n{3,}", "\n\n", stripped)
        return stripped.strip()

    def limit_words(self, text: str, max_words: int = MAX_EXPLANATION_WORDS) -> FilteredText:
        words = text.split()
        if len(words) <= max_words:
            return FilteredText(text=text, truncated=False, word_count=len(words))
        return FilteredText(text=" ".join(words[:max_words]) + "...", truncated=True, word_count=len(words))

    def filter_response(self, response: str, max_words: Optional[int] = MAX_EXPLANATION_WORDS) -> FilteredText:
        """응답 필터링 및 정제"""
        filtered = self.strip_markdown(response or "")
        if self.forbidden_pattern.search(filtered):
            filtered = self.forbidden_pattern.sub("[filtered]", filtered)
        if max_words is None:
            return FilteredText(text=filtered, truncated=False, word_count=len(filtered.split()))
        return self.limit_words(filtered, max_words)


# 전역 Guardrails 인스턴스
guardrails = Guardrails()
