from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Literal

from .entries import Entry, EntryKind, tool_uses


QuestionType = Literal["how-to", "what-is", "why", "debug", "implement", "explain", "compare", "review"]
ResponseType = Literal[
    "explanation", "code-solution", "guidance", "analysis", "mixed", "correction", "confirmation"
]


class QuestionComplexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class QuestionIntent(str, Enum):
    GENERAL = "general"
    IMPLEMENTATION = "implementation"
    DEBUGGING = "debugging"
    LEARNING = "learning"
    OPTIMIZATION = "optimization"


DEBUG_KEYWORDS = (
    "error", "bug", "fix", "debug", "broken", "not working", "issue", "problem", "wrong", "fail", "crash",
)
IMPLEMENT_KEYWORDS = ("implement", "create", "build", "make", "develop", "add", "write", "code", "program")
HOW_TO_KEYWORDS = ("how to", "how can", "how do", "how should")
WHAT_IS_KEYWORDS = ("what is", "what are", "what does", "define")
WHY_KEYWORDS = ("why", "reason", "because", "cause")
EXPLAIN_KEYWORDS = ("explain", "describe", "tell me about", "elaborate", "clarify", "detail", "breakdown")
COMPARE_KEYWORDS = ("compare", "difference", "vs", "versus", "better", "worse", "alternative", "option")
REVIEW_KEYWORDS = ("review", "check", "look at", "examine", "analyze", "feedback", "opinion", "thoughts")
OPTIMIZE_KEYWORDS = ("optimize", "optimise", "performance", "faster", "speed up", "refactor", "improve")
CODE_INDICATORS = ("```", "`", "function", "class", "var ", "let ", "const ")

CORRECTION_KEYWORDS = (
    "actually", "correction", "mistake", "error", "wrong", "incorrect",
    "实际上", "纠正", "错误", "不对", "有误",
)
CONFIRMATION_KEYWORDS = (
    "yes", "correct", "exactly", "right", "sure", "of course",
    "是的", "对的", "正确", "确实", "当然",
)
SHORT_CONFIRMATIONS = ("ok", "okay", "yep", "yeah", "sure", "good", "nice")
SINGLE_CHAR_CONFIRMATIONS = ("y", "k", ".", "✓")
GUIDANCE_KEYWORDS = (
    "should", "recommend", "suggest", "consider", "try", "approach",
    "建议", "推荐", "应该", "可以尝试", "方法",
)

RESPONSE_INDICATORS: dict[str, str] = {
    "explanation": "📝",
    "code-solution": "💻",
    "guidance": "🎯",
    "analysis": "🔍",
    "mixed": "🎭",
    "correction": "✏️",
    "confirmation": "✅",
}

_FENCED_CODE_RE = re.compile(r"```[\s\S]*?```")
_INLINE_CODE_RE = re.compile(r"`[^`\n]+`")
_CODE_BLOCK_LANG_RE = re.compile(r"```([\w+-]*)")


def _contains_any(text: str, keywords: tuple[str, ...]) -> bool:
    lowered = text.lower()
    return any(keyword in lowered for keyword in keywords)


def word_count(text: str) -> int:
    return len(text.split())


def question_type(text: str) -> QuestionType:
    if _contains_any(text, DEBUG_KEYWORDS):
        return "debug"
    if _contains_any(text, IMPLEMENT_KEYWORDS):
        return "implement"
    if _contains_any(text, HOW_TO_KEYWORDS):
        return "how-to"
    if _contains_any(text, WHAT_IS_KEYWORDS):
        return "what-is"
    if _contains_any(text, WHY_KEYWORDS):
        return "why"
    if _contains_any(text, EXPLAIN_KEYWORDS):
        return "explain"
    if _contains_any(text, COMPARE_KEYWORDS):
        return "compare"
    if _contains_any(text, REVIEW_KEYWORDS):
        return "review"
    return "explain"


def question_intent(text: str) -> QuestionIntent:
    kind = question_type(text)
    if kind == "debug":
        return QuestionIntent.DEBUGGING
    if kind == "implement":
        return QuestionIntent.IMPLEMENTATION
    if _contains_any(text, OPTIMIZE_KEYWORDS):
        return QuestionIntent.OPTIMIZATION
    if kind in ("how-to", "what-is", "why", "explain"):
        return QuestionIntent.LEARNING
    return QuestionIntent.GENERAL


def has_code_hint(text: str) -> bool:
    return any(indicator in text for indicator in CODE_INDICATORS)


def question_complexity_score(text: str, *, follow_up: bool = False) -> int:
    score = 1
    if len(text) > 500:
        score += 2
    elif len(text) > 200:
        score += 1
    if has_code_hint(text):
        score += 1
    if follow_up:
        score += 1
    if question_type(text) in ("implement", "debug"):
        score += 1
    return min(score, 5)


def question_complexity(text: str, *, follow_up: bool = False) -> QuestionComplexity:
    score = question_complexity_score(text, follow_up=follow_up)
    if score <= 2:
        return QuestionComplexity.SIMPLE
    if score == 3:
        return QuestionComplexity.MODERATE
    return QuestionComplexity.COMPLEX


def code_block_languages(text: str) -> list[str]:
    # Fences come in pairs; only opening fences carry a language.
    fences = _CODE_BLOCK_LANG_RE.findall(text)
    return [lang or "text" for lang in fences[::2]]


def has_code(text: str) -> bool:
    return bool(_FENCED_CODE_RE.search(text) or _INLINE_CODE_RE.search(text))


def is_correction(text: str) -> bool:
    return bool(text) and _contains_any(text, CORRECTION_KEYWORDS)


def is_confirmation(text: str) -> bool:
    words = word_count(text)
    if not text or words > 50:
        return False
    content = text.lower().strip()
    if len(content) == 1:
        return content in SINGLE_CHAR_CONFIRMATIONS
    if words <= 3 and any(word in content for word in SHORT_CONFIRMATIONS):
        return True
    return any(keyword in content for keyword in CONFIRMATION_KEYWORDS)


def is_guidance(text: str) -> bool:
    return bool(text) and _contains_any(text, GUIDANCE_KEYWORDS)


def response_type(text: str, *, tool_count: int = 0) -> ResponseType:
    if is_correction(text):
        return "correction"
    if is_confirmation(text):
        return "confirmation"
    code = has_code(text)
    if code and tool_count:
        return "mixed"
    if code:
        return "code-solution"
    if tool_count:
        return "analysis"
    if word_count(text) > 200:
        return "explanation"
    if is_guidance(text):
        return "guidance"
    return "explanation"


def response_complexity_score(text: str, *, tool_count: int = 0) -> int:
    languages = code_block_languages(text)
    score = min(word_count(text) // 50, 10)
    score += len(languages) * 2
    score += tool_count * 1.5
    if len(set(languages)) > 1:
        score += 2
    return int(score + 0.5)


@dataclass(frozen=True)
class Classification:
    label: str
    indicator: str
    complexity: int


def classify_entry(entry: Entry, *, follow_up: bool = False) -> Classification | None:
    if entry.kind is EntryKind.USER:
        complexity = question_complexity(entry.body, follow_up=follow_up)
        return Classification(
            label=f"{question_type(entry.body)} · {question_intent(entry.body).value} · {complexity.value}",
            indicator="❓",
            complexity=question_complexity_score(entry.body, follow_up=follow_up),
        )
    if entry.kind in (EntryKind.ASSISTANT, EntryKind.TOOL_CALL):
        tools = len(tool_uses(entry))
        kind = response_type(entry.body, tool_count=tools)
        return Classification(
            label=kind,
            indicator=RESPONSE_INDICATORS.get(kind, "💬"),
            complexity=response_complexity_score(entry.body, tool_count=tools),
        )
    return None
