"""Direct-answer vs generated-answer decision over retrieval results."""

import re
from enum import Enum
from typing import List, Optional, Sequence

DEFAULT_SIM_THRESHOLD = 0.85
DEFAULT_MARGIN_THRESHOLD = 0.05
# Absorbs float error so both thresholds stay inclusive, e.g. 0.85 - 0.80 against 0.05.
SCORE_EPSILON = 1e-9

LOW_CONFIDENCE_PHRASE = "その質問に対する明確な答えが見つかりません"
HANDOFF_INVITATION = "また担当者からの解答が必要な場合、「担当者」と入力してください。"
NO_SUGGESTIONS_TEXT = "（類似した質問候補は見つかりませんでした）"

# Any bracket style around the command counts as the invitation already being there.
_INVITATION_PATTERN = re.compile(r"[「『\"]担当者[」』\"]\s*と入力")


class AnswerMode(str, Enum):
    DIRECT = "direct"
    GENERATE = "rag"


def _score(result: Optional[dict]) -> float:
    if not result:
        return 0.0
    return float(result.get("score") or 0.0)


def decide_mode(
    results: Sequence[dict],
    sim_threshold: float = DEFAULT_SIM_THRESHOLD,
    margin_threshold: float = DEFAULT_MARGIN_THRESHOLD,
) -> AnswerMode:
    """DIRECT iff best >= sim_threshold and best - second >= margin_threshold.

    Results are ordered best first. A missing second result scores 0, so a lone
    confident hit answers directly; an empty list always generates.
    """
    if not results:
        return AnswerMode.GENERATE
    best = _score(results[0])
    second = _score(results[1]) if len(results) > 1 else 0.0
    if best >= sim_threshold - SCORE_EPSILON and (best - second) >= margin_threshold - SCORE_EPSILON:
        return AnswerMode.DIRECT
    return AnswerMode.GENERATE


def has_handoff_invitation(text: str) -> bool:
    return HANDOFF_INVITATION in text or bool(_INVITATION_PATTERN.search(text))


def ensure_handoff_invitation(text: str) -> str:
    """Append the staff invitation to a low-confidence answer, at most once."""
    if LOW_CONFIDENCE_PHRASE not in text or has_handoff_invitation(text):
        return text
    return f"{text.rstrip()}\n\n{HANDOFF_INVITATION}"


def build_fallback_answer(questions: List[str]) -> str:
    """Static answer used when generation is unavailable: suggestions plus the invitation."""
    if questions:
        suggestions = "\n".join(f"{i}. {question}" for i, question in enumerate(questions, 1))
    else:
        suggestions = NO_SUGGESTIONS_TEXT
    return f"{LOW_CONFIDENCE_PHRASE}。\n\n以下の質問内容とは違いますか？\n\n{suggestions}\n\n{HANDOFF_INVITATION}"
