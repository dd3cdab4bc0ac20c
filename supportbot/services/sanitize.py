"""Input sanitising before prompts are built, and filtering of model output."""

import re
from dataclasses import dataclass, field
from typing import List

MAX_INPUT_CHARS = 5000
BLOCKED_OUTPUT_MESSAGE = "お答えできない内容が含まれていました。別の質問をお試しください。"

INJECTION_PATTERNS = [
    re.compile(r"ignore\s*(all\s*)?(previous|above|prior)\s*(instructions?|prompts?|rules?)", re.IGNORECASE),
    re.compile(r"disregard\s*(all\s*)?(previous|above|prior)\s*(instructions?|prompts?|rules?)", re.IGNORECASE),
    re.compile(r"forget\s*(all\s*)?(previous|above|prior)\s*(instructions?|prompts?|rules?)", re.IGNORECASE),
    re.compile(r"無視(して|しろ|せよ)"),
    re.compile(r"忘れ(て|ろ|よ)"),
    re.compile(r"(指示|ルール|制約)を(変更|破棄|無効)"),
    re.compile(r"you\s*are\s*(now|actually|really)", re.IGNORECASE),
    re.compile(r"pretend\s*(to\s*be|you\s*are)", re.IGNORECASE),
    re.compile(r"act\s*as\s*(if|though)", re.IGNORECASE),
    re.compile(r"role\s*play\s*as", re.IGNORECASE),
    re.compile(r"what\s*(are|is)\s*(your|the)\s*(instructions?|prompts?|rules?|system)", re.IGNORECASE),
    re.compile(r"show\s*(me\s*)?(your|the)\s*(instructions?|prompts?|rules?|system)", re.IGNORECASE),
    re.compile(r"reveal\s*(your|the)\s*(instructions?|prompts?|rules?|system)", re.IGNORECASE),
    re.compile(r"(システム|秘密|内部)(の)?(プロンプト|指示|設定)"),
    re.compile(r"(教えて|見せて|表示)(ください)?.*?(プロンプト|指示|設定)"),
]

SENSITIVE_OUTPUT_PATTERNS = [
    re.compile(r"OPENAI_API_KEY", re.IGNORECASE),
    re.compile(r"LINE_CHANNEL_SECRET", re.IGNORECASE),
    re.compile(r"LINE_CHANNEL_ACCESS_TOKEN", re.IGNORECASE),
    re.compile(r"sk-[a-zA-Z0-9]{20,}"),
]

CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
LONG_WHITESPACE = re.compile(r"\s{10,}")
EXCESSIVE_REPETITION = re.compile(r"(.)\1{20,}")


def sanitize_input(text: str) -> str:
    """Strip control characters, squash runaway whitespace/repetition, cap the length."""
    if not text or not isinstance(text, str):
        return ""

    cleaned = CONTROL_CHARS.sub("", text)
    cleaned = LONG_WHITESPACE.sub(" " * 5, cleaned)
    cleaned = EXCESSIVE_REPETITION.sub(lambda m: m.group(1) * 10, cleaned)
    return cleaned[:MAX_INPUT_CHARS].strip()


def detect_prompt_injection(text: str) -> bool:
    if not text or not isinstance(text, str):
        return False
    return any(pattern.search(text) for pattern in INJECTION_PATTERNS)


def escape_for_prompt(text: str) -> str:
    """Break up markdown fences and headings a user could use to fake prompt sections."""
    return sanitize_input(text).replace("```", "` ` `").replace("---", "- - -").replace("###", "# # #")


def wrap_user_message(text: str) -> str:
    return f"<user_message>\n{escape_for_prompt(text)}\n</user_message>"


def filter_llm_output(output: str) -> str:
    """Replace output that leaks credentials with a fixed refusal."""
    if not output or not isinstance(output, str):
        return ""
    if any(pattern.search(output) for pattern in SENSITIVE_OUTPUT_PATTERNS):
        return BLOCKED_OUTPUT_MESSAGE
    return output


@dataclass
class InputSafetyReport:
    is_safe: bool
    sanitized: str
    warnings: List[str] = field(default_factory=list)


def analyze_input_safety(text: str) -> InputSafetyReport:
    sanitized = sanitize_input(text)
    warnings = []
    if text != sanitized:
        warnings.append("input_sanitized")
    if detect_prompt_injection(text):
        warnings.append("possible_prompt_injection")
    if text and EXCESSIVE_REPETITION.search(text):
        warnings.append("excessive_repetition")
    if text and len(text) > MAX_INPUT_CHARS:
        warnings.append("input_truncated")
    return InputSafetyReport(is_safe=not warnings, sanitized=sanitized, warnings=warnings)
