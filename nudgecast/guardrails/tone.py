"""
Tone Validation Module

Checks nudge copy for shaming, judgmental or fear-driven language and
sanitizes model-written narrative text before it reaches a client.
"""

import html
import re
from typing import List, Tuple


# Prohibited language patterns (case-insensitive)
PROHIBITED_PHRASES = [
    # Shaming
    r"you're overspending",
    r"you are overspending",
    r"bad habits",
    r"irresponsible spending",
    r"reckless spending",
    r"careless spending",
    r"you're wasting money",
    r"you are wasting money",
    r"poor financial decisions",

    # Judgmental
    r"you must",
    r"you failed to",
    r"you should have",
    r"you should know better",

    # Fear-mongering
    r"you'll go bankrupt",
    r"you will go bankrupt",
    r"financial disaster",
    r"financial ruin",
    r"lose everything",
    r"going broke",
]

PROHIBITED_PATTERNS = [
    re.compile(pattern, re.IGNORECASE) for pattern in PROHIBITED_PHRASES
]

# Markup and script fragments stripped from generated narrative
DANGEROUS_PATTERNS = [
    re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE),
    re.compile(r"<iframe[\s\S]*?</iframe>", re.IGNORECASE),
    re.compile(r"<object[\s\S]*?</object>", re.IGNORECASE),
    re.compile(r"<embed[\s\S]*?>", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
    re.compile(r"data:text/html", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
    re.compile(r"eval\(", re.IGNORECASE),
    re.compile(r"expression\(", re.IGNORECASE),
]


def validate_tone(text: str) -> Tuple[bool, List[str]]:
    """
    Validate text tone against prohibited language.

    Args:
        text: Text to validate

    Returns:
        Tuple of (is_valid, list_of_violations)
    """
    violations = []
    if not text:
        return True, violations

    for pattern in PROHIBITED_PATTERNS:
        for match in pattern.finditer(text):
            matched_text = match.group(0)
            if matched_text not in violations:
                violations.append(matched_text)

    return len(violations) == 0, violations


def check_nudge_tone(message: str, reason: str) -> List[str]:
    """Violations across a nudge's message and reason."""
    violations = []
    for text in (message, reason):
        _, found = validate_tone(text or "")
        violations.extend(v for v in found if v not in violations)
    return violations


def contains_dangerous_patterns(text: str) -> bool:
    return any(pattern.search(text) for pattern in DANGEROUS_PATTERNS)


def sanitize_text(text) -> str:
    """Strip script-like fragments and escape the remaining markup."""
    if not isinstance(text, str):
        text = str(text)
    for pattern in DANGEROUS_PATTERNS:
        text = pattern.sub("", text)
    return html.escape(text, quote=False)


def sanitize_structure(value):
    """Apply sanitize_text to every string inside nested lists and dicts."""
    if isinstance(value, str):
        return sanitize_text(value)
    if isinstance(value, list):
        return [sanitize_structure(item) for item in value]
    if isinstance(value, dict):
        return {key: sanitize_structure(item) for key, item in value.items()}
    return value
