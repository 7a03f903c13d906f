"""Content moderation for generation prompts and captions.

Pure and deterministic. Runs before any token is debited.
"""

import re
from dataclasses import dataclass
from typing import Optional

MAX_PROMPT_LENGTH = 2000
MAX_CAPTION_LENGTH = 500

# Matched on word boundaries, case-insensitively
BLOCKED_TERMS: frozenset[str] = frozenset(
    {
        "beheading",
        "bestiality",
        "child abuse",
        "child porn",
        "csam",
        "genocide",
        "gore",
        "lynching",
        "massacre",
        "nazi",
        "nude",
        "nudity",
        "porn",
        "rape",
        "self-harm",
        "suicide",
        "terrorist",
        "torture",
    }
)

_SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")
_TERM_PATTERNS: list[tuple[str, re.Pattern]] = [
    (term, re.compile(rf"(?<!\w){re.escape(term)}(?!\w)", re.IGNORECASE))
    for term in sorted(BLOCKED_TERMS)
]


@dataclass(frozen=True)
class ModerationResult:
    """Outcome of a moderation check."""

    allowed: bool
    reason: Optional[str] = None
    matched_term: Optional[str] = None


def sanitize_text(value: Optional[str]) -> Optional[str]:
    """Strip script blocks and HTML tags from user text."""
    if value is None:
        return None
    cleaned = _SCRIPT_RE.sub("", value)
    cleaned = _TAG_RE.sub("", cleaned)
    return cleaned.strip()


def moderate(prompt: Optional[str], caption: Optional[str] = None) -> ModerationResult:
    """Check prompt and caption against blocked terms and length limits.

    Args:
        prompt: Generation prompt (may be empty for variations)
        caption: Optional caption

    Returns:
        ModerationResult; ``reason`` names the matched term or the
        violated limit when not allowed
    """
    prompt = prompt or ""
    caption = caption or ""

    combined = f"{prompt} {caption}"
    for term, pattern in _TERM_PATTERNS:
        if pattern.search(combined):
            return ModerationResult(
                allowed=False,
                reason=f"Content contains blocked term: '{term}'",
                matched_term=term,
            )

    if len(prompt) > MAX_PROMPT_LENGTH:
        return ModerationResult(
            allowed=False,
            reason=f"Prompt exceeds maximum length of {MAX_PROMPT_LENGTH} characters",
        )

    if len(caption) > MAX_CAPTION_LENGTH:
        return ModerationResult(
            allowed=False,
            reason=f"Caption exceeds maximum length of {MAX_CAPTION_LENGTH} characters",
        )

    return ModerationResult(allowed=True)
