"""Content safety policy applied to concepts and prompts before they reach a backend."""

import re
from dataclasses import dataclass
from typing import Protocol

from storyfox.utils import normalize_whitespace


class ContentSafetyPolicy(Protocol):
    """Anything that can turn arbitrary text into a child-safe prompt."""

    def sanitize(self, text: str) -> str:
        ...

    def safe_cover_prompt(self, title: str, concept: str) -> str:
        ...


@dataclass(frozen=True)
class SafetyCheck:
    """Result of validating a story concept."""
    allowed: bool
    sanitized_concept: str = ""
    reason: str = ""


class DefaultContentSafetyPolicy:
    """Pattern-based policy for children's picture books."""

    BLOCKED_PATTERNS = [
        (
            r"\b(kill|killing|murder|stab|stabbing|blood|gore|dismember|weapon|gun|knife|shoot|war|battle|terror)\b",
            "Please keep story concepts gentle and avoid violence or weapon themes for kids.",
        ),
        (
            r"\b(sex|sexual|nude|nudity|porn|erotic|fetish|intimate)\b",
            "Please keep story concepts child-appropriate and avoid sexual content.",
        ),
        (
            r"\b(drug|drugs|alcohol|beer|vodka|whiskey|cocaine|meth|opioid|smoking)\b",
            "Please avoid substance-related themes in story concepts for children.",
        ),
        (
            r"\b(hate|racist|slur|abuse|self-harm|suicide)\b",
            "Please avoid harmful or abusive themes and try a kinder story concept.",
        ),
    ]

    PROMPT_REPLACEMENTS = [
        (r"\b(weapon|gun|knife|sword)\b", "toy prop"),
        (r"\b(kill|killing|murder|stab|stabbing|fight|battle|war)\b", "playful challenge"),
        (r"\b(blood|gore|dismember)\b", "colorful confetti"),
        (r"\b(demon|devil|zombie|horror)\b", "friendly fantasy creature"),
    ]

    SAFE_SUFFIX = (
        "Children's book illustration style, gentle, cheerful, family-friendly, "
        "no text, no violence, no scary imagery."
    )

    def __init__(self, max_concept_chars: int = 220, max_prompt_chars: int = 360):
        self.max_concept_chars = max_concept_chars
        self.max_prompt_chars = max_prompt_chars

    def validate_concept(self, raw_concept: str) -> SafetyCheck:
        normalized = normalize_whitespace(raw_concept)
        if not normalized:
            return SafetyCheck(allowed=False, reason="Please enter a story idea to get started.")

        for pattern, reason in self.BLOCKED_PATTERNS:
            if re.search(pattern, normalized, re.IGNORECASE):
                return SafetyCheck(allowed=False, reason=reason)

        return SafetyCheck(allowed=True, sanitized_concept=self.sanitize_concept(normalized))

    def sanitize_concept(self, text: str) -> str:
        cleaned = re.sub(r"[<>`]", "", normalize_whitespace(text))
        return cleaned[:self.max_concept_chars]

    def safe_illustration_prompt(self, prompt: str) -> str:
        sanitized = re.sub(r"[<>`]", "", normalize_whitespace(prompt))
        for pattern, replacement in self.PROMPT_REPLACEMENTS:
            sanitized = re.sub(pattern, replacement, sanitized, flags=re.IGNORECASE)
        sanitized = sanitized[:self.max_prompt_chars].rstrip(" .")
        return f"{sanitized}. {self.SAFE_SUFFIX}"

    def safe_cover_prompt(self, title: str, concept: str) -> str:
        return (
            f'Children\'s book cover illustration for "{self.sanitize_concept(title)}". '
            f"Theme: {self.sanitize_concept(concept)}. "
            "Warm, whimsical, colorful, friendly characters, family-friendly tone, "
            "no violence, no scary imagery, no text in image."
        )

    def sanitize(self, text: str) -> str:
        """Return the child-safe version of an illustration prompt; idempotent."""
        if text.endswith(self.SAFE_SUFFIX):
            text = text[: -len(self.SAFE_SUFFIX)]
        return self.safe_illustration_prompt(text)
