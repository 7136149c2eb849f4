"""Prompt variants tried, in order, for one illustration job.

The chain starts with the policy-sanitized prompt, can take a model
paraphrase right after it, then a softened short version, and ends with a
generic fallback scene.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from storyfox.context import GenerationConfig
from storyfox.llm_factory import TextGenerationBackend
from storyfox.models import PromptAnalysis
from storyfox.prompt_templates import PROMPT_REWRITE_INSTRUCTIONS, rewrite_request
from storyfox.safety import ContentSafetyPolicy
from storyfox.utils import clean_story_text, truncate_words

logger = logging.getLogger(__name__)


class VariantKind(str, Enum):
    SAFE = "safe"
    PARAPHRASE = "paraphrase"
    SOFTENED = "softened"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class PromptVariant:
    kind: VariantKind
    text: str


def softened_prompt(prompt: str, analysis: Optional[PromptAnalysis] = None, max_words: int = 18) -> str:
    """Short, punctuation-free version wrapped in generic child-safe scene language."""
    if analysis is not None and analysis.characters:
        subject = analysis.characters[0].appearance or analysis.characters[0].species
        pieces = [subject, analysis.main_action, analysis.scene_setting]
        core = truncate_words(" ".join(p for p in pieces if p), max_words)
    else:
        stripped = re.sub(r"[^\w\s'-]", " ", prompt)
        core = truncate_words(stripped, max_words)
    core = core or "friendly animal friends"
    return f"A gentle, friendly children's book scene of {core}, soft colors, cheerful mood"


def fallback_prompt(analysis: Optional[PromptAnalysis] = None) -> str:
    """The most generic scene still tied to the page's main character."""
    species = ""
    if analysis is not None and analysis.characters:
        species = analysis.characters[0].species
    subject = f"a friendly {species}" if species else "friendly animal friends"
    return f"A cheerful children's book illustration of {subject} in a sunny meadow, soft pastel colors"


class VariantChain:
    """Ordered, inspectable prompt variants for one job."""

    def __init__(
        self,
        prompt: str,
        policy: ContentSafetyPolicy,
        analysis: Optional[PromptAnalysis] = None,
        softened_max_words: int = 18,
        start_at: Optional[VariantKind] = None,
    ):
        self.policy = policy
        self._variants: List[PromptVariant] = []
        self._add(VariantKind.SAFE, prompt)
        self._add(VariantKind.SOFTENED, softened_prompt(prompt, analysis, softened_max_words))
        self._add(VariantKind.FALLBACK, fallback_prompt(analysis))
        self._position = 0
        if start_at is not None:
            kinds = self.kinds
            if start_at in kinds:
                self._position = kinds.index(start_at)

    def _sanitized(self, kind: VariantKind, text: str) -> Optional[PromptVariant]:
        safe_text = self.policy.sanitize(text)
        if any(v.text == safe_text for v in self._variants):
            return None
        return PromptVariant(kind, safe_text)

    def _add(self, kind: VariantKind, text: str) -> None:
        variant = self._sanitized(kind, text)
        if variant is not None:
            self._variants.append(variant)

    @property
    def variants(self) -> List[PromptVariant]:
        return list(self._variants)

    @property
    def kinds(self) -> List[VariantKind]:
        return [v.kind for v in self._variants]

    @property
    def current(self) -> Optional[PromptVariant]:
        if self._position < len(self._variants):
            return self._variants[self._position]
        return None

    @property
    def exhausted(self) -> bool:
        return self.current is None

    def insert_next(self, kind: VariantKind, text: str) -> bool:
        """Queue a variant right after the current one; duplicates are ignored."""
        variant = self._sanitized(kind, text)
        if variant is None:
            return False
        self._variants.insert(self._position + 1, variant)
        return True

    def advance(self) -> Optional[PromptVariant]:
        """Mark the current variant exhausted and return the next one."""
        if self._position < len(self._variants):
            self._position += 1
        return self.current

    def __iter__(self):
        while not self.exhausted:
            yield self.current
            self.advance()


class PromptRewriter:
    """Model paraphrase of a prompt that an image backend declined."""

    def __init__(self, model: TextGenerationBackend, config: Optional[GenerationConfig] = None):
        self.model = model
        self.config = config or GenerationConfig()

    async def rewrite(self, prompt: str) -> Optional[str]:
        for attempt in range(1, self.config.rewrite_attempts + 1):
            try:
                raw = await self.model.generate(
                    PROMPT_REWRITE_INSTRUCTIONS,
                    rewrite_request(prompt),
                    max_tokens=160,
                    temperature=0.4,
                )
            except Exception as e:
                logger.warning(f"Prompt rewrite attempt {attempt} failed: {e}")
                continue
            rewritten = clean_story_text(raw)
            if rewritten:
                return rewritten
        return None
