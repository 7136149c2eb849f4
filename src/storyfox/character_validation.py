"""Quality gate and fallback extraction for a story's character sheet.

Small models often return an empty or one-word ``characterDescriptions``
field while still naming characters in their illustration prompts. The
validator keeps an adequate sheet, otherwise asks a model to rebuild it, and
finally reconstructs one from the prompts themselves.
"""

import logging
import re
from collections import Counter
from typing import List, Optional, Sequence

from storyfox.context import GenerationConfig
from storyfox.lexicon import (
    CLOTHING_WORDS,
    SCENE_STARTERS,
    VALIDATOR_APPEARANCE_WORDS,
    VALIDATOR_SPECIES_WORDS,
    letter_words,
)
from storyfox.llm_factory import TextGenerationBackend
from storyfox.models import StoryPage, ValidationResult
from storyfox.prompt_templates import CHARACTER_REPAIR_INSTRUCTIONS, character_repair_request
from storyfox.utils import clean_story_text, normalize_whitespace

logger = logging.getLogger(__name__)

_NAME_STOPWORDS = {
    "The", "A", "An", "I", "He", "She", "They", "We", "It", "His", "Her", "Their",
    "One", "Once", "Then", "When", "But", "And", "So", "Suddenly", "Together", "Every",
    "After", "At", "In", "On", "As", "Now", "This", "That", "There", "Soon", "Finally", "Upon",
}


class CharacterDescriptionValidator:
    """Guarantees a usable character sheet for a story."""

    def __init__(
        self,
        repair_model: Optional[TextGenerationBackend] = None,
        config: Optional[GenerationConfig] = None,
    ):
        self.repair_model = repair_model
        self.config = config or GenerationConfig()

    async def validate(
        self,
        descriptions: str,
        pages: Sequence[StoryPage],
        title: str,
    ) -> ValidationResult:
        """Return an adequate sheet, noting whether a model rebuilt it."""
        cleaned = self.normalize(descriptions)
        if self.is_adequate(cleaned):
            return ValidationResult(text=cleaned)

        if self.repair_model is not None:
            repaired = await self._repair_with_model(pages, title)
            if repaired is not None:
                normalized = self.normalize(repaired)
                if self.is_adequate(normalized):
                    logger.info("Character sheet rebuilt by model")
                    return ValidationResult(text=normalized, repaired_by_model=True)

        return ValidationResult(text=self.validate_heuristically(descriptions, pages, title))

    def validate_heuristically(self, descriptions: str, pages: Sequence[StoryPage], title: str) -> str:
        """Model-free validation; never empty when any page has text."""
        cleaned = self.normalize(descriptions)
        if self.is_adequate(cleaned):
            return cleaned

        extracted = self.extract_from_image_prompts(pages)
        if extracted:
            logger.info("Character sheet reconstructed from illustration prompts")
            result = f"{cleaned}\n{extracted}" if cleaned else extracted
        else:
            result = cleaned

        if not result and any(page.text.strip() for page in pages):
            result = self._sheet_from_story_text(pages, title)
        return result

    def is_adequate(self, description: str) -> bool:
        """At least one line is ``Name - detail`` with enough words, or long enough on its own."""
        lines = [line.strip() for line in description.splitlines() if line.strip()]
        for line in lines:
            word_count = len(line.split())
            if " - " in line and word_count >= self.config.adequacy_dash_min_words:
                return True
            if word_count >= self.config.adequacy_min_words:
                return True
        return False

    @staticmethod
    def normalize(description: str) -> str:
        """Clean markdown and put one character per line."""
        cleaned = clean_story_text(description, keep_line_breaks=True)
        if not cleaned:
            return ""
        if "\n" not in cleaned and " - " in cleaned:
            cleaned = re.sub(r"\.\s+(?=[A-Z])", ".\n", cleaned)
        lines = [line.strip() for line in cleaned.splitlines()]
        return "\n".join(line for line in lines if line)

    async def _repair_with_model(self, pages: Sequence[StoryPage], title: str) -> Optional[str]:
        request = character_repair_request(title, list(pages), self.config.repair_prompt_pages)
        try:
            response = await self.repair_model.generate(
                CHARACTER_REPAIR_INSTRUCTIONS,
                request,
                max_tokens=self.config.repair_max_tokens,
                temperature=self.config.repair_temperature,
            )
        except Exception as e:
            logger.warning(f"Character sheet repair failed: {e}")
            return None
        response = (response or "").strip()
        return response or None

    @staticmethod
    def is_likely_character_name(text: str) -> bool:
        trimmed = text.strip()
        if not trimmed:
            return False
        words = trimmed.split()
        if len(words) > 5:
            return False
        if not trimmed[0].isupper():
            return False
        return words[0].lower() not in SCENE_STARTERS

    def extract_from_image_prompts(self, pages: Sequence[StoryPage]) -> str:
        """Build ``Name - detail, detail`` lines from names that lead the prompts."""
        names: List[str] = []
        for page in pages:
            prompt = page.image_prompt.strip()
            if "," not in prompt:
                continue
            candidate = prompt.split(",", 1)[0].strip()
            if not self.is_likely_character_name(candidate):
                continue
            name = normalize_whitespace(candidate)
            if name not in names:
                names.append(name)

        lines = []
        for name in names[:self.config.max_extracted_characters]:
            details = self.find_appearance_details(name, pages)
            lines.append(f"{name} - {details}" if details else f"{name} - main character")
        return "\n".join(lines)

    def find_appearance_details(self, name: str, pages: Sequence[StoryPage]) -> str:
        """Species, color and clothing words from prompts that mention ``name``."""
        found: List[str] = []
        name_lower = name.lower()
        for page in pages:
            lower = page.image_prompt.lower()
            if name_lower not in lower:
                continue
            for word in letter_words(lower):
                if word in found:
                    continue
                if word in VALIDATOR_SPECIES_WORDS:
                    found.insert(0, word)
                elif word in VALIDATOR_APPEARANCE_WORDS or word in CLOTHING_WORDS:
                    found.append(word)
            if len(found) >= self.config.character_detail_early_stop:
                break
        return ", ".join(found[:self.config.max_character_details])

    @staticmethod
    def _sheet_from_story_text(pages: Sequence[StoryPage], title: str) -> str:
        """Last resort: the most frequent capitalized non-function word becomes the hero."""
        counts: Counter = Counter()
        for page in pages:
            for sentence in re.split(r"[.!?]+\s+", page.text):
                words = re.findall(r"[A-Za-z][\w'-]*", sentence)
                for word in words:
                    if word[0].isupper() and word not in _NAME_STOPWORDS:
                        counts[word] += 1
        if counts:
            name = counts.most_common(1)[0][0]
            return f"{name} - main character"
        subject = title.strip() or "the story"
        return f"Main character - the friendly hero of {subject}"
