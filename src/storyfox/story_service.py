"""Two-pass story text generation: story text first, illustration prompts second."""

import logging
from dataclasses import dataclass
from typing import Optional

from storyfox.character_validation import CharacterDescriptionValidator
from storyfox.context import GenerationConfig
from storyfox.decoding import decode_prompt_sheet, decode_story_record, decode_text_only, merge_story
from storyfox.error_handling import ContentRejectedError
from storyfox.llm_factory import TextGenerationBackend
from storyfox.models import StoryBook, StoryRecord, ValidationResult
from storyfox.prompt_templates import STORY_SYSTEM_PROMPT, prompt_sheet_prompt, text_only_prompt
from storyfox.safety import DefaultContentSafetyPolicy

logger = logging.getLogger(__name__)


@dataclass
class GeneratedStory:
    """A merged, validated book and how its character sheet was obtained."""
    book: StoryBook
    validation: ValidationResult

    @property
    def repaired_by_model(self) -> bool:
        return self.validation.repaired_by_model


class StoryGenerator:
    """Turns a concept into a validated ``StoryBook`` using a text backend."""

    def __init__(
        self,
        text_backend: TextGenerationBackend,
        validator: Optional[CharacterDescriptionValidator] = None,
        policy: Optional[DefaultContentSafetyPolicy] = None,
        config: Optional[GenerationConfig] = None,
    ):
        self.text_backend = text_backend
        self.config = config or GenerationConfig()
        self.validator = validator or CharacterDescriptionValidator(config=self.config)
        self.policy = policy or DefaultContentSafetyPolicy()

    def _checked_concept(self, concept: str) -> str:
        check = self.policy.validate_concept(concept)
        if not check.allowed:
            raise ContentRejectedError(check.reason)
        return check.sanitized_concept

    async def generate_story(self, concept: str, page_count: int) -> GeneratedStory:
        """Generate, decode, merge and validate a story of ``page_count`` pages.

        Raises:
            ContentRejectedError: the concept is blocked or no pages came back.
            UnparsableResponseError: either pass could not be decoded.
        """
        if page_count < 1:
            raise ValueError("page_count must be at least 1")
        safe_concept = self._checked_concept(concept)

        logger.info(f"Generating {page_count}-page story text with {self.text_backend.name}")
        raw_text = await self.text_backend.generate(
            STORY_SYSTEM_PROMPT,
            text_only_prompt(safe_concept, page_count),
            max_tokens=self.config.story_max_tokens,
            temperature=self.config.story_temperature,
        )
        text_record = decode_text_only(raw_text)
        logger.debug(f"Text pass returned {len(text_record.pages)} pages titled '{text_record.title}'")

        raw_prompts = await self.text_backend.generate(
            STORY_SYSTEM_PROMPT,
            prompt_sheet_prompt(text_record),
            max_tokens=self.config.prompt_sheet_max_tokens,
            temperature=self.config.prompt_sheet_temperature,
        )
        prompt_sheet = decode_prompt_sheet(raw_prompts)

        book = merge_story(text_record, prompt_sheet, page_count, safe_concept, self.policy)
        return await self._validated(book)

    async def story_from_record(self, record: StoryRecord, page_count: int, concept: str) -> GeneratedStory:
        """Build a validated book from a single-pass record carrying text and prompts."""
        book = merge_story(record.to_text_only(), record.to_prompt_sheet(), page_count, concept, self.policy)
        return await self._validated(book)

    async def story_from_raw(self, raw: str, page_count: int, concept: str) -> GeneratedStory:
        return await self.story_from_record(decode_story_record(raw), page_count, concept)

    async def _validated(self, book: StoryBook) -> GeneratedStory:
        validation = await self.validator.validate(book.character_descriptions, book.pages, book.title)
        if validation.repaired_by_model:
            logger.info("Character sheet was rebuilt by the repair model")
        return GeneratedStory(book=book.with_character_descriptions(validation.text), validation=validation)
