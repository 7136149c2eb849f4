"""Data models for story generation and illustration."""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Tuple

from pydantic import BaseModel, Field, model_validator


class IllustrationStyle(str, Enum):
    """Visual styles offered for a book."""
    ILLUSTRATION = "illustration"
    ANIMATION = "animation"
    SKETCH = "sketch"

    @property
    def prompt_suffix(self) -> str:
        """Style language appended by backends that take free-text prompts."""
        return {
            IllustrationStyle.ILLUSTRATION: "classic children's book illustration, soft watercolor textures",
            IllustrationStyle.ANIMATION: "Pixar-inspired 3D cartoon animation style, vibrant lighting",
            IllustrationStyle.SKETCH: "hand-drawn pencil sketch, delicate linework",
        }[self]


class BookFormat(str, Enum):
    """Physical book formats."""
    STANDARD = "standard"
    LANDSCAPE = "landscape"
    SMALL = "small"
    PORTRAIT = "portrait"

    @property
    def dimensions(self) -> Tuple[int, int]:
        """Page size in points at 72 DPI."""
        return {
            BookFormat.STANDARD: (612, 612),
            BookFormat.LANDSCAPE: (792, 612),
            BookFormat.SMALL: (432, 432),
            BookFormat.PORTRAIT: (612, 792),
        }[self]

    @property
    def generation_size(self) -> Tuple[int, int]:
        """Pixel size requested from image backends, longest side 1024 and multiples of 64."""
        width, height = self.dimensions
        scale = 1024 / max(width, height)
        return (
            max(64, int(round(width * scale / 64)) * 64),
            max(64, int(round(height * scale / 64)) * 64),
        )


class TextProviderKind(str, Enum):
    """Supported text generation backends."""
    LOCAL = "local"
    OPENROUTER = "openrouter"
    TOGETHER = "together"
    HUGGINGFACE = "huggingface"
    OPENAI = "openai"


class ImageProviderKind(str, Enum):
    """Supported image generation backends."""
    LOCAL_DIFFUSERS = "local_diffusers"
    OPENROUTER = "openrouter"
    TOGETHER = "together"
    HUGGINGFACE = "huggingface"
    OPENAI = "openai"

    @property
    def is_cloud(self) -> bool:
        return self is not ImageProviderKind.LOCAL_DIFFUSERS


# Wire records produced by the text backend. Field names follow the JSON
# contract (camelCase) through aliases.

class TextOnlyPage(BaseModel):
    """One page of the text pass."""
    page_number: int = Field(alias="pageNumber")
    text: str = ""

    model_config = {"populate_by_name": True}


class TextOnlyRecord(BaseModel):
    """Pass 1 record: story text without illustration prompts."""
    title: str = ""
    author_line: str = Field(default="", alias="authorLine")
    moral: str = ""
    character_descriptions: str = Field(default="", alias="characterDescriptions")
    pages: List[TextOnlyPage]

    model_config = {"populate_by_name": True}


class PromptEntry(BaseModel):
    """One illustration prompt keyed by source page number."""
    page_number: int = Field(alias="pageNumber")
    image_prompt: str = Field(default="", alias="imagePrompt")

    model_config = {"populate_by_name": True}


class PromptSheetRecord(BaseModel):
    """Pass 2 record: illustration prompts for each page."""
    prompts: List[PromptEntry]

    model_config = {"populate_by_name": True}


class StoryRecordPage(BaseModel):
    page_number: int = Field(alias="pageNumber")
    text: str = ""
    image_prompt: str = Field(default="", alias="imagePrompt")

    model_config = {"populate_by_name": True}


class StoryRecord(BaseModel):
    """Single-pass record carrying text and prompts together."""
    title: str = ""
    author_line: str = Field(default="", alias="authorLine")
    moral: str = ""
    character_descriptions: str = Field(default="", alias="characterDescriptions")
    pages: List[StoryRecordPage]

    model_config = {"populate_by_name": True}

    def to_text_only(self) -> TextOnlyRecord:
        return TextOnlyRecord(
            title=self.title,
            author_line=self.author_line,
            moral=self.moral,
            character_descriptions=self.character_descriptions,
            pages=[TextOnlyPage(page_number=p.page_number, text=p.text) for p in self.pages],
        )

    def to_prompt_sheet(self) -> PromptSheetRecord:
        return PromptSheetRecord(
            prompts=[
                PromptEntry(page_number=p.page_number, image_prompt=p.image_prompt)
                for p in self.pages
            ]
        )


class StoryPage(BaseModel):
    """A single page of a finished book."""
    page_number: int = Field(alias="pageNumber", ge=1)
    text: str
    image_prompt: str = Field(alias="imagePrompt")

    model_config = {"populate_by_name": True}


class StoryBook(BaseModel):
    """A complete book with contiguous pages numbered from 1."""
    title: str
    author_line: str = Field(default="", alias="authorLine")
    moral: str = ""
    character_descriptions: str = Field(default="", alias="characterDescriptions")
    pages: List[StoryPage]

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def _check_page_numbers(self) -> "StoryBook":
        numbers = [page.page_number for page in self.pages]
        if numbers != list(range(1, len(numbers) + 1)):
            raise ValueError("pages must be numbered contiguously from 1")
        return self

    def with_pages(self, pages: List[StoryPage]) -> "StoryBook":
        return self.model_copy(update={"pages": pages})

    def with_character_descriptions(self, descriptions: str) -> "StoryBook":
        return self.model_copy(update={"character_descriptions": descriptions})


class CharacterEntry(BaseModel):
    """A character parsed from the character sheet."""
    name: str
    species: str = ""
    visual_summary: str
    injection_phrase: str

    model_config = {"frozen": True}


class AnalyzedCharacter(BaseModel):
    species: str = ""
    appearance: str = ""


class PromptAnalysis(BaseModel):
    """Visual semantics extracted from one illustration prompt."""
    characters: List[AnalyzedCharacter] = Field(default_factory=list)
    scene_setting: str = Field(default="", alias="sceneSetting")
    main_action: str = Field(default="", alias="mainAction")
    mood: str = ""

    model_config = {"populate_by_name": True}


class ConceptLabel(str, Enum):
    """Concept labels in priority order."""
    CHARACTER = "CHARACTER"
    SETTING = "SETTING"
    ACTION = "ACTION"
    DETAIL = "DETAIL"
    PROPS = "PROPS"
    ATMOSPHERE = "ATMOSPHERE"


class RankedConcept(BaseModel):
    label: ConceptLabel
    value: str


class ConceptDecomposition(BaseModel):
    """Ranked, labeled concepts for backends that accept several concepts."""
    concepts: List[RankedConcept] = Field(default_factory=list)

    def values(self) -> List[str]:
        return [concept.value for concept in self.concepts]


class ValidationResult(BaseModel):
    """Outcome of character sheet validation."""
    text: str
    repaired_by_model: bool = False


class JobState(str, Enum):
    """Lifecycle of an illustration job."""
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_ALLOWED_TRANSITIONS: Dict[JobState, Tuple[JobState, ...]] = {
    JobState.QUEUED: (JobState.IN_FLIGHT,),
    JobState.IN_FLIGHT: (JobState.SUCCEEDED, JobState.FAILED),
    JobState.SUCCEEDED: (),
    JobState.FAILED: (JobState.IN_FLIGHT,),
}


class IllustrationJob(BaseModel):
    """One image to produce: index 0 is the cover, otherwise the page number."""
    index: int = Field(ge=0)
    prompt: str
    style: IllustrationStyle = IllustrationStyle.ILLUSTRATION
    state: JobState = JobState.QUEUED
    recovery_attempted: bool = False
    last_error: str | None = None

    @property
    def is_cover(self) -> bool:
        return self.index == 0

    def transition(self, new_state: JobState) -> None:
        """Move the job forward; a failed job may re-enter flight once."""
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise ValueError(f"Illegal job transition {self.state.value} -> {new_state.value}")
        if self.state is JobState.FAILED:
            if self.recovery_attempted:
                raise ValueError(f"Job {self.index} was already retried during recovery")
            self.recovery_attempted = True
        self.state = new_state


class GenerationOutcome(BaseModel):
    """Result of one successful backend call."""
    image: bytes
    backend_used: ImageProviderKind
    did_fallback: bool = False

    model_config = {"frozen": True}
