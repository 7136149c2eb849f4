"""End-to-end storybook generation: story, analysis, enrichment, illustrations."""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from storyfox.character_validation import CharacterDescriptionValidator
from storyfox.concepts import ConceptDecomposer
from storyfox.context import (
    CredentialStore,
    EnvironmentCredentialStore,
    GenerationConfig,
    GenerationSettings,
    get_default_config,
    get_default_settings,
)
from storyfox.enrichment import enrich
from storyfox.llm_factory import create_local_model_backend, create_text_backend
from storyfox.models import BookFormat, ConceptDecomposition, GenerationOutcome, IllustrationStyle, StoryBook
from storyfox.orchestrator import IllustrationOrchestrator, ProgressCallback
from storyfox.prompt_analysis import PromptAnalysisEngine
from storyfox.router import ImageGenerationRouter
from storyfox.safety import DefaultContentSafetyPolicy
from storyfox.story_service import StoryGenerator
from storyfox.variants import PromptRewriter

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """A finished book, its images keyed by index (0 is the cover) and what is missing."""
    book: StoryBook
    images: Dict[int, GenerationOutcome] = field(default_factory=dict)
    missing: Dict[int, str] = field(default_factory=dict)
    concepts: Dict[int, ConceptDecomposition] = field(default_factory=dict)
    repaired_by_model: bool = False

    @property
    def missing_indices(self) -> List[int]:
        return sorted(self.missing)

    @property
    def is_complete(self) -> bool:
        return not self.missing


class StorybookPipeline:
    """Wires the story generator, analysis, enrichment and orchestrator together."""

    def __init__(
        self,
        story_generator: StoryGenerator,
        orchestrator: IllustrationOrchestrator,
        analysis_engine: Optional[PromptAnalysisEngine] = None,
        decomposer: Optional[ConceptDecomposer] = None,
    ):
        self.story_generator = story_generator
        self.orchestrator = orchestrator
        self.analysis_engine = analysis_engine or PromptAnalysisEngine(config=orchestrator.config)
        self.decomposer = decomposer or ConceptDecomposer(config=orchestrator.config)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[GenerationSettings] = None,
        credentials: Optional[CredentialStore] = None,
        config: Optional[GenerationConfig] = None,
    ) -> "StorybookPipeline":
        """Build a pipeline from configured backends.

        The optional local model is shared by character repair, prompt
        analysis, concept decomposition and prompt rewriting.
        """
        settings_provider = (lambda: settings) if settings is not None else get_default_settings
        settings = settings or settings_provider()
        credentials = credentials or EnvironmentCredentialStore()
        config = config or get_default_config()
        policy = DefaultContentSafetyPolicy()

        text_backend = create_text_backend(settings, credentials)
        local_model = create_local_model_backend(settings)

        story_generator = StoryGenerator(
            text_backend,
            validator=CharacterDescriptionValidator(repair_model=local_model, config=config),
            policy=policy,
            config=config,
        )
        router = ImageGenerationRouter(settings_provider=settings_provider, credentials=credentials)
        orchestrator = IllustrationOrchestrator(
            router,
            policy=policy,
            config=config,
            rewriter=PromptRewriter(local_model, config) if local_model is not None else None,
        )
        return cls(
            story_generator,
            orchestrator,
            analysis_engine=PromptAnalysisEngine(local_model, config),
            decomposer=ConceptDecomposer(local_model, config),
        )

    async def run(
        self,
        concept: str,
        page_count: int,
        style: IllustrationStyle = IllustrationStyle.ILLUSTRATION,
        book_format: BookFormat = BookFormat.STANDARD,
        progress_callback: Optional[ProgressCallback] = None,
        reference_image: Optional[bytes] = None,
    ) -> PipelineResult:
        """Generate a complete illustrated book.

        Story decoding failures abort the run. Illustration failures never do;
        they come back as ``missing`` indices with their last error message.
        """
        story = await self.story_generator.generate_story(concept, page_count)
        raw_book = story.book

        analyses = await self.analysis_engine.analyze_pages(raw_book.pages)
        book = enrich(raw_book, analyses, self.orchestrator.config.enrichment_window_chars)

        concepts: Dict[int, ConceptDecomposition] = {}
        for page in book.pages:
            concepts[page.page_number] = await self.decomposer.decompose(
                page.image_prompt, analyses.get(page.page_number)
            )

        run = await self.orchestrator.generate_illustrations(
            book,
            concept,
            style=style,
            book_format=book_format,
            analyses=analyses,
            concepts=concepts,
            reference_image=reference_image,
            progress_callback=progress_callback,
        )
        logger.info(
            f"Storybook '{book.title}' finished with {len(run.images)} images, "
            f"{len(run.missing_indices)} missing, {run.fallback_count} from the local fallback"
        )
        return PipelineResult(
            book=book,
            images=run.images,
            missing=dict(run.failures),
            concepts=concepts,
            repaired_by_model=story.repaired_by_model,
        )
