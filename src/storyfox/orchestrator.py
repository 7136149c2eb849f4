"""Bounded-concurrency illustration of a whole book.

Every job (the cover plus one per page) runs as its own task; a semaphore
caps how many of them may be talking to an image backend at once. Each job
walks its variant chain. Jobs still failed after the parallel phase are
retried one at a time, in index order, in a single recovery pass.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from storyfox.context import GenerationConfig
from storyfox.enrichment import parse_character_descriptions, with_character_prefix
from storyfox.error_handling import ErrorAnalyzer, NoImageProducedError, user_facing_message
from storyfox.models import (
    BookFormat,
    ConceptDecomposition,
    GenerationOutcome,
    IllustrationJob,
    IllustrationStyle,
    JobState,
    PromptAnalysis,
    StoryBook,
)
from storyfox.router import ImageGenerationRouter
from storyfox.safety import ContentSafetyPolicy, DefaultContentSafetyPolicy
from storyfox.variants import PromptRewriter, VariantChain, VariantKind

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], Union[None, Awaitable[None]]]

COVER_INDEX = 0


@dataclass
class IllustrationRunResult:
    """Images produced for a book, plus the indices still missing."""
    images: Dict[int, GenerationOutcome] = field(default_factory=dict)
    failures: Dict[int, str] = field(default_factory=dict)
    jobs: Dict[int, IllustrationJob] = field(default_factory=dict)
    duration: float = 0.0

    @property
    def missing_indices(self) -> List[int]:
        return sorted(self.failures)

    @property
    def fallback_count(self) -> int:
        return sum(1 for outcome in self.images.values() if outcome.did_fallback)


@dataclass
class _JobInputs:
    analysis: Optional[PromptAnalysis] = None
    concepts: Optional[Sequence[str]] = None


class IllustrationOrchestrator:
    """Owns the jobs of a run and is the only code that settles them."""

    def __init__(
        self,
        router: ImageGenerationRouter,
        policy: Optional[ContentSafetyPolicy] = None,
        config: Optional[GenerationConfig] = None,
        rewriter: Optional[PromptRewriter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.router = router
        self.policy = policy or DefaultContentSafetyPolicy()
        self.config = config or GenerationConfig()
        self.rewriter = rewriter
        self._sleep = sleep

    def build_jobs(
        self,
        book: StoryBook,
        concept: str,
        style: IllustrationStyle = IllustrationStyle.ILLUSTRATION,
    ) -> Dict[int, IllustrationJob]:
        """One job for the cover (index 0) and one per page."""
        characters = parse_character_descriptions(book.character_descriptions)
        cover_prompt = with_character_prefix(self.policy.safe_cover_prompt(book.title, concept), characters)
        jobs = {COVER_INDEX: IllustrationJob(index=COVER_INDEX, prompt=cover_prompt, style=style)}
        for page in book.pages:
            jobs[page.page_number] = IllustrationJob(index=page.page_number, prompt=page.image_prompt, style=style)
        return jobs

    async def generate_illustrations(
        self,
        book: StoryBook,
        concept: str,
        style: IllustrationStyle = IllustrationStyle.ILLUSTRATION,
        book_format: BookFormat = BookFormat.STANDARD,
        analyses: Optional[Mapping[int, PromptAnalysis]] = None,
        concepts: Optional[Mapping[int, ConceptDecomposition]] = None,
        reference_image: Optional[bytes] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> IllustrationRunResult:
        """Illustrate ``book``; failed indices are reported, never dropped."""
        start_time = time.time()
        jobs = self.build_jobs(book, concept, style)
        inputs = {
            index: _JobInputs(
                analysis=(analyses or {}).get(index),
                concepts=(concepts or {})[index].values() if concepts and index in concepts else None,
            )
            for index in jobs
        }
        result = IllustrationRunResult(jobs=jobs)
        semaphore = asyncio.Semaphore(self.config.max_concurrent_images)

        logger.info(
            f"Illustrating {len(jobs)} images with up to {self.config.max_concurrent_images} in flight"
        )

        await self._parallel_phase(jobs, inputs, result, semaphore, book_format, reference_image, progress_callback)
        await self._recovery_pass(jobs, inputs, result, semaphore, book_format, reference_image)

        result.duration = time.time() - start_time
        if result.missing_indices:
            logger.warning(f"Illustrations missing for indices {result.missing_indices}")
        else:
            logger.info(f"All {len(jobs)} illustrations generated in {result.duration:.1f}s")
        return result

    async def regenerate(
        self,
        index: int,
        prompt: str,
        style: IllustrationStyle = IllustrationStyle.ILLUSTRATION,
        book_format: BookFormat = BookFormat.STANDARD,
        analysis: Optional[PromptAnalysis] = None,
        concepts: Optional[ConceptDecomposition] = None,
        reference_image: Optional[bytes] = None,
    ) -> GenerationOutcome:
        """Manual retry of one missing index; raises the last error if every variant fails."""
        job = IllustrationJob(index=index, prompt=prompt, style=style)
        job.transition(JobState.IN_FLIGHT)
        inputs = _JobInputs(analysis=analysis, concepts=concepts.values() if concepts else None)
        try:
            outcome = await self._run_variant_chain(job, inputs, book_format, reference_image)
        except Exception:
            job.transition(JobState.FAILED)
            raise
        job.transition(JobState.SUCCEEDED)
        return outcome

    async def _parallel_phase(
        self,
        jobs: Dict[int, IllustrationJob],
        inputs: Dict[int, _JobInputs],
        result: IllustrationRunResult,
        semaphore: asyncio.Semaphore,
        book_format: BookFormat,
        reference_image: Optional[bytes],
        progress_callback: Optional[ProgressCallback],
    ) -> None:
        total = len(jobs)
        completed = 0
        tasks = {
            asyncio.create_task(
                self._run_job(job, inputs[index], semaphore, book_format, reference_image)
            ): index
            for index, job in jobs.items()
        }
        pending = set(tasks)
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    outcome, error = task.result()
                    self._settle(jobs[tasks[task]], outcome, error, result)
                    completed += 1
                    await self._notify(progress_callback, completed, total)
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def _recovery_pass(
        self,
        jobs: Dict[int, IllustrationJob],
        inputs: Dict[int, _JobInputs],
        result: IllustrationRunResult,
        semaphore: asyncio.Semaphore,
        book_format: BookFormat,
        reference_image: Optional[bytes],
    ) -> None:
        failed = sorted(index for index, job in jobs.items() if job.state is JobState.FAILED)
        if not failed:
            return

        logger.info(f"Recovery pass for {len(failed)} failed illustrations: {failed}")
        start_at = self._recovery_start()
        for position, index in enumerate(failed):
            if position > 0 and self.config.recovery_delay_seconds:
                await self._sleep(self.config.recovery_delay_seconds)
            outcome, error = await self._run_job(
                jobs[index], inputs[index], semaphore, book_format, reference_image, start_at=start_at
            )
            self._settle(jobs[index], outcome, error, result)

    def _recovery_start(self) -> Optional[VariantKind]:
        try:
            return VariantKind(self.config.recovery_start_variant)
        except ValueError:
            return None

    async def _run_job(
        self,
        job: IllustrationJob,
        inputs: _JobInputs,
        semaphore: asyncio.Semaphore,
        book_format: BookFormat,
        reference_image: Optional[bytes],
        start_at: Optional[VariantKind] = None,
    ) -> Tuple[Optional[GenerationOutcome], Optional[Exception]]:
        """Run one job under the semaphore; only fatal errors and cancellation escape."""
        async with semaphore:
            job.transition(JobState.IN_FLIGHT)
            try:
                outcome = await self._run_variant_chain(job, inputs, book_format, reference_image, start_at)
            except Exception as e:
                if ErrorAnalyzer.is_fatal(e):
                    raise
                return None, e
            return outcome, None

    def _settle(
        self,
        job: IllustrationJob,
        outcome: Optional[GenerationOutcome],
        error: Optional[Exception],
        result: IllustrationRunResult,
    ) -> None:
        if outcome is not None:
            job.transition(JobState.SUCCEEDED)
            job.last_error = None
            result.images[job.index] = outcome
            result.failures.pop(job.index, None)
            return

        job.transition(JobState.FAILED)
        message = user_facing_message(error) if error is not None else "Illustration failed."
        job.last_error = message
        result.failures[job.index] = message
        logger.warning(f"Illustration {job.index} failed: {error}")

    async def _run_variant_chain(
        self,
        job: IllustrationJob,
        inputs: _JobInputs,
        book_format: BookFormat,
        reference_image: Optional[bytes],
        start_at: Optional[VariantKind] = None,
    ) -> GenerationOutcome:
        chain = VariantChain(
            job.prompt,
            self.policy,
            analysis=inputs.analysis,
            softened_max_words=self.config.softened_max_words,
            start_at=start_at,
        )
        attempts = self.config.variant_attempts
        last_error: Optional[Exception] = None

        while not chain.exhausted:
            variant = chain.current
            for attempt in range(1, attempts + 1):
                try:
                    outcome = await self.router.generate(
                        variant.text,
                        job.style,
                        book_format,
                        reference_image=reference_image,
                        concepts=inputs.concepts,
                    )
                except Exception as e:
                    if ErrorAnalyzer.is_fatal(e):
                        raise
                    last_error = e
                    logger.debug(f"Job {job.index} {variant.kind.value} attempt {attempt}/{attempts} failed: {e}")
                    if attempt == attempts or not ErrorAnalyzer.should_retry_same_variant(e):
                        break
                    await self._sleep(ErrorAnalyzer.retry_delay(e, self.config.retry_delay_seconds))
                    continue
                if variant.kind is not VariantKind.SAFE:
                    logger.info(f"Job {job.index} succeeded with {variant.kind.value} variant")
                return outcome

            logger.info(f"Job {job.index}: {variant.kind.value} variant exhausted")
            if variant.kind is VariantKind.SAFE and self.rewriter is not None:
                paraphrase = await self.rewriter.rewrite(job.prompt)
                if paraphrase:
                    chain.insert_next(VariantKind.PARAPHRASE, paraphrase)
            chain.advance()

        raise last_error or NoImageProducedError(f"No prompt variants left for illustration {job.index}")

    @staticmethod
    async def _notify(callback: Optional[ProgressCallback], completed: int, total: int) -> None:
        if callback is None:
            return
        outcome = callback(completed, total)
        if inspect.isawaitable(outcome):
            await outcome
