"""Unit tests for the illustration orchestrator."""

import asyncio
from unittest.mock import AsyncMock, call

import pytest

from storyfox.context import GenerationConfig, GenerationSettings
from storyfox.error_handling import (
    BackendHTTPError,
    BackendTimeoutError,
    NoCredentialError,
    RateLimitedError,
)
from storyfox.models import (
    ConceptDecomposition,
    ConceptLabel,
    ImageProviderKind,
    JobState,
    RankedConcept,
)
from storyfox.orchestrator import IllustrationOrchestrator
from storyfox.providers import ImageGenerationBackend
from storyfox.router import ImageGenerationRouter
from storyfox.variants import VariantKind


class FakeImageBackend(ImageGenerationBackend):
    """Records calls and fails whenever ``reject`` returns an error."""

    kind = ImageProviderKind.LOCAL_DIFFUSERS

    def __init__(self, image, reject=None, delay=0.0):
        self.image = image
        self.reject = reject or (lambda prompt: None)
        self.delay = delay
        self.calls = []
        self.concepts = []
        self.in_flight = 0
        self.peak = 0

    async def generate_image(self, prompt, style, dimensions, reference_image=None, concepts=None):
        self.calls.append(prompt)
        self.concepts.append(concepts)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay(prompt) if callable(self.delay) else self.delay)
            error = self.reject(prompt)
            if error is not None:
                raise error
            return self.image
        finally:
            self.in_flight -= 1


def _orchestrator(backend, sleep=None, rewriter=None, **config):
    settings = GenerationSettings(image_provider=ImageProviderKind.LOCAL_DIFFUSERS)
    router = ImageGenerationRouter.with_backends({ImageProviderKind.LOCAL_DIFFUSERS: backend}, lambda: settings)
    defaults = {"variant_attempts": 1, "retry_delay_seconds": 0.0, "recovery_delay_seconds": 0.0}
    defaults.update(config)
    return IllustrationOrchestrator(
        router,
        config=GenerationConfig(**defaults),
        rewriter=rewriter,
        sleep=sleep or AsyncMock(),
    )


def _content_policy(prompt):
    return BackendHTTPError(400, "content policy violation")


class TestBuildJobs:
    """Test job creation."""

    def test_cover_and_pages(self, png_bytes, sample_book):
        """Test one cover job plus one job per page."""
        jobs = _orchestrator(FakeImageBackend(png_bytes)).build_jobs(sample_book, "a fox and a lantern")
        assert sorted(jobs) == [0, 1, 2, 3]
        assert all(job.state is JobState.QUEUED for job in jobs.values())
        assert jobs[0].is_cover
        assert jobs[0].prompt.startswith(
            "Featuring Luna (a small orange fox with a green scarf). "
            "Children's book cover illustration for \"Luna's Lantern\""
        )
        assert jobs[2].prompt == sample_book.pages[1].image_prompt


class TestParallelPhase:
    """Test bounded-concurrency generation."""

    @pytest.mark.asyncio
    async def test_all_images_generated(self, png_bytes, sample_book):
        """Test every index gets an image and progress reaches the total."""
        backend = FakeImageBackend(png_bytes)
        progress = []

        result = await _orchestrator(backend).generate_illustrations(
            sample_book, "a fox", progress_callback=lambda done, total: progress.append((done, total))
        )

        assert sorted(result.images) == [0, 1, 2, 3]
        assert result.missing_indices == []
        assert progress == [(1, 4), (2, 4), (3, 4), (4, 4)]
        assert all(outcome.backend_used is ImageProviderKind.LOCAL_DIFFUSERS for outcome in result.images.values())
        assert all(job.state is JobState.SUCCEEDED for job in result.jobs.values())

    @pytest.mark.asyncio
    async def test_async_progress_callback(self, png_bytes, sample_book):
        """Test coroutine progress callbacks are awaited."""
        seen = []

        async def on_progress(done, total):
            seen.append(done)

        await _orchestrator(FakeImageBackend(png_bytes)).generate_illustrations(
            sample_book, "a fox", progress_callback=on_progress
        )
        assert seen == [1, 2, 3, 4]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("capacity", [1, 2, 3])
    async def test_concurrency_never_exceeds_capacity(self, png_bytes, sample_book, capacity):
        """Test at most K backend calls are in flight at once."""
        pages = [
            sample_book.pages[0].model_copy(update={"page_number": n, "image_prompt": f"Scene number {n}"})
            for n in range(1, 9)
        ]
        book = sample_book.with_pages(pages)
        backend = FakeImageBackend(png_bytes, delay=0.01)

        result = await _orchestrator(backend, max_concurrent_images=capacity).generate_illustrations(book, "a fox")

        assert len(result.images) == 9
        assert backend.peak == capacity

    @pytest.mark.asyncio
    async def test_progress_follows_completion_order(self, png_bytes, sample_book):
        """Test a slow early page does not hold back progress for later ones."""
        finished = []
        backend = FakeImageBackend(png_bytes, delay=lambda prompt: 0.05 if "forest" in prompt else 0.0)

        def on_progress(done, total):
            finished.append(len(backend.calls))

        result = await _orchestrator(backend, max_concurrent_images=4).generate_illustrations(
            sample_book, "a fox", progress_callback=on_progress
        )
        assert len(finished) == 4
        assert result.missing_indices == []

    @pytest.mark.asyncio
    async def test_concepts_and_reference_image_forwarded(self, png_bytes, sample_book):
        """Test per-page concepts reach the backend."""
        backend = FakeImageBackend(png_bytes)
        concepts = {1: ConceptDecomposition(concepts=[RankedConcept(label=ConceptLabel.CHARACTER, value="orange fox")])}

        await _orchestrator(backend, max_concurrent_images=1).generate_illustrations(
            sample_book, "a fox", concepts=concepts
        )
        assert ["orange fox"] in backend.concepts
        assert backend.concepts.count(None) == 3


class TestVariantChain:
    """Test the per-job retry and variant chain."""

    @pytest.mark.asyncio
    async def test_rejections_retried_then_advance(self, png_bytes):
        """Test guardrail rejections use every attempt before the next variant."""
        backend = FakeImageBackend(
            png_bytes, reject=lambda p: _content_policy(p) if "dragon" in p.lower() else None
        )
        sleep = AsyncMock()
        orchestrator = _orchestrator(backend, sleep=sleep, variant_attempts=3, retry_delay_seconds=0.45)

        outcome = await orchestrator.regenerate(1, "A dragon dances")

        assert outcome.image == png_bytes
        assert len(backend.calls) == 7
        assert len(set(backend.calls[:3])) == 1
        assert backend.calls[3].startswith("A gentle, friendly children's book scene")
        assert "friendly animal friends" in backend.calls[-1]
        assert sleep.await_count == 4

    @pytest.mark.asyncio
    async def test_auth_errors_advance_immediately(self, png_bytes):
        """Test errors no retry can fix move straight to the next variant."""
        backend = FakeImageBackend(png_bytes, reject=lambda p: BackendHTTPError(401, "unauthorized"))

        with pytest.raises(BackendHTTPError):
            await _orchestrator(backend, variant_attempts=3).regenerate(1, "Luna reads")

        assert len(backend.calls) == 3

    @pytest.mark.asyncio
    async def test_transient_errors_retry_same_variant(self, png_bytes):
        """Test timeouts are retried on the same prompt with a delay."""
        failures = [BackendTimeoutError("slow"), BackendTimeoutError("slow")]
        backend = FakeImageBackend(png_bytes, reject=lambda p: failures.pop(0) if failures else None)
        sleep = AsyncMock()
        orchestrator = _orchestrator(backend, sleep=sleep, variant_attempts=3, retry_delay_seconds=0.45)

        await orchestrator.regenerate(1, "Luna reads a book")

        assert len(set(backend.calls)) == 1
        assert len(backend.calls) == 3
        assert sleep.await_args_list == [call(0.45), call(0.45)]

    @pytest.mark.asyncio
    async def test_retry_after_is_honoured(self, png_bytes):
        """Test a rate limit hint sets the retry delay."""
        failures = [RateLimitedError(retry_after=2)]
        backend = FakeImageBackend(png_bytes, reject=lambda p: failures.pop(0) if failures else None)
        sleep = AsyncMock()

        await _orchestrator(backend, sleep=sleep, variant_attempts=2).regenerate(1, "Luna reads")

        sleep.assert_awaited_once_with(2.0)

    @pytest.mark.asyncio
    async def test_paraphrase_inserted_after_safe_variant(self, png_bytes):
        """Test a model paraphrase is tried right after the safe variant."""
        backend = FakeImageBackend(
            png_bytes, reject=lambda p: _content_policy(p) if "dragon" in p.lower() else None
        )
        rewriter = AsyncMock()
        rewriter.rewrite.return_value = "A kind lizard dances"

        await _orchestrator(backend, rewriter=rewriter).regenerate(1, "A dragon dances")

        rewriter.rewrite.assert_awaited_once_with("A dragon dances")
        assert len(backend.calls) == 2
        assert backend.calls[1].startswith("A kind lizard dances")

    @pytest.mark.asyncio
    async def test_last_error_reported(self, png_bytes):
        """Test the most recent concrete error is raised when every variant fails."""
        errors = iter([
            BackendHTTPError(400, "content policy one"),
            BackendHTTPError(400, "content policy two"),
            BackendHTTPError(400, "content policy three"),
        ])
        backend = FakeImageBackend(png_bytes, reject=lambda p: next(errors))

        with pytest.raises(BackendHTTPError, match="three"):
            await _orchestrator(backend).regenerate(1, "Luna reads")


class TestRecoveryPass:
    """Test the sequential recovery of failed jobs."""

    @pytest.mark.asyncio
    async def test_failed_jobs_recovered_in_index_order(self, png_bytes, sample_book):
        """Test recovery retries failed jobs one at a time, lowest index first."""
        state = {"healed": False}
        backend = FakeImageBackend(
            png_bytes,
            reject=lambda p: None if state["healed"] else _content_policy(p),
            delay=0.01,
        )

        def on_progress(done, total):
            if done == total:
                state["healed"] = True
                backend.calls.clear()
                backend.peak = 0

        result = await _orchestrator(backend, max_concurrent_images=3).generate_illustrations(
            sample_book, "a fox", progress_callback=on_progress
        )

        assert sorted(result.images) == [0, 1, 2, 3]
        assert result.missing_indices == []
        assert backend.peak == 1
        assert "cover illustration" in backend.calls[0]
        assert "forest" in backend.calls[1]
        assert "lantern" in backend.calls[2]
        assert "village" in backend.calls[3]
        assert all(job.recovery_attempted for job in result.jobs.values())

    @pytest.mark.asyncio
    async def test_recovery_starts_at_softened_variant(self, png_bytes, sample_book):
        """Test recovery skips the safe variant that already failed."""
        state = {"healed": False}
        backend = FakeImageBackend(png_bytes, reject=lambda p: None if state["healed"] else _content_policy(p))

        def on_progress(done, total):
            if done == total:
                state["healed"] = True
                backend.calls.clear()

        await _orchestrator(backend, max_concurrent_images=1).generate_illustrations(
            sample_book, "a fox", progress_callback=on_progress
        )
        assert all(prompt.startswith("A gentle, friendly children's book scene") for prompt in backend.calls)

    @pytest.mark.asyncio
    async def test_recovery_never_touches_succeeded_jobs(self, png_bytes, sample_book):
        """Test only jobs that failed in the parallel phase are retried."""
        backend = FakeImageBackend(
            png_bytes,
            reject=lambda p: _content_policy(p) if "river" in p.lower() or "sunny meadow" in p else None,
        )
        sleep = AsyncMock()

        result = await _orchestrator(backend, sleep=sleep, recovery_delay_seconds=0.35).generate_illustrations(
            sample_book, "a fox"
        )

        assert result.missing_indices == [2]
        assert result.jobs[2].state is JobState.FAILED
        assert result.jobs[2].recovery_attempted
        assert result.jobs[1].state is JobState.SUCCEEDED
        assert not result.jobs[1].recovery_attempted
        assert sum("forest" in prompt for prompt in backend.calls) == 1
        assert result.failures[2] == "The image service declined this prompt. Try editing the page text."
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_everything_failing_reports_every_index(self, png_bytes, sample_book):
        """Test no page is silently dropped."""
        backend = FakeImageBackend(png_bytes, reject=_content_policy)

        result = await _orchestrator(backend).generate_illustrations(sample_book, "a fox")

        assert result.images == {}
        assert result.missing_indices == [0, 1, 2, 3]
        assert all(job.state is JobState.FAILED for job in result.jobs.values())

    @pytest.mark.asyncio
    async def test_recovery_delay_between_jobs(self, png_bytes, sample_book):
        """Test the recovery pass pauses between consecutive jobs."""
        backend = FakeImageBackend(png_bytes, reject=_content_policy)
        sleep = AsyncMock()

        await _orchestrator(backend, sleep=sleep, recovery_delay_seconds=0.35).generate_illustrations(
            sample_book, "a fox"
        )

        assert sleep.await_args_list == [call(0.35)] * 3

    @pytest.mark.asyncio
    async def test_recovery_start_is_configurable(self, png_bytes):
        """Test an unknown start variant falls back to the full chain."""
        orchestrator = _orchestrator(FakeImageBackend(png_bytes), recovery_start_variant="fallback")
        assert orchestrator._recovery_start() is VariantKind.FALLBACK
        orchestrator = _orchestrator(FakeImageBackend(png_bytes), recovery_start_variant="bogus")
        assert orchestrator._recovery_start() is None


class TestFatalAndCancellation:
    """Test errors that end the run."""

    @pytest.mark.asyncio
    async def test_missing_credentials_propagate(self, sample_book):
        """Test a credential error aborts the run instead of being retried."""
        settings = GenerationSettings(image_provider=ImageProviderKind.LOCAL_DIFFUSERS)
        router = ImageGenerationRouter.with_backends({}, lambda: settings)
        orchestrator = IllustrationOrchestrator(router, sleep=AsyncMock())

        with pytest.raises(NoCredentialError):
            await orchestrator.generate_illustrations(sample_book, "a fox")

    @pytest.mark.asyncio
    async def test_cancellation_propagates_without_retries(self, png_bytes, sample_book):
        """Test cancelling the run stops every job immediately."""
        backend = FakeImageBackend(png_bytes, delay=10)
        orchestrator = _orchestrator(backend, max_concurrent_images=2)

        task = asyncio.create_task(orchestrator.generate_illustrations(sample_book, "a fox"))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        calls_at_cancel = len(backend.calls)
        await asyncio.sleep(0.05)
        assert calls_at_cancel == 2
        assert len(backend.calls) == calls_at_cancel
        assert backend.in_flight == 0
