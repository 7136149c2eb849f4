"""Dispatches an image request to the configured backend, with optional local fallback."""

import logging
from typing import Callable, Dict, Optional, Sequence

from storyfox.context import CredentialStore, EnvironmentCredentialStore, GenerationSettings, get_default_settings
from storyfox.error_handling import BackendError, NoCredentialError
from storyfox.models import BookFormat, GenerationOutcome, IllustrationStyle, ImageProviderKind
from storyfox.providers import ImageGenerationBackend, ProviderFactory

logger = logging.getLogger(__name__)

BackendFactory = Callable[[ImageProviderKind, GenerationSettings], ImageGenerationBackend]


class ImageGenerationRouter:
    """Stateless across calls: settings are read and backends resolved per request."""

    def __init__(
        self,
        settings_provider: Callable[[], GenerationSettings] = get_default_settings,
        credentials: Optional[CredentialStore] = None,
        backend_factory: Optional[BackendFactory] = None,
    ):
        self.settings_provider = settings_provider
        self.credentials = credentials or EnvironmentCredentialStore()
        self.backend_factory = backend_factory or self._create_backend

    @classmethod
    def with_backends(
        cls,
        backends: Dict[ImageProviderKind, ImageGenerationBackend],
        settings_provider: Callable[[], GenerationSettings],
    ) -> "ImageGenerationRouter":
        """Router over fixed backend instances; unknown kinds raise ``NoCredentialError``."""

        def factory(kind: ImageProviderKind, _settings: GenerationSettings) -> ImageGenerationBackend:
            if kind not in backends:
                raise NoCredentialError(kind.value)
            return backends[kind]

        return cls(settings_provider=settings_provider, backend_factory=factory)

    def _create_backend(self, kind: ImageProviderKind, settings: GenerationSettings) -> ImageGenerationBackend:
        return ProviderFactory.create_image_backend(kind, settings, self.credentials)

    async def generate(
        self,
        prompt: str,
        style: IllustrationStyle,
        book_format: BookFormat,
        reference_image: Optional[bytes] = None,
        concepts: Optional[Sequence[str]] = None,
    ) -> GenerationOutcome:
        settings = self.settings_provider()
        kind = settings.image_provider
        dimensions = book_format.generation_size

        try:
            backend = self.backend_factory(kind, settings)
            image = await backend.generate_image(prompt, style, dimensions, reference_image, concepts)
            return GenerationOutcome(image=image, backend_used=kind, did_fallback=False)
        except (BackendError, NoCredentialError) as e:
            if not kind.is_cloud or not settings.enable_image_fallback:
                raise
            logger.warning(f"Image generation failed on {kind.value} ({e}); falling back to local backend")

        local_kind = ImageProviderKind.LOCAL_DIFFUSERS
        local_backend = self.backend_factory(local_kind, settings)
        image = await local_backend.generate_image(prompt, style, dimensions, reference_image, concepts)
        return GenerationOutcome(image=image, backend_used=local_kind, did_fallback=True)
