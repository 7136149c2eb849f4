"""Runtime configuration for the storybook pipeline."""

import logging
import os
from typing import Dict, Optional, Protocol

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from storyfox.models import ImageProviderKind, TextProviderKind

logger = logging.getLogger(__name__)


class GenerationConfig(BaseModel):
    """Tuned constants for generation, validation and illustration."""

    # Illustration orchestration
    max_concurrent_images: int = Field(default=3, ge=1, description="Jobs allowed to call a backend at once")
    variant_attempts: int = Field(default=3, ge=1, description="Attempts per prompt variant")
    retry_delay_seconds: float = Field(default=0.45, ge=0, description="Pause between attempts of one variant")
    recovery_delay_seconds: float = Field(default=0.35, ge=0, description="Pause between recovery jobs")
    rewrite_attempts: int = Field(default=1, ge=0, description="Model paraphrase attempts for a rejected prompt")
    softened_max_words: int = Field(default=18, ge=1)
    recovery_start_variant: str = Field(default="softened", description="First variant tried during recovery")

    # Enrichment and analysis
    enrichment_window_chars: int = Field(default=30, ge=0, description="Species proximity window around a name")
    analysis_window_words: int = Field(default=4, ge=0, description="Adjective window around a species word")
    scene_max_words: int = Field(default=6, ge=1)

    # Character validation
    adequacy_dash_min_words: int = Field(default=4, ge=1)
    adequacy_min_words: int = Field(default=5, ge=1)
    max_extracted_characters: int = Field(default=4, ge=1)
    max_character_details: int = Field(default=5, ge=1)
    character_detail_early_stop: int = Field(default=3, ge=1)
    repair_prompt_pages: int = Field(default=8, ge=1)
    repair_max_tokens: int = Field(default=300, ge=1)
    repair_temperature: float = Field(default=0.2, ge=0)

    # Text passes
    story_max_tokens: int = Field(default=2400, ge=1)
    story_temperature: float = Field(default=0.8, ge=0)
    prompt_sheet_max_tokens: int = Field(default=1800, ge=1)
    prompt_sheet_temperature: float = Field(default=0.6, ge=0)
    analysis_max_tokens: int = Field(default=400, ge=1)
    analysis_temperature: float = Field(default=0.1, ge=0)


class GenerationSettings(BaseModel):
    """Backend selection; read fresh on every routed call."""

    text_provider: TextProviderKind = Field(default=TextProviderKind.OPENROUTER)
    image_provider: ImageProviderKind = Field(default=ImageProviderKind.OPENROUTER)
    text_models: Dict[TextProviderKind, str] = Field(
        default_factory=lambda: {
            TextProviderKind.LOCAL: "ollama:llama3.2",
            TextProviderKind.OPENROUTER: "meta-llama/llama-3.3-70b-instruct",
            TextProviderKind.TOGETHER: "meta-llama/Llama-3.3-70B-Instruct-Turbo",
            TextProviderKind.HUGGINGFACE: "meta-llama/Llama-3.1-8B-Instruct",
            TextProviderKind.OPENAI: "gpt-4o-mini",
        }
    )
    image_models: Dict[ImageProviderKind, str] = Field(
        default_factory=lambda: {
            ImageProviderKind.LOCAL_DIFFUSERS: "stabilityai/sdxl-turbo",
            ImageProviderKind.OPENROUTER: "google/gemini-2.5-flash-image",
            ImageProviderKind.TOGETHER: "black-forest-labs/FLUX.1-schnell",
            ImageProviderKind.HUGGINGFACE: "black-forest-labs/FLUX.1-schnell",
            ImageProviderKind.OPENAI: "gpt-image-1",
        }
    )
    enable_image_fallback: bool = Field(default=True, description="Retry on the local backend when a cloud call fails")
    local_image_url: str = Field(default="http://127.0.0.1:7860", description="Local diffusion server")
    analysis_model: Optional[str] = Field(default=None, description="Local chat model for analysis and repair")
    request_timeout_seconds: float = Field(default=120.0, gt=0)

    model_config = {"extra": "allow"}

    def text_model(self) -> str:
        return self.text_models.get(self.text_provider, "")

    def image_model(self, kind: Optional[ImageProviderKind] = None) -> str:
        return self.image_models.get(kind or self.image_provider, "")


class CredentialStore(Protocol):
    """Read-only source of backend secrets."""

    def api_key(self, provider: str) -> Optional[str]:
        ...


class EnvironmentCredentialStore:
    """Reads API keys from the environment (and a .env file when present)."""

    ENV_KEYS = {
        "openrouter": "OPENROUTER_API_KEY",
        "together": "TOGETHER_API_KEY",
        "huggingface": "HUGGINGFACE_API_KEY",
        "openai": "OPENAI_API_KEY",
    }

    def __init__(self, load_env_file: bool = True):
        if load_env_file:
            load_dotenv()

    def api_key(self, provider: str) -> Optional[str]:
        env_name = self.ENV_KEYS.get(str(provider).lower())
        if not env_name:
            return None
        value = os.getenv(env_name, "").strip()
        return value or None


def get_default_settings() -> GenerationSettings:
    """Build settings from STORYFOX_* environment variables."""
    load_dotenv()
    settings = GenerationSettings()

    text_provider = os.getenv("STORYFOX_TEXT_PROVIDER")
    if text_provider:
        settings.text_provider = TextProviderKind(text_provider.lower())

    image_provider = os.getenv("STORYFOX_IMAGE_PROVIDER")
    if image_provider:
        settings.image_provider = ImageProviderKind(image_provider.lower())

    fallback = os.getenv("STORYFOX_IMAGE_FALLBACK")
    if fallback is not None:
        settings.enable_image_fallback = fallback.strip().lower() in {"1", "true", "yes", "on"}

    local_url = os.getenv("STORYFOX_LOCAL_IMAGE_URL")
    if local_url:
        settings.local_image_url = local_url.rstrip("/")

    analysis_model = os.getenv("STORYFOX_ANALYSIS_MODEL")
    if analysis_model:
        settings.analysis_model = analysis_model

    return settings


def get_default_config() -> GenerationConfig:
    """Build the generation config, honouring STORYFOX_MAX_CONCURRENT_IMAGES."""
    config = GenerationConfig()
    concurrency = os.getenv("STORYFOX_MAX_CONCURRENT_IMAGES")
    if concurrency:
        try:
            config.max_concurrent_images = max(1, int(concurrency))
        except ValueError:
            logger.warning(f"Ignoring invalid STORYFOX_MAX_CONCURRENT_IMAGES={concurrency!r}")
    return config
