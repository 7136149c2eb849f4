"""Image generation backends for OpenAI-compatible hosts, HuggingFace and a local diffusion server."""

import asyncio
import base64
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

import aiohttp

from storyfox.context import CredentialStore, GenerationSettings
from storyfox.error_handling import (
    BackendHTTPError,
    BackendTimeoutError,
    GeneratorUnavailableError,
    NoCredentialError,
    NoImageProducedError,
    RateLimitedError,
)
from storyfox.models import IllustrationStyle, ImageProviderKind
from storyfox.utils import load_image


logger = logging.getLogger(__name__)


OPENAI_COMPATIBLE_BASE_URLS: Dict[str, str] = {
    "openrouter": "https://openrouter.ai/api/v1",
    "together": "https://api.together.xyz/v1",
    "openai": "https://api.openai.com/v1",
}

HUGGINGFACE_INFERENCE_URL = "https://router.huggingface.co/hf-inference/models"


def _parse_retry_after(headers: Mapping[str, str]) -> Optional[float]:
    value = headers.get("Retry-After") if headers else None
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def raise_for_backend_status(status: int, body: str, headers: Optional[Mapping[str, str]] = None) -> None:
    """Translate a non-2xx HTTP response into the backend error taxonomy."""
    if 200 <= status < 300:
        return
    message = (body or "").strip()[:500]
    if status == 429:
        raise RateLimitedError(retry_after=_parse_retry_after(headers or {}), message=message or "rate limited")
    if status in (502, 503) and not message:
        raise GeneratorUnavailableError(f"Backend unavailable (HTTP {status})")
    raise BackendHTTPError(status, message)


def decode_image_payload(payload: bytes) -> bytes:
    """Ensure ``payload`` is a decodable image and return it unchanged."""
    if not payload:
        raise NoImageProducedError("The backend returned an empty image")
    try:
        load_image(payload)
    except ValueError as e:
        raise NoImageProducedError(str(e)) from e
    return payload


def styled_prompt(prompt: str, style: IllustrationStyle) -> str:
    return f"{prompt.rstrip()} Style: {style.prompt_suffix}."


class ImageGenerationBackend(ABC):
    """Abstract base class for image generation backends."""

    kind: ImageProviderKind

    @abstractmethod
    async def generate_image(
        self,
        prompt: str,
        style: IllustrationStyle,
        dimensions: Tuple[int, int],
        reference_image: Optional[bytes] = None,
        concepts: Optional[Sequence[str]] = None,
    ) -> bytes:
        """Generate one image and return its encoded bytes."""
        pass


class _HTTPImageBackend(ImageGenerationBackend):
    """Shared aiohttp request handling."""

    def __init__(self, timeout_seconds: float = 120.0):
        self.timeout_seconds = timeout_seconds

    async def _request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bytes, str]:
        """Perform a request, returning (body, content type) for a 2xx answer."""
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(method, url, headers=headers, json=json_body) as response:
                    body = await response.read()
                    if response.status >= 300:
                        raise_for_backend_status(
                            response.status,
                            body.decode("utf-8", errors="replace"),
                            response.headers,
                        )
                    return body, response.headers.get("Content-Type", "")
        except asyncio.TimeoutError as e:
            raise BackendTimeoutError(f"{self.kind.value} did not respond within {self.timeout_seconds}s") from e
        except aiohttp.ClientResponseError as e:
            raise BackendHTTPError(e.status, e.message) from e
        except aiohttp.ClientPayloadError as e:
            raise NoImageProducedError(f"The {self.kind.value} response was cut short: {e}") from e
        except aiohttp.ClientConnectionError as e:
            raise GeneratorUnavailableError(f"Could not reach {self.kind.value}: {e}") from e
        except aiohttp.ClientError as e:
            raise GeneratorUnavailableError(f"Request to {self.kind.value} failed: {e}") from e

    async def _image_from_response(self, body: bytes) -> bytes:
        """Pull the first image out of an OpenAI-style JSON response."""
        try:
            data = json.loads(body)
        except ValueError as e:
            raise NoImageProducedError("The image response was not JSON") from e

        items = data.get("data") if isinstance(data, dict) else None
        if not items or not isinstance(items, list):
            raise NoImageProducedError("The image response contained no images")

        first = items[0]
        if not isinstance(first, dict):
            raise NoImageProducedError("The image response entry was not an object")
        encoded = first.get("b64_json") or first.get("base64")
        if encoded:
            try:
                image_bytes = base64.b64decode(encoded)
            except ValueError as e:
                raise NoImageProducedError("The image payload was not valid base64") from e
            return decode_image_payload(image_bytes)

        url = first.get("url")
        if url:
            image_bytes, _ = await self._request("GET", url)
            return decode_image_payload(image_bytes)

        raise NoImageProducedError("The image response had neither inline data nor a URL")


class OpenAICompatibleImageBackend(_HTTPImageBackend):
    """Images through an OpenAI-style ``/images/generations`` endpoint."""

    def __init__(
        self,
        kind: ImageProviderKind,
        api_key: str,
        model: str,
        base_url: Optional[str] = None,
        timeout_seconds: float = 120.0,
    ):
        super().__init__(timeout_seconds)
        self.kind = kind
        self.api_key = api_key
        self.model = model
        self.base_url = (base_url or OPENAI_COMPATIBLE_BASE_URLS[kind.value]).rstrip("/")

    def build_payload(self, prompt: str, style: IllustrationStyle, dimensions: Tuple[int, int]) -> Dict[str, Any]:
        width, height = dimensions
        payload: Dict[str, Any] = {
            "model": self.model,
            "prompt": styled_prompt(prompt, style),
            "n": 1,
            "size": f"{width}x{height}",
        }
        if self.kind is ImageProviderKind.TOGETHER:
            payload.update({"width": width, "height": height, "response_format": "base64"})
        elif self.kind is not ImageProviderKind.OPENAI:
            payload["response_format"] = "b64_json"
        return payload

    async def generate_image(
        self,
        prompt: str,
        style: IllustrationStyle,
        dimensions: Tuple[int, int],
        reference_image: Optional[bytes] = None,
        concepts: Optional[Sequence[str]] = None,
    ) -> bytes:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        body, _ = await self._request(
            "POST",
            f"{self.base_url}/images/generations",
            headers=headers,
            json_body=self.build_payload(prompt, style, dimensions),
        )
        return await self._image_from_response(body)


class HuggingFaceImageBackend(_HTTPImageBackend):
    """Text-to-image through the HuggingFace inference router."""

    kind = ImageProviderKind.HUGGINGFACE

    def __init__(self, api_key: str, model: str, timeout_seconds: float = 120.0):
        super().__init__(timeout_seconds)
        self.api_key = api_key
        self.model = model

    async def generate_image(
        self,
        prompt: str,
        style: IllustrationStyle,
        dimensions: Tuple[int, int],
        reference_image: Optional[bytes] = None,
        concepts: Optional[Sequence[str]] = None,
    ) -> bytes:
        width, height = dimensions
        body, content_type = await self._request(
            "POST",
            f"{HUGGINGFACE_INFERENCE_URL}/{self.model}",
            headers={"Authorization": f"Bearer {self.api_key}", "Accept": "image/png"},
            json_body={
                "inputs": styled_prompt(prompt, style),
                "parameters": {"width": width, "height": height},
            },
        )
        if content_type.startswith("application/json"):
            raise NoImageProducedError(body.decode("utf-8", errors="replace")[:300])
        return decode_image_payload(body)


class LocalDiffusersBackend(_HTTPImageBackend):
    """A diffusion server running on this machine; the fallback target.

    Unlike the cloud backends it accepts ranked concepts and a reference image.
    """

    kind = ImageProviderKind.LOCAL_DIFFUSERS

    def __init__(self, base_url: str = "http://127.0.0.1:7860", model: str = "", timeout_seconds: float = 300.0):
        super().__init__(timeout_seconds)
        self.base_url = base_url.rstrip("/")
        self.model = model

    def build_payload(
        self,
        prompt: str,
        style: IllustrationStyle,
        dimensions: Tuple[int, int],
        reference_image: Optional[bytes] = None,
        concepts: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        width, height = dimensions
        payload: Dict[str, Any] = {
            "prompt": prompt,
            "style": style.value,
            "style_prompt": style.prompt_suffix,
            "width": width,
            "height": height,
        }
        if self.model:
            payload["model"] = self.model
        if concepts:
            payload["concepts"] = list(concepts)
        if reference_image:
            payload["reference_image"] = base64.b64encode(reference_image).decode("ascii")
        return payload

    async def generate_image(
        self,
        prompt: str,
        style: IllustrationStyle,
        dimensions: Tuple[int, int],
        reference_image: Optional[bytes] = None,
        concepts: Optional[Sequence[str]] = None,
    ) -> bytes:
        body, content_type = await self._request(
            "POST",
            f"{self.base_url}/generate",
            json_body=self.build_payload(prompt, style, dimensions, reference_image, concepts),
        )
        if content_type.startswith("application/json"):
            return await self._image_from_response(body)
        return decode_image_payload(body)


class ProviderFactory:
    """Factory for creating image backends from settings."""

    @staticmethod
    def create_image_backend(
        kind: ImageProviderKind,
        settings: GenerationSettings,
        credentials: CredentialStore,
    ) -> ImageGenerationBackend:
        """Create the backend for ``kind``; cloud backends need an API key."""
        timeout = settings.request_timeout_seconds
        model = settings.image_model(kind)

        if kind is ImageProviderKind.LOCAL_DIFFUSERS:
            return LocalDiffusersBackend(settings.local_image_url, model=model)

        api_key = credentials.api_key(kind.value)
        if not api_key:
            raise NoCredentialError(kind.value)

        if kind is ImageProviderKind.HUGGINGFACE:
            return HuggingFaceImageBackend(api_key, model, timeout_seconds=timeout)

        return OpenAICompatibleImageBackend(kind, api_key, model, timeout_seconds=timeout)
