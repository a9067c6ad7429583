"""Image generation provider backed by the Gemini image REST API."""

import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from bookflow.context import WorkflowSettings
from bookflow.error_handling import (
    GenerationBlockedError,
    ProviderError,
    TransientProviderError,
    ValidationError,
    retry_transient,
)
from bookflow.prompt_engineering import PromptPart
from bookflow.services.storage import ObjectStorage
from bookflow.utils import resize_reference_image


logger = logging.getLogger(__name__)

_TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}
_SAFETY_FINISH_REASONS = {"SAFETY", "IMAGE_SAFETY", "PROHIBITED_CONTENT", "SPII"}
_RECITATION_FINISH_REASONS = {"RECITATION", "IMAGE_RECITATION"}
_BLOCKED_FINISH_REASONS = {"BLOCKLIST", "IMAGE_PROHIBITED_CONTENT", "OTHER", "IMAGE_OTHER"}


@dataclass
class GeneratedImage:
    """Raw bytes returned by the image model."""
    data: bytes
    mime_type: str = "image/png"
    metadata: Dict[str, Any] = field(default_factory=dict)


class ImageGenerationProvider(ABC):
    """Abstract base class for image generation providers."""

    @abstractmethod
    async def generate(
        self,
        parts: Sequence[PromptPart],
        aspect_ratio: Optional[str] = None,
        image_size: Optional[str] = None,
    ) -> GeneratedImage:
        """Generate one image from ordered text and image parts."""


def parse_generation_response(result: Dict[str, Any]) -> GeneratedImage:
    """Pull the image out of a generateContent response or raise with a reason."""

    feedback = result.get("promptFeedback") or {}
    if feedback.get("blockReason"):
        raise GenerationBlockedError("blocked", feedback.get("blockReason"))

    candidates = result.get("candidates") or []
    if not candidates:
        raise GenerationBlockedError("empty", "response contained no candidates")

    candidate = candidates[0]
    for part in (candidate.get("content") or {}).get("parts") or []:
        inline = part.get("inlineData") or part.get("inline_data")
        if inline and inline.get("data"):
            mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
            return GeneratedImage(
                data=base64.b64decode(inline["data"]),
                mime_type=mime_type,
                metadata={"finish_reason": candidate.get("finishReason")},
            )

    finish_reason = (candidate.get("finishReason") or "").upper()
    if finish_reason in _SAFETY_FINISH_REASONS:
        raise GenerationBlockedError("safety", finish_reason)
    if finish_reason in _RECITATION_FINISH_REASONS:
        raise GenerationBlockedError("recitation", finish_reason)
    if finish_reason in _BLOCKED_FINISH_REASONS:
        raise GenerationBlockedError("blocked", finish_reason)
    raise GenerationBlockedError("empty", finish_reason or "no image generated")


class GeminiImageProvider(ImageGenerationProvider):
    """Calls ``{model}:generateContent`` with inline reference images."""

    def __init__(self, settings: WorkflowSettings, storage: Optional[ObjectStorage] = None):
        if not settings.google_api_key:
            raise ValueError("Google API key is required for the Gemini image provider")
        self.api_key = settings.google_api_key
        self.model = settings.image_model
        self.base_url = settings.image_api_base_url.rstrip("/")
        self.default_image_size = settings.image_size
        self.max_reference_dimension = settings.max_reference_dimension
        self.retry_base_delay = settings.retry_base_delay
        self.timeout = aiohttp.ClientTimeout(total=settings.http_timeout_seconds)
        self.storage = storage

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    async def _download(self, session: aiohttp.ClientSession, url: str) -> Optional[bytes]:
        if self.storage is not None:
            local = await self.storage.read(url)
            if local is not None:
                return local
        try:
            async with session.get(url) as response:
                if response.status != 200:
                    logger.warning(f"Failed to fetch reference image {url}: HTTP {response.status}")
                    return None
                return await response.read()
        except aiohttp.ClientError as exc:
            logger.warning(f"Failed to fetch reference image {url}: {exc}")
            return None

    async def _inline_image(self, session: aiohttp.ClientSession, url: str) -> Optional[Dict[str, Any]]:
        raw = await self._download(session, url)
        if raw is None:
            return None
        try:
            data = resize_reference_image(raw, self.max_reference_dimension)
            mime_type = "image/jpeg"
        except OSError as exc:
            logger.warning(f"Could not resize reference image {url}, sending original: {exc}")
            data, mime_type = raw, "image/png"
        return {"inline_data": {"mime_type": mime_type, "data": base64.b64encode(data).decode("utf-8")}}

    async def build_payload(
        self,
        session: aiohttp.ClientSession,
        parts: Sequence[PromptPart],
        aspect_ratio: Optional[str],
        image_size: Optional[str],
    ) -> Dict[str, Any]:
        """Resolve image parts to inline data; a missing image drops its label too."""

        request_parts: List[Dict[str, Any]] = []
        pending_label: Optional[Dict[str, Any]] = None

        for part in parts:
            if not part.is_image:
                if pending_label is not None:
                    request_parts.append(pending_label)
                pending_label = {"text": part.text}
                continue

            inline = await self._inline_image(session, part.image_url)
            if inline is None:
                if part.required:
                    raise ValidationError(f"Required image could not be loaded: {part.image_url}")
                logger.warning(f"Skipping unavailable reference image {part.image_url}")
                pending_label = None
                continue
            if pending_label is not None:
                request_parts.append(pending_label)
                pending_label = None
            request_parts.append(inline)

        if pending_label is not None:
            request_parts.append(pending_label)

        image_config: Dict[str, Any] = {"imageSize": image_size or self.default_image_size}
        if aspect_ratio:
            image_config["aspectRatio"] = aspect_ratio

        return {
            "contents": [{"parts": request_parts}],
            "generationConfig": {
                "responseModalities": ["IMAGE"],
                "imageConfig": image_config,
            },
        }

    async def _post(self, session: aiohttp.ClientSession, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with session.post(
            self.endpoint,
            params={"key": self.api_key},
            json=payload,
        ) as response:
            if response.status == 200:
                return await response.json()
            body = await response.text()
            message = f"Gemini API error: HTTP {response.status} - {body[:500]}"
            if response.status in _TRANSIENT_STATUS_CODES:
                raise TransientProviderError(message)
            raise ProviderError(message)

    async def generate(
        self,
        parts: Sequence[PromptPart],
        aspect_ratio: Optional[str] = None,
        image_size: Optional[str] = None,
    ) -> GeneratedImage:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            payload = await self.build_payload(session, parts, aspect_ratio, image_size)

            async def _attempt() -> GeneratedImage:
                result = await self._post(session, payload)
                return parse_generation_response(result)

            image = await retry_transient(_attempt, max_retries=1, base_delay=self.retry_base_delay)

        image.metadata.update({"provider": "gemini", "model": self.model, "aspect_ratio": aspect_ratio})
        return image
