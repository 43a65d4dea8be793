"""Progressive image generation with an ordered model fallback chain."""

from __future__ import annotations

import base64
import binascii
import logging
import re
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Sequence, Union

from fastapi import status

from ..errors import ImageGenerationExhausted, UpstreamModelError
from ..openai_client import OpenAIClient
from ..services.storage import ObjectStore, make_generated_image_path
from .events import ImageCompleted, PartialImage, StreamEvent

logger = logging.getLogger(__name__)

MAX_PROMPT_LENGTH = 4000
OUTPUT_FORMATS = ("png", "jpeg", "webp")

_ACTION_WORDS = re.compile(
    r"\b(generate|create|make|draw|illustrate|render|design|sketch|paint)\b",
    re.IGNORECASE,
)
_IMAGE_NOUNS = re.compile(
    r"\b(image|picture|photo|illustration|drawing|diagram|logo|icon|poster|artwork)s?\b",
    re.IGNORECASE,
)
_RESEARCH_WORDS = re.compile(
    r"\b(search|explain|sources?|reference|why|how|analy[sz]e|compare|research|documents?|docs?)\b",
    re.IGNORECASE,
)
_EDIT_WORDS = re.compile(
    r"\b(edit|modify|change|adjust|tweak|update|redo|recolou?r|remove|replace)\b"
    r"|\bmake it\b",
    re.IGNORECASE,
)

_PARTIAL_EVENTS = {
    "image_generation.partial_image",
    "image_edit.partial_image",
    "response.image_generation_call.partial_image",
}
_COMPLETED_EVENTS = {"image_generation.completed", "image_edit.completed"}

# Failures that move the chain to the next candidate.
RETRYABLE_STATUS_CODES = frozenset(
    {
        status.HTTP_401_UNAUTHORIZED,
        status.HTTP_403_FORBIDDEN,
        status.HTTP_404_NOT_FOUND,
        status.HTTP_429_TOO_MANY_REQUESTS,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        status.HTTP_502_BAD_GATEWAY,
        status.HTTP_503_SERVICE_UNAVAILABLE,
        status.HTTP_504_GATEWAY_TIMEOUT,
    }
)


def detect_image_intent(text: str) -> bool:
    """Heuristic: an action word plus an image noun, and no research wording."""

    if not text or _RESEARCH_WORDS.search(text):
        return False
    return bool(_ACTION_WORDS.search(text) and _IMAGE_NOUNS.search(text))


def detect_edit_intent(text: str) -> bool:
    return bool(text and _EDIT_WORDS.search(text))


@dataclass(frozen=True)
class ImageBackend:
    """Capabilities of one image model in the fallback chain."""

    model: str
    streaming: bool = False
    supports_edit: bool = False
    supports_options: bool = False
    max_prompt_length: int = MAX_PROMPT_LENGTH
    b64_response_format: bool = True


KNOWN_IMAGE_BACKENDS: dict[str, ImageBackend] = {
    "gpt-image-1": ImageBackend(
        "gpt-image-1",
        streaming=True,
        supports_edit=True,
        supports_options=True,
        b64_response_format=False,
    ),
    "gpt-image-1-mini": ImageBackend(
        "gpt-image-1-mini",
        streaming=True,
        supports_edit=True,
        supports_options=True,
        b64_response_format=False,
    ),
    "dall-e-3": ImageBackend("dall-e-3"),
    "dall-e-2": ImageBackend("dall-e-2", supports_edit=True, max_prompt_length=1000),
}


def image_backend_for(model: str) -> ImageBackend:
    return KNOWN_IMAGE_BACKENDS.get(model, ImageBackend(model))


@dataclass(frozen=True)
class ImageRequest:
    prompt: str
    size: str | None = None
    quality: str | None = None
    output_format: str | None = None
    background: str | None = None
    reference_url: str | None = None

    @property
    def is_edit(self) -> bool:
        return self.reference_url is not None


@dataclass(frozen=True)
class GeneratedImage:
    b64_json: str
    model: str
    output_format: str = "png"
    size: str | None = None
    quality: str | None = None
    revised_prompt: str | None = None


@dataclass(frozen=True)
class Ok:
    image: GeneratedImage


@dataclass(frozen=True)
class Retryable:
    error: UpstreamModelError


@dataclass(frozen=True)
class Fatal:
    error: UpstreamModelError


AttemptResult = Union[Ok, Retryable, Fatal]


def classify_failure(error: UpstreamModelError) -> Union[Retryable, Fatal]:
    """Decide from the status code whether the chain may advance."""

    if error.status_code in RETRYABLE_STATUS_CODES:
        return Retryable(error)
    return Fatal(error)


@dataclass(frozen=True)
class ImageResult:
    url: str
    storage_path: str
    model: str
    output_format: str
    byte_length: int
    size: str | None = None
    quality: str | None = None
    failed_models: list[str] = field(default_factory=list)

    def attachment(self) -> dict[str, Any]:
        return {
            "type": "image",
            "url": self.url,
            "storage_path": self.storage_path,
            "mime_type": f"image/{self.output_format}",
            "model": self.model,
            "size": self.size,
            "bytes": self.byte_length,
        }

    def markdown(self) -> str:
        return f"![Generated image]({self.url})"


Emit = Callable[[StreamEvent], Awaitable[None]]


def _dalle3_size(size: str | None) -> str:
    return {
        "1536x1024": "1792x1024",
        "1024x1536": "1024x1792",
        "1792x1024": "1792x1024",
        "1024x1792": "1024x1792",
    }.get(size or "", "1024x1024")


class ImageGenerationFlow:
    """Run the fallback chain, forward partial frames, store the final image.

    Only a successful candidate produces ``image_completed``. Partial frames
    are forwarded as they arrive, so frames already sent by a streaming
    candidate that later fails stay on the client; the frame counter is shared
    across candidates and the cap applies to the whole turn.
    """

    def __init__(
        self,
        client: OpenAIClient,
        store: ObjectStore,
        *,
        models: Sequence[str],
        partial_frames: int = 2,
        url_ttl: timedelta = timedelta(hours=24),
    ) -> None:
        if not models:
            raise ValueError("At least one image model is required")
        self._client = client
        self._store = store
        self._chain = [image_backend_for(model) for model in models]
        self._partial_frames = max(0, min(partial_frames, 3))
        self._url_ttl = url_ttl

    @property
    def chain(self) -> list[ImageBackend]:
        return list(self._chain)

    async def run(
        self, request: ImageRequest, emit: Emit, *, session_id: str
    ) -> ImageResult:
        prompt = request.prompt.strip()
        if not prompt:
            raise UpstreamModelError(
                status.HTTP_400_BAD_REQUEST, "Image prompt is empty"
            )

        reference: tuple[str, bytes, str] | None = None
        frame_counter = [0]
        failed: list[str] = []
        last_error: UpstreamModelError | None = None

        for backend in self._chain:
            if request.is_edit and not backend.supports_edit:
                logger.info("Skipping %s: edits unsupported", backend.model)
                continue
            if request.is_edit and reference is None:
                assert request.reference_url is not None
                data, content_type = await self._client.fetch_bytes(request.reference_url)
                extension = content_type.rsplit("/", 1)[-1] or "png"
                reference = (f"reference.{extension}", data, content_type)

            logger.info("Attempting image generation with %s", backend.model)
            outcome = await self._attempt(backend, request, reference, emit, frame_counter)
            if isinstance(outcome, Ok):
                return await self._finalize(outcome.image, emit, session_id, failed)
            if isinstance(outcome, Fatal):
                logger.warning(
                    "Image model %s failed permanently: %s",
                    backend.model,
                    outcome.error.detail,
                )
                raise outcome.error

            failed.append(backend.model)
            last_error = outcome.error
            logger.warning(
                "Image model %s failed (%s), trying next candidate",
                backend.model,
                outcome.error.status_code,
            )

        if last_error is None:
            last_error = UpstreamModelError(
                status.HTTP_400_BAD_REQUEST, "No image model supports this request"
            )
        raise ImageGenerationExhausted(last_error, failed)

    def build_payload(self, backend: ImageBackend, request: ImageRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": backend.model,
            "prompt": request.prompt.strip()[: backend.max_prompt_length],
            "n": 1,
        }
        if backend.supports_options:
            payload["size"] = request.size or "auto"
            if request.quality:
                payload["quality"] = request.quality
            if request.output_format in OUTPUT_FORMATS:
                payload["output_format"] = request.output_format
            if request.background:
                payload["background"] = request.background
        elif backend.model == "dall-e-3":
            payload["size"] = _dalle3_size(request.size)
            payload["quality"] = "hd" if request.quality == "high" else "standard"
        else:
            payload["size"] = "1024x1024"
        if backend.b64_response_format:
            payload["response_format"] = "b64_json"
        return payload

    async def _attempt(
        self,
        backend: ImageBackend,
        request: ImageRequest,
        reference: tuple[str, bytes, str] | None,
        emit: Emit,
        frame_counter: list[int],
    ) -> AttemptResult:
        payload = self.build_payload(backend, request)
        default_format = (
            payload.get("output_format", "png") if backend.supports_options else "png"
        )
        try:
            if backend.streaming and self._partial_frames > 0:
                payload["partial_images"] = self._partial_frames
                return await self._attempt_streaming(
                    backend, payload, reference, emit, frame_counter, default_format
                )
            body = await self._client.generate_image(payload, edit_image=reference)
        except UpstreamModelError as exc:
            return classify_failure(exc)

        data = body.get("data") or []
        first = data[0] if data and isinstance(data[0], dict) else {}
        b64 = first.get("b64_json")
        if not isinstance(b64, str) or not b64:
            return Retryable(
                UpstreamModelError(
                    status.HTTP_502_BAD_GATEWAY,
                    f"{backend.model} returned no image data",
                )
            )
        return Ok(
            GeneratedImage(
                b64_json=b64,
                model=backend.model,
                output_format=body.get("output_format") or default_format,
                size=body.get("size") or payload.get("size"),
                quality=body.get("quality") or payload.get("quality"),
                revised_prompt=first.get("revised_prompt"),
            )
        )

    async def _attempt_streaming(
        self,
        backend: ImageBackend,
        payload: dict[str, Any],
        reference: tuple[str, bytes, str] | None,
        emit: Emit,
        frame_counter: list[int],
        default_format: str,
    ) -> AttemptResult:
        stream = self._client.stream_image(payload, edit_image=reference)
        async with aclosing(stream):
            async for event in stream:
                data = event.json()
                if data is None:
                    continue
                kind = data.get("type") or event.event
                output_format = data.get("output_format") or default_format
                if kind in _PARTIAL_EVENTS:
                    b64 = data.get("b64_json") or data.get("partial_image_b64")
                    if isinstance(b64, str) and b64:
                        await emit(
                            PartialImage(
                                index=frame_counter[0],
                                b64_json=b64,
                                output_format=output_format,
                            )
                        )
                        frame_counter[0] += 1
                elif kind in _COMPLETED_EVENTS:
                    b64 = data.get("b64_json")
                    if not isinstance(b64, str) or not b64:
                        break
                    return Ok(
                        GeneratedImage(
                            b64_json=b64,
                            model=backend.model,
                            output_format=output_format,
                            size=data.get("size") or payload.get("size"),
                            quality=data.get("quality") or payload.get("quality"),
                        )
                    )
                elif kind == "error":
                    error = data.get("error")
                    if not isinstance(error, dict):
                        error = {"message": str(error or "Image stream failed")}
                    code = error.get("status")
                    return classify_failure(
                        UpstreamModelError(
                            code if isinstance(code, int) else status.HTTP_502_BAD_GATEWAY,
                            error.get("message") or "Image stream failed",
                        )
                    )
        return Retryable(
            UpstreamModelError(
                status.HTTP_502_BAD_GATEWAY,
                f"{backend.model} stream ended without a final image",
            )
        )

    async def _finalize(
        self,
        image: GeneratedImage,
        emit: Emit,
        session_id: str,
        failed: list[str],
    ) -> ImageResult:
        try:
            data = base64.b64decode(image.b64_json, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise UpstreamModelError(
                status.HTTP_502_BAD_GATEWAY, f"Invalid image payload: {exc}"
            ) from exc

        output_format = (image.output_format or "png").lower()
        path = make_generated_image_path(session_id, output_format)
        content_type = (
            "image/jpeg" if output_format in {"jpeg", "jpg"} else f"image/{output_format}"
        )
        storage_path = await self._store.put(data, path, content_type)
        url = await self._store.signed_url(storage_path, self._url_ttl)

        result = ImageResult(
            url=url,
            storage_path=storage_path,
            model=image.model,
            output_format=output_format,
            byte_length=len(data),
            size=image.size,
            quality=image.quality,
            failed_models=list(failed),
        )
        logger.info(
            "Stored generated image %s (%s, %d bytes) from %s",
            storage_path,
            output_format,
            len(data),
            image.model,
        )
        await emit(
            ImageCompleted(
                url=url,
                storage_path=storage_path,
                size=image.size,
                format=output_format,
                bytes=len(data),
                model=image.model,
                quality=image.quality,
            )
        )
        return result


__all__ = [
    "AttemptResult",
    "Fatal",
    "GeneratedImage",
    "ImageBackend",
    "ImageGenerationFlow",
    "ImageRequest",
    "ImageResult",
    "KNOWN_IMAGE_BACKENDS",
    "MAX_PROMPT_LENGTH",
    "Ok",
    "Retryable",
    "classify_failure",
    "detect_edit_intent",
    "detect_image_intent",
    "image_backend_for",
]
