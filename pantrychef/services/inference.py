"""Inference backends that turn a stored image into recognition candidates."""

import base64
import json
import logging
from typing import Any, Protocol, runtime_checkable

import anthropic
import httpx
from pydantic import ValidationError as PydanticValidationError

from pantrychef.config import Settings, get_settings
from pantrychef.exceptions import InferenceError, InferenceFailure
from pantrychef.schemas.recognition import BoundingRegion, RecognitionCandidate
from pantrychef.services.storage import ObjectStore

logger = logging.getLogger(__name__)

RECOGNITION_PROMPT = """Identify every distinct food ingredient visible in this photo.

For each ingredient, provide:
1. "label": the plain ingredient name (e.g. "tomato", "whole milk", "cheddar cheese")
2. "confidence": how sure you are, from 0.0 to 1.0
3. "box": the bounding box as [x, y, width, height], each a fraction (0.0-1.0) of the image size

Report one entry per physical object. Do not include:
- Containers, utensils, or packaging text that is not an ingredient
- Prepared dishes (report their visible ingredients instead)

Example output:
[
  {"label": "tomato", "confidence": 0.93, "box": [0.10, 0.20, 0.25, 0.25]},
  {"label": "egg", "confidence": 0.71, "box": [0.55, 0.40, 0.15, 0.18]}
]

Return ONLY the JSON array, no other text."""


@runtime_checkable
class InferenceBackend(Protocol):
    """Contract for recognition models.

    Implementations raise InferenceError with reason InferenceTimeout,
    InferenceUnavailable or InferenceInvalidInput.
    """

    timeout: float

    def infer(self, image_ref: str) -> list[RecognitionCandidate]: ...


def _strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown code block if present."""
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def _to_region(raw: Any) -> BoundingRegion | None:
    if isinstance(raw, dict):
        return BoundingRegion(**raw)
    if isinstance(raw, list | tuple) and len(raw) == 4:
        x, y, width, height = raw
        return BoundingRegion(x=x, y=y, width=width, height=height)
    return None


def parse_candidates(items: Any) -> list[RecognitionCandidate]:
    """Build candidates from decoded JSON, skipping malformed entries."""
    if not isinstance(items, list):
        raise InferenceError(InferenceFailure.INVALID_INPUT, "Expected a JSON array of candidates")

    candidates = []
    for item in items:
        if not isinstance(item, dict) or not item.get("label"):
            continue
        try:
            confidence = min(1.0, max(0.0, float(item.get("confidence", 0.0))))
            region = _to_region(item.get("box", item.get("bounding_region")))
            candidates.append(
                RecognitionCandidate(
                    label=str(item["label"]),
                    confidence=confidence,
                    bounding_region=region,
                )
            )
        except (TypeError, ValueError, PydanticValidationError) as e:
            logger.warning(f"Skipping malformed candidate {item!r}: {e}")
    return candidates


class VisionInferenceBackend:
    """Recognizes ingredients with Claude Vision."""

    def __init__(self, store: ObjectStore, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.store = store
        self.api_key = self.settings.anthropic_api_key
        self.model = self.settings.vision_model
        self.timeout = self.settings.inference_timeout_seconds
        self._client: anthropic.Anthropic | None = None

    @property
    def is_configured(self) -> bool:
        """Check if the Anthropic API is configured."""
        return bool(self.api_key)

    def _get_client(self) -> anthropic.Anthropic:
        if self._client is None:
            # Retries are owned by the recognition worker
            self._client = anthropic.Anthropic(
                api_key=self.api_key, timeout=self.timeout, max_retries=0
            )
        return self._client

    def infer(self, image_ref: str) -> list[RecognitionCandidate]:
        if not self.is_configured:
            raise InferenceError(InferenceFailure.UNAVAILABLE, "Anthropic API not configured")

        image_data = self.store.get(image_ref)
        media_type = _media_type(image_ref)
        image_base64 = base64.standard_b64encode(image_data).decode("utf-8")

        try:
            message = self._get_client().messages.create(
                model=self.model,
                max_tokens=2048,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "image",
                                "source": {
                                    "type": "base64",
                                    "media_type": media_type,
                                    "data": image_base64,
                                },
                            },
                            {"type": "text", "text": RECOGNITION_PROMPT},
                        ],
                    }
                ],
            )
        except anthropic.APITimeoutError as e:
            raise InferenceError(InferenceFailure.TIMEOUT, str(e)) from e
        except anthropic.APIConnectionError as e:
            raise InferenceError(InferenceFailure.UNAVAILABLE, str(e)) from e
        except anthropic.APIStatusError as e:
            if e.status_code >= 500 or e.status_code == 429:
                raise InferenceError(InferenceFailure.UNAVAILABLE, str(e)) from e
            raise InferenceError(InferenceFailure.INVALID_INPUT, str(e)) from e

        response_text = _strip_code_fence(message.content[0].text)
        try:
            items = json.loads(response_text)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse vision response as JSON: {e}")
            logger.error(f"Response was: {response_text}")
            raise InferenceError(InferenceFailure.INVALID_INPUT, f"Unparsable response: {e}") from e

        return parse_candidates(items)


class HttpInferenceBackend:
    """Posts the image to a self-hosted model server.

    The server answers ``{"candidates": [{"label", "confidence", "bounding_region"}]}``.
    """

    def __init__(
        self,
        store: ObjectStore,
        settings: Settings | None = None,
        client: httpx.Client | None = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.url = self.settings.inference_url
        self.timeout = self.settings.inference_timeout_seconds
        self.client = client or httpx.Client(timeout=self.timeout)

    def infer(self, image_ref: str) -> list[RecognitionCandidate]:
        image_data = self.store.get(image_ref)
        try:
            response = self.client.post(
                self.url,
                files={"image": (image_ref, image_data, _media_type(image_ref))},
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as e:
            raise InferenceError(InferenceFailure.TIMEOUT, str(e)) from e
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            if code >= 500 or code == 429:
                raise InferenceError(InferenceFailure.UNAVAILABLE, str(e)) from e
            raise InferenceError(InferenceFailure.INVALID_INPUT, str(e)) from e
        except httpx.TransportError as e:
            raise InferenceError(InferenceFailure.UNAVAILABLE, str(e)) from e
        except json.JSONDecodeError as e:
            raise InferenceError(InferenceFailure.INVALID_INPUT, f"Unparsable response: {e}") from e

        if not isinstance(payload, dict):
            raise InferenceError(InferenceFailure.INVALID_INPUT, "Expected a JSON object")
        return parse_candidates(payload.get("candidates", []))


def _media_type(image_ref: str) -> str:
    suffix = image_ref.rsplit(".", 1)[-1].lower()
    return {
        "jpg": "image/jpeg",
        "jpeg": "image/jpeg",
        "png": "image/png",
        "gif": "image/gif",
        "webp": "image/webp",
    }.get(suffix, "image/jpeg")


def build_inference_backend(store: ObjectStore, settings: Settings | None = None):
    """Create the backend selected by INFERENCE_BACKEND."""
    settings = settings or get_settings()
    if settings.inference_backend == "http":
        return HttpInferenceBackend(store, settings)
    return VisionInferenceBackend(store, settings)
