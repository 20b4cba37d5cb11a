"""Tests for inference backends."""

import json
from unittest.mock import MagicMock

import anthropic
import httpx
import pytest

from pantrychef.config import Settings
from pantrychef.exceptions import InferenceError, InferenceFailure
from pantrychef.services.inference import (
    HttpInferenceBackend,
    InferenceBackend,
    VisionInferenceBackend,
    build_inference_backend,
    parse_candidates,
)

REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


@pytest.fixture
def settings():
    return Settings(
        anthropic_api_key="test-key",
        inference_url="http://model.test/v1/recognize",
        inference_timeout_seconds=5,
    )


@pytest.fixture
def image_ref(store, png_bytes):
    return store.put(png_bytes, "image/png")


class TestParseCandidates:
    """Tests for turning decoded model output into candidates."""

    def test_parses_labels_confidence_and_boxes(self):
        """Test the expected output shape."""
        candidates = parse_candidates(
            [
                {"label": "tomato", "confidence": 0.93, "box": [0.1, 0.2, 0.25, 0.25]},
                {
                    "label": "egg",
                    "confidence": 0.7,
                    "bounding_region": {"x": 1, "y": 2, "width": 3, "height": 4},
                },
                {"label": "milk", "confidence": 0.5},
            ]
        )

        assert [c.label for c in candidates] == ["tomato", "egg", "milk"]
        assert candidates[0].bounding_region.width == 0.25
        assert candidates[1].bounding_region.height == 4
        assert candidates[2].bounding_region is None

    def test_confidence_is_clamped(self):
        """Test that out-of-range confidences are clamped to [0, 1]."""
        candidates = parse_candidates(
            [{"label": "egg", "confidence": 1.4}, {"label": "milk", "confidence": -1}]
        )

        assert [c.confidence for c in candidates] == [1.0, 0.0]

    def test_malformed_entries_are_skipped(self):
        """Test that bad entries don't sink the whole response."""
        candidates = parse_candidates(
            [
                "tomato",
                {"confidence": 0.9},
                {"label": "egg", "confidence": "high"},
                {"label": "milk", "confidence": 0.8, "box": [-1, 0, 1, 1]},
                {"label": "flour", "confidence": 0.8},
            ]
        )

        assert [c.label for c in candidates] == ["flour"]

    def test_non_list_is_invalid_input(self):
        """Test that a non-array response is rejected."""
        with pytest.raises(InferenceError) as exc_info:
            parse_candidates({"label": "egg"})

        assert exc_info.value.reason == InferenceFailure.INVALID_INPUT
        assert not exc_info.value.retryable


class TestVisionInferenceBackend:
    """Tests for the Claude Vision backend."""

    def make_backend(self, store, settings, text=None, error=None):
        backend = VisionInferenceBackend(store, settings)
        backend._client = MagicMock()
        if error is not None:
            backend._client.messages.create.side_effect = error
        else:
            backend._client.messages.create.return_value = MagicMock(
                content=[MagicMock(text=text)]
            )
        return backend

    def test_infer_parses_fenced_json(self, store, settings, image_ref):
        """Test a successful response wrapped in a code block."""
        payload = json.dumps([{"label": "tomato", "confidence": 0.9, "box": [0, 0, 0.5, 0.5]}])
        backend = self.make_backend(store, settings, text=f"```json\n{payload}\n```")

        candidates = backend.infer(image_ref)

        assert [(c.label, c.confidence) for c in candidates] == [("tomato", 0.9)]
        kwargs = backend._client.messages.create.call_args.kwargs
        image_block = kwargs["messages"][0]["content"][0]
        assert image_block["source"]["media_type"] == "image/png"

    def test_unparsable_response_is_invalid_input(self, store, settings, image_ref):
        """Test that prose instead of JSON is rejected."""
        backend = self.make_backend(store, settings, text="I see a tomato.")

        with pytest.raises(InferenceError) as exc_info:
            backend.infer(image_ref)

        assert exc_info.value.reason == InferenceFailure.INVALID_INPUT

    @pytest.mark.parametrize(
        "error,reason",
        [
            (anthropic.APITimeoutError(request=REQUEST), InferenceFailure.TIMEOUT),
            (
                anthropic.APIConnectionError(message="refused", request=REQUEST),
                InferenceFailure.UNAVAILABLE,
            ),
            (
                anthropic.APIStatusError(
                    "overloaded", response=httpx.Response(529, request=REQUEST), body=None
                ),
                InferenceFailure.UNAVAILABLE,
            ),
            (
                anthropic.APIStatusError(
                    "rate limited", response=httpx.Response(429, request=REQUEST), body=None
                ),
                InferenceFailure.UNAVAILABLE,
            ),
            (
                anthropic.APIStatusError(
                    "bad image", response=httpx.Response(400, request=REQUEST), body=None
                ),
                InferenceFailure.INVALID_INPUT,
            ),
        ],
    )
    def test_api_errors_are_mapped(self, store, settings, image_ref, error, reason):
        """Test the mapping from SDK errors to failure reasons."""
        backend = self.make_backend(store, settings, error=error)

        with pytest.raises(InferenceError) as exc_info:
            backend.infer(image_ref)

        assert exc_info.value.reason == reason

    def test_unconfigured_backend_is_unavailable(self, store, image_ref):
        """Test that a missing API key is reported as unavailable."""
        backend = VisionInferenceBackend(store, Settings(anthropic_api_key=None))

        with pytest.raises(InferenceError) as exc_info:
            backend.infer(image_ref)

        assert exc_info.value.reason == InferenceFailure.UNAVAILABLE


class TestHttpInferenceBackend:
    """Tests for the self-hosted model server backend."""

    def make_backend(self, store, settings, handler):
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return HttpInferenceBackend(store, settings, client=client)

    def test_infer_posts_image(self, store, settings, image_ref, png_bytes):
        """Test a successful round trip to the model server."""
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = request.read()
            return httpx.Response(
                200,
                json={"candidates": [{"label": "egg", "confidence": 0.8}]},
            )

        candidates = self.make_backend(store, settings, handler).infer(image_ref)

        assert [c.label for c in candidates] == ["egg"]
        assert seen["url"] == "http://model.test/v1/recognize"
        assert png_bytes in seen["body"]

    @pytest.mark.parametrize(
        "status,reason",
        [
            (503, InferenceFailure.UNAVAILABLE),
            (429, InferenceFailure.UNAVAILABLE),
            (422, InferenceFailure.INVALID_INPUT),
        ],
    )
    def test_http_errors_are_mapped(self, store, settings, image_ref, status, reason):
        """Test status code mapping."""
        backend = self.make_backend(store, settings, lambda request: httpx.Response(status))

        with pytest.raises(InferenceError) as exc_info:
            backend.infer(image_ref)

        assert exc_info.value.reason == reason

    @pytest.mark.parametrize(
        "error,reason",
        [
            (httpx.ReadTimeout("slow"), InferenceFailure.TIMEOUT),
            (httpx.ConnectError("refused"), InferenceFailure.UNAVAILABLE),
        ],
    )
    def test_transport_errors_are_mapped(self, store, settings, image_ref, error, reason):
        """Test timeouts and connection failures."""

        def handler(request):
            raise error

        with pytest.raises(InferenceError) as exc_info:
            self.make_backend(store, settings, handler).infer(image_ref)

        assert exc_info.value.reason == reason

    def test_non_json_response_is_invalid_input(self, store, settings, image_ref):
        """Test that a garbage body is rejected."""
        backend = self.make_backend(
            store, settings, lambda request: httpx.Response(200, text="<html>oops</html>")
        )

        with pytest.raises(InferenceError) as exc_info:
            backend.infer(image_ref)

        assert exc_info.value.reason == InferenceFailure.INVALID_INPUT


def test_build_inference_backend_selects_by_setting(store):
    """Test backend selection from configuration."""
    vision = build_inference_backend(store, Settings(inference_backend="anthropic"))
    http = build_inference_backend(store, Settings(inference_backend="http"))

    assert isinstance(vision, VisionInferenceBackend)
    assert isinstance(http, HttpInferenceBackend)
    assert isinstance(http, InferenceBackend)
