"""Hugging Face Inference Endpoint Client for scene visuals."""

import base64
import io
import json
import time
from pathlib import Path
from typing import Any, Callable, Optional, Union

import requests
from PIL import Image

from scene_pipeline.core.config import Settings
from scene_pipeline.core.exceptions import GenerationFailed, PipelineError, ValidationFailure
from scene_pipeline.models.context import PipelineContext
from scene_pipeline.models.results import GenerationResult, Ok
from scene_pipeline.services.failure_policy import (
    ContentPolicyRetry,
    OverloadRecoveryPolicy,
    RecoveryTarget,
    classify_http_failure,
)
from scene_pipeline.services.ports import VisualGenerator
from scene_pipeline.utils.error_handler import format_error_message, get_fallback_suggestion
from scene_pipeline.utils.rate_limiter import IMAGE_GENERATION, VIDEO_GENERATION, AdaptiveRateLimiter

SAFE_PROMPT_SUFFIX = "family friendly, non-violent, safe for work"


def soften_prompt(prompt: str, reason: str) -> str:
    """Default rephrasing for a blocked prompt: ask for a safe rendition."""
    if SAFE_PROMPT_SUFFIX in prompt:
        return f"A gentle illustration loosely inspired by: {prompt}"
    return f"{prompt}, {SAFE_PROMPT_SUFFIX}"


class HFEndpointClient(VisualGenerator):
    """Client for generating scene visuals via Hugging Face Inference Endpoints."""

    def __init__(
        self,
        settings: Settings,
        logger: Any,
        rate_limiter: Optional[AdaptiveRateLimiter] = None,
        rephrase: Callable[[str, str], str] = soften_prompt,
    ):
        """
        Initialize the HF Endpoint client.

        Args:
            settings: Application settings
            logger: Logger instance
            rate_limiter: Shared adaptive rate limiter
            rephrase: Transform applied to a prompt after a content-policy block
        """
        self.settings = settings
        self.logger = logger
        self.endpoint_url = settings.hf_endpoint_url
        self.endpoint_token = settings.hf_endpoint_token

        if not self.endpoint_url:
            raise ValidationFailure("HF_ENDPOINT_URL not configured. Set HF_ENDPOINT_URL in .env file.")
        if not self.endpoint_token:
            raise ValidationFailure("HF_ENDPOINT_TOKEN not configured. Set HF_ENDPOINT_TOKEN in .env file.")

        self.endpoints = [self.endpoint_url, *settings.hf_fallback_endpoint_urls]
        self.tokens = [self.endpoint_token, *settings.hf_fallback_tokens]
        self.rate_limiter = rate_limiter or AdaptiveRateLimiter(settings, logger)
        self.overload_policy = OverloadRecoveryPolicy(settings, logger)
        self.content_retry = ContentPolicyRetry(settings, logger)
        self.rephrase = rephrase

    def _post(self, service: str, url: str, token: str, payload: dict) -> requests.Response:
        self.rate_limiter.wait(service)
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        try:
            response = requests.post(
                url,
                json=payload,
                headers=headers,
                timeout=self.settings.image_request_timeout_seconds,
            )
        except requests.exceptions.RequestException as e:
            self.rate_limiter.record_other_error(service)
            raise PipelineError(f"Network error calling HF Endpoint: {e}") from e

        if response.status_code == 200:
            self.rate_limiter.record_success(service)
        elif response.status_code == 429:
            self.rate_limiter.record_rate_limited(service)
        elif response.status_code == 503:
            self.rate_limiter.record_overloaded(service)
        else:
            self.rate_limiter.record_other_error(service)
        return response

    @staticmethod
    def _decode_image(response: requests.Response) -> Image.Image:
        """
        Decode a raw or base64-in-JSON image body.

        Raises:
            GenerationFailed: If the body is not a readable image
        """
        content_type = response.headers.get("Content-Type", "").lower()
        try:
            if "application/json" in content_type or response.content.startswith(b"{"):
                data = json.loads(response.text)
                if isinstance(data, dict):
                    image_b64 = data.get("image") or data.get("output") or data.get("data")
                else:
                    image_b64 = data
                if not isinstance(image_b64, str):
                    raise GenerationFailed(f"HF Endpoint returned unexpected JSON: {str(data)[:200]}")
                if "," in image_b64:
                    # Strip data URL prefix
                    image_b64 = image_b64.split(",", 1)[1]
                image = Image.open(io.BytesIO(base64.b64decode(image_b64, validate=True)))
            else:
                image = Image.open(io.BytesIO(response.content))
            image.load()
        except (ValueError, OSError) as e:
            raise GenerationFailed(f"HF Endpoint returned an unreadable image: {e}") from e
        return image

    def _request_image(
        self, prompt: str, target: RecoveryTarget, output_path: Path, context: PipelineContext
    ) -> GenerationResult:
        payload = {
            "inputs": prompt,
            "parameters": {"width": context.video_width, "height": context.video_height},
        }
        response = self._post(IMAGE_GENERATION, target.model, target.credential, payload)
        if response.status_code != 200:
            return classify_http_failure(response.status_code, response.text[:500])

        image = self._decode_image(response).convert("RGB")
        output_path.parent.mkdir(parents=True, exist_ok=True)
        image.save(output_path, "PNG")
        return Ok(output_path)

    def generate_image(self, prompt: str, context: PipelineContext, output_path: Path) -> GenerationResult:
        """
        Generate one image with overload fallback and content-policy rephrasing.

        Args:
            prompt: Image generation prompt
            context: Pipeline context (resolution)
            output_path: Path to save the generated image

        Returns:
            Ok(Path) | ContentBlocked | Overloaded
        """
        start_time = time.time()
        prompt_preview = prompt[:120] + "..." if len(prompt) > 120 else prompt
        self.logger.info(f"Generating image: {prompt_preview}")

        def attempt(current_prompt: str) -> GenerationResult:
            return self.overload_policy.execute(
                lambda target: self._request_image(current_prompt, target, output_path, context),
                self.endpoints,
                self.tokens,
            )

        result = self.content_retry.run(prompt, attempt, self.rephrase)
        if isinstance(result, Ok):
            self.logger.info(f"✅ Image generated in {time.time() - start_time:.2f}s: {output_path}")
        return result

    def generate_images(
        self, prompts: list[str], context: PipelineContext, output_dir: Path
    ) -> list[Union[GenerationResult, PipelineError]]:
        """
        Generate one image per prompt.

        Returns:
            One entry per prompt: a tagged result, or the error that stopped that prompt
        """
        results: list[Union[GenerationResult, PipelineError]] = []
        for index, prompt in enumerate(prompts):
            output_path = Path(output_dir) / f"image_{index:03d}.png"
            try:
                results.append(self.generate_image(prompt, context, output_path))
            except (PipelineError, OSError) as e:
                self.logger.error(
                    format_error_message(
                        "Generating scene image",
                        e,
                        context={"job_id": context.job_id, "index": index},
                        suggestion=get_fallback_suggestion("Image Generation", e),
                    )
                )
                results.append(e if isinstance(e, PipelineError) else GenerationFailed(str(e)))
        return results

    def generate_video(self, prompt: str, context: PipelineContext, output_dir: Path) -> GenerationResult:
        """
        Generate a short video clip for a scene.

        Returns:
            Ok(Path) | ContentBlocked | Overloaded

        Raises:
            ValidationFailure: If no video endpoint is configured
        """
        video_url = self.settings.hf_video_endpoint_url
        if not video_url:
            raise ValidationFailure("HF_VIDEO_ENDPOINT_URL not configured")

        output_path = Path(output_dir) / "video.mp4"

        def request(current_prompt: str, target: RecoveryTarget) -> GenerationResult:
            payload = {
                "inputs": current_prompt,
                "parameters": {"width": context.video_width, "height": context.video_height},
            }
            response = self._post(VIDEO_GENERATION, target.model, target.credential, payload)
            if response.status_code != 200:
                return classify_http_failure(response.status_code, response.text[:500])
            output_path.parent.mkdir(parents=True, exist_ok=True)
            with open(output_path, "wb") as f:
                f.write(response.content)
            return Ok(output_path)

        def attempt(current_prompt: str) -> GenerationResult:
            return self.overload_policy.execute(
                lambda target: request(current_prompt, target), [video_url], self.tokens
            )

        return self.content_retry.run(prompt, attempt, self.rephrase)
