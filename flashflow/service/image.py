from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from flashflow.logging import get_logger
from flashflow.service.errors import NodeExecutionError

DEFAULT_IMAGE_SIZE = "1024x1024"
DEFAULT_CFG = 7.5
DEFAULT_INFERENCE_STEPS = 25


def _extract_image_url(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    for key in ("imageUrl", "url"):
        if isinstance(body.get(key), str) and body[key]:
            return body[key]
    for key in ("images", "data"):
        items = body.get(key)
        if isinstance(items, list) and items and isinstance(items[0], dict):
            url = items[0].get("url")
            if isinstance(url, str) and url:
                return url
    return None


class ImageService:
    """Client for an HTTP image generation backend returning an image URL."""

    def __init__(
        self,
        *,
        api_url: Optional[str],
        api_key: Optional[str] = None,
        default_model: str = "Kwai-Kolors/Kolors",
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.default_model = default_model
        self.timeout = timeout
        self.transport = transport
        self.logger = get_logger(__name__)

    async def generate(
        self,
        prompt: str,
        *,
        model: Optional[str] = None,
        negative_prompt: str = "",
        image_size: str = DEFAULT_IMAGE_SIZE,
        cfg: float = DEFAULT_CFG,
        num_inference_steps: int = DEFAULT_INFERENCE_STEPS,
        reference_images: Optional[List[str]] = None,
    ) -> Dict[str, str]:
        if not self.api_url:
            raise NodeExecutionError("image backend is not configured (IMAGE_API_URL)")
        if not prompt.strip():
            raise NodeExecutionError("image prompt is empty")
        payload: Dict[str, Any] = {
            "model": model or self.default_model,
            "prompt": prompt,
            "imageSize": image_size or DEFAULT_IMAGE_SIZE,
            "cfg": cfg,
            "numInferenceSteps": num_inference_steps,
        }
        if negative_prompt:
            payload["negativePrompt"] = negative_prompt
        if reference_images:
            payload["referenceImages"] = reference_images
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.api_url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            self.logger.warning("image_request_failed", error=str(exc))
            raise NodeExecutionError(f"image generation request failed: {exc}") from exc
        if response.status_code >= 400:
            raise NodeExecutionError(f"image generation failed: HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise NodeExecutionError("image backend returned invalid JSON") from exc
        image_url = _extract_image_url(body)
        if not image_url:
            raise NodeExecutionError("image backend response has no image url")
        self.logger.info("image_generated", model=payload["model"], size=payload["imageSize"])
        return {"imageUrl": image_url}
