"""Mnemonic image generation through the OpenAI Images API."""

from typing import Optional

import structlog

from .config import IMAGE_MODEL, IMAGE_SIZE, OPENAI_API_KEY, PROVIDER_TIMEOUT_S
from .errors import ProviderUnavailable
from .openai_client import generate_image, make_client, sniff_image_type
from .rate_limiter import RateLimiter

log = structlog.get_logger()


class OpenAIImageGenerator:
    service_id = "openai-image"

    def __init__(self, rate_limiter: RateLimiter, api_key: Optional[str] = OPENAI_API_KEY,
                 model: str = IMAGE_MODEL, size: str = IMAGE_SIZE,
                 timeout: float = PROVIDER_TIMEOUT_S):
        self.rate_limiter = rate_limiter
        self.model = model
        self.size = size
        self.timeout = timeout
        self.name = model
        self._client = make_client(api_key)

    def available(self) -> bool:
        return self._client is not None

    async def generate(self, prompt: str, negative_prompt: Optional[str] = None) -> bytes:
        """Generate one image. The Images API has no negative prompt, so it is folded in."""
        if self._client is None:
            raise ProviderUnavailable("No OpenAI key configured for image generation")

        full_prompt = prompt
        if negative_prompt:
            full_prompt = f"{prompt}\n\nAvoid: {negative_prompt}"

        image = await generate_image(self._client, self.model, full_prompt, self.size, self.timeout,
                                     rate_limiter=self.rate_limiter, service_id=self.service_id)
        log.info("Image generated", model=self.model, size=len(image), content_type=sniff_image_type(image))
        return image
