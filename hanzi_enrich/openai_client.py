"""OpenAI API helpers: chat, JSON parsing, image generation and vision."""

import asyncio
import base64
import json
import re
from typing import Any, Dict, List, Optional

import aiohttp
import openai
import structlog
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential_jitter,
    retry_if_exception_type,
)

from .config import IMAGE_SIZE, PROVIDER_TIMEOUT_S
from .errors import LowQualityResult
from .rate_limiter import RateLimiter

VALID_IMAGE_SIZES = {"1024x1024", "1792x1024", "1024x1792", "1536x1024", "1024x1536"}

TRANSIENT_OPENAI_ERRORS = (
    openai.RateLimitError,
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.InternalServerError,  # 500, 502, 503, 504
)

OPENAI_RETRY_ATTEMPTS = 3
RETRY_INITIAL_S = 2.0
RETRY_MAX_S = 30.0
RETRY_JITTER_S = 1.0

log = structlog.get_logger()


def create_openai_retry_decorator(attempts: int = OPENAI_RETRY_ATTEMPTS):
    """Create a retry decorator for transient transport errors."""
    return retry(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential_jitter(initial=RETRY_INITIAL_S, max=RETRY_MAX_S, jitter=RETRY_JITTER_S),
        retry=retry_if_exception_type(TRANSIENT_OPENAI_ERRORS + (aiohttp.ClientError,)),
        reraise=True,
    )


def retry_backoff_budget_s(attempts: int = OPENAI_RETRY_ATTEMPTS, initial: float = RETRY_INITIAL_S,
                           max_wait: float = RETRY_MAX_S, jitter: float = RETRY_JITTER_S) -> float:
    """Longest total sleep the retry decorator can add between attempts."""
    return sum(min(initial * 2 ** n + jitter, max_wait) for n in range(attempts - 1))


def make_client(api_key: Optional[str], base_url: Optional[str] = None) -> Optional[openai.OpenAI]:
    """Build a client, or None when there is no key to build it with."""
    if not api_key:
        return None
    return openai.OpenAI(api_key=api_key, base_url=base_url, max_retries=0)


def strip_code_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def parse_json_response(text: str) -> Any:
    """Parse a model reply as JSON, tolerating fences and surrounding prose."""
    cleaned = strip_code_fences(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", cleaned, re.DOTALL)
        if not match:
            raise ValueError(f"Invalid JSON response: {text[:200]}")
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON response: {text[:200]}") from e


async def call_chat(
    client: openai.OpenAI,
    model: str,
    messages: List[Dict[str, Any]],
    *,
    json_mode: bool = False,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    timeout: float = PROVIDER_TIMEOUT_S,
) -> str:
    """Call the Chat Completions API once and return the message text."""
    kwargs: Dict[str, Any] = {"model": model, "messages": messages, "timeout": timeout}
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}
    if temperature is not None:
        kwargs["temperature"] = temperature
    if max_tokens is not None:
        kwargs["max_tokens"] = max_tokens

    loop = asyncio.get_running_loop()
    response = await loop.run_in_executor(
        None,
        lambda: client.chat.completions.create(**kwargs)
    )
    content = response.choices[0].message.content
    return content or ""


async def call_vision_json(
    client: openai.OpenAI,
    model: str,
    system_prompt: str,
    user_prompt: str,
    image_bytes: bytes,
    content_type: str = "image/png",
    timeout: float = PROVIDER_TIMEOUT_S,
) -> Dict[str, Any]:
    """Send an image with instructions and parse the JSON verdict."""
    data_url = f"data:{content_type};base64,{base64.b64encode(image_bytes).decode('ascii')}"
    messages = [
        {"role": "system", "content": system_prompt},
        {
            "role": "user",
            "content": [
                {"type": "text", "text": user_prompt},
                {"type": "image_url", "image_url": {"url": data_url, "detail": "high"}},
            ],
        },
    ]
    response = await call_chat(
        client, model, messages, json_mode=True, temperature=0.1, max_tokens=500, timeout=timeout
    )
    return parse_json_response(response)


async def download_bytes(url: str, timeout: float = PROVIDER_TIMEOUT_S) -> bytes:
    """Download a remote file into memory."""
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    async with aiohttp.ClientSession(timeout=client_timeout) as session:
        async with session.get(url) as response:
            if response.status != 200:
                raise aiohttp.ClientResponseError(
                    response.request_info, response.history,
                    status=response.status, message=f"Failed to download image: {response.status}",
                )
            content = await response.read()
            log.debug("Image downloaded", size=len(content))
            return content


async def generate_image(
    client: openai.OpenAI,
    model: str,
    prompt: str,
    size: str = IMAGE_SIZE,
    timeout: float = PROVIDER_TIMEOUT_S,
    rate_limiter: Optional[RateLimiter] = None,
    service_id: str = "openai-image",
) -> bytes:
    """
    Generate an image and return the **decoded bytes**. Accepts either a
    ``b64_json`` payload (gpt-image-1) or a hosted ``url`` (dall-e-3), and
    retries transient errors via ``create_openai_retry_decorator``. Every
    attempt, retries included, waits its turn on ``rate_limiter``.
    """
    if size not in VALID_IMAGE_SIZES:
        raise ValueError(f"Unsupported image size {size!r}")

    @create_openai_retry_decorator()
    async def _make_image_call() -> bytes:
        if rate_limiter is not None:
            await rate_limiter.acquire(service_id)
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(
            None,
            lambda: client.images.generate(
                model=model,
                prompt=prompt,
                size=size,
                n=1,
                timeout=timeout,
            )
        )

        if not getattr(response, "data", None):
            raise LowQualityResult(f"Image generation response missing data: {response}")

        item = response.data[0]
        b64_blob = getattr(item, "b64_json", None)
        if b64_blob:
            return base64.b64decode(b64_blob)
        url = getattr(item, "url", None)
        if url:
            return await download_bytes(url, timeout=timeout)
        raise LowQualityResult(f"Image generation response has neither b64_json nor url: {response.data}")

    return await _make_image_call()


def sniff_image_type(data: bytes) -> str:
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data.startswith(b"\xff\xd8"):
        return "image/jpeg"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "application/octet-stream"
