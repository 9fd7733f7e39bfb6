"""AI text generation collaborator (OpenAI-compatible chat completions)."""

import json

import httpx

from neuraslide.config import settings
from neuraslide.logging import get_logger
from neuraslide.services.exceptions import ResponseGenerationError

logger = get_logger(__name__)


def is_configured() -> bool:
    return bool(settings.openai_api_key)


def generate_text(
    user_id,
    prompt: str,
    message: str,
    context: dict | None = None,
    max_tokens: int = 200,
    temperature: float = 0.7,
) -> str:
    """Ask the model for a reply to ``message`` under the system ``prompt``.

    Raises:
        ResponseGenerationError: not configured, transport failure, non-2xx
            answer or an empty completion.
    """
    if not is_configured():
        raise ResponseGenerationError("AI provider is not configured")

    messages = [{"role": "system", "content": prompt or "Reply briefly and politely."}]
    if context:
        messages.append(
            {"role": "system", "content": f"Context: {json.dumps(context, default=str)}"}
        )
    messages.append({"role": "user", "content": message or ""})

    body = {
        "model": settings.openai_model,
        "messages": messages,
        "max_tokens": max_tokens,
        "temperature": temperature,
    }
    if user_id:
        body["user"] = str(user_id)

    url = f"{settings.openai_base_url.rstrip('/')}/chat/completions"
    try:
        with httpx.Client(timeout=settings.ai_http_timeout) as client:
            response = client.post(
                url,
                headers={"Authorization": f"Bearer {settings.openai_api_key}"},
                json=body,
            )
    except httpx.HTTPError as exc:
        logger.warning("ai_generation_transport_error user_id=%s error=%s", user_id, exc)
        raise ResponseGenerationError("AI provider request failed") from exc

    if response.status_code >= 400:
        logger.warning(
            "ai_generation_failed user_id=%s status=%s", user_id, response.status_code
        )
        raise ResponseGenerationError(f"AI provider returned {response.status_code}")

    try:
        content = response.json()["choices"][0]["message"]["content"]
    except (ValueError, KeyError, IndexError, TypeError) as exc:
        raise ResponseGenerationError("AI provider returned an unexpected body") from exc
    text = (content or "").strip()
    if not text:
        raise ResponseGenerationError("AI provider returned an empty completion")
    return text
