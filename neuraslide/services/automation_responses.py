"""Response generation for matched automations.

``generate`` never sends anything. ``delay`` responses come back with status
``queued`` and no text: nothing schedules them, callers must not treat them
as delivered.
"""

import enum
import random
import re
from dataclasses import dataclass

from neuraslide.logging import get_logger
from neuraslide.schemas.automation import (
    AIGeneratedResponse,
    CustomResponse,
    DelayResponse,
    TemplateResponse,
)
from neuraslide.services import ai
from neuraslide.services.exceptions import ResponseGenerationError

logger = get_logger(__name__)

FALLBACK_RESPONSES = [
    "Thank you! 😊",
    "Thanks! 🙏",
    "Appreciate it! ✨",
    "Thank you for the comment! 💙",
    "Thanks for the support! 🎉",
]

ELLIPSIS = "..."
_PLACEHOLDER = re.compile(r"\{[A-Za-z0-9_.-]+\}")


class ResponseStatus(enum.Enum):
    generated = "generated"
    queued = "queued"


@dataclass
class GeneratedResponse:
    status: ResponseStatus
    text: str | None = None
    source: str | None = None

    @property
    def sendable(self) -> bool:
        return self.status == ResponseStatus.generated and bool(self.text)


def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max(max_length - len(ELLIPSIS), 0)] + ELLIPSIS


def fallback_text(max_length: int, rng: random.Random | None = None) -> str:
    choice = (rng or random).choice(FALLBACK_RESPONSES)
    return truncate(choice, max_length)


def generate_ai(
    user_id, response: AIGeneratedResponse, message: str, context: dict
) -> GeneratedResponse:
    if not ai.is_configured():
        logger.info("ai_response_fallback_used user_id=%s", user_id)
        return GeneratedResponse(
            ResponseStatus.generated, fallback_text(response.max_length), "fallback"
        )
    text = ai.generate_text(
        user_id,
        response.prompt,
        message,
        context if response.include_context else None,
        max_tokens=response.max_length,
        temperature=response.temperature,
    )
    return GeneratedResponse(ResponseStatus.generated, truncate(text, response.max_length), "ai")


def render_template(response: TemplateResponse) -> GeneratedResponse:
    result = response.template
    for key, value in response.variables.items():
        result = result.replace("{" + key + "}", str(value))
    return GeneratedResponse(ResponseStatus.generated, result, "template")


def render_custom(response: CustomResponse, context: dict) -> GeneratedResponse:
    tokens = response.variables
    if tokens is None:
        tokens = _PLACEHOLDER.findall(response.message)
    result = response.message
    for token in tokens:
        name = token.strip("{}")
        value = context.get(name)
        result = result.replace(token, str(value) if value not in (None, "") else token)
    if not result:
        raise ResponseGenerationError("Custom response rendered empty")
    return GeneratedResponse(ResponseStatus.generated, result, "custom")


def generate(user_id, response, message: str, context: dict) -> GeneratedResponse:
    """Produce the reply text for one automation.

    Raises:
        ResponseGenerationError: the AI collaborator failed or the configured
            response rendered nothing.
    """
    if isinstance(response, AIGeneratedResponse):
        return generate_ai(user_id, response, message, context)
    if isinstance(response, TemplateResponse):
        return render_template(response)
    if isinstance(response, CustomResponse):
        return render_custom(response, context)
    if isinstance(response, DelayResponse):
        logger.info(
            "automation_response_delay_queued user_id=%s delay_minutes=%s",
            user_id,
            response.delay_minutes,
        )
        return GeneratedResponse(ResponseStatus.queued, None, "delay")
    raise ResponseGenerationError(f"Unsupported response type {type(response).__name__}")
