from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

DEFAULT_TEMPLATE = "Hello! Thanks for reaching out. How can I help you today?"


class _Config(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TimeRange(_Config):
    start: str = Field(pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    end: str = Field(pattern=r"^([01]\d|2[0-3]):[0-5]\d$")


class KeywordTrigger(_Config):
    type: Literal["keyword"]
    keywords: list[str] = Field(default_factory=list)
    match_type: Literal["exact", "contains", "starts_with", "ends_with"] = Field(
        default="contains", alias="matchType"
    )
    case_sensitive: bool = Field(default=False, alias="caseSensitive")


class IntentTrigger(_Config):
    type: Literal["intent"]
    intents: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0, le=1)


class TimeTrigger(_Config):
    type: Literal["time"]
    time_range: TimeRange = Field(alias="timeRange")
    days_of_week: list[int] = Field(default_factory=list, alias="daysOfWeek")
    timezone: str = "UTC"


class UserTypeTrigger(_Config):
    type: Literal["user_type"]
    user_types: list[str] = Field(default_factory=list, alias="userTypes")


class MessageCountTrigger(_Config):
    type: Literal["message_count"]
    count: int = Field(ge=0)
    time_window: int = Field(ge=0, alias="timeWindow")


class MessageReceivedTrigger(_Config):
    type: Literal["message_received"]


class CommentReceivedTrigger(_Config):
    type: Literal["comment_received"]


Trigger = Annotated[
    KeywordTrigger
    | IntentTrigger
    | TimeTrigger
    | UserTypeTrigger
    | MessageCountTrigger
    | MessageReceivedTrigger
    | CommentReceivedTrigger,
    Field(discriminator="type"),
]


class AIGeneratedResponse(_Config):
    type: Literal["ai_generated"]
    prompt: str = ""
    max_length: int = Field(default=200, ge=4, alias="maxLength")
    temperature: float = Field(default=0.7, ge=0, le=1)
    include_context: bool = Field(default=False, alias="includeContext")


class TemplateResponse(_Config):
    type: Literal["template"]
    template_id: str | None = Field(default=None, alias="templateId")
    template: str = DEFAULT_TEMPLATE
    variables: dict[str, str] = Field(default_factory=dict)


class CustomResponse(_Config):
    type: Literal["custom"]
    message: str
    # Omitted means every "{name}" placeholder found in the message.
    variables: list[str] | None = None


class DelayResponse(_Config):
    type: Literal["delay"]
    delay_minutes: int = Field(default=0, ge=0, alias="delayMinutes")
    fallback_response: CustomResponse | None = Field(default=None, alias="fallbackResponse")


Response = Annotated[
    AIGeneratedResponse | TemplateResponse | CustomResponse | DelayResponse,
    Field(discriminator="type"),
]

trigger_adapter: TypeAdapter[Trigger] = TypeAdapter(Trigger)
response_adapter: TypeAdapter[Response] = TypeAdapter(Response)


def parse_trigger(data: dict) -> Trigger:
    return trigger_adapter.validate_python(data)


def parse_response(data: dict) -> Response:
    return response_adapter.validate_python(data)


class AutomationTestResult(BaseModel):
    triggered: bool
    response: str | None = None
    status: str | None = None
    error: str | None = None
