"""Automation matching and execution.

Every ACTIVE automation whose trigger fires is executed, highest priority
first, and a failure in one never stops the rest. Each attempt, successful
or not, updates the automation's performance columns with a single UPDATE so
concurrent executions cannot lose increments.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from pydantic import ValidationError
from sqlalchemy.orm import Session

from neuraslide.logging import get_logger
from neuraslide.models.automation import PRIORITY_RANK, Automation, AutomationStatus
from neuraslide.schemas.automation import (
    AIGeneratedResponse,
    AutomationTestResult,
    parse_response,
    parse_trigger,
)
from neuraslide.services import automation_responses, automation_triggers, usage
from neuraslide.services.common import coerce_uuid
from neuraslide.services.exceptions import ResponseGenerationError

logger = get_logger(__name__)


@dataclass
class AutomationExecution:
    automation_id: str
    success: bool
    response_generated: bool = False
    response_text: str | None = None
    status: str = "failed"
    response_time_ms: float = 0.0
    error: str | None = None


def _request_context(automation: Automation, context: dict) -> dict:
    return {**(automation.context or {}), **context}


class Automations:
    @staticmethod
    def list_active(db: Session, user_id) -> list[Automation]:
        items = (
            db.query(Automation)
            .filter(Automation.user_id == coerce_uuid(user_id))
            .filter(Automation.status == AutomationStatus.active)
            .filter(Automation.is_active.is_(True))
            .all()
        )
        return sorted(
            items,
            key=lambda item: (-PRIORITY_RANK.get(item.priority, 0), item.created_at),
        )

    @staticmethod
    def match(
        db: Session,
        user_id,
        text: str,
        context: dict,
        source: str = automation_triggers.SOURCE_MESSAGE,
        now: datetime | None = None,
    ) -> list[Automation]:
        matched = []
        for automation in Automations.list_active(db, user_id):
            try:
                trigger = parse_trigger(automation.trigger)
            except ValidationError as exc:
                logger.warning(
                    "automation_trigger_invalid automation_id=%s errors=%s",
                    automation.id,
                    exc.error_count(),
                )
                continue
            if automation_triggers.evaluate(
                db, trigger, text, _request_context(automation, context), source, now
            ):
                matched.append(automation)
        return matched

    @staticmethod
    def record_performance(db: Session, automation_id, success: bool, response_time_ms: float):
        """Fold one execution attempt into the running aggregates.

        Failures here are logged and swallowed: the reply may already be out.
        """
        hit = 1 if success else 0
        try:
            db.query(Automation).filter(Automation.id == coerce_uuid(automation_id)).update(
                {
                    Automation.total_triggers: Automation.total_triggers + 1,
                    Automation.successful_responses: Automation.successful_responses + hit,
                    Automation.failed_responses: Automation.failed_responses + (1 - hit),
                    Automation.average_response_time: (
                        Automation.average_response_time * Automation.total_triggers
                        + response_time_ms
                    )
                    / (Automation.total_triggers + 1),
                    Automation.success_rate: (Automation.successful_responses + hit)
                    * 100.0
                    / (Automation.total_triggers + 1),
                    Automation.last_triggered_at: datetime.now(UTC),
                },
                synchronize_session=False,
            )
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.error(
                "automation_performance_update_failed automation_id=%s error=%s",
                automation_id,
                exc,
            )

    @staticmethod
    def execute(
        db: Session,
        automation: Automation,
        text: str,
        context: dict,
        deliver: Callable[[Automation, str], None] | None = None,
    ) -> AutomationExecution:
        """Generate the response and hand it to ``deliver``.

        ``deliver`` posts or stores the reply; if it raises, the execution
        counts as failed and the error is reported, never raised.
        """
        automation_id = str(automation.id)
        user_id = automation.user_id
        request_context = _request_context(automation, context)
        execution = AutomationExecution(automation_id=automation_id, success=False)
        started = time.perf_counter()
        ai_reply = False
        try:
            response = parse_response(automation.response)
            ai_reply = isinstance(response, AIGeneratedResponse)
            generated = automation_responses.generate(user_id, response, text, request_context)
            execution.status = generated.status.value
            execution.response_text = generated.text
            if generated.sendable and deliver is not None:
                deliver(automation, generated.text)
                execution.status = "sent"
            execution.response_generated = generated.sendable
            execution.success = True
        except ValidationError as exc:
            execution.error = "Invalid response configuration"
            logger.warning(
                "automation_response_invalid automation_id=%s errors=%s",
                automation_id,
                exc.error_count(),
            )
        except ResponseGenerationError as exc:
            execution.error = str(exc)
            logger.warning(
                "automation_response_generation_failed automation_id=%s error=%s",
                automation_id,
                exc,
            )
        except Exception as exc:
            db.rollback()
            execution.error = str(exc) or exc.__class__.__name__
            execution.status = "failed"
            execution.response_generated = False
            logger.warning(
                "automation_delivery_failed automation_id=%s error=%s", automation_id, exc
            )
        execution.response_time_ms = round((time.perf_counter() - started) * 1000, 3)

        Automations.record_performance(
            db, automation_id, execution.success, execution.response_time_ms
        )
        if execution.success and ai_reply:
            _count_ai_reply(db, user_id, automation_id)
        logger.info(
            "automation_executed automation_id=%s success=%s status=%s response_time_ms=%s",
            automation_id,
            execution.success,
            execution.status,
            execution.response_time_ms,
        )
        return execution

    @staticmethod
    def run(
        db: Session,
        user_id,
        text: str,
        context: dict,
        source: str = automation_triggers.SOURCE_MESSAGE,
        deliver: Callable[[Automation, str], None] | None = None,
        now: datetime | None = None,
    ) -> list[AutomationExecution]:
        """Match and execute every applicable automation in priority order.

        Pending work in the session (the inbound message) is committed only
        once matching has succeeded.
        """
        matched = Automations.match(db, user_id, text, context, source, now)
        db.commit()
        executions = []
        for automation in matched:
            executions.append(Automations.execute(db, automation, text, context, deliver))
        return executions


def _count_ai_reply(db: Session, user_id, automation_id: str) -> None:
    try:
        usage.increment_usage(db, user_id, usage.AI_REPLIES)
    except Exception as exc:
        db.rollback()
        logger.error(
            "automation_ai_usage_update_failed automation_id=%s error=%s", automation_id, exc
        )


def test_automation(
    db: Session,
    trigger: dict,
    response: dict,
    message: str,
    context: dict | None = None,
    now: datetime | None = None,
) -> AutomationTestResult:
    """Dry run: evaluate a trigger and render its response, persisting nothing."""
    context = context or {}
    try:
        parsed_trigger = parse_trigger(trigger)
        parsed_response = parse_response(response)
    except ValidationError as exc:
        return AutomationTestResult(
            triggered=False, error=f"Invalid configuration: {exc.error_count()} error(s)"
        )

    source = (
        automation_triggers.SOURCE_COMMENT
        if context.get("commentId")
        else automation_triggers.SOURCE_MESSAGE
    )
    if not automation_triggers.evaluate(db, parsed_trigger, message, context, source, now):
        return AutomationTestResult(triggered=False)
    try:
        generated = automation_responses.generate(
            context.get("userId"), parsed_response, message, context
        )
    except ResponseGenerationError as exc:
        return AutomationTestResult(triggered=True, status="failed", error=str(exc))
    return AutomationTestResult(
        triggered=True, response=generated.text, status=generated.status.value
    )


automations = Automations()
