"""
Change Automation - Service Layer.

Periodic scans over the change table, driven by the scheduler job
``change_lifecycle`` (see ``itsm.services.scheduled_jobs``):

    1. Auto-start:         approved changes whose ``scheduled_for`` has arrived
                           are moved to ``in_progress`` by the system actor.
    2. Completion prompt:  in-progress changes past ``estimated_end_time`` are
                           surfaced for confirmation; their status is untouched.

``now`` is always passed in. Each change is processed in its own
transaction, so one failure is recorded on that change's automation row
and the scan moves on to the next.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError

from itsm.core.exceptions import (
    AuthorizationError,
    ConcurrencyConflictError,
    NotFoundError,
    ValidationError,
)
from itsm.models import db
from itsm.models.change import Change, ChangeAutomation
from itsm.services.change_lifecycle import (
    SYSTEM_ACTOR,
    change_notification_payload,
    transition_change,
)
from itsm.services.notification import NotificationService
from itsm.services.recipients import completion_prompt_recipient

logger = logging.getLogger(__name__)

# Expected outcomes of racing a human actor; anything else is a bug or a DB fault.
_SKIPPED = (ConcurrencyConflictError, ValidationError, AuthorizationError, NotFoundError)


@dataclass
class AutomationSummary:
    auto_started: int = 0
    completion_prompts: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "autoStarted": self.auto_started,
            "completionPrompts": self.completion_prompts,
            "errors": list(self.errors),
        }


# ═════════════════════════════════════════════════════════════════════════════
# Scans
# ═════════════════════════════════════════════════════════════════════════════


def due_auto_start_ids(now: datetime) -> list[str]:
    rows = (
        db.session.query(Change.id)
        .filter(
            Change.status == "approved",
            Change.scheduled_for.isnot(None),
            Change.scheduled_for <= now,
        )
        .order_by(Change.scheduled_for)
        .all()
    )
    return [row.id for row in rows]


def due_completion_prompts(now: datetime) -> list[Change]:
    return (
        Change.query
        .filter(
            Change.status == "in_progress",
            Change.estimated_end_time.isnot(None),
            Change.estimated_end_time <= now,
        )
        .order_by(Change.estimated_end_time)
        .all()
    )


def run_change_automation(now: datetime) -> AutomationSummary:
    """Run both scans once and summarise what happened."""
    summary = AutomationSummary()
    _run_auto_start_scan(now, summary)
    _run_completion_prompt_scan(now, summary)
    logger.info(
        "Change automation pass: auto_started=%d completion_prompts=%d errors=%d",
        summary.auto_started, summary.completion_prompts, len(summary.errors),
    )
    return summary


def _run_auto_start_scan(now: datetime, summary: AutomationSummary) -> None:
    try:
        change_ids = due_auto_start_ids(now)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Auto-start scan: failed to fetch due changes")
        summary.errors.append("Failed to fetch changes due for auto-start")
        return

    for change_id in change_ids:
        try:
            transition_change(change_id, "in_progress", SYSTEM_ACTOR, expected_status="approved", now=now)
        except _SKIPPED as exc:
            logger.warning("Auto-start skipped for change %s: %s", change_id, exc,
                           extra={"change_id": change_id})
            summary.errors.append(f"Change {change_id}: {exc}")
            _record_automation_failure(change_id, "auto_start", str(exc), now)
        except SQLAlchemyError as exc:
            logger.exception("Auto-start failed for change %s", change_id, extra={"change_id": change_id})
            summary.errors.append(f"Change {change_id}: failed to update status")
            _record_automation_failure(change_id, "auto_start", f"Failed to update change status: {exc}", now)
        except Exception as exc:
            db.session.rollback()
            logger.exception("Auto-start crashed for change %s", change_id, extra={"change_id": change_id})
            summary.errors.append(f"Change {change_id}: unexpected error during auto-start")
            _record_automation_failure(change_id, "auto_start", f"Unexpected error: {exc}", now)
        else:
            summary.auto_started += 1


def _run_completion_prompt_scan(now: datetime, summary: AutomationSummary) -> None:
    try:
        changes = due_completion_prompts(now)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Completion-prompt scan: failed to fetch due changes")
        summary.errors.append("Failed to fetch changes due for a completion prompt")
        return

    for change in changes:
        # Read before the attempt; a rollback expires the instance
        change_id = change.id
        summary.completion_prompts += 1
        try:
            _send_completion_prompt(change, now)
        except Exception:
            db.session.rollback()
            logger.exception("Completion prompt failed for change %s", change_id,
                             extra={"change_id": change_id})
            summary.errors.append(f"Change {change_id}: failed to send completion prompt")


def _send_completion_prompt(change: Change, now: datetime) -> None:
    """Notify once per change; the completion_prompt row remembers it was sent."""
    pending = (
        ChangeAutomation.query
        .filter_by(change_id=change.id, automation_type="completion_prompt", executed=False)
        .all()
    )
    if pending:
        for automation in pending:
            automation.mark_executed(now)
    else:
        already_sent = (
            ChangeAutomation.query
            .filter_by(change_id=change.id, automation_type="completion_prompt", executed=True)
            .filter(ChangeAutomation.error_message.is_(None))
            .first()
        )
        if already_sent is not None:
            return
        db.session.add(ChangeAutomation(
            change_id=change.id,
            organization_id=change.organization_id,
            automation_type="completion_prompt",
            scheduled_for=change.estimated_end_time,
            executed=True,
            executed_at=now,
        ))
    db.session.commit()

    recipient = completion_prompt_recipient(change)
    if recipient:
        NotificationService.deliver(
            (recipient,),
            "change_completion_prompt",
            change_notification_payload(change, "change_completion_prompt", requires_response=True),
        )


def _record_automation_failure(change_id: str, automation_type: str, message: str, now: datetime) -> None:
    """Close the change's pending automation row with ``message`` (or add a closed one)."""
    try:
        change = db.session.get(Change, change_id)
        if change is None:
            return
        pending = (
            ChangeAutomation.query
            .filter_by(change_id=change_id, automation_type=automation_type, executed=False)
            .all()
        )
        if pending:
            for automation in pending:
                automation.mark_executed(now, error_message=message)
        else:
            db.session.add(ChangeAutomation(
                change_id=change_id,
                organization_id=change.organization_id,
                automation_type=automation_type,
                scheduled_for=change.scheduled_for or now,
                executed=True,
                executed_at=now,
                error_message=message,
            ))
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Could not record %s failure for change %s", automation_type, change_id,
                         extra={"change_id": change_id})


# ═════════════════════════════════════════════════════════════════════════════
# Reporting
# ═════════════════════════════════════════════════════════════════════════════


def automation_overview(now: datetime, window_hours: int = 24) -> dict:
    """Unexecuted automations plus everything executed in the last ``window_hours``."""
    pending = (
        ChangeAutomation.query
        .filter_by(executed=False)
        .order_by(ChangeAutomation.scheduled_for)
        .all()
    )
    recent = (
        ChangeAutomation.query
        .filter(
            ChangeAutomation.executed.is_(True),
            ChangeAutomation.executed_at >= now - timedelta(hours=window_hours),
        )
        .order_by(ChangeAutomation.executed_at.desc())
        .all()
    )

    def with_change(automation):
        d = automation.to_dict()
        d["change"] = {
            "change_number": automation.change.change_number,
            "title": automation.change.title,
            "status": automation.change.status,
        }
        return d

    return {
        "pending": [with_change(a) for a in pending],
        "recent_executions": [with_change(a) for a in recent],
    }
