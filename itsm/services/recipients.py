"""
Notification recipient derivation.

Pure functions of (change, actor): no database access, no side effects.
Given the same inputs they always return the same ordered tuple, which
keeps notification fan-out easy to test and to reason about.
"""

from __future__ import annotations

from typing import Iterable


def derive_recipients(change, actor_id: str | None = None) -> tuple[str, ...]:
    """Who hears about a transition of ``change`` made by ``actor_id``.

    Order is fixed: the requester first, then the assignee. Nobody is
    notified about their own action, and the assignee is skipped when they
    are also the requester. ``actor_id`` is None for the scheduler, in
    which case nobody is excluded on that ground.

    Args:
        change: Any object exposing ``requested_by`` and ``assigned_to``.
        actor_id: The user who triggered the transition, or None.

    Returns:
        Tuple of user ids, no duplicates.
    """
    recipients: list[str] = []
    requester = change.requested_by
    assignee = change.assigned_to

    if requester and requester != actor_id:
        recipients.append(requester)
    if assignee and assignee != requester and assignee != actor_id:
        recipients.append(assignee)
    return tuple(recipients)


def approval_request_recipients(approver_ids: Iterable[str], actor_id: str | None = None) -> tuple[str, ...]:
    """Managers to ask for sign-off when a change is submitted.

    Keeps the input order, drops duplicates and the submitting actor.
    """
    seen: set[str] = set()
    recipients: list[str] = []
    for approver_id in approver_ids:
        if not approver_id or approver_id == actor_id or approver_id in seen:
            continue
        seen.add(approver_id)
        recipients.append(approver_id)
    return tuple(recipients)


def completion_prompt_recipient(change) -> str | None:
    """The person asked to confirm an overdue change: assignee, else requester."""
    return change.assigned_to or change.requested_by
