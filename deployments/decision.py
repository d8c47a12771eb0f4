"""
AI eligibility for one deployment: enabled flag, priority mode, schedule,
then conversation handoff state. Pure; the caller does the lookups.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from deployments.schedule import describe_window, is_on_duty
from models.schemas import AIDecision, ConversationHandoff, DeploymentResource, PriorityMode


def evaluate_deployment(
    deployment: DeploymentResource,
    now: datetime = None,
    handoff: Optional[ConversationHandoff] = None,
) -> AIDecision:
    """
    Walk the eligibility checks in order and stop at the first that decides.
    Raises ScheduleEvaluationError when the schedule cannot be evaluated.

    Note: schedule_only with a disabled schedule answers False, although a
    disabled schedule alone counts as always on duty (see is_on_duty).
    """
    def decide(should_respond: bool, reason: str, away: bool = False) -> AIDecision:
        return AIDecision(should_respond=should_respond, reason=reason,
                          deployment=deployment, send_away_message=away)

    if not deployment.is_enabled:
        return decide(False, "AI is disabled for this resource")

    mode = deployment.priority_mode
    if mode == PriorityMode.ALWAYS_HUMAN:
        return decide(False, "Priority mode: always human")
    if mode == PriorityMode.ALWAYS_AI:
        return decide(True, "Priority mode: always AI")

    schedule = deployment.schedule
    if mode == PriorityMode.SCHEDULE_ONLY:
        if not schedule.enabled:
            return decide(False, "Priority mode is schedule_only but schedule is disabled")
        if not is_on_duty(schedule, now):
            return decide(False, f"Outside schedule ({describe_window(schedule)})")
    else:
        if not deployment.behavior.auto_respond:
            return decide(False, "Auto-respond is off for this resource")
        if not is_on_duty(schedule, now):
            return decide(
                False,
                f"Outside schedule ({describe_window(schedule)})",
                away=bool(deployment.messages.away),
            )

    if handoff is not None and handoff.is_handed_off:
        return decide(False, "Conversation handed off to a human")

    return decide(True, "AI is active for this resource")
