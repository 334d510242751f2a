"""
ITSM Change Lifecycle Engine
Scheduled Jobs.

Jobs:
    - change_lifecycle: auto-start due approved changes and prompt for
      confirmation of in-progress changes past their estimated end time
"""

from __future__ import annotations

from typing import Any

from itsm.services.change_automation import run_change_automation
from itsm.services.scheduler_service import register_job
from itsm.utils.helpers import utcnow


@register_job("change_lifecycle", interval_config="AUTOMATION_INTERVAL_SECONDS")
def run_change_lifecycle(app) -> dict[str, Any]:
    """Auto-start due changes and send completion prompts."""
    clock = app.config.get("AUTOMATION_CLOCK") or utcnow
    now = clock()
    summary = run_change_automation(now)
    return {"timestamp": now.isoformat(), **summary.to_dict()}
