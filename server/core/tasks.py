from typing import Any, Mapping

from fastapi import BackgroundTasks

from core.automation import dispatch_event
from core.content_models import AutomationTrigger
from core.db import Database


def enqueue_automation_event(
    tasks: BackgroundTasks,
    db: Database,
    trigger: AutomationTrigger,
    payload: Mapping[str, Any],
) -> None:
    """Run automation rules after the response is sent (own session, see dispatch_event)."""
    tasks.add_task(dispatch_event, db, trigger, dict(payload))
