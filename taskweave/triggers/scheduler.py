"""Cron schedules that start workflow executions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger

from ..contracts import CronSchedule, ScheduledTrigger, ScheduleTriggerConfig, WorkflowInput
from ..errors import InvalidScheduleError

logger = logging.getLogger(__name__)

Launcher = Callable[[str, WorkflowInput], Awaitable[str]]


def build_cron_trigger(expression: str, timezone: str = "UTC") -> CronTrigger:
    """Parse a five-field crontab expression in the given IANA timezone.

    Raises:
        InvalidScheduleError: On malformed syntax or an unknown timezone.
    """
    try:
        tz = ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError, KeyError) as exc:
        raise InvalidScheduleError(expression, f"unknown timezone {timezone}") from exc
    try:
        return CronTrigger.from_crontab(expression, timezone=tz)
    except (ValueError, KeyError, TypeError) as exc:
        raise InvalidScheduleError(expression, str(exc)) from exc


def next_fire_time(
    trigger: CronTrigger, previous: Optional[datetime] = None
) -> Optional[datetime]:
    now = datetime.now(trigger.timezone)
    return trigger.get_next_fire_time(previous, now)


@dataclass
class _Entry:
    info: ScheduledTrigger
    trigger: CronTrigger
    task: Optional[asyncio.Task] = None


class WorkflowScheduler:
    """Fire ``launcher(workflow_id, input)`` on each cron match.

    Every schedule has its own timer task that sleeps until ``next_run``,
    fires, and recomputes ``next_run`` in the schedule's timezone. A failing
    launch is logged and the timer keeps going.
    """

    def __init__(self, launcher: Launcher) -> None:
        self._launcher = launcher
        self._entries: Dict[str, _Entry] = {}

    def schedule_workflow(
        self,
        workflow_id: str,
        schedule: Union[CronSchedule, ScheduleTriggerConfig, str],
        timezone: str = "UTC",
        enabled: bool = True,
    ) -> bool:
        """Register (or replace) the schedule of ``workflow_id``.

        Must be called with a running event loop when ``enabled``.
        """
        if isinstance(schedule, CronSchedule):
            expression, timezone = schedule.expression, schedule.timezone
        elif isinstance(schedule, ScheduleTriggerConfig):
            expression, timezone = schedule.cron_expression, schedule.timezone
        else:
            expression = schedule

        trigger = build_cron_trigger(expression, timezone)
        self.unschedule_workflow(workflow_id)

        entry = _Entry(
            info=ScheduledTrigger(
                workflow_id=workflow_id,
                cron_expression=expression,
                timezone=timezone,
                next_run=next_fire_time(trigger),
                enabled=enabled,
            ),
            trigger=trigger,
        )
        self._entries[workflow_id] = entry
        if enabled:
            self._start_timer(entry)
        logger.info(
            f"Scheduled workflow {workflow_id} with '{expression}' ({timezone}), "
            f"next run {entry.info.next_run}"
        )
        return True

    def unschedule_workflow(self, workflow_id: str) -> bool:
        entry = self._entries.pop(workflow_id, None)
        if entry is None:
            return False
        if entry.task is not None:
            entry.task.cancel()
        logger.info(f"Unscheduled workflow {workflow_id}")
        return True

    def set_enabled(self, workflow_id: str, enabled: bool) -> bool:
        entry = self._entries.get(workflow_id)
        if entry is None:
            return False
        entry.info.enabled = enabled
        if enabled:
            entry.info.next_run = next_fire_time(entry.trigger)
            if entry.task is None or entry.task.done():
                self._start_timer(entry)
        elif entry.task is not None:
            entry.task.cancel()
            entry.task = None
        return True

    def get_schedule(self, workflow_id: str) -> Optional[ScheduledTrigger]:
        entry = self._entries.get(workflow_id)
        return entry.info.model_copy() if entry else None

    def list_scheduled_workflows(self) -> List[ScheduledTrigger]:
        return [entry.info.model_copy() for entry in self._entries.values()]

    async def shutdown(self) -> None:
        tasks = [e.task for e in self._entries.values() if e.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._entries.clear()

    # ------------------------------------------------------------------
    def _start_timer(self, entry: _Entry) -> None:
        loop = asyncio.get_running_loop()
        entry.task = loop.create_task(
            self._run(entry), name=f"taskweave-schedule-{entry.info.workflow_id}"
        )

    async def _run(self, entry: _Entry) -> None:
        while entry.info.enabled:
            next_run = entry.info.next_run
            if next_run is None:
                logger.info(f"Schedule for {entry.info.workflow_id} has no further fire times")
                return
            delay = (next_run - datetime.now(next_run.tzinfo)).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            await self._fire(entry.info.workflow_id)
            entry.info.next_run = next_fire_time(entry.trigger, previous=next_run)

    async def _fire(self, workflow_id: str) -> Optional[str]:
        entry = self._entries.get(workflow_id)
        if entry is None or not entry.info.enabled:
            return None
        try:
            execution_id = await self._launcher(
                workflow_id, WorkflowInput(context={"trigger": "schedule"})
            )
        except Exception:
            logger.exception(f"Scheduled run of workflow {workflow_id} failed to start")
            return None
        logger.info(f"Scheduled run of {workflow_id} started execution {execution_id}")
        return execution_id
