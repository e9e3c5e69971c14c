"""Map job types to handlers and dispatch queued jobs to them."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from .contracts import STEP_QUEUES, QueueName, StepType, utcnow
from .errors import ProcessorNotFoundError
from .queue import JobContext, QueueConfig, QueueManager

logger = logging.getLogger(__name__)

Handler = Callable[[JobContext], Union[Any, Awaitable[Any]]]
Collaborator = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]

WORKFLOW_EXECUTION_JOB = "workflow-execution"


@dataclass
class ProcessorInfo:
    """A handler for one job type, bound to the queue its jobs run on."""

    name: str
    queue_name: str
    processor: Handler
    description: str = ""


class JobProcessorRegistry:
    """Route jobs to handlers by their ``type``.

    The registry binds its own ``dispatch`` as the processor of every queue
    that has at least one handler, so several job types can share a queue.
    Handlers may be sync (run in a worker thread) or async, and must be safe
    to run more than once for the same job.
    """

    def __init__(self, queue_manager: QueueManager) -> None:
        self.queue_manager = queue_manager
        self._processors: Dict[str, ProcessorInfo] = {}
        self._bound_queues: set[str] = set()

    def register_processor(self, info: ProcessorInfo) -> None:
        if info.name in self._processors:
            logger.warning(f"Replacing processor for job type {info.name}")
        if not self.queue_manager.has_queue(info.queue_name):
            logger.info(f"Creating queue {info.queue_name} for processor {info.name}")
            self.queue_manager.create_queue(QueueConfig(name=info.queue_name))
        self._processors[info.name] = info
        if info.queue_name not in self._bound_queues:
            self.queue_manager.register_job_processor(info.queue_name, self.dispatch)
            self._bound_queues.add(info.queue_name)
        logger.debug(f"Registered processor {info.name} on {info.queue_name}")

    def get_processor(self, name: str) -> Optional[ProcessorInfo]:
        return self._processors.get(name)

    def list_processors(self, queue_name: Optional[str] = None) -> List[ProcessorInfo]:
        return [
            info
            for info in self._processors.values()
            if queue_name is None or info.queue_name == queue_name
        ]

    def unregister_processor(self, name: str) -> bool:
        return self._processors.pop(name, None) is not None

    async def dispatch(self, context: JobContext) -> Any:
        info = self._processors.get(context.type)
        if info is None:
            raise ProcessorNotFoundError(context.type)
        handler = info.processor
        if inspect.iscoroutinefunction(handler):
            return await handler(context)
        result = await asyncio.to_thread(handler, context)
        if inspect.isawaitable(result):
            result = await result
        return result

    def register_built_in_processors(
        self,
        collaborators: Optional[Mapping[str, Collaborator]] = None,
        replace: bool = True,
    ) -> None:
        """Register a handler for every step type and for workflow-execution jobs.

        Each handler forwards the job payload to the collaborator registered
        under its job type. Without one, it returns an acknowledgement record.
        With ``replace=False`` job types that already have a handler keep it.
        """
        collaborators = dict(collaborators or {})
        targets = [(t.value, STEP_QUEUES[t].value) for t in StepType]
        targets.append((WORKFLOW_EXECUTION_JOB, QueueName.WORKFLOW_EXECUTION.value))
        for job_type, queue_name in targets:
            if not replace and job_type in self._processors:
                continue
            self.register_processor(
                ProcessorInfo(
                    name=job_type,
                    queue_name=queue_name,
                    processor=_built_in_handler(collaborators.get(job_type)),
                    description=f"Built-in {job_type} processor",
                )
            )


def _built_in_handler(collaborator: Optional[Collaborator]) -> Handler:
    async def handler(context: JobContext) -> Any:
        if collaborator is None:
            return {
                "type": context.type,
                "acknowledged": True,
                "payload_keys": sorted(context.payload),
                "processed_at": utcnow().isoformat(),
            }
        await context.update_progress(10)
        if inspect.iscoroutinefunction(collaborator):
            return await collaborator(context.payload)
        result = await asyncio.to_thread(collaborator, context.payload)
        if inspect.isawaitable(result):
            result = await result
        return result

    return handler


__all__ = [
    "Handler",
    "JobProcessorRegistry",
    "ProcessorInfo",
    "WORKFLOW_EXECUTION_JOB",
]
