#!/usr/bin/env python3
"""
Dispatch indirection for pipeline stages.

Each stage of the feed pipeline (fetch, fetch_feed, process_item) is a
PipelineStage. A dispatcher decides how a stage call is carried out:
InlineDispatcher awaits the stage and returns its result, QueueDispatcher
submits it to the task queue and returns the job id once it is queued.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable

from config import get_logger
from queues import WorkerQueue

logger = get_logger("dispatch")

JOB_PREFIX = "feedreader"


@dataclass(frozen=True)
class PipelineStage:
    name: str
    run: Callable[[Dict[str, Any]], Awaitable[Any]]

    @property
    def job_name(self) -> str:
        return f"{JOB_PREFIX}-{self.name}"


class InlineDispatcher:
    """Run stages in the caller's task."""

    queued = False

    async def dispatch(self, stage: PipelineStage, payload: Dict[str, Any]) -> Any:
        return await stage.run(payload)


class QueueDispatcher:
    """Submit stages as named jobs to a WorkerQueue."""

    queued = True

    def __init__(self, queue: WorkerQueue, stages: Iterable[PipelineStage]):
        self.queue = queue
        for stage in stages:
            queue.worker(stage.job_name, stage.run)
            logger.debug(f"Registered queue worker {stage.job_name}")

    async def dispatch(self, stage: PipelineStage, payload: Dict[str, Any]) -> str:
        return await self.queue.task(stage.job_name, payload)
