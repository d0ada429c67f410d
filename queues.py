#!/usr/bin/env python3
"""
Background task queue.

An in-process asyncio job queue with named workers: `worker(name, fn)`
registers the coroutine that handles jobs of that name and `task(name,
payload)` enqueues a job and returns as soon as it is queued. Failures are
logged and kept in `failures` (and passed to any registered failure
listeners); they never propagate back to the submitter.
"""

from asyncio import Queue, create_task, gather, CancelledError
from collections import deque
from dataclasses import dataclass, field
from time import time
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional
from uuid import uuid4
import inspect

from config import get_logger
from telemetry import trace_span

logger = get_logger("queues")

JobHandler = Callable[[Dict[str, Any]], Awaitable[Any]]
FailureListener = Callable[["JobFailure"], Any]


@dataclass
class Job:
    name: str
    payload: Dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid4()))
    submitted_at: float = field(default_factory=time)


@dataclass
class JobFailure:
    job: Job
    error: BaseException
    failed_at: float = field(default_factory=time)


class WorkerQueue:
    """Named-job queue executed by a pool of worker coroutines."""

    def __init__(self, concurrency: int = 4, max_failures: int = 100):
        self.concurrency = max(1, concurrency)
        self.queue: Queue = Queue()
        self.handlers: Dict[str, JobHandler] = {}
        self.failures: Deque[JobFailure] = deque(maxlen=max_failures)
        self._listeners: List[FailureListener] = []
        self.running = False
        self.worker_tasks: List = []
        self.completed = 0

    def worker(self, name: str, handler: JobHandler) -> None:
        """Register the handler for jobs called `name`. Re-registering replaces it."""
        if name in self.handlers:
            logger.debug(f"Replacing worker for {name}")
        self.handlers[name] = handler

    def on_failure(self, listener: FailureListener) -> None:
        self._listeners.append(listener)

    async def task(self, name: str, payload: Optional[Dict[str, Any]] = None) -> str:
        """Submit a job and return its id without waiting for it to run."""
        if name not in self.handlers:
            raise ValueError(f"No worker registered for job '{name}'")
        job = Job(name=name, payload=dict(payload or {}))
        await self.queue.put(job)
        logger.debug(f"Queued job {name} ({job.id})")
        return job.id

    async def start(self) -> None:
        self.start_nowait()

    def start_nowait(self) -> None:
        """Spawn the workers. Must be called from a running event loop."""
        if self.running:
            return
        self.running = True
        self.worker_tasks = [create_task(self._worker(n)) for n in range(self.concurrency)]
        logger.info(f"Task queue started with {self.concurrency} workers")

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        for task in self.worker_tasks:
            task.cancel()
        await gather(*self.worker_tasks, return_exceptions=True)
        self.worker_tasks = []
        pending = self.queue.qsize()
        if pending:
            logger.warning(f"Task queue stopped with {pending} jobs still pending")
        logger.info("Task queue stopped")

    async def join(self) -> None:
        """Wait until every queued job, including ones queued by jobs, has run."""
        await self.queue.join()

    async def _worker(self, number: int) -> None:
        while True:
            job = await self.queue.get()
            try:
                await self._run(job)
            except CancelledError:
                raise
            except Exception as e:
                await self._record_failure(job, e)
            finally:
                self.queue.task_done()

    @trace_span(
        "queue.job",
        tracer_name="queues",
        attr_from_args=lambda self, job: {"job.name": job.name, "job.id": job.id},
    )
    async def _run(self, job: Job) -> None:
        handler = self.handlers.get(job.name)
        if handler is None:
            raise ValueError(f"No worker registered for job '{job.name}'")
        await handler(job.payload)
        self.completed += 1

    async def _record_failure(self, job: Job, error: Exception) -> None:
        logger.error(f"Job {job.name} ({job.id}) failed: {error}")
        failure = JobFailure(job=job, error=error)
        self.failures.append(failure)
        for listener in self._listeners:
            try:
                result = listener(failure)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Failure listener raised for job {job.id}: {e}")
