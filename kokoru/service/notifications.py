"""Background delivery of auth notification emails.

Request handlers hand jobs to ``EmailDispatcher.submit`` and return at once.
A single worker task drains the queue and runs each send in a thread, so a
slow or failing SMTP relay never delays or fails the flow that triggered it.
Failed jobs are logged and dropped; there are no retries.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional, Tuple

from kokoru.logging import get_logger

if TYPE_CHECKING:
    from kokoru.service.email import EmailService

logger = get_logger(__name__)

DEFAULT_QUEUE_SIZE = 1000
DEFAULT_STOP_TIMEOUT_SECONDS = 10.0


@dataclass
class EmailJob:
    """One queued call to an ``EmailService.send_*`` method."""

    action: str
    args: Tuple[Any, ...] = field(default_factory=tuple)
    user_id: Optional[str] = None


class EmailDispatcher:
    def __init__(self, email: "EmailService", *, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.email = email
        self.queue_size = queue_size
        self._queue: Optional[asyncio.Queue[EmailJob]] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.sent = 0
        self.failed = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("email_dispatcher_already_running")
            return
        self._ensure_started()

    def _ensure_started(self) -> None:
        if self._running:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._run_loop())
        logger.info("email_dispatcher_started", queue_size=self.queue_size)

    def submit(self, job: EmailJob) -> bool:
        """Queue ``job`` without waiting. Returns False when it was dropped."""
        if not hasattr(self.email, job.action):
            logger.error("email_job_unknown_action", action=job.action)
            self.dropped += 1
            return False
        try:
            self._ensure_started()
        except RuntimeError:
            logger.error("email_job_dropped", action=job.action, user_id=job.user_id, reason="no_event_loop")
            self.dropped += 1
            return False
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            logger.error("email_job_dropped", action=job.action, user_id=job.user_id, reason="queue_full")
            self.dropped += 1
            return False
        return True

    async def _run_loop(self) -> None:
        assert self._queue is not None
        while True:
            job = await self._queue.get()
            try:
                await self._deliver(job)
            finally:
                self._queue.task_done()

    async def _deliver(self, job: EmailJob) -> None:
        try:
            message_id = await asyncio.to_thread(getattr(self.email, job.action), *job.args)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.failed += 1
            logger.error(
                "email_job_failed",
                action=job.action,
                user_id=job.user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        self.sent += 1
        logger.info("email_job_sent", action=job.action, user_id=job.user_id, message_id=message_id)

    async def join(self) -> None:
        """Wait until every queued job has been attempted."""
        if self._queue is not None and self._running:
            await self._queue.join()

    async def stop(self, *, timeout: float = DEFAULT_STOP_TIMEOUT_SECONDS) -> None:
        if not self._running:
            return
        try:
            await asyncio.wait_for(self.join(), timeout)
        except asyncio.TimeoutError:
            pending = self._queue.qsize() if self._queue is not None else 0
            logger.warning("email_dispatcher_stop_timeout", pending=pending)
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._queue = None
        logger.info("email_dispatcher_stopped", sent=self.sent, failed=self.failed, dropped=self.dropped)
