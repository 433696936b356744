"""
Thread-closure cleanup.

CleanupWorker purges a closed thread's media folder and, when configured,
redacts message bodies. It is dispatched fire-and-forget after a close, must
survive being run more than once, and lets storage and transient database
failures escape so the queue can retry them.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session

from .exceptions import ChatStorageFailure
from .media import MediaAccessBroker
from .repository import MessageStore, ThreadStore

logger = logging.getLogger(__name__)

CLEANUP_TASK_NAME = "cleanup_chat_thread_task"
CLEANUP_BACKOFF_SECONDS = (5, 30, 60, 120, 300)
CLEANUP_MAX_TRIES = len(CLEANUP_BACKOFF_SECONDS)


def backoff_for_attempt(attempt: int, schedule: tuple[int, ...] = CLEANUP_BACKOFF_SECONDS) -> int:
    """Delay before retry number `attempt` (1-based); the last step repeats"""
    index = min(max(attempt, 1), len(schedule)) - 1
    return schedule[index]


def is_transient(exc: BaseException) -> bool:
    """Failures worth another attempt: storage errors, lock timeouts, dropped DB connections"""
    if isinstance(exc, (ChatStorageFailure, OperationalError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


@dataclass
class CleanupResult:
    thread_id: int
    status: str  # purged, missing, skipped_open
    deleted_objects: int = 0
    redacted_messages: int = 0
    media_count: int = 0


class CleanupQueue(Protocol):
    async def enqueue(self, thread_id: int) -> Optional[str]: ...


class CleanupWorker:
    """Purges a closed thread's media and optionally redacts its messages"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        media: MediaAccessBroker,
        redact_on_close: bool,
    ):
        self.session_factory = session_factory
        self.media = media
        self.redact_on_close = redact_on_close

    def run(self, thread_id: int) -> CleanupResult:
        db = self.session_factory()
        try:
            thread = ThreadStore.find_by_id(db, thread_id)
            if thread is None:
                logger.info(f"🧹 Chat cleanup: thread {thread_id} no longer exists, nothing to do")
                return CleanupResult(thread_id=thread_id, status="missing")

            if thread.is_open:
                logger.warning(f"⚠️ Chat cleanup skipped: thread {thread_id} is still open")
                return CleanupResult(thread_id=thread_id, status="skipped_open")

            media_paths = MessageStore.media_paths_for_thread(db, thread.id)

            # Storage and transient DB errors escape; the queue retries the whole run
            deleted = self.media.delete_by_prefix(thread.storage_prefix)

            redacted = 0
            if self.redact_on_close:
                redacted = MessageStore.redact_thread(db, thread.id)

            logger.info(
                f"🧹 Chat cleanup executed: thread={thread.id} request={thread.request_id} "
                f"deleted={deleted} media_count={len(media_paths)} "
                f"redacted={self.redact_on_close} ({redacted} messages)"
            )
            return CleanupResult(
                thread_id=thread.id,
                status="purged",
                deleted_objects=deleted,
                redacted_messages=redacted,
                media_count=len(media_paths),
            )
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class ArqCleanupQueue:
    """Enqueues cleanup on the ARQ worker; one pending job per thread"""

    def __init__(self, redis_settings=None):
        self._redis_settings = redis_settings
        self._pool = None

    async def _get_pool(self):
        if self._pool is None:
            from arq import create_pool

            from ...worker import get_redis_settings

            self._pool = await create_pool(self._redis_settings or get_redis_settings())
        return self._pool

    async def enqueue(self, thread_id: int) -> Optional[str]:
        pool = await self._get_pool()
        job = await pool.enqueue_job(CLEANUP_TASK_NAME, thread_id, _job_id=f"chat-cleanup-{thread_id}")
        if job is None:
            logger.info(f"📋 Chat cleanup for thread {thread_id} already queued")
            return None
        logger.info(f"📋 Chat cleanup job queued: {job.job_id}")
        return job.job_id

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


class LocalCleanupQueue:
    """Runs cleanup as in-process asyncio tasks with the same retry schedule as the ARQ job.

    For single-process deployments without a Redis-backed worker.
    """

    def __init__(
        self,
        worker: CleanupWorker,
        backoff: tuple[int, ...] = CLEANUP_BACKOFF_SECONDS,
        max_tries: int = CLEANUP_MAX_TRIES,
    ):
        self.worker = worker
        self.backoff = backoff
        self.max_tries = max_tries
        self._tasks: set[asyncio.Task] = set()

    async def enqueue(self, thread_id: int) -> Optional[str]:
        task = asyncio.create_task(self._run(thread_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return f"local-cleanup-{thread_id}"

    async def _run(self, thread_id: int) -> Optional[CleanupResult]:
        for attempt in range(1, self.max_tries + 1):
            try:
                return await asyncio.to_thread(self.worker.run, thread_id)
            except Exception as e:
                if not is_transient(e):
                    logger.error(f"❌ Chat cleanup for thread {thread_id} failed: {type(e).__name__}: {e}")
                    return None
                if attempt == self.max_tries:
                    logger.error(
                        f"❌ Chat cleanup for thread {thread_id} gave up after {attempt} tries: {e}"
                    )
                    return None
                delay = backoff_for_attempt(attempt, self.backoff)
                logger.warning(
                    f"🔄 Chat cleanup retry {attempt}/{self.max_tries} for thread {thread_id} in {delay}s: "
                    f"{type(e).__name__}: {e}"
                )
                await asyncio.sleep(delay)
        return None

    async def drain(self) -> None:
        """Wait for every cleanup task currently in flight"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.drain()
