"""Job loop for recommendation work.

Jobs live in ``background_jobs``. A LISTEN connection wakes the drain loop
as soon as a signal batch is enqueued; a poll interval covers missed
notifications. Each wake-up drains claimable jobs until a batch comes back
short, so a burst of signal batches is handled without waiting for the
next poll.
"""

import asyncio
import logging
import signal
import time
from dataclasses import dataclass
from typing import Any

import psycopg
from psycopg.rows import dict_row

from .config import Config
from .metrics import (
    record_handler_invocation,
    record_job_completed,
    record_job_dead,
    record_job_failed,
)
from .registry import HandlerFn, get_handler, owns_transaction

logger = logging.getLogger(__name__)

LISTEN_CHANNEL = "mastery_jobs"
MAX_RETRY_DELAY_SECONDS = 300
RECONNECT_DELAY_SECONDS = 5


@dataclass(frozen=True)
class ClaimedJob:
    id: int
    user_id: str
    job_type: str
    payload: dict[str, Any]
    attempt: int
    max_retries: int

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ClaimedJob":
        return cls(
            id=row["id"],
            user_id=str(row["user_id"]),
            job_type=row["job_type"],
            payload=row["payload"] or {},
            attempt=row["attempt"],
            max_retries=row["max_retries"],
        )

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_retries

    @property
    def retry_delay_seconds(self) -> int:
        return min(2**self.attempt, MAX_RETRY_DELAY_SECONDS)


class Worker:
    def __init__(self, config: Config) -> None:
        self.config = config
        self._shutdown = asyncio.Event()
        self._wake = asyncio.Event()

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._request_shutdown)

        logger.info(
            "Worker starting (poll_interval=%.1fs, batch_size=%d, tier2=%s)",
            self.config.poll_interval_seconds,
            self.config.batch_size,
            "enabled" if self.config.tier2_available else "disabled",
        )

        async with asyncio.TaskGroup() as tg:
            tg.create_task(self._listen_loop())
            tg.create_task(self._drain_loop())

    def _request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown.set()
        self._wake.set()

    async def _listen_loop(self) -> None:
        """Turn NOTIFYs on the jobs channel into wake-ups for the drain loop."""
        while not self._shutdown.is_set():
            try:
                async with await psycopg.AsyncConnection.connect(
                    self.config.database_url, autocommit=True
                ) as conn:
                    await conn.execute(f"LISTEN {LISTEN_CHANNEL}")
                    logger.info("Listening on %s channel", LISTEN_CHANNEL)
                    while not self._shutdown.is_set():
                        async for notify in conn.notifies(
                            timeout=self.config.poll_interval_seconds
                        ):
                            logger.debug("NOTIFY received: %s", notify.payload)
                            self._wake.set()
            except psycopg.OperationalError:
                if self._shutdown.is_set():
                    break
                logger.warning(
                    "LISTEN connection lost, reconnecting in %ds", RECONNECT_DELAY_SECONDS
                )
                await asyncio.sleep(RECONNECT_DELAY_SECONDS)

        logger.info("Listen loop stopped")

    async def _drain_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(
                    self._wake.wait(), timeout=self.config.poll_interval_seconds
                )
            except TimeoutError:
                pass
            self._wake.clear()

            while not self._shutdown.is_set():
                claimed = await self._process_batch()
                if claimed < self.config.batch_size:
                    break

        logger.info("Drain loop stopped")

    async def _process_batch(self) -> int:
        """Claim and process one batch. Returns how many jobs were claimed."""
        try:
            async with await psycopg.AsyncConnection.connect(
                self.config.database_url
            ) as conn:
                jobs = await self._claim_jobs(conn)
                await conn.commit()  # claims survive a crash

                for job in jobs:
                    await self._process_job(conn, job)
                return len(jobs)
        except Exception:
            logger.exception("Error in process_batch")
            return 0

    async def _claim_jobs(self, conn: psycopg.AsyncConnection[Any]) -> list[ClaimedJob]:
        """Claim due recommendation jobs with SELECT FOR UPDATE SKIP LOCKED."""
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                UPDATE background_jobs
                SET status = 'processing', started_at = NOW(), attempt = attempt + 1
                WHERE id IN (
                    SELECT id FROM background_jobs
                    WHERE status = 'pending'
                      AND scheduled_for <= NOW()
                      AND job_type LIKE 'recommendation.%%'
                    ORDER BY priority DESC, scheduled_for, id
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING id, user_id, job_type, payload, attempt, max_retries
                """,
                (self.config.batch_size,),
            )
            rows = await cur.fetchall()
        return [ClaimedJob.from_row(row) for row in rows]

    async def _process_job(self, conn: psycopg.AsyncConnection[Any], job: ClaimedJob) -> None:
        handler = get_handler(job.job_type)
        if handler is None:
            logger.warning("No handler for job_type=%s (job_id=%d)", job.job_type, job.id)
            await self._mark_dead(conn, job.id, f"No handler for job_type={job.job_type}")
            return

        t0 = time.monotonic()
        try:
            if owns_transaction(job.job_type):
                await self._run_autocommit(conn, handler, job)
                async with conn.transaction():
                    await self._complete_job(conn, job.id)
            else:
                # Handler writes and job completion commit together
                async with conn.transaction():
                    await handler(conn, job.payload)
                    await self._complete_job(conn, job.id)
        except Exception as exc:
            record_handler_invocation(job.job_type, (time.monotonic() - t0) * 1000, success=False)
            logger.exception(
                "Job %d failed (type=%s, user=%s)",
                job.id,
                job.job_type,
                job.user_id,
                extra={"mastery_user_id": job.user_id},
            )
            if job.exhausted:
                record_job_dead()
                logger.error("Job %d is dead after %d attempts: %s", job.id, job.attempt, exc)
                await self._mark_dead(conn, job.id, str(exc))
            else:
                record_job_failed()
                await self._retry_job(conn, job, str(exc))
            return

        record_handler_invocation(job.job_type, (time.monotonic() - t0) * 1000, success=True)
        record_job_completed()
        logger.info("Job %d completed (type=%s)", job.id, job.job_type)

    async def _run_autocommit(
        self, conn: psycopg.AsyncConnection[Any], handler: HandlerFn, job: ClaimedJob
    ) -> None:
        await conn.set_autocommit(True)
        try:
            await handler(conn, job.payload)
        finally:
            await conn.set_autocommit(False)

    async def _complete_job(self, conn: psycopg.AsyncConnection[Any], job_id: int) -> None:
        await conn.execute(
            """
            UPDATE background_jobs
            SET status = 'completed', completed_at = NOW()
            WHERE id = %s
            """,
            (job_id,),
        )

    async def _mark_dead(
        self, conn: psycopg.AsyncConnection[Any], job_id: int, error: str
    ) -> None:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                UPDATE background_jobs
                SET status = 'dead', error_message = %s, completed_at = NOW()
                WHERE id = %s
                """,
                (error, job_id),
            )
        await conn.commit()

    async def _retry_job(
        self, conn: psycopg.AsyncConnection[Any], job: ClaimedJob, error: str
    ) -> None:
        delay = job.retry_delay_seconds
        logger.info("Job %d retrying in %ds (attempt=%d)", job.id, delay, job.attempt)
        async with conn.cursor() as cur:
            await cur.execute(
                """
                UPDATE background_jobs
                SET status = 'pending',
                    error_message = %s,
                    scheduled_for = NOW() + make_interval(secs => %s)
                WHERE id = %s
                """,
                (error, float(delay), job.id),
            )
        await conn.commit()
