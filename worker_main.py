# worker_main.py
"""
DB Queue Worker + Job-Kind Router (STRICT)

Where jobs come from
--------------------
Jobs are QueueJob rows written by the chat service in the same transaction
as the human message (response jobs) or by a running response job
(compression jobs). Any number of worker processes may poll the same table.

How a job is claimed
--------------------
AsyncGuard asks JobQueue.claim_next() for at most `max_concurrent - in_flight`
jobs. Only the head job of a conversation (its lowest-id open job) can be
claimed, and conversations that already have a job in flight here are
excluded, so one conversation never runs two jobs at once while different
conversations run in parallel.

Routing logic (how we pick the right app)
-----------------------------------------
Routing is done by QueueJob.kind:
  - "response"    -> ResponseApp    (generate / regenerate a character reply)
  - "compression" -> CompressionApp (roll old messages into a memory)

STRICT mode:
  - There is NO default/fallback app here.
  - A job whose kind matches no registered app fails terminally.

Failures
--------
Retryable errors (generation failures and timeouts) go back to PENDING with
exponential backoff while attempts remain. Anything else, or the last
attempt, marks the job FAILED and calls the app's on_exhausted() once.
"""

import asyncio
import logging
import time
import traceback
from typing import Any, Dict, List, Optional, Set

from dotenv import load_dotenv

load_dotenv()

from multichat.broadcast import MEMORY_COMPRESSION_FAILED
from multichat.chat_service import ChatService
from multichat.config import Settings
from multichat.entities import JOB_KIND_COMPRESSION, JOB_KIND_RESPONSE
from multichat.errors import ChatError, ConversationNotFound, JobAbandoned, is_retryable


logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n",
)
logger = logging.getLogger("multichat_worker")


class JobContext:
    def __init__(self, host: "AppHost", job: Dict[str, Any]):
        self.host = host
        self.job = job
        self.conversation_id = str(job.get("conversation_id"))

    def emit(self, msg_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
        payload = dict(payload or {})
        payload.setdefault("correlation_id", self.job.get("job_id"))
        payload.setdefault("job_kind", self.job.get("kind"))

        service = self.host.service
        service.outbox.publish(service.SessionFactory, self.conversation_id, msg_type, payload)


class AppHost:
    def __init__(self, service: ChatService, apps: List[Any]):
        self.service = service
        self.apps = list(apps or [])

    def sweep(self) -> None:
        for app in self.apps:
            fn = getattr(app, "sweep", None)
            if callable(fn):
                fn()

    def _resolve_app(self, kind: str) -> Any:
        """
        STRICT: must match a registered app kind.
        """
        for app in self.apps:
            if getattr(app, "kind", None) == kind:
                return app
        known = [getattr(a, "kind", "") for a in self.apps]
        raise RuntimeError(f"No app registered for job kind='{kind}'. Known kinds: {known}")

    def process_queue_job(self, job: Dict[str, Any]) -> Dict[str, Any]:
        job_id = str(job.get("job_id"))
        kind = job.get("kind") or "unknown"
        queue = self.service.job_queue

        try:
            app = self._resolve_app(kind)
        except RuntimeError as e:
            logger.error("Job %s: %s", job_id, e)
            queue.mark_failed(job_id, str(e), status="unroutable")
            return {"status": "failed", "job_id": job_id, "error": str(e)}

        ctx = JobContext(self, job)
        try:
            return app.handle(job, ctx)
        except Exception as e:
            attempts = int(job.get("attempts") or 0)
            max_attempts = int(job.get("max_attempts") or 1)
            if is_retryable(e) and attempts < max_attempts:
                queue.retry_later(job_id, str(e))
                return {"status": "retrying", "job_id": job_id, "attempts": attempts, "error": str(e)}

            if isinstance(e, ChatError):
                logger.info("Job %s (%s, conversation %s) failed: %s %s", job_id, kind, job.get("conversation_id"), e.code, e)
            else:
                logger.info("Error processing job %s kind=%s: %s", job_id, kind, e)
                traceback.print_exc()

            if queue.mark_failed(job_id, str(e), status=getattr(e, "code", "error")):
                app.on_exhausted(job, e, ctx)
            return {"status": "failed", "job_id": job_id, "error": str(e)}

    def fail_abandoned(self, job: Dict[str, Any], reason: str) -> None:
        """A stale job the queue already marked FAILED: tell its app once."""
        try:
            app = self._resolve_app(job.get("kind") or "unknown")
        except RuntimeError as e:
            logger.error("Job %s: %s", job.get("job_id"), e)
            return
        app.on_exhausted(job, JobAbandoned(reason), JobContext(self, job))


class ResponseApp:
    """
    Character replies. Billing, retries and the reply itself live in
    ResponseJobHandler; this wrapper only plugs it into the host.
    """
    kind = JOB_KIND_RESPONSE

    def __init__(self, service: ChatService) -> None:
        self.service = service

    def sweep(self) -> None:
        cache = self.service.idempotency_cache
        settled = cache.settle_outstanding(self.service.SessionFactory, self.service.ledger.charge)
        if settled:
            logger.info("Reconciliation: settled %d outstanding charge(s)", settled)
        removed = cache.sweep_charged(self.service.SessionFactory)
        if removed:
            logger.debug("IdempotencyCache sweep: removed %d charged keys", removed)

    def handle(self, job: Dict[str, Any], ctx: JobContext) -> Dict[str, Any]:
        return self.service.response_handler.handle(job)

    def on_exhausted(self, job: Dict[str, Any], error: BaseException, ctx: JobContext) -> None:
        self.service.response_handler.on_exhausted(job, error)


class CompressionApp:
    kind = JOB_KIND_COMPRESSION

    def __init__(self, service: ChatService) -> None:
        self.service = service

    def handle(self, job: Dict[str, Any], ctx: JobContext) -> Dict[str, Any]:
        up_to = (job.get("payload") or {}).get("up_to_sequence")
        # summarizer failures come back as a status, not an exception
        result = self.service.compressor.compress(ctx.conversation_id, up_to_sequence=up_to)

        session = self.service.SessionFactory()
        try:
            self.service.job_queue.mark_succeeded(session, job["job_id"], status=result.get("status", "done"))
            session.commit()
        finally:
            session.close()
        return result

    def on_exhausted(self, job: Dict[str, Any], error: BaseException, ctx: JobContext) -> None:
        if isinstance(error, ConversationNotFound):
            return
        ctx.emit(MEMORY_COMPRESSION_FAILED, {"error": str(error)})


class AsyncGuard:
    def __init__(
        self,
        host: AppHost,
        runner_id: str,
        poll_interval: float = 1.0,
        max_concurrent: int = 4,
        stale_job_seconds: float = 300.0,
        sweep_interval: float = 30.0,
    ):
        self.host = host
        self.runner_id = runner_id
        self.poll_interval = poll_interval
        self.max_concurrent = max_concurrent
        self.stale_job_seconds = stale_job_seconds
        self.sweep_interval = sweep_interval
        # job_id -> conversation_id
        self._in_flight: Dict[str, str] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._last_sweep = 0.0

    async def _run_job(self, job: Dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self.host.process_queue_job, job)
        finally:
            self._in_flight.pop(job["job_id"], None)

    def _maintenance(self) -> None:
        queue = self.host.service.job_queue
        if self._in_flight:
            queue.touch(list(self._in_flight.keys()))

        now = time.monotonic()
        if now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now
        self.host.sweep()  # ! reconciliation + cache cleanup
        queue.requeue_stale(self.stale_job_seconds, on_exhausted=self.host.fail_abandoned)
        self.host.service.purge_stale_events()

    async def run_once(self) -> int:
        """Claim what fits into the free slots and start it. Returns how many jobs started."""
        self._maintenance()

        available_slots = self.max_concurrent - len(self._in_flight)
        if available_slots <= 0:
            return 0

        jobs = self.host.service.job_queue.claim_next(
            self.runner_id,
            limit=available_slots,
            exclude_conversations=set(self._in_flight.values()),
        )
        for job in jobs:
            if job["job_id"] in self._in_flight:
                continue
            self._in_flight[job["job_id"]] = job["conversation_id"]
            logger.debug("claimed %s job %s (conversation %s, attempt %s)", job["kind"], job["job_id"], job["conversation_id"], job["attempts"])
            task = asyncio.create_task(self._run_job(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return len(jobs)

    async def run_until_idle(self, max_cycles: int = 1000) -> int:
        """Process until nothing is claimable and nothing is running. Returns jobs started."""
        started = 0
        for _ in range(max_cycles):
            n = await self.run_once()
            started += n
            if self._tasks:
                await asyncio.gather(*list(self._tasks))
            elif n == 0:
                break
        return started

    async def run(self) -> None:
        logger.info("AsyncGuard running - runner_id=%s (max_concurrent=%d)", self.runner_id, self.max_concurrent)

        while True:
            started = await self.run_once()
            if not started:
                await asyncio.sleep(self.poll_interval)
                continue
            # yield so new tasks start before the next claim
            await asyncio.sleep(0)


def main() -> None:
    settings = Settings.from_env()
    service = ChatService(settings, relay_events=False)

    loaded = service.idempotency_cache.load_outstanding(service.SessionFactory)
    if loaded:
        logger.info("Reconciliation: %d outstanding charge(s) picked up", loaded)

    # STRICT: every job kind must match one of these apps
    apps = [
        ResponseApp(service),
        CompressionApp(service),
    ]
    host = AppHost(service, apps=apps)
    guard = AsyncGuard(
        host=host,
        runner_id=settings.worker_id,
        poll_interval=settings.queue_poll_interval,
        max_concurrent=settings.concurrent_instances,
        stale_job_seconds=settings.stale_job_seconds,
    )
    asyncio.run(guard.run())


if __name__ == "__main__":
    main()
