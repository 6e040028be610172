# app/jobs/extraction.py
#
# Achtergrond-extractie per upload sessie.
#
# Eén asyncio task per sessie, bijgehouden in een WorkerRegistry (op
# app.state). DB-werk en storage-reads draaien in de threadpool zodat de
# event loop vrij blijft; de vision-call zelf is async.
import asyncio
from datetime import timedelta
from functools import partial
from typing import Awaitable, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.core.errors import ServiceError
from app.core.logging_config import logger
from app.core.settings import settings
from app.db import SessionLocal
from app.models.upload_session import SessionStatus, UploadSession
from app.observability.metrics import worker_runs_counter
from app.services import upload_sessions as sessions
from app.services.storage import ImageStore
from app.services.vision import VisionExtractor


def _next_upload(db: Session, session_id: int) -> Optional[Tuple[int, str]]:
    upload = sessions.next_unprocessed(db, session_id)
    if upload is None:
        return None
    return upload.id, upload.image_url


class ExtractionWorker:
    """
    Loopt de onverwerkte uploads van één sessie af, oudste eerst.

    Annuleren is coöperatief: de sessiestatus wordt tussen twee beelden
    opnieuw gelezen, een lopende vision-call mag afmaken. Het resultaat van
    die call wordt weggegooid als de sessie intussen gestopt is; het beeld
    gaat dan terug naar pending.
    """

    def __init__(
        self,
        session_id: int,
        *,
        extractor: VisionExtractor,
        store: ImageStore,
        model_hint: Optional[str] = None,
        db_factory: Callable[[], Session] = SessionLocal,
    ):
        self.session_id = session_id
        self.extractor = extractor
        self.store = store
        self.model_hint = model_hint
        self.db_factory = db_factory
        self.processed = 0
        self.failed = 0

    def _with_db(self, fn, *args):
        db = self.db_factory()
        try:
            return fn(db, *args)
        finally:
            db.close()

    async def _db(self, fn, *args):
        return await run_in_threadpool(self._with_db, fn, *args)

    async def _still_processing(self) -> bool:
        status = await self._db(sessions.current_status, self.session_id)
        if status != SessionStatus.processing.value:
            logger.info("extraction_worker_stopping", session_id=self.session_id, status=status)
            return False
        return True

    async def _release_if_stopped(self, upload_id: int) -> bool:
        # de vision-call kan lang duren; sessie kan intussen beëindigd zijn
        if await self._still_processing():
            return False
        released = await self._db(sessions.release_upload, upload_id)
        logger.info("extraction_released", session_id=self.session_id, upload_id=upload_id, released=released)
        return True

    async def _process_one(self, upload_id: int, image_url: str) -> None:
        try:
            data = await run_in_threadpool(self.store.read, image_url)
            result = await self.extractor.extract(data, self.model_hint)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # één slecht beeld mag de batch niet stoppen
            message = e.message if isinstance(e, ServiceError) else str(e)
            logger.warning(
                "extraction_failed",
                session_id=self.session_id,
                upload_id=upload_id,
                error=message,
                error_type=type(e).__name__,
            )
            if await self._release_if_stopped(upload_id):
                return
            self.failed += 1
            await self._db(sessions.store_upload_failure, upload_id, message or "Failed to process image")
            return

        if await self._release_if_stopped(upload_id):
            return
        stored = await self._db(sessions.store_upload_result, upload_id, result)
        if stored:
            self.processed += 1
        logger.info("extraction_stored", session_id=self.session_id, upload_id=upload_id, stored=stored)

    async def run(self) -> str:
        logger.info("extraction_worker_started", session_id=self.session_id, model=self.model_hint)
        outcome = "stopped"
        try:
            while await self._still_processing():
                nxt = await self._db(_next_upload, self.session_id)
                if nxt is None:
                    completed = await self._db(sessions.complete_session, self.session_id)
                    outcome = "completed" if completed else "stopped"
                    break

                upload_id, image_url = nxt
                if not await self._db(sessions.mark_upload_processing, upload_id):
                    continue

                await self._process_one(upload_id, image_url)
                await self._db(sessions.touch_heartbeat, self.session_id)
        except asyncio.CancelledError:
            logger.info("extraction_worker_cancelled", session_id=self.session_id)
            raise
        except Exception:
            outcome = "crashed"
            raise
        finally:
            worker_runs_counter.labels(outcome=outcome).inc()
            logger.info(
                "extraction_worker_finished",
                session_id=self.session_id,
                outcome=outcome,
                processed=self.processed,
                failed=self.failed,
            )
        return outcome


class WorkerRegistry:
    """Single-flight: hooguit één levende worker-task per sessie in dit proces."""

    def __init__(self):
        self._tasks: Dict[int, asyncio.Task] = {}

    def is_running(self, session_id: int) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    def spawn(self, session_id: int, run: Callable[[], Awaitable[str]]) -> bool:
        if self.is_running(session_id):
            return False
        task = asyncio.create_task(run(), name=f"extraction-session-{session_id}")
        self._tasks[session_id] = task
        task.add_done_callback(lambda t: self._on_done(session_id, t))
        return True

    def _on_done(self, session_id: int, task: asyncio.Task) -> None:
        if self._tasks.get(session_id) is task:
            del self._tasks[session_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "extraction_worker_crashed",
                session_id=session_id,
                error=str(exc),
                exc_info=exc,
            )

    async def join(self, session_id: int) -> None:
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("extraction_workers_shutdown", cancelled=len(tasks))

    def __len__(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())


async def start_processing(
    db: Session,
    session: UploadSession,
    *,
    registry: WorkerRegistry,
    extractor: VisionExtractor,
    store: ImageStore,
    model_hint: Optional[str] = None,
) -> bool:
    """
    Start (of bevestig) de worker voor een sessie. Geeft terug of er nu een
    worker actief is. DB-werk gaat via de threadpool, de task wordt op de
    event loop gestart.
    """
    if registry.is_running(session.id):
        return True
    if not await run_in_threadpool(sessions.has_unprocessed, db, session.id):
        return False

    stale_after = timedelta(seconds=settings.WORKER_STALE_SECONDS)
    claimed = await run_in_threadpool(
        partial(sessions.claim_for_processing, db, session, stale_after=stale_after)
    )
    if not claimed:
        # ander request / ander proces was ons voor
        return session.status == SessionStatus.processing.value

    worker = ExtractionWorker(session.id, extractor=extractor, store=store, model_hint=model_hint)
    registry.spawn(session.id, worker.run)
    logger.info("extraction_processing_started", session_id=session.id, model=model_hint)
    return True
