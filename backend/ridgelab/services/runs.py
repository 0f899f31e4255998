from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, desc, select

from ridgelab.db.models import NotificationLog, NotificationType, ProcessingRun, RunStatus, utc_now
from ridgelab.db.session import engine
from ridgelab.errors import InvalidTransition, StoreUnavailable
from ridgelab.services.quality import QualityMetrics

logger = logging.getLogger("ridgelab.runs")

ALLOWED_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.PROCESSING, RunStatus.FAILED}),
    RunStatus.PROCESSING: frozenset({RunStatus.COMPLETED, RunStatus.FAILED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
}


class RunStore:
    """Run record store backed by SQLModel.

    Every call opens its own session, so concurrent runs only contend on the
    rows they touch.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error("Run store operation failed: %s", exc)
            raise StoreUnavailable(f"Run store unavailable: {exc.__class__.__name__}") from exc

    def create(self, run: ProcessingRun) -> ProcessingRun:
        if RunStatus(run.status).is_terminal:
            raise InvalidTransition(run.id, "new", RunStatus(run.status).value)
        with self._session() as session:
            session.add(run)
            session.commit()
            session.refresh(run)
        logger.info("Run created: run_id=%s status=%s", run.id, RunStatus(run.status).value)
        return run

    def get(self, run_id: str) -> Optional[ProcessingRun]:
        with self._session() as session:
            return session.get(ProcessingRun, run_id)

    def list_runs(
        self,
        *,
        limit: int = 20,
        offset: int = 0,
        status: Optional[RunStatus] = None,
    ) -> list[ProcessingRun]:
        stmt = select(ProcessingRun)
        if status is not None:
            stmt = stmt.where(ProcessingRun.status == status)
        stmt = stmt.order_by(desc(ProcessingRun.created_at), col(ProcessingRun.id)).offset(offset).limit(limit)
        with self._session() as session:
            return list(session.exec(stmt).all())

    def delete(self, run_id: str) -> bool:
        with self._session() as session:
            run = session.get(ProcessingRun, run_id)
            if run is None:
                return False
            notifications = session.exec(select(NotificationLog).where(NotificationLog.related_run_id == run_id)).all()
            for notification in notifications:
                session.delete(notification)
            session.delete(run)
            session.commit()
        logger.info("Run deleted: run_id=%s", run_id)
        return True

    def _transition(self, run_id: str, target: RunStatus, **changes: Any) -> ProcessingRun:
        with self._session() as session:
            stmt = select(ProcessingRun).where(ProcessingRun.id == run_id).with_for_update()
            run = session.exec(stmt).first()
            if run is None:
                raise LookupError(f"Run {run_id} not found")
            current = RunStatus(run.status)
            if target not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransition(run_id, current.value, target.value)

            run.status = target
            for key, value in changes.items():
                setattr(run, key, value)
            session.add(run)
            session.commit()
            session.refresh(run)

        logger.info("Run transition: run_id=%s %s -> %s", run_id, current.value, target.value)
        return run

    def claim(self, run_id: str) -> ProcessingRun:
        return self._transition(run_id, RunStatus.PROCESSING)

    def mark_completed(
        self,
        run_id: str,
        *,
        processed_image_key: str,
        processed_image_url: str,
        metrics: QualityMetrics,
        oracle_report: Optional[dict[str, Any]],
        processing_time_ms: int,
        original_width: Optional[int] = None,
        original_height: Optional[int] = None,
    ) -> ProcessingRun:
        return self._transition(
            run_id,
            RunStatus.COMPLETED,
            processed_image_key=processed_image_key,
            processed_image_url=processed_image_url,
            quality_metrics_json=json.dumps(metrics.to_dict(), ensure_ascii=False),
            oracle_report_json=json.dumps(oracle_report, ensure_ascii=False) if oracle_report is not None else None,
            original_width=original_width,
            original_height=original_height,
            processing_time_ms=processing_time_ms,
            completed_at=utc_now(),
        )

    def mark_failed(
        self,
        run_id: str,
        *,
        error_code: str,
        error_message: str,
        processing_time_ms: int,
    ) -> ProcessingRun:
        return self._transition(
            run_id,
            RunStatus.FAILED,
            error_code=error_code,
            error_message=error_message,
            processing_time_ms=processing_time_ms,
            completed_at=utc_now(),
        )

    def record_notification(
        self,
        *,
        notification_type: NotificationType,
        title: str,
        content: str,
        related_run_id: Optional[str],
        sent: bool,
    ) -> NotificationLog:
        entry = NotificationLog(
            type=notification_type,
            title=title,
            content=content,
            related_run_id=related_run_id,
            sent=sent,
            sent_at=utc_now() if sent else None,
        )
        with self._session() as session:
            session.add(entry)
            session.commit()
            session.refresh(entry)
        return entry

    def list_notifications(self, run_id: str) -> list[NotificationLog]:
        stmt = (
            select(NotificationLog)
            .where(NotificationLog.related_run_id == run_id)
            .order_by(col(NotificationLog.created_at))
        )
        with self._session() as session:
            return list(session.exec(stmt).all())


run_store = RunStore(engine)
