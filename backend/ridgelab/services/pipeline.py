from __future__ import annotations

import asyncio
import logging
import random
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from ridgelab.db.models import NotificationType, ProcessingRun, RunStatus
from ridgelab.errors import BlobNotFound, InvalidImage, RidgeLabError, RunCancelled, StoreUnavailable, SynthesisError
from ridgelab.schemas import ApplyTextureRequest, OracleReport
from ridgelab.services.notifier import NotifierClient
from ridgelab.services.oracle import OracleClient
from ridgelab.services.quality import QualityMetrics, score_quality
from ridgelab.services.runs import RunStore
from ridgelab.services.storage import BlobRef, LocalBlobStore, generate_forensic_key
from ridgelab.services.texture import (
    RgbaImage,
    classify_pixels,
    decode_image,
    encode_png,
    sharpen,
    synthesize_texture,
)
from ridgelab.settings import settings

logger = logging.getLogger("ridgelab.pipeline")


@dataclass(frozen=True)
class CallOutcome:
    """Result of a bounded collaborator call: ok, timed_out, failed or skipped."""

    status: str
    value: Any = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls, value: Any) -> "CallOutcome":
        return cls("ok", value=value)

    @classmethod
    def timed_out(cls) -> "CallOutcome":
        return cls("timed_out", reason="timed out")

    @classmethod
    def failed(cls, reason: str) -> "CallOutcome":
        return cls("failed", reason=reason)

    @classmethod
    def skipped(cls) -> "CallOutcome":
        return cls("skipped")

    @property
    def is_ok(self) -> bool:
        return self.status == "ok"


async def run_bounded(func: Callable[..., Any], *args: Any, timeout: float) -> CallOutcome:
    """Run a blocking collaborator call in a worker thread under a timeout."""
    try:
        value = await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)
    except asyncio.TimeoutError:
        return CallOutcome.timed_out()
    except RidgeLabError as exc:
        return CallOutcome.failed(exc.message)
    except Exception as exc:
        logger.warning("Collaborator call %s raised: %s", getattr(func, "__qualname__", func), exc, exc_info=True)
        return CallOutcome.failed(f"{exc.__class__.__name__}: {exc}")
    return CallOutcome.ok(value)


def process_image(image: RgbaImage, rng: random.Random) -> tuple[RgbaImage, QualityMetrics]:
    """Classify, granulate, sharpen and score one image. Stages run strictly in order."""
    classes = classify_pixels(image)
    synthesized = synthesize_texture(image, classes, rng)
    processed = sharpen(synthesized)
    metrics = score_quality(image, processed)
    return processed, metrics


@dataclass
class RunOutcome:
    run_id: str
    status: RunStatus
    persisted: bool
    noise_seed: int
    processing_time_ms: int = 0
    processed: Optional[BlobRef] = None
    metrics: Optional[QualityMetrics] = None
    oracle_report: Optional[OracleReport] = None
    oracle_status: str = "skipped"
    error: Optional[RidgeLabError] = None


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _processed_filename(request: ApplyTextureRequest) -> str:
    source_name = request.original_filename or Path(request.source_key).name
    return f"{Path(source_name).stem or 'fingerprint'}.png"


class TextureRunner:
    """Drives one processing run from submission to a terminal status."""

    def __init__(
        self,
        store: RunStore,
        blobs: LocalBlobStore,
        oracle: Optional[OracleClient] = None,
        notifier: Optional[NotifierClient] = None,
        *,
        oracle_timeout_s: Optional[float] = None,
        notify_timeout_s: Optional[float] = None,
    ) -> None:
        self.store = store
        self.blobs = blobs
        self.oracle = oracle
        self.notifier = notifier
        self.oracle_timeout_s = oracle_timeout_s if oracle_timeout_s is not None else settings.oracle_timeout_s
        self.notify_timeout_s = notify_timeout_s if notify_timeout_s is not None else settings.notify_timeout_s

    def build_run(self, request: ApplyTextureRequest, *, seed: int, status: RunStatus) -> ProcessingRun:
        source_path = self.blobs.resolve(request.source_key)
        return ProcessingRun(
            case_id=request.case_id,
            sample_id=request.sample_id,
            original_image_key=request.source_key,
            original_image_url=self.blobs.url_for(request.source_key),
            original_size_bytes=source_path.stat().st_size if source_path.is_file() else None,
            original_format=source_path.suffix.lstrip(".").lower() or None,
            original_filename=request.original_filename or source_path.name,
            status=status,
            prompt_version=settings.prompt_version,
            prompt_text=settings.prompt_text,
            noise_seed=seed,
        )

    def enqueue(self, request: ApplyTextureRequest) -> ProcessingRun:
        """Create a pending run that a later apply_texture call claims."""
        seed = request.seed if request.seed is not None else secrets.randbits(32)
        return self.store.create(self.build_run(request, seed=seed, status=RunStatus.PENDING))

    def _open_run(self, request: ApplyTextureRequest, run_id: Optional[str]) -> tuple[str, int, bool]:
        if run_id is not None:
            try:
                claimed = self.store.claim(run_id)
            except StoreUnavailable as exc:
                logger.error("Queued run %s could not be claimed, continuing in memory: %s", run_id, exc.message)
                seed = request.seed if request.seed is not None else secrets.randbits(32)
                return run_id, seed, False
            seed = request.seed if request.seed is not None else claimed.noise_seed
            return claimed.id, seed if seed is not None else secrets.randbits(32), True

        seed = request.seed if request.seed is not None else secrets.randbits(32)
        run = self.build_run(request, seed=seed, status=RunStatus.PROCESSING)
        try:
            self.store.create(run)
        except StoreUnavailable as exc:
            logger.error("Run record could not be created, continuing in memory: %s", exc.message)
            return run.id, seed, False
        return run.id, seed, True

    def _render(
        self,
        source_key: str,
        seed: int,
        image: Optional[RgbaImage] = None,
    ) -> tuple[RgbaImage, RgbaImage, QualityMetrics, bytes]:
        if image is None:
            try:
                raw = self.blobs.read(source_key)
            except BlobNotFound as exc:
                raise InvalidImage(f"Source image {source_key} is not available.", details=exc.details) from exc
            image = decode_image(raw)
        processed, metrics = process_image(image, random.Random(seed))
        return image, processed, metrics, encode_png(processed)

    async def _settle_cancelled_open(self, opening: asyncio.Future, started: float) -> None:
        """Wait for an interrupted open to land, then fail the run it opened."""
        await asyncio.wait({opening})
        if opening.exception() is not None:
            return
        run_id, seed, persisted = opening.result()
        outcome = RunOutcome(run_id=run_id, status=RunStatus.PROCESSING, persisted=persisted, noise_seed=seed)
        self._record_failure(outcome, RunCancelled("Run cancelled by caller before processing started."), started)

    async def _discard_processed(self, put_task: asyncio.Future) -> None:
        await asyncio.wait({put_task})
        if put_task.exception() is not None:
            return
        ref = put_task.result()
        self.blobs.delete(ref.key)
        logger.info("Discarded processed image of cancelled run: key=%s", ref.key)

    async def apply_texture(
        self,
        request: ApplyTextureRequest,
        *,
        run_id: Optional[str] = None,
        image: Optional[RgbaImage] = None,
    ) -> RunOutcome:
        """Process one image end to end and return its terminal outcome.

        ``image`` is an already decoded source; without it the source bytes are
        read from the blob store and decoded here. Stage errors end the run as
        failed, oracle and notifier problems never do.
        """
        started = time.perf_counter()
        opening = asyncio.ensure_future(asyncio.to_thread(self._open_run, request, run_id))
        try:
            run_id, seed, persisted = await asyncio.shield(opening)
        except asyncio.CancelledError:
            await self._settle_cancelled_open(opening, started)
            raise
        outcome = RunOutcome(run_id=run_id, status=RunStatus.PROCESSING, persisted=persisted, noise_seed=seed)
        logger.info("Run started: run_id=%s source=%s seed=%s", run_id, request.source_key, seed)

        put_task: Optional[asyncio.Future] = None
        try:
            image, _, metrics, png_bytes = await asyncio.to_thread(self._render, request.source_key, seed, image)
            processed_key = generate_forensic_key(
                "textured",
                _processed_filename(request),
                request.case_id,
                request.sample_id,
            )
            put_task = asyncio.ensure_future(asyncio.to_thread(self.blobs.put, processed_key, png_bytes, "image/png"))
            processed_ref = await asyncio.shield(put_task)
        except asyncio.CancelledError:
            if put_task is not None:
                await self._discard_processed(put_task)
            self._record_failure(outcome, RunCancelled("Run cancelled by caller before completion."), started)
            raise
        except RidgeLabError as exc:
            return await self._fail(outcome, request, exc, started)
        except Exception as exc:
            logger.exception("Unexpected pipeline failure: run_id=%s", run_id)
            error = SynthesisError(f"Unexpected pipeline failure: {exc.__class__.__name__}: {exc}")
            return await self._fail(outcome, request, error, started)

        outcome.processing_time_ms = _elapsed_ms(started)
        outcome.processed = processed_ref
        outcome.metrics = metrics
        logger.info(
            "Texture applied: run_id=%s size=%sx%s overall=%.4f elapsed_ms=%s",
            run_id,
            image.width,
            image.height,
            metrics.overall_score,
            outcome.processing_time_ms,
        )

        if request.enable_oracle and self.oracle is not None:
            original_url = self.blobs.url_for(request.source_key)
            try:
                oracle_outcome = await run_bounded(
                    self.oracle.assess,
                    original_url,
                    processed_ref.url,
                    outcome.processing_time_ms,
                    timeout=self.oracle_timeout_s,
                )
            except asyncio.CancelledError:
                logger.warning("Caller went away during oracle review: run_id=%s", run_id)
                outcome.oracle_status = "cancelled"
                self._complete(outcome, image)
                raise
            outcome.oracle_status = oracle_outcome.status
            if oracle_outcome.is_ok:
                outcome.oracle_report = oracle_outcome.value
            else:
                logger.warning("Oracle review unavailable: run_id=%s status=%s reason=%s", run_id, oracle_outcome.status, oracle_outcome.reason)

        await asyncio.to_thread(self._complete, outcome, image)

        if request.send_notification and self.notifier is not None:
            alert = metrics.overall_score < settings.quality_alert_threshold
            await self._notify(
                outcome,
                NotificationType.QUALITY_ALERT if alert else NotificationType.PROCESSING_COMPLETE,
                "Fingerprint texture quality alert" if alert else "Fingerprint texture applied",
                (
                    f"Run {run_id} completed in {outcome.processing_time_ms} ms "
                    f"(case {request.case_id or 'default'}, sample {request.sample_id or 'default'}). "
                    f"Overall score {metrics.overall_score:.2f}, background cleanness {metrics.background_cleanness:.2f}."
                ),
            )
        return outcome

    def _complete(self, outcome: RunOutcome, image: RgbaImage) -> None:
        outcome.status = RunStatus.COMPLETED
        if not outcome.persisted:
            return
        try:
            self.store.mark_completed(
                outcome.run_id,
                processed_image_key=outcome.processed.key,
                processed_image_url=outcome.processed.url,
                metrics=outcome.metrics,
                oracle_report=outcome.oracle_report.model_dump() if outcome.oracle_report is not None else None,
                processing_time_ms=outcome.processing_time_ms,
                original_width=image.width,
                original_height=image.height,
            )
        except (StoreUnavailable, LookupError) as exc:
            logger.error("Completed run could not be persisted: run_id=%s error=%s", outcome.run_id, exc)
            outcome.persisted = False

    def _record_failure(self, outcome: RunOutcome, error: RidgeLabError, started: float) -> None:
        outcome.status = RunStatus.FAILED
        outcome.error = error
        outcome.processing_time_ms = _elapsed_ms(started)
        logger.error(
            "Run failed: run_id=%s code=%s message=%s elapsed_ms=%s",
            outcome.run_id,
            error.error_code,
            error.message,
            outcome.processing_time_ms,
        )
        if outcome.persisted:
            try:
                self.store.mark_failed(
                    outcome.run_id,
                    error_code=error.error_code,
                    error_message=error.message,
                    processing_time_ms=outcome.processing_time_ms,
                )
            except (StoreUnavailable, LookupError) as exc:
                logger.error("Failed run could not be persisted: run_id=%s error=%s", outcome.run_id, exc)
                outcome.persisted = False

    async def _fail(
        self,
        outcome: RunOutcome,
        request: ApplyTextureRequest,
        error: RidgeLabError,
        started: float,
    ) -> RunOutcome:
        await asyncio.to_thread(self._record_failure, outcome, error, started)
        if request.send_notification and self.notifier is not None:
            await self._notify(
                outcome,
                NotificationType.PROCESSING_ERROR,
                "Fingerprint texture failed",
                f"Run {outcome.run_id} failed after {outcome.processing_time_ms} ms: {error.message}",
            )
        return outcome

    async def _notify(self, outcome: RunOutcome, notification_type: NotificationType, title: str, content: str) -> None:
        result = await run_bounded(self.notifier.notify, title, content, timeout=self.notify_timeout_s)
        delivered = result.is_ok and bool(result.value)
        if not delivered:
            logger.warning(
                "Notification not delivered: run_id=%s status=%s reason=%s",
                outcome.run_id,
                result.status,
                result.reason,
            )
        try:
            await asyncio.to_thread(
                self.store.record_notification,
                notification_type=notification_type,
                title=title,
                content=content,
                related_run_id=outcome.run_id if outcome.persisted else None,
                sent=delivered,
            )
        except StoreUnavailable as exc:
            logger.warning("Notification log not stored: run_id=%s error=%s", outcome.run_id, exc.message)
