from __future__ import annotations

import os
import time
from collections.abc import Sequence
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from typing import Final, Protocol

from .errors import InvalidInputError
from .inference.types import PredictionRequest, PredictionResult
from .logging import get_logger, log_event
from .metrics import MetricsRecorder

SINGLE_PART: Final[str] = "image"
BATCH_PART: Final[str] = "images"
DEFAULT_MAX_BATCH_SIZE: Final[int] = 50


class Predictor(Protocol):
    def predict_one(self, raw: bytes) -> PredictionResult: ...


def default_workers() -> int:
    return min(8, os.cpu_count() or 1)


class PredictionOrchestrator:
    """Validates prediction requests and drives the engine for single items and batches.

    Metrics policy: attempts are counted on entry (one per image), latency is
    sampled once per call that passed validation, and each successful item
    bumps its digit's class counter.

    Batch policy: items run concurrently on a bounded pool and results are
    placed by input index. The first failing item aborts the whole batch;
    there is no partial-success response.
    """

    def __init__(
        self,
        engine: Predictor,
        metrics: MetricsRecorder,
        *,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        workers: int = 0,
    ) -> None:
        self._engine = engine
        self._metrics = metrics
        self._max_batch_size = max_batch_size
        size = workers if workers > 0 else default_workers()
        self._pool = ThreadPoolExecutor(max_workers=size, thread_name_prefix="predict-batch")
        self._logger = get_logger()

    @property
    def max_batch_size(self) -> int:
        return self._max_batch_size

    def predict_single(self, req: PredictionRequest | None) -> PredictionResult:
        self._metrics.increment_requests(1)
        valid = _validate_item(req, SINGLE_PART)
        self._logger.info(
            "predict_received filename=%s size_bytes=%d", valid.filename, len(valid.content)
        )
        t0 = time.perf_counter()
        try:
            result = self._engine.predict_one(valid.content)
            self._metrics.increment_class_label(result.predicted_label)
        finally:
            elapsed = time.perf_counter() - t0
            self._metrics.record_latency(elapsed)
        log_event(
            "predict_finished",
            {
                "digit": result.predicted_label,
                "confidence": round(result.confidence, 4),
                "latency_ms": int(elapsed * 1000.0),
            },
        )
        return result

    def predict_batch(self, reqs: Sequence[PredictionRequest]) -> list[PredictionResult]:
        self._metrics.increment_requests(len(reqs))
        self._validate_batch(reqs)
        self._logger.info("predict_batch_received items=%d", len(reqs))
        t0 = time.perf_counter()
        try:
            results = self._fan_out(reqs)
        finally:
            elapsed = time.perf_counter() - t0
            self._metrics.record_latency(elapsed)
        log_event(
            "predict_batch_finished",
            {"items": len(results), "latency_ms": int(elapsed * 1000.0)},
        )
        return results

    def close(self) -> None:
        self._pool.shutdown(wait=True, cancel_futures=True)

    def _validate_batch(self, reqs: Sequence[PredictionRequest]) -> None:
        if len(reqs) == 0:
            self._logger.warning("predict_batch_rejected reason=empty")
            raise InvalidInputError(
                f"No files provided for batch prediction in request part '{BATCH_PART}'."
            )
        if len(reqs) > self._max_batch_size:
            self._logger.warning(
                "predict_batch_rejected reason=too_many items=%d limit=%d",
                len(reqs),
                self._max_batch_size,
            )
            raise InvalidInputError(
                f"Maximum batch size is {self._max_batch_size} images; got {len(reqs)}."
            )
        for req in reqs:
            _validate_item(req, BATCH_PART)

    def _predict_item(self, req: PredictionRequest) -> PredictionResult:
        result = self._engine.predict_one(req.content)
        self._metrics.increment_class_label(result.predicted_label)
        self._logger.debug(
            "predict_batch_item filename=%s digit=%d", req.filename, result.predicted_label
        )
        return result

    def _fan_out(self, reqs: Sequence[PredictionRequest]) -> list[PredictionResult]:
        # futures[i] belongs to reqs[i]; completion order never affects placement
        futures: list[Future[PredictionResult]] = [
            self._pool.submit(self._predict_item, req) for req in reqs
        ]
        _, pending = wait(futures, return_when=FIRST_EXCEPTION)
        for idx, fut in enumerate(futures):
            if fut in pending:
                continue
            exc = fut.exception()
            if exc is None:
                continue
            # Abort the whole batch: queued items are dropped, running ones finish unobserved
            for p in pending:
                p.cancel()
            self._logger.warning("predict_batch_aborted failed_index=%d items=%d", idx, len(reqs))
            raise exc
        return [fut.result() for fut in futures]


def _validate_item(req: PredictionRequest | None, part: str) -> PredictionRequest:
    logger = get_logger()
    if req is None:
        logger.warning("predict_rejected reason=missing_part part=%s", part)
        raise InvalidInputError(f"Required request part '{part}' is not present.")
    if len(req.content) == 0:
        logger.warning(
            "predict_rejected reason=empty_file part=%s filename=%s", part, req.filename
        )
        raise InvalidInputError(f"Image file in request part '{part}' is missing or empty.")
    ctype = (req.content_type or "").strip().lower()
    if not ctype.startswith("image/"):
        logger.warning("predict_rejected reason=content_type content_type=%s", ctype or None)
        raise InvalidInputError(
            f"Invalid file type '{ctype or 'unknown'}'; an image file is required."
        )
    return req
