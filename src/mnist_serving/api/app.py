from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import FormData, UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..config import Limits, Settings
from ..errors import (
    InvalidInputError,
    NotFoundError,
    PayloadTooLargeError,
    ServingError,
    UnexpectedError,
    classify,
    client_message_for,
    new_api_error,
    new_error,
    policy_for,
)
from ..inference.classifier import ClassifierHandle, load_classifier
from ..inference.engine import InferenceEngine
from ..inference.types import PredictionRequest, PredictionResult
from ..logging import get_logger, init_logging
from ..metrics import MetricsRecorder
from ..middleware import RequestIdMiddleware
from ..orchestrator import BATCH_PART, SINGLE_PART, PredictionOrchestrator, Predictor
from ..preprocess import PreprocessOptions
from ..version import get_version
from .schemas import ApiErrorResponse, PredictionResponse

_T = TypeVar("_T")

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    400: {"model": ApiErrorResponse},
    413: {"model": ApiErrorResponse},
    500: {"model": ApiErrorResponse},
}


def _render_error(request: Request, exc: Exception, metrics: MetricsRecorder) -> JSONResponse:
    """Map any exception to its ApiError body through the classification table."""
    kind = classify(exc)
    policy = policy_for(kind)
    message = client_message_for(exc)
    path = request.url.path
    if policy.error_reason is not None:
        metrics.increment_error(policy.error_reason)
    logger = get_logger()
    if policy.log_level >= logging.ERROR:
        logger.error(
            "request_failed kind=%s path=%s error=%s", kind.value, path, exc, exc_info=exc
        )
    else:
        logger.warning("request_rejected kind=%s path=%s message=%s", kind.value, path, message)
    body = new_error(kind, path, message)
    return JSONResponse(status_code=body.status, content=body.to_dict())


def _install_error_boundary(app: FastAPI, metrics: MetricsRecorder) -> None:
    async def _handle_serving_error(request: Request, exc: Exception) -> JSONResponse:
        return _render_error(request, exc, metrics)

    async def _handle_http_error(request: Request, exc: Exception) -> JSONResponse:
        if not isinstance(exc, StarletteHTTPException):
            return _render_error(request, exc, metrics)
        if exc.status_code == 404:
            return _render_error(request, NotFoundError("Requested resource not found."), metrics)
        if exc.status_code == 413:
            too_large = PayloadTooLargeError("Request payload exceeds the size limit.")
            return _render_error(request, too_large, metrics)
        # Other framework errors (405, malformed multipart) keep their status
        get_logger().warning(
            "request_rejected status=%d path=%s detail=%s",
            exc.status_code,
            request.url.path,
            exc.detail,
        )
        body = new_api_error(exc.status_code, request.url.path, str(exc.detail))
        return JSONResponse(status_code=body.status, content=body.to_dict(), headers=exc.headers)

    async def _handle_validation_error(request: Request, exc: Exception) -> JSONResponse:
        return _render_error(request, InvalidInputError("Request validation failed."), metrics)

    app.add_exception_handler(ServingError, _handle_serving_error)
    app.add_exception_handler(StarletteHTTPException, _handle_http_error)
    app.add_exception_handler(RequestValidationError, _handle_validation_error)
    app.add_exception_handler(Exception, _handle_serving_error)


async def _call_guarded(fn: Callable[[], _T]) -> _T:
    """Run blocking work on the threadpool; unclassified failures become UnexpectedError."""
    try:
        return await run_in_threadpool(fn)
    except ServingError:
        raise
    except Exception as exc:
        raise UnexpectedError("Unclassified failure while serving the request.") from exc


async def _read_form(request: Request, limits: Limits) -> FormData:
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > limits.max_request_bytes:
        raise PayloadTooLargeError("Request body exceeds the size limit.")
    return await request.form()


async def _read_upload(item: UploadFile | str, limits: Limits) -> PredictionRequest | None:
    if not isinstance(item, UploadFile):
        return None
    if item.size is not None and item.size > limits.max_image_bytes:
        raise PayloadTooLargeError("File exceeds size limit.")
    raw = await item.read()
    if len(raw) > limits.max_image_bytes:
        raise PayloadTooLargeError("File exceeds size limit.")
    return PredictionRequest(content=raw, content_type=item.content_type, filename=item.filename)


def _to_response(result: PredictionResult) -> dict[str, int]:
    return {"predictedDigit": int(result.predicted_label)}


def _register_predict(app: FastAPI, orchestrator: PredictionOrchestrator, limits: Limits) -> None:
    async def _predict(request: Request) -> dict[str, int]:
        form = await _read_form(request, limits)
        try:
            parts = form.getlist(SINGLE_PART)
            if len(parts) > 1:
                raise InvalidInputError(
                    f"Exactly one file is allowed in request part '{SINGLE_PART}'."
                )
            req = await _read_upload(parts[0], limits) if parts else None
        finally:
            await form.close()
        result = await _call_guarded(lambda: orchestrator.predict_single(req))
        return _to_response(result)

    async def _predict_batch(request: Request) -> list[dict[str, int]]:
        form = await _read_form(request, limits)
        try:
            reqs: list[PredictionRequest] = []
            for item in form.getlist(BATCH_PART):
                req = await _read_upload(item, limits)
                if req is None:
                    raise InvalidInputError(f"Request part '{BATCH_PART}' must contain files.")
                reqs.append(req)
        finally:
            await form.close()
        results = await _call_guarded(lambda: orchestrator.predict_batch(reqs))
        return [_to_response(r) for r in results]

    app.add_api_route(
        "/api/v1/predict",
        _predict,
        methods=["POST"],
        response_model=PredictionResponse,
        responses=_ERROR_RESPONSES,
    )
    app.add_api_route(
        "/api/v1/predict-batch",
        _predict_batch,
        methods=["POST"],
        response_model=list[PredictionResponse],
        responses=_ERROR_RESPONSES,
    )


def _register_basic(app: FastAPI, classifier: ClassifierHandle, metrics: MetricsRecorder) -> None:
    async def _healthz() -> dict[str, str]:
        return {"status": "ok"}

    async def _readyz() -> dict[str, object]:
        # The app only exists once the classifier is loaded
        src = classifier.source
        return {
            "status": "ready",
            "arch": classifier.arch,
            "model": src.name if src is not None else None,
        }

    async def _version() -> dict[str, object]:
        v = get_version()
        return {"service": v.service, "version": v.version, "build": v.build, "commit": v.commit}

    async def _metrics() -> Response:
        return Response(content=metrics.render(), media_type=CONTENT_TYPE_LATEST)

    app.add_api_route("/healthz", _healthz, methods=["GET"])
    app.add_api_route("/readyz", _readyz, methods=["GET"])
    app.add_api_route("/version", _version, methods=["GET"])
    app.add_api_route("/metrics", _metrics, methods=["GET"], include_in_schema=False)


def create_app(
    settings: Settings | None = None,
    *,
    classifier: ClassifierHandle | None = None,
    engine: Predictor | None = None,
    metrics: MetricsRecorder | None = None,
) -> FastAPI:
    """Application factory.

    Loads the classifier before any route exists: a missing or corrupt model
    raises ``ModelLoadError`` here, so the server never starts serving.

    Parameters:
    - `settings`: Optional pre-loaded settings; when omitted, loads env + TOML.
    - `classifier`: Optional already-loaded handle; skips loading from `settings.model.path`.
    - `engine`: Optional predictor replacing the InferenceEngine (primarily for tests).
    - `metrics`: Optional recorder; a fresh one with its own registry is built otherwise.
    """
    s = settings or Settings.load()
    init_logging()
    handle = classifier or load_classifier(s.model.path, s.model.arch)
    limits = Limits.from_settings(s)
    predictor: Predictor = engine or InferenceEngine(
        handle,
        PreprocessOptions(auto_invert=s.model.auto_invert, max_side_px=limits.max_side_px),
    )
    recorder = metrics or MetricsRecorder()
    orchestrator = PredictionOrchestrator(
        predictor,
        recorder,
        max_batch_size=limits.max_batch_size,
        workers=s.app.batch_workers,
    )

    @asynccontextmanager
    async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
        get_logger().info("serving_started arch=%s", handle.arch)
        try:
            yield
        finally:
            orchestrator.close()

    app = FastAPI(title="mnist-serving", version=get_version().version, lifespan=_lifespan)
    app.add_middleware(RequestIdMiddleware)
    _install_error_boundary(app, recorder)

    # Exposed for white-box tests
    app.state.metrics = recorder
    app.state.orchestrator = orchestrator

    _register_basic(app, handle, recorder)
    _register_predict(app, orchestrator, limits)
    return app
