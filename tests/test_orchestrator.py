from __future__ import annotations

import threading
from collections.abc import Iterator
from typing import Protocol

import pytest
from _stubs import FirstByteEngine, request_for

from mnist_serving.errors import InvalidInputError, ProcessingError
from mnist_serving.inference.types import PredictionRequest
from mnist_serving.metrics import MetricsRecorder
from mnist_serving.orchestrator import PredictionOrchestrator


class OrchFactory(Protocol):
    def __call__(
        self, engine: FirstByteEngine, metrics: MetricsRecorder | None = None
    ) -> PredictionOrchestrator: ...


@pytest.fixture
def make_orch() -> Iterator[OrchFactory]:
    created: list[PredictionOrchestrator] = []

    def _make(
        engine: FirstByteEngine, metrics: MetricsRecorder | None = None
    ) -> PredictionOrchestrator:
        orch = PredictionOrchestrator(engine, metrics or MetricsRecorder(), workers=4)
        created.append(orch)
        return orch

    yield _make
    for orch in created:
        orch.close()


def test_single_success_updates_metrics(make_orch: OrchFactory) -> None:
    engine = FirstByteEngine()
    m = MetricsRecorder()
    orch = make_orch(engine, m)
    res = orch.predict_single(request_for(bytes([7, 1, 2])))
    assert res.predicted_label == 7
    snap = m.snapshot()
    assert snap.total_requests == 1
    assert snap.class_distribution[7] == 1
    assert snap.latency.count == 1


@pytest.mark.parametrize(
    ("req", "needle"),
    [
        (None, "'image'"),
        (request_for(b""), "empty"),
        (request_for(b"\x01", "text/plain"), "text/plain"),
        (request_for(b"\x01", None), "image file is required"),
    ],
)
def test_single_validation_runs_before_inference(
    make_orch: OrchFactory, req: PredictionRequest | None, needle: str
) -> None:
    engine = FirstByteEngine()
    m = MetricsRecorder()
    orch = make_orch(engine, m)
    with pytest.raises(InvalidInputError) as ei:
        orch.predict_single(req)
    assert needle in ei.value.message
    assert engine.calls == 0
    snap = m.snapshot()
    # Attempts are counted, latency is not
    assert snap.total_requests == 1
    assert snap.latency.count == 0


def test_single_processing_failure_still_records_latency(make_orch: OrchFactory) -> None:
    engine = FirstByteEngine(fail_on=4)
    m = MetricsRecorder()
    orch = make_orch(engine, m)
    with pytest.raises(ProcessingError):
        orch.predict_single(request_for(bytes([4])))
    snap = m.snapshot()
    assert snap.total_requests == 1
    assert snap.latency.count == 1
    assert sum(snap.class_distribution.values()) == 0


@pytest.mark.parametrize("size", [0, 51])
def test_batch_size_bounds(make_orch: OrchFactory, size: int) -> None:
    engine = FirstByteEngine()
    m = MetricsRecorder()
    orch = make_orch(engine, m)
    reqs = [request_for(bytes([i % 10])) for i in range(size)]
    with pytest.raises(InvalidInputError):
        orch.predict_batch(reqs)
    assert engine.calls == 0
    assert m.snapshot().latency.count == 0


def test_batch_of_fifty_is_accepted(make_orch: OrchFactory) -> None:
    engine = FirstByteEngine()
    orch = make_orch(engine)
    out = orch.predict_batch([request_for(bytes([i % 10])) for i in range(50)])
    assert len(out) == 50


def test_batch_rejects_non_image_item_before_any_inference(make_orch: OrchFactory) -> None:
    engine = FirstByteEngine()
    orch = make_orch(engine)
    reqs = [request_for(b"\x01"), request_for(b"\x02", "application/pdf"), request_for(b"\x03")]
    with pytest.raises(InvalidInputError):
        orch.predict_batch(reqs)
    assert engine.calls == 0


def test_batch_preserves_input_order_under_random_latency(make_orch: OrchFactory) -> None:
    engine = FirstByteEngine(max_delay=0.02)
    m = MetricsRecorder()
    orch = make_orch(engine, m)
    labels = [(i * 7) % 10 for i in range(40)]
    for _ in range(3):
        out = orch.predict_batch([request_for(bytes([lab])) for lab in labels])
        assert [r.predicted_label for r in out] == labels
    snap = m.snapshot()
    assert snap.total_requests == 3 * len(labels)
    assert sum(snap.class_distribution.values()) == 3 * len(labels)
    assert snap.latency.count == 3


def test_batch_of_two_digits(make_orch: OrchFactory) -> None:
    orch = make_orch(FirstByteEngine(max_delay=0.01))
    out = orch.predict_batch([request_for(bytes([1])), request_for(bytes([9]))])
    assert [r.predicted_label for r in out] == [1, 9]


def test_batch_fails_whole_call_on_item_failure(make_orch: OrchFactory) -> None:
    engine = FirstByteEngine(fail_on=5)
    m = MetricsRecorder()
    orch = make_orch(engine, m)
    reqs = [request_for(bytes([lab])) for lab in (1, 2, 5, 3)]
    with pytest.raises(ProcessingError):
        orch.predict_batch(reqs)
    snap = m.snapshot()
    assert snap.total_requests == 4
    assert snap.latency.count == 1
    assert sum(snap.class_distribution.values()) <= 3


def test_concurrent_single_calls_count_exactly(make_orch: OrchFactory) -> None:
    engine = FirstByteEngine(max_delay=0.002, fail_on=9)
    m = MetricsRecorder()
    orch = make_orch(engine, m)
    n = 64
    start = threading.Barrier(16)
    successes = 0
    lock = threading.Lock()

    def _worker(offset: int) -> None:
        nonlocal successes
        start.wait()
        for i in range(offset, n, 16):
            try:
                orch.predict_single(request_for(bytes([i % 10])))
            except ProcessingError:
                continue
            with lock:
                successes += 1

    threads = [threading.Thread(target=_worker, args=(k,)) for k in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    snap = m.snapshot()
    assert snap.total_requests == n
    assert sum(snap.class_distribution.values()) == successes
    assert successes == sum(1 for i in range(n) if i % 10 != 9)
