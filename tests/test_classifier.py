from __future__ import annotations

import threading
from pathlib import Path

import pytest
import torch

from mnist_serving.inference.classifier import (
    ClassifierHandle,
    LeNet5,
    ModelCorruptError,
    ModelLoadError,
    ModelNotFoundError,
    build_fresh_state_dict,
    build_model,
    load_classifier,
)


def _save(path: Path, obj: object) -> Path:
    torch.save(obj, path.as_posix())
    return path


def test_missing_path_is_not_found(tmp_path: Path) -> None:
    with pytest.raises(ModelNotFoundError):
        load_classifier(tmp_path / "absent.pt", "lenet5")


def test_directory_path_is_not_found(tmp_path: Path) -> None:
    with pytest.raises(ModelNotFoundError):
        load_classifier(tmp_path, "lenet5")


def test_garbage_file_is_corrupt(tmp_path: Path) -> None:
    p = tmp_path / "model.pt"
    p.write_bytes(b"\x00\x01 definitely not a checkpoint")
    with pytest.raises(ModelCorruptError) as ei:
        load_classifier(p, "lenet5")
    assert ei.value.__cause__ is not None


def test_wrong_head_size_is_corrupt(tmp_path: Path) -> None:
    sd = build_fresh_state_dict("lenet5")
    sd["fc2.weight"] = torch.zeros((9, 500))
    sd["fc2.bias"] = torch.zeros((9,))
    with pytest.raises(ModelCorruptError):
        load_classifier(_save(tmp_path / "m.pt", sd), "lenet5")


def test_architecture_mismatch_is_corrupt(tmp_path: Path) -> None:
    sd = build_fresh_state_dict("lenet5")
    sd.pop("conv2.weight")
    with pytest.raises(ModelCorruptError):
        load_classifier(_save(tmp_path / "m.pt", sd), "lenet5")


def test_non_dict_payload_is_corrupt(tmp_path: Path) -> None:
    with pytest.raises(ModelCorruptError):
        load_classifier(_save(tmp_path / "m.pt", [torch.zeros(3)]), "lenet5")


def test_unknown_arch_is_load_error(tmp_path: Path) -> None:
    p = _save(tmp_path / "m.pt", build_fresh_state_dict("lenet5"))
    with pytest.raises(ModelLoadError):
        load_classifier(p, "vgg99")
    with pytest.raises(ModelLoadError):
        build_model("vgg99")


@pytest.mark.parametrize("wrapped", [False, True])
def test_lenet5_loads_and_infers(tmp_path: Path, wrapped: bool) -> None:
    torch.manual_seed(0)
    sd = build_fresh_state_dict("lenet5")
    payload: object = {"state_dict": sd} if wrapped else sd
    handle = load_classifier(_save(tmp_path / "m.pt", payload), "lenet5")
    assert handle.arch == "lenet5"
    assert handle.source == tmp_path / "m.pt"
    probs = handle.infer(torch.rand(1, 28, 28))
    assert len(probs) == 10
    assert sum(probs) == pytest.approx(1.0, abs=1e-3)
    assert all(0.0 <= p <= 1.0 for p in probs)


def test_resnet18_loads(tmp_path: Path) -> None:
    p = _save(tmp_path / "r.pt", build_fresh_state_dict("resnet18"))
    handle = load_classifier(p, "resnet18")
    probs = handle.infer(torch.rand(1, 28, 28))
    assert len(probs) == 10


def test_concurrent_infer_matches_sequential() -> None:
    torch.manual_seed(1)
    handle = ClassifierHandle(LeNet5(), arch="lenet5")
    inputs = [torch.rand(1, 28, 28) for _ in range(8)]
    expected = [handle.infer(x) for x in inputs]
    got: list[tuple[float, ...] | None] = [None] * len(inputs)

    def _run(i: int) -> None:
        got[i] = handle.infer(inputs[i])

    threads = [threading.Thread(target=_run, args=(i,)) for i in range(len(inputs))]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    for e, g in zip(expected, got, strict=True):
        assert g == pytest.approx(e, abs=1e-6)


def test_handle_is_read_only() -> None:
    handle = ClassifierHandle(LeNet5(), arch="lenet5")
    with pytest.raises(AttributeError):
        handle.arch = "resnet18"  # type: ignore[misc]
    with pytest.raises(AttributeError):
        handle.extra = 1  # type: ignore[attr-defined]
