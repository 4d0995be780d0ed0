from __future__ import annotations

import pickle
import zipfile
from pathlib import Path
from typing import TYPE_CHECKING, Final, Protocol

import torch
from torch import Tensor, nn

from ..logging import get_logger
from .types import N_CLASSES

_LOAD_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OSError,
    ValueError,
    RuntimeError,
    TypeError,
    EOFError,
    pickle.UnpicklingError,
    zipfile.BadZipFile,
)
# Final linear layer per architecture, used to check the classifier head size
_HEAD_KEYS: Final[dict[str, str]] = {"lenet5": "fc2", "resnet18": "fc"}


class ModelLoadError(RuntimeError):
    pass


class ModelNotFoundError(ModelLoadError):
    pass


class ModelCorruptError(ModelLoadError):
    pass


class TorchModel(Protocol):
    def eval(self) -> object: ...
    def __call__(self, x: Tensor) -> Tensor: ...


class LeNet5(nn.Module):
    """LeNet variant: conv(20,5x5) > maxpool > conv(50,5x5) > maxpool > dense(500) > 10."""

    def __init__(self, n_classes: int = N_CLASSES) -> None:
        super().__init__()
        self.conv1 = nn.Conv2d(1, 20, kernel_size=5)
        self.conv2 = nn.Conv2d(20, 50, kernel_size=5)
        self.pool = nn.MaxPool2d(kernel_size=2, stride=2)
        self.fc1 = nn.Linear(50 * 4 * 4, 500)
        self.fc2 = nn.Linear(500, n_classes)

    def forward(self, x: Tensor) -> Tensor:
        x = self.pool(self.conv1(x))
        x = self.pool(self.conv2(x))
        x = torch.relu(self.fc1(torch.flatten(x, 1)))
        return self.fc2(x)


class ClassifierHandle:
    """The loaded classifier, published once and read concurrently afterwards.

    Only ``load_classifier`` should construct handles. The wrapped module is put
    in eval mode at construction and never mutated again, so ``infer`` needs no
    locking.
    """

    __slots__ = ("_model", "_arch", "_source")

    def __init__(self, model: TorchModel, *, arch: str, source: Path | None = None) -> None:
        model.eval()
        self._model = model
        self._arch = arch
        self._source = source

    @property
    def arch(self) -> str:
        return self._arch

    @property
    def source(self) -> Path | None:
        return self._source

    def infer(self, tensor: Tensor) -> tuple[float, ...]:
        batch = tensor.unsqueeze(0) if tensor.ndim == 3 else tensor
        with torch.inference_mode():
            logits = self._model(batch.to(dtype=torch.float32))
            probs = torch.softmax(logits, dim=1)[0]
        return tuple(float(p) for p in probs.tolist())


def load_classifier(path: Path, arch: str) -> ClassifierHandle:
    """Load weights from ``path`` into a fresh ``arch`` network.

    Raises ModelNotFoundError when ``path`` is not an existing file and
    ModelCorruptError when the file cannot be deserialized into the network.
    """
    logger = get_logger()
    if not path.is_file():
        logger.error("model_not_found path=%s", path.absolute())
        raise ModelNotFoundError(f"Model file not found: {path.absolute()}")
    model = build_model(arch)
    try:
        sd = _load_state_dict_file(path)
        _validate_head(sd, arch)
        model.load_state_dict(sd, strict=True)
    except _LOAD_ERRORS as exc:
        logger.error("model_load_failed path=%s arch=%s error=%s", path.absolute(), arch, exc)
        raise ModelCorruptError(
            f"Failed to deserialize model from {path.absolute()}; the file may be corrupt."
        ) from exc
    logger.info("model_loaded path=%s arch=%s", path.absolute(), arch)
    return ClassifierHandle(model, arch=arch, source=path)


if TYPE_CHECKING:

    def build_model(arch: str) -> nn.Module: ...
else:

    def build_model(arch: str) -> nn.Module:
        if arch == "lenet5":
            return LeNet5()
        if arch == "resnet18":
            import importlib

            tv_models = importlib.import_module("torchvision.models")
            inner = tv_models.resnet18(weights=None, num_classes=N_CLASSES)
            # CIFAR-style stem for 1-channel 28x28 inputs
            inner.conv1 = nn.Conv2d(1, 64, kernel_size=3, stride=1, padding=1, bias=False)
            inner.maxpool = nn.Identity()
            return inner
        raise ModelLoadError(f"Unknown model architecture: {arch}")


def build_fresh_state_dict(arch: str) -> dict[str, Tensor]:
    sd_obj = build_model(arch).state_dict()
    return {str(k): v for k, v in sd_obj.items()}


def _load_state_dict_file(path: Path) -> dict[str, Tensor]:
    obj = torch.load(path.as_posix(), map_location=torch.device("cpu"), weights_only=True)
    sd_obj = obj["state_dict"] if isinstance(obj, dict) and "state_dict" in obj else obj
    if not isinstance(sd_obj, dict):
        raise ValueError("state dict file did not contain a dict")
    out: dict[str, Tensor] = {}
    for k, v in sd_obj.items():
        if isinstance(k, str) and torch.is_tensor(v):
            out[k] = v
        else:
            raise ValueError("invalid state dict entry")
    return out


def _validate_head(sd: dict[str, Tensor], arch: str) -> None:
    head = _HEAD_KEYS.get(arch)
    if head is None:
        raise ValueError(f"no classifier head known for arch {arch}")
    w = sd.get(f"{head}.weight")
    b = sd.get(f"{head}.bias")
    if w is None or b is None:
        raise ValueError("missing classifier weights in state dict")
    if w.ndim != 2 or b.ndim != 1:
        raise ValueError("invalid classifier tensor dimensions")
    if int(w.shape[0]) != N_CLASSES or int(b.shape[0]) != N_CLASSES:
        raise ValueError("classifier head size does not match the 10 digit classes")
