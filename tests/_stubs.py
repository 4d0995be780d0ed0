from __future__ import annotations

import random
import threading
import time
from io import BytesIO

import torch
from PIL import Image
from torch import Tensor

from mnist_serving.config import AppConfig, LimitsConfig, ModelConfig, Settings
from mnist_serving.errors import ProcessingError
from mnist_serving.inference.classifier import ClassifierHandle
from mnist_serving.inference.types import PredictionRequest, PredictionResult


class GrayLevelModel:
    """Predicts digit round(9 * mean_pixel): a uniform gray image encodes its own label."""

    def eval(self) -> object:
        return self

    def __call__(self, x: Tensor) -> Tensor:
        label = int(round(float(x.mean()) * 9.0))
        logits = torch.full((x.shape[0], 10), -4.0)
        logits[:, label] = 4.0
        return logits


def stub_classifier() -> ClassifierHandle:
    return ClassifierHandle(GrayLevelModel(), arch="lenet5")


def png_for_label(label: int, size: int = 32, fmt: str = "PNG") -> bytes:
    level = int(round(label * 255 / 9))
    img = Image.new("L", (size, size), level)
    b = BytesIO()
    img.save(b, format=fmt)
    return b.getvalue()


def digit_seven_png() -> bytes:
    """White stroke '7' on black, as in MNIST."""
    img = Image.new("L", (28, 28), 0)
    for x in range(6, 22):
        for y in range(5, 8):
            img.putpixel((x, y), 255)
    for i in range(16):
        x = 20 - i // 2
        for dx in range(3):
            img.putpixel((x + dx - 1, 8 + i), 255)
    b = BytesIO()
    img.save(b, format="PNG")
    return b.getvalue()


def make_settings(max_image_mb: int = 2, max_batch_size: int = 50) -> Settings:
    return Settings(
        app=AppConfig(batch_workers=4),
        model=ModelConfig(auto_invert=False),
        limits=LimitsConfig(max_image_mb=max_image_mb, max_batch_size=max_batch_size),
    )


def request_for(content: bytes, content_type: str | None = "image/png") -> PredictionRequest:
    return PredictionRequest(content=content, content_type=content_type, filename="img.png")


def distribution(label: int) -> PredictionResult:
    probs = [0.01] * 10
    probs[label] = 0.91
    return PredictionResult.from_probs(probs)


class FirstByteEngine:
    """Predicts the first content byte as the label after a random delay; counts calls."""

    def __init__(self, max_delay: float = 0.0, fail_on: int | None = None) -> None:
        self._max_delay = max_delay
        self._fail_on = fail_on
        self._lock = threading.Lock()
        self.calls = 0

    def predict_one(self, raw: bytes) -> PredictionResult:
        with self._lock:
            self.calls += 1
        if self._max_delay > 0.0:
            time.sleep(random.uniform(0.0, self._max_delay))
        label = raw[0]
        if self._fail_on is not None and label == self._fail_on:
            raise ProcessingError("Model inference failed.")
        return distribution(label)
