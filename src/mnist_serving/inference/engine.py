from __future__ import annotations

from ..errors import ProcessingError
from ..preprocess import DecodeError, PreprocessOptions, run_preprocess
from .classifier import ClassifierHandle
from .types import PredictionResult


class InferenceEngine:
    """Preprocessing plus classifier: raw image bytes in, PredictionResult out.

    Holds no mutable state; one instance serves every request thread.
    """

    def __init__(self, classifier: ClassifierHandle, options: PreprocessOptions) -> None:
        self._classifier = classifier
        self._options = options

    @property
    def classifier(self) -> ClassifierHandle:
        return self._classifier

    def predict_one(self, raw: bytes) -> PredictionResult:
        try:
            tensor = run_preprocess(raw, self._options)
        except DecodeError as exc:
            raise ProcessingError("Failed to decode image.") from exc
        try:
            probs = self._classifier.infer(tensor)
            return PredictionResult.from_probs(probs)
        except (RuntimeError, ValueError, TypeError, IndexError) as exc:
            raise ProcessingError("Model inference failed.") from exc
