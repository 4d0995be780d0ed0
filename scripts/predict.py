from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path

from mnist_serving.config import KNOWN_ARCHS, ModelConfig
from mnist_serving.errors import ServingError
from mnist_serving.inference.classifier import ModelLoadError, load_classifier
from mnist_serving.inference.engine import InferenceEngine
from mnist_serving.inference.types import PredictionResult
from mnist_serving.logging import get_logger
from mnist_serving.preprocess import PreprocessOptions


@dataclass(frozen=True)
class PredictArgs:
    model: Path
    arch: str
    image: Path
    auto_invert: bool


def parse_args(argv: list[str] | None = None) -> PredictArgs:
    ap = argparse.ArgumentParser(description="Classify one image file offline")
    ap.add_argument("image", help="Image file to classify (PNG, JPEG, ...)")
    ap.add_argument("-m", "--model", default=str(ModelConfig().path), help="Weights .pt file")
    ap.add_argument("--arch", choices=KNOWN_ARCHS, default="lenet5")
    ap.add_argument(
        "--no-invert",
        action="store_true",
        help="Do not invert light-background images",
    )
    a = ap.parse_args(argv)
    return PredictArgs(
        model=Path(str(a.model)),
        arch=str(a.arch),
        image=Path(str(a.image)),
        auto_invert=not bool(a.no_invert),
    )


def predict_file(args: PredictArgs) -> PredictionResult:
    handle = load_classifier(args.model, args.arch)
    engine = InferenceEngine(handle, PreprocessOptions(auto_invert=args.auto_invert))
    return engine.predict_one(args.image.read_bytes())


def main(argv: list[str] | None = None) -> int:
    from mnist_serving.logging import init_logging

    init_logging()
    args = parse_args(argv)
    logger = get_logger()
    if not args.image.is_file():
        logger.error("image_not_found path=%s", args.image.absolute())
        return 1
    try:
        result = predict_file(args)
    except ModelLoadError as exc:
        logger.error("predict_aborted error=%s", exc)
        return 1
    except ServingError as exc:
        logger.error("predict_failed image=%s error=%s", args.image, exc.message)
        return 1
    print(f"digit={result.predicted_label} confidence={result.confidence:.4f}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
