from __future__ import annotations

import sys

import uvicorn

from mnist_serving.api.app import create_app
from mnist_serving.config import Settings
from mnist_serving.inference.classifier import ModelLoadError
from mnist_serving.logging import get_logger, init_logging


def main() -> int:  # pragma: no cover - runtime glue
    init_logging()
    settings = Settings.load()
    try:
        app = create_app(settings)
    except ModelLoadError as exc:
        get_logger().error("startup_aborted error=%s", exc)
        return 1
    uvicorn.run(app, host=settings.app.host, port=settings.app.port, log_config=None)
    return 0


if __name__ == "__main__":
    sys.exit(main())
