from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path

import torch

from mnist_serving.config import KNOWN_ARCHS
from mnist_serving.inference.classifier import build_fresh_state_dict
from mnist_serving.logging import get_logger


@dataclass(frozen=True)
class ExportArgs:
    arch: str
    out: Path
    seed: int


def parse_args(argv: list[str] | None = None) -> ExportArgs:
    ap = argparse.ArgumentParser(
        description="Write freshly initialised weights for smoke-testing the service"
    )
    ap.add_argument("--arch", choices=KNOWN_ARCHS, default="lenet5")
    ap.add_argument("--out", required=True, help="Destination .pt file")
    ap.add_argument("--seed", type=int, default=12345)
    a = ap.parse_args(argv)
    return ExportArgs(arch=str(a.arch), out=Path(str(a.out)), seed=int(a.seed))


def export_weights(args: ExportArgs) -> Path:
    torch.manual_seed(args.seed)
    sd = build_fresh_state_dict(args.arch)
    args.out.parent.mkdir(parents=True, exist_ok=True)
    torch.save(sd, args.out.as_posix())
    get_logger().info("weights_exported arch=%s path=%s", args.arch, args.out.as_posix())
    return args.out


def main() -> None:  # pragma: no cover - tiny glue
    from mnist_serving.logging import init_logging

    init_logging()
    export_weights(parse_args())


if __name__ == "__main__":
    main()
