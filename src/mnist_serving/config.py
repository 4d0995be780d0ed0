from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/serving.toml")
KNOWN_ARCHS: Final[tuple[str, ...]] = ("lenet5", "resnet18")


@dataclass(frozen=True)
class AppConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    # 0 selects min(8, cpu_count)
    batch_workers: int = 0


@dataclass(frozen=True)
class ModelConfig:
    path: Path = Path("/data/models/mnist_lenet5.pt")
    arch: str = "lenet5"
    auto_invert: bool = True


@dataclass(frozen=True)
class LimitsConfig:
    max_image_mb: int = 2
    max_request_mb: int = 20
    max_image_side_px: int = 2048
    max_batch_size: int = 50


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    model: ModelConfig
    limits: LimitsConfig

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("MNIST_SERVING_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def load(cls) -> Settings:
        # Load env first, then override from TOML if present.
        base = cls(
            app=_load_app_from_env(),
            model=_load_model_from_env(),
            limits=_load_limits_from_env(),
        )
        cfg_path = cls._toml_path()
        if not cfg_path.exists():
            return base
        try:
            raw: object = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RuntimeError(f"Failed to read config TOML: {cfg_path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"Invalid TOML config: {cfg_path}") from exc
        return cls(
            app=_merge_app(base.app, _toml_table(raw, "app")),
            model=_merge_model(base.model, _toml_table(raw, "model")),
            limits=_merge_limits(base.limits, _toml_table(raw, "limits")),
        )


def _load_app_from_env() -> AppConfig:
    a = AppConfig()
    host = os.getenv("APP__HOST")
    pt = os.getenv("APP__PORT")
    bw = os.getenv("APP__BATCH_WORKERS")
    if host:
        a = replace(a, host=host)
    if pt is not None and pt.isdigit():
        a = replace(a, port=_checked_port(int(pt), "APP__PORT"))
    if bw is not None and bw.isdigit():
        a = replace(a, batch_workers=int(bw))
    return a


def _load_model_from_env() -> ModelConfig:
    m = ModelConfig()
    path = os.getenv("MODEL__PATH")
    arch = os.getenv("MODEL__ARCH")
    inv = os.getenv("MODEL__AUTO_INVERT")
    if path:
        m = replace(m, path=Path(path))
    if arch:
        m = replace(m, arch=_checked_arch(arch.strip().lower(), "MODEL__ARCH"))
    if inv is not None:
        m = replace(m, auto_invert=inv.strip().lower() in {"1", "true", "yes", "on"})
    return m


def _load_limits_from_env() -> LimitsConfig:
    lim = LimitsConfig()
    mb = os.getenv("LIMITS__MAX_IMAGE_MB")
    rq = os.getenv("LIMITS__MAX_REQUEST_MB")
    mx = os.getenv("LIMITS__MAX_IMAGE_SIDE_PX")
    bs = os.getenv("LIMITS__MAX_BATCH_SIZE")
    if mb is not None:
        lim = replace(lim, max_image_mb=int(mb))
    if rq is not None:
        lim = replace(lim, max_request_mb=int(rq))
    if mx is not None:
        lim = replace(lim, max_image_side_px=int(mx))
    if bs is not None:
        lim = replace(lim, max_batch_size=_checked_batch_size(int(bs), "LIMITS__MAX_BATCH_SIZE"))
    return lim


def _merge_app(base: AppConfig, data: dict[str, object]) -> AppConfig:
    out = base
    if "host" in data:
        out = replace(out, host=str(data["host"]))
    if "port" in data:
        out = replace(out, port=_checked_port(int(str(data["port"])), "port"))
    if "batch_workers" in data:
        out = replace(out, batch_workers=int(str(data["batch_workers"])))
    return out


def _merge_model(base: ModelConfig, data: dict[str, object]) -> ModelConfig:
    out = base
    if "path" in data:
        out = replace(out, path=Path(str(data["path"])))
    if "arch" in data:
        out = replace(out, arch=_checked_arch(str(data["arch"]).strip().lower(), "arch"))
    if "auto_invert" in data:
        out = replace(out, auto_invert=bool(data["auto_invert"]))
    return out


def _merge_limits(base: LimitsConfig, data: dict[str, object]) -> LimitsConfig:
    out = base
    if "max_image_mb" in data:
        out = replace(out, max_image_mb=int(str(data["max_image_mb"])))
    if "max_request_mb" in data:
        out = replace(out, max_request_mb=int(str(data["max_request_mb"])))
    if "max_image_side_px" in data:
        out = replace(out, max_image_side_px=int(str(data["max_image_side_px"])))
    if "max_batch_size" in data:
        size = int(str(data["max_batch_size"]))
        out = replace(out, max_batch_size=_checked_batch_size(size, "max_batch_size"))
    return out


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            return {str(k): v for k, v in tab.items()}
    return {}


def _checked_port(port: int, name: str) -> int:
    if not (1 <= port <= 65535):
        raise RuntimeError(f"{name} out of range")
    return port


def _checked_arch(arch: str, name: str) -> str:
    if arch not in KNOWN_ARCHS:
        raise RuntimeError(f"{name} must be one of {', '.join(KNOWN_ARCHS)}")
    return arch


def _checked_batch_size(size: int, name: str) -> int:
    if size < 1:
        raise RuntimeError(f"{name} must be >= 1")
    return size


@dataclass(frozen=True)
class Limits:
    max_image_bytes: int
    max_request_bytes: int
    max_side_px: int
    max_batch_size: int

    @staticmethod
    def from_settings(s: Settings) -> Limits:
        return Limits(
            max_image_bytes=int(s.limits.max_image_mb) * 1024 * 1024,
            max_request_bytes=int(s.limits.max_request_mb) * 1024 * 1024,
            max_side_px=int(s.limits.max_image_side_px),
            max_batch_size=int(s.limits.max_batch_size),
        )
