from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Final

import torch
from PIL import Image, ImageFile, ImageOps, UnidentifiedImageError
from torch import Tensor

from .errors import InvalidInputError, PayloadTooLargeError

ImageFile.LOAD_TRUNCATED_IMAGES = False

IMAGE_SIDE: Final[int] = 28


class DecodeError(ValueError):
    """Bytes could not be turned into a 28x28 grayscale tensor."""


@dataclass(frozen=True)
class PreprocessOptions:
    # Invert light-background images to MNIST's white-on-black convention
    auto_invert: bool = True
    max_side_px: int = 2048


def run_preprocess(raw: bytes, opts: PreprocessOptions) -> Tensor:
    """Decode ``raw`` into a float32 tensor of shape (1, 28, 28) with values in [0, 1]."""
    img = _open_image_bytes(raw)
    w, h = img.size
    if max(w, h) > opts.max_side_px:
        raise InvalidInputError(
            f"Image dimensions {w}x{h} exceed the {opts.max_side_px}px limit."
        )
    try:
        g = _load_to_grayscale(img)
        if opts.auto_invert and _estimate_background_is_light(g):
            g = ImageOps.invert(g)
        resized = g.resize((IMAGE_SIDE, IMAGE_SIDE), resample=Image.Resampling.BILINEAR)
        buf: bytes = resized.tobytes()
    except (ValueError, OSError, TypeError) as exc:
        raise DecodeError(f"image conversion failed: {exc}") from exc
    t = torch.frombuffer(bytearray(buf), dtype=torch.uint8).to(torch.float32) / 255.0
    return t.reshape(1, IMAGE_SIDE, IMAGE_SIDE)


def _open_image_bytes(raw: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(raw))
        img.load()
    except Image.DecompressionBombError:
        raise PayloadTooLargeError("Image exceeds the decompression size limit.") from None
    except UnidentifiedImageError as exc:
        raise DecodeError("bytes are not a recognized image format") from exc
    except (OSError, ValueError, SyntaxError) as exc:
        raise DecodeError(f"image data is truncated or corrupt: {exc}") from exc
    return img


def _load_to_grayscale(img: Image.Image) -> Image.Image:
    tmp = ImageOps.exif_transpose(img)
    img2: Image.Image = tmp if tmp is not None else img
    if img2.mode in ("RGBA", "LA") or (img2.mode == "P" and "transparency" in img2.info):
        rgba = img2.convert("RGBA")
        bg = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
        img2 = Image.alpha_composite(bg, rgba).convert("RGB")
    if img2.mode != "L":
        img2 = ImageOps.grayscale(img2.convert("RGB"))
    return img2


def _estimate_background_is_light(gray: Image.Image) -> bool:
    hist = gray.histogram()
    total = sum(hist)
    if total == 0:
        return False
    # median estimate from histogram
    cum = 0
    median_bin = 0
    for i, count in enumerate(hist):
        cum += count
        if cum >= total // 2:
            median_bin = i
            break
    return median_bin >= 128
