"""Raster encoding, decoding and downscaling (Pillow)."""

import io
from dataclasses import dataclass
from typing import Tuple

import numpy as np
from PIL import Image


@dataclass
class EncodedVariants:
    """The two encodings produced for size comparison."""
    png: bytes
    jpg: bytes

    def smaller(self) -> Tuple[str, bytes]:
        """Extension and bytes of the variant worth keeping."""
        if len(self.png) > len(self.jpg):
            return "jpg", self.jpg
        return "png", self.png


def frame_to_image(frame: np.ndarray) -> Image.Image:
    """Wrap an (H, W), (H, W, 3) or (H, W, 4) uint8 frame as an RGB image."""
    if frame.ndim == 2:
        return Image.fromarray(np.asarray(frame, dtype=np.uint8)).convert("RGB")
    return Image.fromarray(np.ascontiguousarray(frame[..., :3], dtype=np.uint8))


def encode_variants(frame: np.ndarray, jpeg_quality: int = 80) -> EncodedVariants:
    """Encode a frame as both PNG and JPEG."""
    image = frame_to_image(frame)

    png_buffer = io.BytesIO()
    image.save(png_buffer, format="PNG", optimize=True)

    jpg_buffer = io.BytesIO()
    image.save(jpg_buffer, format="JPEG", quality=jpeg_quality)

    return EncodedVariants(png=png_buffer.getvalue(), jpg=jpg_buffer.getvalue())


def decode(data: bytes) -> Image.Image:
    """Decode stored media into a fully-loaded RGB image owned by the caller."""
    with Image.open(io.BytesIO(data)) as image:
        return image.convert("RGB")


def fit_within(size: Tuple[int, int], bounds: Tuple[int, int]) -> Tuple[int, int]:
    """Largest size no bigger than ``bounds`` with the aspect ratio of ``size``."""
    width, height = size
    max_width, max_height = bounds
    if width <= max_width and height <= max_height:
        return width, height
    scale = min(max_width / width, max_height / height)
    return max(1, int(width * scale)), max(1, int(height * scale))


def downscale(image: Image.Image, bounds: Tuple[int, int]) -> Image.Image:
    """Shrink ``image`` to fit ``bounds``; returned unchanged if it already fits."""
    target = fit_within(image.size, bounds)
    if target == image.size:
        return image
    return image.resize(target, Image.Resampling.LANCZOS)
