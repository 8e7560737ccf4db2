"""Image preprocessing pipeline.

Decodes uploaded bytes into RGB arrays (format detection, EXIF orientation,
color space conversion, size validation) and turns them into the normalized
``[1, S, S, 3]`` float32 tensor the classifier expects.
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from animegenre.ml.errors import DecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

PIXEL_SCALE: float = 255.0


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        max_pixels: Reject images with more pixels than this.

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        DecodeError: If the image cannot be decoded or exceeds size limits.
    """
    try:
        img = Image.open(io.BytesIO(image_bytes))
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise DecodeError(f"Cannot decode image: {exc}") from exc

    with img:
        if max_pixels is not None and img.width * img.height > max_pixels:
            raise DecodeError(f"Image has {img.width * img.height} pixels, limit is {max_pixels}")
        try:
            rgb = ImageOps.exif_transpose(img).convert("RGB")
        except (OSError, ValueError, SyntaxError) as exc:
            raise DecodeError(f"Cannot decode image: {exc}") from exc

    return np.asarray(rgb, dtype=np.uint8)


def to_rgb(image: NDArray[np.generic]) -> NDArray[np.float32]:
    """Return a HxWx3 float32 copy of a gray, gray+channel, RGB, or RGBA array."""
    if image.ndim == 2:
        image = image[:, :, np.newaxis]
    if image.ndim != 3:
        raise ValueError(f"Expected a HxW or HxWxC image, got shape {image.shape}")

    channels = image.shape[2]
    if channels == 1:
        image = np.repeat(image, 3, axis=2)
    elif channels == 4:
        image = image[:, :, :3]
    elif channels != 3:
        raise ValueError(f"Unsupported channel count: {channels}")
    return image.astype(np.float32)


def resize_bilinear(image: NDArray[np.float32], size: int) -> NDArray[np.float32]:
    """Stretch a HxWxC image to size x size with bilinear interpolation.

    Source coordinates are ``dst * (in / out)`` without half-pixel offsets or
    antialiasing, and the aspect ratio is not preserved.
    """
    in_h, in_w = image.shape[:2]

    ys = np.arange(size, dtype=np.float64) * (in_h / size)
    xs = np.arange(size, dtype=np.float64) * (in_w / size)
    y0 = np.floor(ys).astype(np.intp)
    x0 = np.floor(xs).astype(np.intp)
    y1 = np.minimum(y0 + 1, in_h - 1)
    x1 = np.minimum(x0 + 1, in_w - 1)
    dy = (ys - y0)[:, np.newaxis, np.newaxis]
    dx = (xs - x0)[np.newaxis, :, np.newaxis]

    top = image[y0][:, x0] * (1.0 - dx) + image[y0][:, x1] * dx
    bottom = image[y1][:, x0] * (1.0 - dx) + image[y1][:, x1] * dx
    return (top * (1.0 - dy) + bottom * dy).astype(np.float32)


def preprocess(image: NDArray[np.generic], size: int) -> NDArray[np.float32]:
    """Prepare an image for the classifier.

    Args:
        image: HxW, HxWx1, HxWx3, or HxWx4 array with values in [0, 255].
        size: Model input side length S.

    Returns:
        1xSxSx3 float32 tensor with values in [0, 1].
    """
    resized = resize_bilinear(to_rgb(image), size)
    normalized = resized / np.float32(PIXEL_SCALE)
    return normalized[np.newaxis, ...]
