from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from io import BytesIO
import logging
import os
from pathlib import PurePath
from typing import Any

import cv2
import numpy as np
from PIL import ExifTags, Image, ImageOps

from polar_studio.config import RGB, EffectParameters

LOG = logging.getLogger("polar_studio.image_ops")

EXIF_TAG_MAP = {v: k for k, v in ExifTags.TAGS.items()}
ORIENTATION_TAG = EXIF_TAG_MAP.get("Orientation", 274)
DATETIME_ORIGINAL_TAG = EXIF_TAG_MAP.get("DateTimeOriginal", 36867)
DATETIME_TAG = EXIF_TAG_MAP.get("DateTime", 306)
MIRRORED_ORIENTATION_VALUES = {2, 4, 5, 7}
MAX_DECODE_MEGAPIXELS = max(1.0, float(os.getenv("POLAR_MAX_DECODE_MEGAPIXELS", "36")))
MAX_DECODE_PIXELS = int(MAX_DECODE_MEGAPIXELS * 1_000_000)
Image.MAX_IMAGE_PIXELS = MAX_DECODE_PIXELS

CONTRAST_PIVOT = 128.0
BLUE_GAIN = 0.6
HIGHLIGHT_THRESHOLD = 200.0
HIGHLIGHT_CUT = 0.4

# Channel indices in OpenCV's BGR layout.
BLUE, GREEN, RED = 0, 1, 2


class DecodeFailure(ValueError):
    """Input bytes are not an image this pipeline can read."""


class EncodeFailure(RuntimeError):
    """The finished canvas could not be serialized."""


@dataclass
class DecodedImage:
    bgr: np.ndarray
    metadata: dict[str, Any]


def _enforce_decode_pixel_limit(width: int, height: int) -> None:
    total_pixels = int(width) * int(height)
    if total_pixels > MAX_DECODE_PIXELS:
        raise DecodeFailure(
            "Image resolution is too large to process safely. "
            f"Maximum decode limit is {MAX_DECODE_MEGAPIXELS:.0f} megapixels."
        )


def _parse_exif_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    for fmt in ("%Y:%m:%d %H:%M:%S", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    return None


def decode_image_bytes(file_bytes: bytes) -> DecodedImage:
    metadata: dict[str, Any] = {
        "captured_at": None,
        "raw_orientation": None,
        "mirrored_orientation": False,
    }
    if not file_bytes:
        raise DecodeFailure("Image payload is empty.")

    try:
        pil_img = Image.open(BytesIO(file_bytes))
        _enforce_decode_pixel_limit(*pil_img.size)
        exif = pil_img.getexif()

        if exif:
            raw_orientation = exif.get(ORIENTATION_TAG)
            metadata["raw_orientation"] = raw_orientation
            metadata["mirrored_orientation"] = raw_orientation in MIRRORED_ORIENTATION_VALUES

            captured_at = _parse_exif_datetime(exif.get(DATETIME_ORIGINAL_TAG))
            if captured_at is None:
                captured_at = _parse_exif_datetime(exif.get(DATETIME_TAG))
            metadata["captured_at"] = captured_at

        # Applies EXIF orientation, including mirrored modes.
        pil_img = ImageOps.exif_transpose(pil_img).convert("RGB")
        rgb = np.asarray(pil_img)
        bgr = cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)
        return DecodedImage(bgr=bgr, metadata=metadata)
    except Image.DecompressionBombError as exc:
        raise DecodeFailure(
            "Image resolution is too large to process safely. "
            f"Maximum decode limit is {MAX_DECODE_MEGAPIXELS:.0f} megapixels."
        ) from exc
    except DecodeFailure:
        raise
    except Exception as exc:
        LOG.debug("pillow_decode_failed error=%s, trying opencv", exc)

    array = np.frombuffer(file_bytes, dtype=np.uint8)
    try:
        bgr = cv2.imdecode(array, cv2.IMREAD_COLOR)
    except cv2.error as exc:
        raise DecodeFailure("Unable to decode image.") from exc
    if bgr is None:
        raise DecodeFailure("Unable to decode image. Expected a JPG/PNG camera capture.")
    _enforce_decode_pixel_limit(bgr.shape[1], bgr.shape[0])
    return DecodedImage(bgr=bgr, metadata=metadata)


def encode_jpeg_bytes(bgr_image: np.ndarray, quality: int = 95) -> bytes:
    try:
        ok, encoded = cv2.imencode(".jpg", bgr_image, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    except cv2.error as exc:
        raise EncodeFailure("Failed to encode framed image") from exc
    if not ok:
        raise EncodeFailure("Failed to encode framed image")
    return encoded.tobytes()


def polarized_name(filename: str, suffix: str = "_polarized") -> str:
    """`IMG_1.jpg` -> `IMG_1_polarized.jpg`; the output is always JPEG."""
    path = PurePath(filename or "capture.jpg")
    stem = path.stem or "capture"
    return str(path.with_name(f"{stem}{suffix}.jpg"))


def _to_bgr(color: RGB) -> tuple[int, int, int]:
    red, green, blue = color
    return (int(blue), int(green), int(red))


# ---------- Tone adjustment ----------

def boost_contrast(bgr_image: np.ndarray, intensity: float) -> np.ndarray:
    values = (bgr_image.astype(np.float64) - CONTRAST_PIVOT) * (1.0 + intensity) + CONTRAST_PIVOT
    return np.clip(values, 0, 255).astype(np.uint8)


def enhance_blue(bgr_image: np.ndarray, intensity: float) -> np.ndarray:
    out = bgr_image.copy()
    blue = bgr_image[:, :, BLUE].astype(np.float64) * (1.0 + intensity * BLUE_GAIN)
    out[:, :, BLUE] = np.clip(blue, 0, 255).astype(np.uint8)
    return out


def suppress_highlights(bgr_image: np.ndarray, intensity: float) -> np.ndarray:
    """Darken pixels whose mean channel value exceeds the glare threshold."""
    brightness = bgr_image.sum(axis=2, dtype=np.int32) / 3.0
    glare = brightness > HIGHLIGHT_THRESHOLD
    out = bgr_image.copy()
    if not glare.any():
        return out
    darkened = bgr_image[glare].astype(np.float64) * (1.0 - intensity * HIGHLIGHT_CUT)
    out[glare] = np.clip(darkened, 0, 255).astype(np.uint8)
    return out


def apply_tone_adjustment(bgr_image: np.ndarray, intensity: float = 0.7) -> np.ndarray:
    """Contrast boost, then blue lift, then glare cut; writes back into `bgr_image`.

    Brightness for the glare cut is measured after the first two steps, so the
    order is part of the effect.
    """
    adjusted = boost_contrast(bgr_image, intensity)
    adjusted = enhance_blue(adjusted, intensity)
    adjusted = suppress_highlights(adjusted, intensity)
    bgr_image[...] = adjusted
    return bgr_image


# ---------- Resize ----------

def scaled_size(width: int, height: int, width_factor: float, height_factor: float) -> tuple[int, int]:
    new_w = max(1, int(width * width_factor))
    new_h = max(1, int(height * height_factor))
    return new_w, new_h


def resize_linear(bgr_image: np.ndarray, width: int, height: int) -> np.ndarray:
    return cv2.resize(bgr_image, (int(width), int(height)), interpolation=cv2.INTER_LINEAR)


# ---------- Framing ----------

def frame_layout(photo_w: int, photo_h: int, params: EffectParameters) -> dict[str, int]:
    frame_w = photo_w + params.side_border * 2
    frame_h = photo_h + params.top_border + params.bottom_border
    return {
        "frame_w": frame_w,
        "frame_h": frame_h,
        "total_w": frame_w + params.outer_margin * 2,
        "total_h": frame_h + params.outer_margin * 2,
        "photo_left": params.outer_margin + params.side_border,
        "photo_top": params.outer_margin + params.top_border,
    }


def _corner_offsets(length: int, radius: int) -> tuple[np.ndarray, np.ndarray]:
    # Near edge wins when both corner bands overlap on a small frame.
    pos = np.arange(length)
    near = pos < radius
    far = pos >= length - radius
    offset = np.where(near, radius - pos, np.where(far, pos - (length - radius - 1), 0))
    return offset.astype(np.int64), near | far


def rounded_corner_mask(frame_w: int, frame_h: int, radius: int, step: int = 1) -> np.ndarray:
    """Boolean mask of frame pixels cut away by the four rounded corners."""
    dx, in_x = _corner_offsets(frame_w, radius)
    dy, in_y = _corner_offsets(frame_h, radius)
    distance = dy[:, None] ** 2 + dx[None, :] ** 2
    if step > 1:
        distance = (distance // step) * step
    return in_y[:, None] & in_x[None, :] & (distance > radius * radius)


def draw_inner_shadow(
    canvas: np.ndarray,
    left: int,
    top: int,
    width: int,
    height: int,
    size: int,
    peak: int = 150,
) -> None:
    # Shadow lines never leave the photo rectangle or the canvas.
    total_h, total_w = canvas.shape[:2]
    x0, x1 = max(0, left), min(total_w, left + width)
    y0, y1 = max(0, top), min(total_h, top + height)

    def hline(y: int, shade: int) -> None:
        if y0 <= y < y1:
            canvas[y, x0:x1] = shade

    def vline(x: int, shade: int) -> None:
        if x0 <= x < x1:
            canvas[y0:y1, x] = shade

    for i in range(size):
        shade = int(peak * (size - i) / size)
        hline(top + i, shade)
        vline(left + i, shade)
        vline(left + width - 1 - i, shade)
        hline(top + height - 1 - i, shade)


def draw_photo_border(
    canvas: np.ndarray,
    left: int,
    top: int,
    width: int,
    height: int,
    thickness: int,
    color: RGB,
) -> None:
    total_h, total_w = canvas.shape[:2]
    bgr = _to_bgr(color)

    def hline(y: int, x0: int, x1: int) -> None:
        if 0 <= y < total_h:
            canvas[y, max(0, x0) : min(total_w, x1)] = bgr

    def vline(x: int, y0: int, y1: int) -> None:
        if 0 <= x < total_w:
            canvas[max(0, y0) : min(total_h, y1), x] = bgr

    for i in range(thickness):
        hline(top - 1 - i, left - i, left + width + i)
        hline(top + height + i, left - i, left + width + i)
        vline(left - 1 - i, top - i, top + height + i)
        vline(left + width + i, top - i, top + height + i)


def compose_polaroid_frame(photo: np.ndarray, params: EffectParameters) -> np.ndarray:
    photo_h, photo_w = photo.shape[:2]
    layout = frame_layout(photo_w, photo_h, params)
    margin = params.outer_margin
    margin_bgr = _to_bgr(params.margin_color)

    canvas = np.empty((layout["total_h"], layout["total_w"], 3), dtype=np.uint8)
    canvas[:, :] = margin_bgr

    frame = canvas[margin : margin + layout["frame_h"], margin : margin + layout["frame_w"]]
    frame[:, :] = _to_bgr(params.frame_color)
    cutout = rounded_corner_mask(layout["frame_w"], layout["frame_h"], params.corner_radius, params.corner_step)
    frame[cutout] = margin_bgr

    left = layout["photo_left"]
    top = layout["photo_top"]
    draw_inner_shadow(canvas, left, top, photo_w, photo_h, params.shadow_size, params.shadow_peak)
    canvas[top : top + photo_h, left : left + photo_w] = photo
    draw_photo_border(canvas, left, top, photo_w, photo_h, params.border_thickness, params.border_color)
    return canvas
