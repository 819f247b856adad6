from __future__ import annotations

from dataclasses import dataclass
import logging
import math
import time

from polar_studio.config import EffectParameters, get_preset
from polar_studio.schemas import PolarizeReport
from polar_studio.services.image_ops import (
    DecodeFailure,
    apply_tone_adjustment,
    compose_polaroid_frame,
    decode_image_bytes,
    encode_jpeg_bytes,
    polarized_name,
    resize_linear,
    scaled_size,
)

LOG = logging.getLogger("polar_studio.pipeline")


@dataclass
class PolarizeResult:
    image_bytes: bytes
    output_name: str
    passthrough: bool
    report: PolarizeReport

    @property
    def mime(self) -> str:
        # Passthrough hands back whatever the caller sent.
        return "application/octet-stream" if self.passthrough else "image/jpeg"


class PolarizationPipeline:
    """Raw capture bytes in, framed "polarized" JPEG out.

    Stateless between calls; one instance may serve several threads as long as
    each call works on its own bytes.
    """

    def resolve_params(self, preset: str | None = None, intensity: float | None = None) -> EffectParameters:
        params = get_preset(preset)
        if intensity is not None:
            if not math.isfinite(intensity):
                raise ValueError(f"Intensity must be a finite number, got {intensity!r}.")
            params = params.model_copy(update={"intensity": float(intensity)})
        return params

    def process(
        self,
        file_bytes: bytes,
        filename: str = "capture.jpg",
        preset: str | None = None,
        intensity: float | None = None,
    ) -> PolarizeResult:
        params = self.resolve_params(preset, intensity)
        started = time.perf_counter()

        try:
            decoded = decode_image_bytes(file_bytes)
        except DecodeFailure as exc:
            LOG.warning("polarize_passthrough filename=%s reason=%s", filename, exc)
            report = PolarizeReport(
                preset=params.name,
                intensity=params.intensity,
                input_name=filename,
                output_name=filename,
                passthrough=True,
                passthrough_reason=str(exc),
                file_size_bytes=len(file_bytes),
                output_size_bytes=len(file_bytes),
                processing_ms=(time.perf_counter() - started) * 1000.0,
            )
            return PolarizeResult(image_bytes=file_bytes, output_name=filename, passthrough=True, report=report)

        bgr = decoded.bgr
        src_h, src_w = bgr.shape[:2]
        apply_tone_adjustment(bgr, params.intensity)

        photo_w, photo_h = scaled_size(src_w, src_h, params.resize_width_factor, params.resize_height_factor)
        photo = resize_linear(bgr, photo_w, photo_h)
        framed = compose_polaroid_frame(photo, params)
        out_h, out_w = framed.shape[:2]

        # EncodeFailure propagates; the caller decides what to keep.
        encoded = encode_jpeg_bytes(framed, params.jpeg_quality)
        output_name = polarized_name(filename, params.output_suffix)
        elapsed_ms = (time.perf_counter() - started) * 1000.0

        LOG.info(
            "polarize_done filename=%s src=%dx%d photo=%dx%d out=%dx%d ms=%.1f",
            filename,
            src_w,
            src_h,
            photo_w,
            photo_h,
            out_w,
            out_h,
            elapsed_ms,
        )
        report = PolarizeReport(
            preset=params.name,
            intensity=params.intensity,
            input_name=filename,
            output_name=output_name,
            passthrough=False,
            input_width=src_w,
            input_height=src_h,
            photo_width=photo_w,
            photo_height=photo_h,
            output_width=out_w,
            output_height=out_h,
            file_size_bytes=len(file_bytes),
            output_size_bytes=len(encoded),
            captured_at=decoded.metadata.get("captured_at"),
            processing_ms=elapsed_ms,
        )
        return PolarizeResult(image_bytes=encoded, output_name=output_name, passthrough=False, report=report)
