from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class PolarizeReport(BaseModel):
    preset: str
    intensity: float
    input_name: str
    output_name: str
    passthrough: bool
    passthrough_reason: str | None = None
    input_width: int | None = None
    input_height: int | None = None
    photo_width: int | None = None
    photo_height: int | None = None
    output_width: int | None = None
    output_height: int | None = None
    file_size_bytes: int
    output_size_bytes: int
    captured_at: datetime | None = None
    processing_ms: float


class PolarizeResponse(BaseModel):
    report: PolarizeReport
    image_base64: str
    image_mime: str


class PresetInfo(BaseModel):
    code: str
    name: str
    intensity: float
    resize_width_factor: float
    resize_height_factor: float
    corner_radius: int
    corner_step: int
    jpeg_quality: int
