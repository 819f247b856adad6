from __future__ import annotations

from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

BASE_DIR = Path(__file__).resolve().parents[1]
PRESET_CONFIG_PATH = BASE_DIR / "polar_studio" / "config" / "presets.yaml"

RGB = tuple[int, int, int]


class EffectParameters(BaseModel):
    name: str
    intensity: float = 0.7
    resize_width_factor: float = Field(gt=0)
    resize_height_factor: float = Field(gt=0)
    top_border: int = Field(ge=0)
    side_border: int = Field(ge=0)
    bottom_border: int = Field(ge=0)
    corner_radius: int = Field(ge=0)
    # 1 draws a smooth arc; larger values facet the corner.
    corner_step: int = Field(default=1, ge=1)
    outer_margin: int = Field(ge=0)
    shadow_size: int = Field(ge=0)
    shadow_peak: int = Field(default=150, ge=0, le=255)
    border_thickness: int = Field(ge=0)
    margin_color: RGB = (0, 0, 0)
    frame_color: RGB = (255, 255, 255)
    border_color: RGB = (180, 180, 180)
    jpeg_quality: int = Field(default=95, ge=1, le=100)
    output_suffix: str = "_polarized"


class PresetSettings(BaseModel):
    default_preset: str
    presets: dict[str, EffectParameters]


@lru_cache(maxsize=1)
def load_preset_settings() -> PresetSettings:
    with PRESET_CONFIG_PATH.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle)
    return PresetSettings(**raw)


def get_preset(preset_name: str | None) -> EffectParameters:
    settings = load_preset_settings()
    key = (preset_name or settings.default_preset).strip().lower()
    if key not in settings.presets:
        key = settings.default_preset
    return settings.presets[key]


def list_presets() -> dict[str, EffectParameters]:
    return load_preset_settings().presets
