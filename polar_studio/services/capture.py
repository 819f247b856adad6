from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import time
from typing import Protocol

from polar_studio.services.image_ops import EncodeFailure
from polar_studio.services.pipeline import PolarizationPipeline, PolarizeResult

LOG = logging.getLogger("polar_studio.capture")


@dataclass
class CapturedPhoto:
    data: bytes
    filename: str | None = None


@dataclass
class StoredPhoto:
    location: str
    filename: str
    processed: bool
    result: PolarizeResult | None = None


class CaptureSource(Protocol):
    def capture(self) -> CapturedPhoto: ...


class PhotoSink(Protocol):
    def save(self, filename: str, data: bytes) -> str: ...


class FolderPhotoSink:
    """Writes photos into a single folder, creating it on first save."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def save(self, filename: str, data: bytes) -> str:
        name = Path(filename).name
        if not name or name != filename:
            raise ValueError(f"Photo name must be a bare file name, got {filename!r}")
        self.root.mkdir(parents=True, exist_ok=True)
        target = self.root / name
        tmp = target.with_name(f".{name}.part")
        tmp.write_bytes(data)
        tmp.replace(target)
        return str(target)


class CaptureSession:
    def __init__(
        self,
        source: CaptureSource,
        sink: PhotoSink,
        pipeline: PolarizationPipeline | None = None,
        preset: str | None = None,
        intensity: float | None = None,
        keep_raw_on_failure: bool = True,
    ) -> None:
        self.source = source
        self.sink = sink
        self.pipeline = pipeline or PolarizationPipeline()
        self.preset = preset
        self.intensity = intensity
        self.keep_raw_on_failure = keep_raw_on_failure

    @staticmethod
    def _default_name() -> str:
        return f"{int(time.time() * 1000)}.jpg"

    def capture_and_store(self) -> StoredPhoto:
        shot = self.source.capture()
        # Capture sources may hand back a full cache path; only the name is kept.
        filename = Path(shot.filename or "").name or self._default_name()

        try:
            result = self.pipeline.process(
                shot.data,
                filename=filename,
                preset=self.preset,
                intensity=self.intensity,
            )
        except EncodeFailure:
            if not self.keep_raw_on_failure:
                raise
            LOG.exception("capture_encode_failed filename=%s, keeping raw capture", filename)
            location = self.sink.save(filename, shot.data)
            return StoredPhoto(location=location, filename=filename, processed=False)

        location = self.sink.save(result.output_name, result.image_bytes)
        LOG.info(
            "capture_stored filename=%s location=%s passthrough=%s",
            result.output_name,
            location,
            result.passthrough,
        )
        return StoredPhoto(
            location=location,
            filename=result.output_name,
            processed=not result.passthrough,
            result=result,
        )
