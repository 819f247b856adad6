from __future__ import annotations

import base64
import logging
import os
import threading
from typing import Any
from urllib.parse import quote

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool

from polar_studio.config import list_presets, load_preset_settings
from polar_studio.schemas import PolarizeResponse, PresetInfo
from polar_studio.services.image_ops import EncodeFailure
from polar_studio.services.pipeline import PolarizationPipeline, PolarizeResult

LOG = logging.getLogger("polar_studio.api")

app = FastAPI(title="Polar Studio", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

pipeline = PolarizationPipeline()

MAX_INFLIGHT_POLARIZE = max(1, int(os.getenv("POLAR_API_MAX_INFLIGHT", "3")))
MAX_UPLOAD_MB = max(1.0, float(os.getenv("POLAR_API_MAX_UPLOAD_MB", "20")))
MAX_UPLOAD_BYTES = int(MAX_UPLOAD_MB * 1024 * 1024)
UPLOAD_READ_CHUNK_BYTES = max(64 * 1024, int(os.getenv("POLAR_API_UPLOAD_CHUNK_BYTES", str(1024 * 1024))))

INFLIGHT_POLARIZE_GUARD = threading.BoundedSemaphore(MAX_INFLIGHT_POLARIZE)


def _content_length_exceeds_limit(request: Request, max_bytes: int) -> bool:
    header = request.headers.get("content-length")
    if not header:
        return False
    try:
        return int(header) > max_bytes
    except ValueError:
        return False


async def _read_upload_with_limit(photo: UploadFile, max_bytes: int, chunk_size: int) -> bytes:
    chunks = bytearray()
    total_bytes = 0
    while True:
        chunk = await photo.read(chunk_size)
        if not chunk:
            break
        total_bytes += len(chunk)
        if total_bytes > max_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"Uploaded file is too large. Hard limit is {MAX_UPLOAD_MB:.0f}MB.",
            )
        chunks.extend(chunk)
    return bytes(chunks)


def _busy_response() -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"detail": "Server is busy processing other photos. Please retry shortly."},
        headers={"Retry-After": "5"},
    )


async def _run_polarize(
    request: Request,
    photo: UploadFile,
    preset: str,
    intensity: float | None,
) -> PolarizeResult | JSONResponse:
    if not INFLIGHT_POLARIZE_GUARD.acquire(blocking=False):
        LOG.warning("polarize_rejected reason=max_inflight filename=%s", photo.filename)
        return _busy_response()

    filename = photo.filename or "capture.jpg"
    try:
        if _content_length_exceeds_limit(request, MAX_UPLOAD_BYTES):
            raise HTTPException(
                status_code=413,
                detail=f"Request body is too large. Hard limit is {MAX_UPLOAD_MB:.0f}MB.",
            )

        if photo.content_type is None or not photo.content_type.startswith("image/"):
            raise HTTPException(status_code=400, detail="Please upload a valid image file.")

        file_bytes = await _read_upload_with_limit(
            photo,
            max_bytes=MAX_UPLOAD_BYTES,
            chunk_size=UPLOAD_READ_CHUNK_BYTES,
        )
        if not file_bytes:
            raise HTTPException(status_code=400, detail="Uploaded image is empty.")

        return await run_in_threadpool(
            pipeline.process,
            file_bytes,
            filename,
            preset,
            intensity,
        )
    except HTTPException:
        raise
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except EncodeFailure as exc:
        LOG.error("polarize_encode_failed filename=%s error=%s", filename, exc)
        return JSONResponse(status_code=500, content={"error": "encode_failed", "detail": str(exc)})
    except Exception:  # pragma: no cover
        LOG.exception("polarize_failed filename=%s", filename)
        return JSONResponse(status_code=500, content={"error": "polarize_failed", "detail": "Internal error"})
    finally:
        await photo.close()
        INFLIGHT_POLARIZE_GUARD.release()


@app.get("/api/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "default_preset": load_preset_settings().default_preset,
        "polarize_limits": {
            "max_inflight": MAX_INFLIGHT_POLARIZE,
            "max_upload_mb": MAX_UPLOAD_MB,
        },
    }


@app.get("/api/presets", response_model=list[PresetInfo])
def presets() -> list[PresetInfo]:
    payload: list[PresetInfo] = []
    for code, params in list_presets().items():
        payload.append(
            PresetInfo(
                code=code,
                name=params.name,
                intensity=params.intensity,
                resize_width_factor=params.resize_width_factor,
                resize_height_factor=params.resize_height_factor,
                corner_radius=params.corner_radius,
                corner_step=params.corner_step,
                jpeg_quality=params.jpeg_quality,
            )
        )
    return payload


@app.post("/api/polarize", response_model=PolarizeResponse)
async def polarize(
    request: Request,
    photo: UploadFile = File(...),
    preset: str = Form(""),
    intensity: float | None = Form(None),
) -> PolarizeResponse | JSONResponse:
    outcome = await _run_polarize(request, photo, preset, intensity)
    if isinstance(outcome, JSONResponse):
        return outcome

    mime = photo.content_type if outcome.passthrough else outcome.mime
    return PolarizeResponse(
        report=outcome.report,
        image_base64=base64.b64encode(outcome.image_bytes).decode("ascii"),
        image_mime=mime or outcome.mime,
    )


@app.post("/api/polarize/image")
async def polarize_image(
    request: Request,
    photo: UploadFile = File(...),
    preset: str = Form(""),
    intensity: float | None = Form(None),
) -> Response:
    content_type = photo.content_type
    outcome = await _run_polarize(request, photo, preset, intensity)
    if isinstance(outcome, JSONResponse):
        return outcome

    media_type = content_type if outcome.passthrough and content_type else outcome.mime
    return Response(
        content=outcome.image_bytes,
        media_type=media_type,
        headers={
            "Content-Disposition": f"attachment; filename*=UTF-8''{quote(outcome.output_name)}",
            "X-Polarize-Passthrough": "1" if outcome.passthrough else "0",
        },
    )
