"""API routes for upload, batch conversion and media downloads."""
import asyncio
import logging
import uuid
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy.exc import SQLAlchemyError

from converter.batch import (
    create_batch,
    create_zip_from_outputs,
    get_batch,
    set_batch_completed,
    set_batch_failed,
    set_batch_progress,
    store_results,
)
from converter.config import (
    BATCH_ZIP_DIR,
    DEFAULT_FILENAME_PATTERN,
    DEFAULT_QUALITY,
    LOSSY_IMAGE_FORMATS,
    MAX_FILES_PER_BATCH,
    MAX_IMAGE_SIZE_BYTES,
    MAX_VIDEO_SIZE_BYTES,
    OUTPUT_DIR,
)
from converter.conversion.errors import AlreadyRunningError, ConversionError, UnsupportedInputError
from converter.conversion.models import (
    BatchState,
    BatchSummary,
    ConversionSettings,
    FilterSpec,
    MediaFile,
    MediaType,
    ResizeSpec,
    SupportedFormats,
)
from converter.conversion.report import build_report, summary_level, summary_message
from converter.conversion.service import BatchOrchestrator, CancelToken, select_media_files, suggest_output_format
from converter.db import get_recent_runs, get_run_outcomes, record_batch_run
from converter.download.client import DownloadClient, DownloadError, extract_video_id, format_duration

logger = logging.getLogger("converter.api")
router = APIRouter(prefix="/api", tags=["converter"])

# Sessions with a conversion in flight; entries are removed when it ends
_orchestrators: dict[str, BatchOrchestrator] = {}
_cancel_tokens: dict[str, CancelToken] = {}


def get_or_create_session_id(request: Request) -> str:
    """Use X-Session-ID header or generate and attach to request for response header."""
    sid = (request.headers.get("X-Session-ID") or "").strip()
    if sid:
        return sid
    sid = str(uuid.uuid4())
    request.state.session_id = sid
    return sid


def claim_session_orchestrator(session_id: str) -> BatchOrchestrator:
    """Reserve an orchestrator for the session, or 409 if one is already working."""
    if session_id in _orchestrators:
        raise HTTPException(409, "conversion already in progress")
    orchestrator = BatchOrchestrator()
    _orchestrators[session_id] = orchestrator
    return orchestrator


def release_session_orchestrator(session_id: str, orchestrator: BatchOrchestrator) -> None:
    if _orchestrators.get(session_id) is orchestrator and orchestrator.state != BatchState.RUNNING:
        del _orchestrators[session_id]


def get_download_client() -> DownloadClient:
    return DownloadClient()


def conversion_settings(
    image_format: str = Query("webp", description="webp | png | jpeg | gif | bmp"),
    video_format: str = Query("mp4", description="mp4 | webm | avi | mov"),
    quality: float = Query(DEFAULT_QUALITY, ge=0.0, le=1.0),
    width: Optional[int] = Query(None, ge=1, le=16384),
    height: Optional[int] = Query(None, ge=1, le=16384),
    lock_aspect: bool = Query(True),
    brightness: int = Query(0, ge=-100, le=100),
    contrast: int = Query(0, ge=-100, le=100),
    saturation: int = Query(0, ge=-100, le=100),
    pattern: str = Query(DEFAULT_FILENAME_PATTERN, description="Tokens: {name} {index} {format} {original_format} {date} {time} {timestamp}"),
) -> ConversionSettings:
    try:
        return ConversionSettings(
            image_format=image_format,
            video_format=video_format,
            quality=quality,
            resize=ResizeSpec(width=width, height=height, aspect_locked=lock_aspect),
            filters=FilterSpec(brightness=brightness, contrast=contrast, saturation=saturation),
            filename_pattern=pattern,
        )
    except ValueError as e:
        raise HTTPException(400, str(e))


async def _read_uploads(files: list[UploadFile]) -> list[MediaFile]:
    if len(files) > MAX_FILES_PER_BATCH:
        raise HTTPException(400, f"Max {MAX_FILES_PER_BATCH} files per batch")
    media: list[MediaFile] = []
    for file in files:
        name = file.filename or "upload"
        # generic content types are re-guessed from the file name
        content_type = file.content_type if file.content_type != "application/octet-stream" else None
        candidate = MediaFile.from_bytes(name, b"", content_type)
        if candidate.media_type is None:
            media.append(candidate)
            continue
        max_bytes = MAX_VIDEO_SIZE_BYTES if candidate.media_type == MediaType.VIDEO else MAX_IMAGE_SIZE_BYTES
        chunks = []
        total = 0
        while chunk := await file.read(1024 * 1024):
            total += len(chunk)
            if total > max_bytes:
                raise HTTPException(413, f"File too large: {name} (max {max_bytes // (1024 * 1024)} MB)")
            chunks.append(chunk)
        media.append(MediaFile.from_bytes(name, b"".join(chunks), candidate.mime_type))
    try:
        return select_media_files(media)
    except UnsupportedInputError as e:
        raise HTTPException(400, e.message)


def _summary_to_dict(summary: BatchSummary, batch_id: str, download_urls: list[str]) -> dict:
    reports = [build_report(r, url) for r, url in zip(summary.results, download_urls)]
    return {
        "batch_id": batch_id,
        "success_count": summary.success_count,
        "failure_count": summary.failure_count,
        "duration_seconds": round(summary.duration_seconds, 2),
        "cancelled": summary.cancelled,
        "message": summary_message(summary),
        "level": summary_level(summary),
        "results": reports,
        "failures": [
            {"index": o.index, "filename": o.filename, "error": o.error}
            for o in summary.outcomes
            if not o.success
        ],
    }


def _record(batch_id: str, summary: BatchSummary, session_id: str) -> None:
    try:
        record_batch_run(batch_id, summary, session_id=session_id)
    except SQLAlchemyError as e:
        logger.warning("Could not record batch %s: %s", batch_id, e)


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/formats")
def get_formats():
    return {
        "output_image": SupportedFormats.IMAGE,
        "output_video": SupportedFormats.VIDEO,
        "lossy": sorted(LOSSY_IMAGE_FORMATS),
    }


@router.get("/limits")
def get_limits():
    """Return upload limits for the client."""
    return {
        "max_files_per_batch": MAX_FILES_PER_BATCH,
        "max_image_size_bytes": MAX_IMAGE_SIZE_BYTES,
        "max_video_size_bytes": MAX_VIDEO_SIZE_BYTES,
    }


@router.post("/suggest-format")
async def suggest_format(files: list[UploadFile] = File(...)):
    """Suggested output formats for a selection (no conversion)."""
    media = [MediaFile.from_bytes(f.filename or "upload", b"", f.content_type) for f in files]
    return {
        "image": suggest_output_format(media, MediaType.IMAGE),
        "video": suggest_output_format(media, MediaType.VIDEO),
    }


@router.post("/convert")
async def convert_files(
    files: list[UploadFile] = File(...),
    settings: ConversionSettings = Depends(conversion_settings),
    session_id: str = Depends(get_or_create_session_id),
):
    """Convert uploaded files in this request and return per-file reports."""
    orchestrator = claim_session_orchestrator(session_id)
    try:
        media = await _read_uploads(files)
        batch_id = str(uuid.uuid4())
        summary = await orchestrator.run_batch(media, settings)
    except AlreadyRunningError as e:
        raise HTTPException(409, e.message)
    except ConversionError as e:
        raise HTTPException(400, e.message)
    finally:
        release_session_orchestrator(session_id, orchestrator)
    stored = await asyncio.to_thread(store_results, batch_id, summary.results)
    _record(batch_id, summary, session_id)
    return _summary_to_dict(summary, batch_id, [f"/api/download/{s.filename}" for s in stored])


async def _run_batch_and_zip(
    batch_id: str,
    orchestrator: BatchOrchestrator,
    media: list[MediaFile],
    settings: ConversionSettings,
    zip_folder_structure: str,
    session_id: str,
) -> None:
    token = _cancel_tokens.setdefault(batch_id, CancelToken())
    try:
        summary = await orchestrator.run_batch(
            media,
            settings,
            on_progress=lambda percent, message: set_batch_progress(batch_id, percent, message),
            cancel_token=token,
        )
        stored = await asyncio.to_thread(store_results, batch_id, summary.results)
        job = get_batch(batch_id)
        if job:
            job.outputs = stored
            job.reports = [build_report(r, f"/api/download/{s.filename}") for r, s in zip(summary.results, stored)]
        zip_name = None
        if stored:
            zip_name = await asyncio.to_thread(
                create_zip_from_outputs, batch_id, stored, folder_structure=zip_folder_structure
            )
        set_batch_completed(batch_id, summary_message(summary), zip_name)
        _record(batch_id, summary, session_id)
    except ConversionError as e:
        logger.error("Batch %s failed: %s", batch_id, e.message)
        set_batch_failed(batch_id, e.message)
    except Exception as e:
        logger.exception("Batch failed: %s", e)
        set_batch_failed(batch_id, str(e))
    finally:
        _cancel_tokens.pop(batch_id, None)
        release_session_orchestrator(session_id, orchestrator)


@router.post("/convert-batch")
async def convert_batch(
    background_tasks: BackgroundTasks,
    files: list[UploadFile] = File(...),
    settings: ConversionSettings = Depends(conversion_settings),
    zip_folder_structure: str = Query("flat", description="flat | by_format"),
    session_id: str = Depends(get_or_create_session_id),
):
    """Start a batch in the background. Poll /api/batch/{batch_id} for progress."""
    # claimed now so a second request in this session gets 409 before the task starts
    orchestrator = claim_session_orchestrator(session_id)
    try:
        media = await _read_uploads(files)
    except HTTPException:
        release_session_orchestrator(session_id, orchestrator)
        raise
    folder_structure = zip_folder_structure if zip_folder_structure in ("flat", "by_format") else "flat"
    batch_id = str(uuid.uuid4())
    create_batch(batch_id)
    _cancel_tokens[batch_id] = CancelToken()
    background_tasks.add_task(_run_batch_and_zip, batch_id, orchestrator, media, settings, folder_structure, session_id)
    return {"batch_id": batch_id, "status": "processing", "message": "Conversion started. Poll /api/batch/{batch_id} for status."}


@router.get("/batch/{batch_id}")
def batch_status(batch_id: str):
    """Batch progress; results and zip_filename present when status=completed."""
    job = get_batch(batch_id)
    if not job:
        raise HTTPException(404, "Batch not found")
    return {
        "batch_id": job.batch_id,
        "status": job.status,
        "progress": round(job.progress, 1),
        "message": job.message,
        "summary": job.summary,
        "error": job.error,
        "results": job.reports,
        "zip_filename": job.zip_filename,
    }


@router.post("/batch/{batch_id}/cancel")
def cancel_batch(batch_id: str):
    """Stop a running batch after the current file; finished files are kept."""
    token = _cancel_tokens.get(batch_id)
    if token is None:
        raise HTTPException(404, "Batch not running")
    token.cancel()
    return {"batch_id": batch_id, "status": "cancelling"}


@router.get("/batch/{batch_id}/zip")
def download_batch_zip(batch_id: str):
    """Download the batch zip when status=completed."""
    job = get_batch(batch_id)
    if not job or job.status != "completed" or not job.zip_filename:
        raise HTTPException(404, "Zip not ready")
    path = BATCH_ZIP_DIR / job.zip_filename
    if not path.is_file():
        raise HTTPException(404, "Zip file not found")
    return FileResponse(path, filename=f"converted-{batch_id[:8]}.zip")


@router.get("/download/{filename}")
def download_output(filename: str):
    """Download a converted file by its stored name."""
    if Path(filename).name != filename:
        raise HTTPException(400, "Invalid filename")
    path = OUTPUT_DIR / filename
    if not path.is_file():
        raise HTTPException(404, "File not found")
    # stored names carry an 8-char batch prefix and a 3-digit index
    download_name = filename.split("_", 2)[-1] if filename.count("_") >= 2 else filename
    return FileResponse(path, filename=download_name)


@router.get("/history")
def history(
    limit: int = Query(20, ge=1, le=200),
    session_id: str = Depends(get_or_create_session_id),
):
    """Recorded batch runs for the current session, newest first."""
    return {"runs": get_recent_runs(limit=limit, session_id=session_id)}


@router.get("/history/{batch_id}")
def history_detail(batch_id: str):
    outcomes = get_run_outcomes(batch_id)
    if not outcomes:
        raise HTTPException(404, "Batch not found")
    return {"batch_id": batch_id, "outcomes": outcomes}


@router.get("/youtube/info")
def youtube_info(url: str = Query(...), client: DownloadClient = Depends(get_download_client)):
    video_id = extract_video_id(url)
    if not video_id:
        raise HTTPException(400, "invalid youtube URL")
    try:
        info = client.fetch_info(video_id)
    except DownloadError as e:
        raise HTTPException(502, e.message)
    return {
        "video_id": info.video_id,
        "title": info.title,
        "author": info.author,
        "thumbnail": info.thumbnail,
        "duration_seconds": info.duration_seconds,
        "duration": format_duration(info.duration_seconds),
        "formats": info.available_formats,
    }


@router.post("/youtube/download")
def youtube_download(
    url: str = Body(..., embed=True),
    quality: str = Body("highest", embed=True),
    format: str = Body("mp4", embed=True),
    audio_only: bool = Body(False, embed=True),
    client: DownloadClient = Depends(get_download_client),
):
    video_id = extract_video_id(url)
    if not video_id:
        raise HTTPException(400, "invalid youtube URL")
    try:
        ticket = client.request_audio(video_id, format) if audio_only else client.request_download(video_id, quality, format)
    except DownloadError as e:
        raise HTTPException(502, e.message)
    return {"filename": ticket.filename, "download_url": ticket.download_url, "size_bytes": ticket.size_bytes}


@router.get("/instagram/info")
def instagram_info(url: str = Query(...), client: DownloadClient = Depends(get_download_client)):
    if "instagram.com" not in url:
        raise HTTPException(400, "invalid instagram URL")
    try:
        info = client.fetch_instagram_info(url)
    except DownloadError as e:
        raise HTTPException(502, e.message)
    return asdict(info)


@router.post("/instagram/download")
def instagram_download(
    url: str = Body(..., embed=True),
    quality: str = Body("highest", embed=True),
    client: DownloadClient = Depends(get_download_client),
):
    if "instagram.com" not in url:
        raise HTTPException(400, "invalid instagram URL")
    try:
        tickets = client.request_instagram_download(url, quality)
    except DownloadError as e:
        raise HTTPException(502, e.message)
    return {
        "files": [
            {"filename": t.filename, "download_url": t.download_url, "size_bytes": t.size_bytes}
            for t in tickets
        ]
    }
