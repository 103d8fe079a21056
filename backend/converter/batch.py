"""Background batch jobs: progress state, stored outputs and zip creation."""
import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from converter.config import BATCH_ZIP_DIR, OUTPUT_DIR
from converter.conversion.models import ConversionResult

logger = logging.getLogger("converter.batch")


@dataclass
class StoredOutput:
    filename: str  # name on disk under OUTPUT_DIR
    display_name: str
    format: str


@dataclass
class BatchJob:
    batch_id: str
    status: str  # "processing" | "completed" | "failed"
    progress: float = 0.0
    message: str = ""
    outputs: list[StoredOutput] = field(default_factory=list)
    reports: list[dict] = field(default_factory=list)
    summary: Optional[str] = None
    error: Optional[str] = None
    zip_filename: Optional[str] = None


_batches: dict[str, BatchJob] = {}


def get_batch(batch_id: str) -> Optional[BatchJob]:
    return _batches.get(batch_id)


def create_batch(batch_id: str) -> BatchJob:
    job = BatchJob(batch_id=batch_id, status="processing", message="queued")
    _batches[batch_id] = job
    return job


def set_batch_progress(batch_id: str, percent: float, message: str) -> None:
    job = _batches.get(batch_id)
    if job:
        job.progress = percent
        job.message = message


def set_batch_completed(batch_id: str, summary: str, zip_filename: Optional[str] = None) -> None:
    job = _batches.get(batch_id)
    if job:
        job.status = "completed"
        job.progress = 100.0
        job.summary = summary
        job.zip_filename = zip_filename


def set_batch_failed(batch_id: str, error: str) -> None:
    job = _batches.get(batch_id)
    if job:
        job.status = "failed"
        job.error = error


def _sanitize_file_name(name: str) -> str:
    """Safe file name (no path separators, no empty)."""
    s = "".join(c for c in name if c.isalnum() or c in "._- ").strip(" .") or "file"
    return s[:128]


def store_results(batch_id: str, results: list[ConversionResult], output_dir: Optional[Path] = None) -> list[StoredOutput]:
    """Write converted bytes to the output dir; names are prefixed with the batch id."""
    output_dir = output_dir or OUTPUT_DIR
    stored: list[StoredOutput] = []
    for result in results:
        safe_name = _sanitize_file_name(result.name)
        filename = f"{batch_id[:8]}_{len(stored):03d}_{safe_name}"
        (output_dir / filename).write_bytes(result.data)
        stored.append(StoredOutput(filename=filename, display_name=safe_name, format=result.format))
    return stored


def create_zip_from_outputs(
    batch_id: str,
    outputs: list[StoredOutput],
    zip_dir: Optional[Path] = None,
    output_dir: Optional[Path] = None,
    folder_structure: str = "flat",
) -> str:
    """Zip the stored outputs. folder_structure: flat | by_format. Returns zip filename."""
    zip_dir = zip_dir or BATCH_ZIP_DIR
    output_dir = output_dir or OUTPUT_DIR
    zip_path = zip_dir / f"{batch_id}.zip"
    used: set[str] = set()
    with zipfile.ZipFile(zip_path, "w", zipfile.ZIP_DEFLATED) as zf:
        for out in outputs:
            path = output_dir / out.filename
            if not path.is_file():
                logger.warning("Missing output %s, skipped from zip", path)
                continue
            arcname = f"{out.format}/{out.display_name}" if folder_structure == "by_format" else out.display_name
            if arcname in used:
                # duplicate display names (e.g. a fixed pattern) keep their unique stored name
                arcname = f"{out.format}/{out.filename}" if folder_structure == "by_format" else out.filename
            used.add(arcname)
            zf.write(path, arcname)
    logger.info("Created zip %s with %s files (structure=%s)", zip_path.name, len(used), folder_structure)
    return zip_path.name
