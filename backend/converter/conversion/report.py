"""Presentation records for conversion results and batch summaries."""
from typing import Optional

from converter.conversion.models import BatchSummary, ConversionResult

_SIZE_UNITS = ["bytes", "kb", "mb", "gb", "tb"]


def format_bytes(num_bytes: Optional[int]) -> str:
    if not num_bytes:
        return "0 bytes"
    value = float(num_bytes)
    i = 0
    while value >= 1024 and i < len(_SIZE_UNITS) - 1:
        value /= 1024
        i += 1
    return f"{value:.0f} {_SIZE_UNITS[i]}" if i == 0 else f"{value:.2f} {_SIZE_UNITS[i]}"


def compression_text(original_size: int, converted_size: int) -> str:
    if original_size <= 0:
        return "same size"
    ratio = round((original_size - converted_size) / original_size * 100.0, 1)
    if converted_size < original_size:
        return f"{ratio:.1f}% smaller"
    if ratio == 0:
        return "same size"
    return f"{abs(ratio):.1f}% larger"


def dimension_label(dimensions: Optional[tuple[int, int]]) -> Optional[str]:
    if not dimensions:
        return None
    return f"{dimensions[0]} × {dimensions[1]}"


def duration_label(seconds: Optional[float]) -> Optional[str]:
    if seconds is None:
        return None
    return f"{int(round(seconds))}s"


def build_report(result: ConversionResult, download_url: Optional[str] = None) -> dict:
    """One preview card: names, sizes, dimensions, compression."""
    report = result.to_dict()
    report.update(
        dimensions_label=dimension_label(result.dimensions),
        original_dimensions_label=dimension_label(result.original_dimensions),
        duration_label=duration_label(result.duration),
        size_label=f"{format_bytes(result.original_size)} → {format_bytes(result.converted_size)}",
        compression_text=compression_text(result.original_size, result.converted_size),
    )
    if download_url:
        report["download_url"] = download_url
    return report


def summary_message(summary: BatchSummary) -> str:
    n = summary.success_count
    message = f"converted {n} file{'' if n == 1 else 's'} in {summary.duration_seconds:.2f}s"
    if summary.failure_count > 0:
        message += f" ({summary.failure_count} failed)"
    if summary.cancelled:
        message += " - cancelled"
    return message


def summary_level(summary: BatchSummary) -> str:
    return "warning" if summary.failure_count > 0 or summary.cancelled else "success"
