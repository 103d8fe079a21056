"""
Batch rename patterns.

Tokens are each replaced once (first occurrence), in this order:
{name}, {index}, {format}, {original_format}, {date}, {time}, {timestamp}.
Unknown tokens are left as they are. {date}, {time} and {timestamp} read the
clock; pass `now` to make them deterministic.
"""
from datetime import datetime
from typing import Optional


def split_name(filename: str) -> tuple[str, str]:
    """('vacation', 'png') for 'vacation.png'; ('README', '') when there is no dot."""
    if "." not in filename:
        return filename, ""
    stem, ext = filename.rsplit(".", 1)
    return stem, ext


def apply_pattern(pattern: str, original_name: str, index: int, now: Optional[datetime] = None) -> str:
    """Expand `pattern` for the file at 0-based `index`."""
    now = now or datetime.now()
    stem, ext = split_name(original_name)
    ext = ext.lower()
    replacements = (
        ("{name}", stem),
        ("{index}", str(index + 1).zfill(3)),
        ("{format}", ext),
        ("{original_format}", ext),
        ("{date}", now.strftime("%Y-%m-%d")),
        ("{time}", now.strftime("%H-%M-%S")),
        ("{timestamp}", str(int(now.timestamp() * 1000))),
    )
    result = pattern
    for token, value in replacements:
        result = result.replace(token, value, 1)
    return result


def converted_file_name(base_name: str, target_format: str) -> str:
    return f"{base_name}.{target_format.lower()}"


def output_name(pattern: str, original_name: str, index: int, target_format: str, now: Optional[datetime] = None) -> str:
    return converted_file_name(apply_pattern(pattern, original_name, index, now), target_format)


def truncate_file_name(filename: str, max_length: int = 30) -> str:
    if len(filename) <= max_length:
        return filename
    stem, ext = split_name(filename)
    keep = max(1, max_length - len(ext) - 4)
    return f"{stem[:keep]}...{ext}"
