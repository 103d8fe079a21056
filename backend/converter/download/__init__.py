from .client import (
    DownloadClient,
    DownloadError,
    DownloadTicket,
    InstagramInfo,
    VideoInfo,
    extract_instagram_shortcode,
    extract_video_id,
    format_duration,
)

__all__ = [
    "DownloadClient",
    "DownloadError",
    "DownloadTicket",
    "InstagramInfo",
    "VideoInfo",
    "extract_instagram_shortcode",
    "extract_video_id",
    "format_duration",
]
