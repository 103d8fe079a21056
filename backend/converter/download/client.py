"""
Client for the media download backend (yt-dlp / instaloader behind an HTTP JSON API).

Every backend response has the shape {"success": bool, "data": {...}, "error": str}.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from converter.config import DOWNLOAD_API_TIMEOUT, DOWNLOAD_API_URL, NOEMBED_URL

logger = logging.getLogger("converter.download")

USER_AGENT = "MediaConverter/1.0"

_YOUTUBE_PATTERNS = [
    re.compile(r"(?:youtube\.com/watch\?v=|youtu\.be/|youtube\.com/embed/)([^&\n?#]+)"),
    re.compile(r"^([a-zA-Z0-9_-]{11})$"),
]
_INSTAGRAM_PATTERNS = [
    re.compile(r"instagram\.com/p/([^/?#]+)"),
    re.compile(r"instagram\.com/reel/([^/?#]+)"),
    re.compile(r"instagram\.com/tv/([^/?#]+)"),
    re.compile(r"instagram\.com/stories/([^/?#]+)/([^/?#]+)"),
]


class DownloadError(Exception):
    def __init__(self, message: str, status: Optional[int] = None):
        self.message = message
        self.status = status
        super().__init__(self.message)


@dataclass(frozen=True)
class VideoInfo:
    video_id: str
    title: str
    author: str
    thumbnail: Optional[str]
    duration_seconds: Optional[int]
    available_formats: list[dict] = field(default_factory=list)
    description: str = ""


@dataclass(frozen=True)
class DownloadTicket:
    filename: str
    download_url: str
    size_bytes: Optional[int] = None
    format: Optional[str] = None
    quality: Optional[str] = None

    @classmethod
    def from_payload(cls, data: dict) -> "DownloadTicket":
        return cls(
            filename=data.get("filename", ""),
            download_url=data.get("downloadUrl", ""),
            size_bytes=data.get("size"),
            format=data.get("format"),
            quality=data.get("quality"),
        )


@dataclass(frozen=True)
class InstagramInfo:
    shortcode: str
    username: str = ""
    caption: str = ""
    is_video: bool = False
    thumbnail: str = ""
    likes: int = 0
    comments: int = 0


def extract_video_id(url: str) -> Optional[str]:
    url = (url or "").strip()
    for pattern in _YOUTUBE_PATTERNS:
        m = pattern.search(url)
        if m:
            return m.group(1)
    return None


def extract_instagram_shortcode(url: str) -> Optional[str]:
    url = (url or "").strip()
    for pattern in _INSTAGRAM_PATTERNS:
        m = pattern.search(url)
        if m:
            return m.group(1)
    return None


def format_duration(seconds: Optional[int]) -> str:
    if seconds is None:
        return ""
    seconds = int(seconds)
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


class DownloadClient:
    def __init__(self, base_url: str = DOWNLOAD_API_URL, timeout: int = DOWNLOAD_API_TIMEOUT, opener=urlopen):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._open = opener

    def _request(self, method: str, path: str, payload: Optional[dict] = None, query: Optional[dict] = None) -> Any:
        """Call the backend and return the envelope's `data`. Raises DownloadError."""
        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{urlencode(query)}"
        body = json.dumps(payload).encode("utf-8") if payload is not None else None
        headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        if body is not None:
            headers["Content-Type"] = "application/json"
        req = Request(url, data=body, headers=headers, method=method)
        try:
            with self._open(req, timeout=self.timeout) as resp:
                raw = resp.read()
        except HTTPError as e:
            raise DownloadError(self._error_from_body(e.read(), f"API request failed ({e.code})"), e.code) from e
        except (URLError, OSError) as e:
            raise DownloadError(
                f"{e}. Make sure the API server is running on {self.base_url}"
            ) from e
        try:
            envelope = json.loads(raw.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DownloadError(f"invalid response from {url}") from e
        if not envelope.get("success"):
            raise DownloadError(envelope.get("error") or "request failed")
        return envelope.get("data") or {}

    @staticmethod
    def _error_from_body(raw: bytes, default: str) -> str:
        try:
            return json.loads(raw.decode("utf-8")).get("error") or default
        except (UnicodeDecodeError, json.JSONDecodeError, AttributeError):
            return default

    def fetch_info(self, video_id: str) -> VideoInfo:
        """Video metadata from the backend, falling back to noembed (no duration, no formats)."""
        try:
            data = self._request("GET", f"/youtube/info/{quote(video_id)}")
        except DownloadError as e:
            logger.warning("Backend info failed for %s (%s); trying noembed", video_id, e.message)
            return self._fetch_noembed_info(video_id)
        return VideoInfo(
            video_id=data.get("videoId", video_id),
            title=data.get("title") or "",
            author=data.get("author") or "",
            thumbnail=data.get("thumbnail"),
            duration_seconds=data.get("duration"),
            available_formats=list(data.get("formats") or []),
            description=data.get("description") or "",
        )

    def _fetch_noembed_info(self, video_id: str) -> VideoInfo:
        target = f"https://www.youtube.com/watch?v={video_id}"
        req = Request(f"{NOEMBED_URL}?{urlencode({'url': target})}", headers={"User-Agent": USER_AGENT})
        try:
            with self._open(req, timeout=self.timeout) as resp:
                data = json.loads(resp.read().decode("utf-8") or "{}")
        except (URLError, OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DownloadError(f"Error fetching YouTube info: {e}") from e
        if data.get("error"):
            raise DownloadError(f"Error fetching YouTube info: {data['error']}")
        return VideoInfo(
            video_id=video_id,
            title=data.get("title") or "",
            author=data.get("author_name") or "",
            thumbnail=data.get("thumbnail_url"),
            duration_seconds=None,
        )

    def request_download(self, video_id: str, quality: str = "highest", fmt: str = "mp4") -> DownloadTicket:
        data = self._request("POST", "/youtube/download", {"videoId": video_id, "quality": quality, "format": fmt})
        if not data.get("downloadUrl"):
            raise DownloadError("Download failed")
        logger.info("Download ready for %s: %s", video_id, data.get("filename"))
        return DownloadTicket.from_payload(data)

    def request_audio(self, video_id: str, fmt: str = "mp3") -> DownloadTicket:
        data = self._request("POST", "/youtube/audio", {"videoId": video_id, "format": fmt})
        if not data.get("downloadUrl"):
            raise DownloadError("Audio download failed")
        return DownloadTicket.from_payload(data)

    def fetch_instagram_info(self, post_url: str) -> InstagramInfo:
        shortcode = extract_instagram_shortcode(post_url)
        if not shortcode:
            raise DownloadError("Invalid Instagram URL. Please use a post, reel, or TV URL.")
        data = self._request("GET", "/instagram/info", query={"url": post_url})
        return InstagramInfo(
            shortcode=data.get("shortcode") or shortcode,
            username=data.get("username") or "",
            caption=data.get("caption") or "",
            is_video=bool(data.get("isVideo")),
            thumbnail=data.get("thumbnail") or "",
            likes=int(data.get("likes") or 0),
            comments=int(data.get("comments") or 0),
        )

    def request_instagram_download(self, post_url: str, quality: str = "highest") -> list[DownloadTicket]:
        data = self._request("POST", "/instagram/download", {"url": post_url, "quality": quality})
        files = data.get("files") or []
        if not files:
            raise DownloadError("No files found to download")
        return [DownloadTicket.from_payload(f) for f in files]
