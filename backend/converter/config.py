"""Application configuration. Loads from environment and .env file."""
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
# Load .env from cwd, then backend/.env, then project root .env
load_dotenv()
load_dotenv(BASE_DIR / ".env")
load_dotenv(BASE_DIR.parent / ".env")

# Paths (override with env)
OUTPUT_DIR = Path(os.getenv("OUTPUT_DIR", str(BASE_DIR / "outputs")))
BATCH_ZIP_DIR = Path(os.getenv("BATCH_ZIP_DIR", str(BASE_DIR / "zips")))
ENGINE_WORK_DIR = Path(os.getenv("ENGINE_WORK_DIR", str(BASE_DIR / "work")))
OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
BATCH_ZIP_DIR.mkdir(parents=True, exist_ok=True)
ENGINE_WORK_DIR.mkdir(parents=True, exist_ok=True)

# Supported formats
IMAGE_OUTPUT_FORMATS = ["webp", "png", "jpeg", "gif", "bmp"]
VIDEO_OUTPUT_FORMATS = ["mp4", "webm", "avi", "mov"]
LOSSY_IMAGE_FORMATS = {"jpeg", "webp"}

# Transcoding engine (ffmpeg / ffprobe binaries)
FFMPEG_BINARY = os.getenv("FFMPEG_BINARY", "ffmpeg")
FFPROBE_BINARY = os.getenv("FFPROBE_BINARY", "ffprobe")
ENGINE_LOAD_TIMEOUT = float(os.getenv("ENGINE_LOAD_TIMEOUT", "30"))
TRANSCODE_TIMEOUT = float(os.getenv("TRANSCODE_TIMEOUT", "600"))
PROBE_TIMEOUT = float(os.getenv("PROBE_TIMEOUT", "30"))

# Conversion defaults
DEFAULT_QUALITY = float(os.getenv("DEFAULT_QUALITY", "0.9"))
DEFAULT_FILENAME_PATTERN = os.getenv("DEFAULT_FILENAME_PATTERN", "{name}")

# Limits (env)
MAX_FILES_PER_BATCH = int(os.getenv("MAX_FILES_PER_BATCH", "50"))
MAX_IMAGE_SIZE_MB = int(os.getenv("MAX_IMAGE_SIZE_MB", "20"))
MAX_IMAGE_SIZE_BYTES = MAX_IMAGE_SIZE_MB * 1024 * 1024
MAX_VIDEO_SIZE_MB = int(os.getenv("MAX_VIDEO_SIZE_MB", "150"))
MAX_VIDEO_SIZE_BYTES = MAX_VIDEO_SIZE_MB * 1024 * 1024
# Selection warnings: a single large file, and a large batch in total
LARGE_FILE_BYTES = int(os.getenv("LARGE_FILE_BYTES", str(10 * 1024 * 1024)))
LARGE_BATCH_BYTES = int(os.getenv("LARGE_BATCH_BYTES", str(100 * 1024 * 1024)))

# Download backend (yt-dlp / instaloader HTTP API)
DOWNLOAD_API_URL = os.getenv("DOWNLOAD_API_URL", "http://localhost:3000/api").rstrip("/")
DOWNLOAD_API_TIMEOUT = int(os.getenv("DOWNLOAD_API_TIMEOUT", "120"))
NOEMBED_URL = os.getenv("NOEMBED_URL", "https://noembed.com/embed")

# Database – SQLite by default; any SQLAlchemy URL works.
DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
if not DATABASE_URL:
    db_path = BASE_DIR / "data" / "converter.db"
    db_path.parent.mkdir(parents=True, exist_ok=True)
    DATABASE_URL = f"sqlite:///{db_path}"

# Server (for uvicorn)
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
# CORS: comma-separated origins, e.g. "http://localhost:5173,http://127.0.0.1:5173"
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",") if o.strip()]

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("converter")
