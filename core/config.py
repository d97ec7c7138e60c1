# core/config.py
import os
from pydantic_settings import BaseSettings
from dotenv import load_dotenv
import logging

# Load variables from .env file located in the project root directory
dotenv_path = os.path.join(os.path.dirname(os.path.dirname(__file__)), '.env')
if os.path.exists(dotenv_path):
    load_dotenv(dotenv_path=dotenv_path)
else:
    load_dotenv() # Fallback

class Settings(BaseSettings):
    """Loads configuration settings from environment variables and .env file."""

    # --- Supabase Configuration ---
    SUPABASE_URL: str | None = None
    SUPABASE_KEY: str | None = None # ANON key usually
    SUPABASE_SERVICE_KEY: str | None = None # SERVICE_ROLE key

    # --- Storage Configuration ---
    TEAM_FILES_BUCKET: str = "team-files"
    TEAM_NAMESPACE_ROOT: str = "teams"
    METADATA_FOLDER: str = ".metadata" # Sidecar metadata objects live here, next to the files
    SIGNED_URL_EXPIRES_IN: int = int(os.getenv("SIGNED_URL_EXPIRES_IN", 3600)) # seconds
    UPLOAD_CHUNK_SIZE: int = int(os.getenv("UPLOAD_CHUNK_SIZE", 256 * 1024))
    MAX_CONCURRENT_UPLOADS: int = int(os.getenv("MAX_CONCURRENT_UPLOADS", 0)) # 0 = unbounded
    UPLOADED_AT_FORMAT: str = "%c" # Locale's date/time representation
    MAX_TEAM_SESSIONS: int = int(os.getenv("MAX_TEAM_SESSIONS", 256)) # Per-team sessions kept in memory (LRU)

    # --- Collaborator URLs ---
    ROSTER_API_URL: str = "http://localhost:8080"
    USER_INFO_URL: str = "http://localhost:8080/api/user/info"
    HTTP_TIMEOUT: float = float(os.getenv("HTTP_TIMEOUT", 60.0))

    class Config:
        env_file = '.env'
        env_file_encoding = 'utf-8'
        extra = 'ignore'

# Instantiate settings once for import
settings = Settings()

# --- Logging Setup ---
log_level_str = os.getenv("LOG_LEVEL", "INFO").upper(); log_level = getattr(logging, log_level_str, logging.INFO)
logging.basicConfig(level=log_level, format='%(asctime)s - %(name)s - [%(levelname)s] - %(message)s', datefmt='%Y-%m-%d %H:%M:%S')
logger = logging.getLogger("TeamRepo_Core")
logging.getLogger("httpx").setLevel(logging.WARNING); logging.getLogger("supabase").setLevel(logging.WARNING)
logging.getLogger("watchfiles").setLevel(logging.WARNING)

# --- Configuration Validation Checks ---
logger.info(f"Core Settings loaded. Log Level: {log_level_str}")
if not settings.SUPABASE_URL or not settings.SUPABASE_KEY: logger.warning("Supabase URL/Key missing.")
if not settings.SUPABASE_SERVICE_KEY: logger.warning("Supabase Service Key missing.")
if not settings.TEAM_FILES_BUCKET: logger.warning("TEAM_FILES_BUCKET missing, using default.")
else: logger.info(f"Using Supabase Storage Bucket: {settings.TEAM_FILES_BUCKET}")

try: assert settings.UPLOAD_CHUNK_SIZE > 0; logger.info(f"Upload chunk size: {settings.UPLOAD_CHUNK_SIZE} bytes")
except (AssertionError, ValueError): logger.error(f"Invalid UPLOAD_CHUNK_SIZE: {settings.UPLOAD_CHUNK_SIZE}.")
if settings.MAX_CONCURRENT_UPLOADS < 0:
    logger.error(f"Invalid MAX_CONCURRENT_UPLOADS: {settings.MAX_CONCURRENT_UPLOADS}. Treating as unbounded.")
logger.info(f"Upload Config: Max Concurrent={settings.MAX_CONCURRENT_UPLOADS or 'unbounded'}, Signed URL TTL={settings.SIGNED_URL_EXPIRES_IN}s")
