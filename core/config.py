# core/config.py
import os
from pydantic_settings import BaseSettings
from dotenv import load_dotenv
import logging
from typing import Optional

# Load variables from .env file located in the project root directory
dotenv_path = os.path.join(os.path.dirname(os.path.dirname(__file__)), '.env')
if os.path.exists(dotenv_path):
    load_dotenv(dotenv_path=dotenv_path)
else:
    load_dotenv() # Fallback

MIB = 1024 * 1024

class Settings(BaseSettings):
    """Loads configuration settings from environment variables and .env file."""

    # --- Supabase Configuration ---
    SUPABASE_URL: str | None = None
    SUPABASE_KEY: str | None = None # ANON key, used for auth lookups
    SUPABASE_SERVICE_KEY: str | None = None # SERVICE_ROLE key, used for storage + metadata writes

    # --- Storage Configuration ---
    FILES_BUCKET: str = "files"
    FILES_TABLE: str = "files"
    MAX_FILE_SIZE_BYTES: int = 50 * MIB # Per-object ceiling enforced by the storage layer

    # --- Quota Configuration ---
    MAX_STORAGE_BYTES: int = 100 * MIB # Per-user ceiling checked before a commit starts

    # --- Collection Configuration ---
    DIRECTORY_READ_BATCH_SIZE: int = int(os.getenv("DIRECTORY_READ_BATCH_SIZE", 100))
    IMPORT_ROOT: Optional[str] = None # Server-side folder imports are confined to this directory

    class Config:
        env_file = '.env'
        env_file_encoding = 'utf-8'
        extra = 'ignore'

# Instantiate settings once for import
settings = Settings()

# --- Logging Setup ---
log_level_str = os.getenv("LOG_LEVEL", "INFO").upper(); log_level = getattr(logging, log_level_str, logging.INFO)
logging.basicConfig(level=log_level, format='%(asctime)s - %(name)s - [%(levelname)s] - %(message)s', datefmt='%Y-%m-%d %H:%M:%S')
logger = logging.getLogger("DropUpload_Core")
logging.getLogger("httpx").setLevel(logging.WARNING); logging.getLogger("supabase").setLevel(logging.WARNING)

# --- Configuration Validation Checks ---
logger.info(f"Core Settings loaded. Log Level: {log_level_str}")
if not settings.SUPABASE_URL or not settings.SUPABASE_KEY: logger.warning("Supabase URL/Key missing.")
if not settings.SUPABASE_SERVICE_KEY: logger.warning("Supabase Service Key missing.")
logger.info(f"Using Supabase Storage Bucket: {settings.FILES_BUCKET} (table: {settings.FILES_TABLE})")

if settings.MAX_STORAGE_BYTES <= 0:
    logger.error(f"Invalid MAX_STORAGE_BYTES: {settings.MAX_STORAGE_BYTES}. Every commit will be refused.")
if settings.DIRECTORY_READ_BATCH_SIZE <= 0:
    logger.warning(f"Invalid DIRECTORY_READ_BATCH_SIZE: {settings.DIRECTORY_READ_BATCH_SIZE}, falling back to 100.")
    settings.DIRECTORY_READ_BATCH_SIZE = 100
if settings.IMPORT_ROOT:
    logger.info(f"Server-side folder imports enabled under: {settings.IMPORT_ROOT}")
else:
    logger.info("Server-side folder imports disabled (IMPORT_ROOT not set).")
logger.info(f"Quota Config: Max Storage={settings.MAX_STORAGE_BYTES} bytes, Max File Size={settings.MAX_FILE_SIZE_BYTES} bytes")
