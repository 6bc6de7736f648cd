import json
import os
from pathlib import Path


class Settings:
    """Application settings"""
    def __init__(self):
        self.app_name: str = os.getenv("APP_NAME", "Chunkflow Upload Server")
        self.app_version: str = os.getenv("APP_VERSION", "1.0.0")
        self.debug: bool = os.getenv("DEBUG", "false").lower() == "true"
        self.host: str = os.getenv("HOST", "0.0.0.0")
        self.port: int = int(os.getenv("PORT", "8000"))

        # API settings
        self.api_v1_prefix: str = os.getenv("API_V1_PREFIX", "/v1")

        # Logging settings
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO")

        # Development settings
        cors_origins_str = os.getenv("CORS_ORIGINS", '["http://localhost:3000", "http://localhost:8080"]')
        try:
            self.cors_origins = json.loads(cors_origins_str) if cors_origins_str.startswith('[') else ["*"]
        except (json.JSONDecodeError, ValueError):
            self.cors_origins = ["*"]

        # Storage layout
        self.upload_base_dir: str = os.getenv("UPLOAD_BASE_DIR", "/tmp/chunkflow")
        self.chunk_dir: str = os.getenv("CHUNK_DIR", str(Path(self.upload_base_dir) / "chunks"))
        self.object_dir: str = os.getenv("OBJECT_DIR", str(Path(self.upload_base_dir) / "objects"))
        self.database_path: str = os.getenv("DATABASE_PATH", str(Path(self.upload_base_dir) / "chunkflow.db"))

        # Upload limits
        self.max_upload_size_gb: int = int(os.getenv("MAX_UPLOAD_SIZE_GB", "20"))
        self.max_chunk_size_mb: int = int(os.getenv("MAX_CHUNK_SIZE_MB", "64"))
        self.chunk_checksum_alg: str = os.getenv("CHUNK_CHECKSUM_ALG", "md5").lower()

        # Merge / durability
        self.merge_timeout_seconds: float = float(os.getenv("MERGE_TIMEOUT_SECONDS", "300"))
        self.fsync_writes: bool = os.getenv("FSYNC_WRITES", "true").lower() == "true"

        # Maintenance sweeper
        self.session_ttl_hours: int = int(os.getenv("SESSION_TTL_HOURS", str(7 * 24)))
        self.sweep_interval_seconds: int = int(os.getenv("SWEEP_INTERVAL_SECONDS", "3600"))

    @property
    def max_upload_size_bytes(self) -> int:
        return self.max_upload_size_gb * 1024 * 1024 * 1024

    @property
    def max_chunk_size_bytes(self) -> int:
        return self.max_chunk_size_mb * 1024 * 1024


# Global settings instance
settings = Settings()
