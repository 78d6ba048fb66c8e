from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    APP_ENV: str = "local"
    APP_NAME: str = "filevault"
    LOG_LEVEL: str = "INFO"

    CORS_ORIGINS: str = "http://localhost:3000"
    JWT_SECRET: str = "change_me_jwt"
    STORAGE_WEBHOOK_TOKEN: str = "change_me_webhook"

    DATABASE_URL: str
    REDIS_URL: str

    S3_ENDPOINT: str
    S3_ACCESS_KEY: str
    S3_SECRET_KEY: str
    S3_BUCKET: str
    S3_REGION: str = "us-east-1"
    S3_USE_SSL: bool = False
    S3_PUBLIC_BASE_URL: str = ""
    CDN_DOMAIN: str = ""
    UPLOAD_URL_TTL_SECONDS: int = 3600
    DOWNLOAD_URL_TTL_SECONDS: int = 3600

    MAX_FILE_MB: int = 100
    MAX_VIDEO_FILE_MB: int = 500
    ORGANIZATION_QUOTA_MB: int = 10240
    ALLOWED_MIME_TYPES: str = ""
    BLOCKED_EXTENSIONS: str = ".exe,.scr,.bat,.cmd,.com,.pif,.vbs,.js,.msi,.jar,.ps1,.wsf,.hta,.cpl,.dll"
    MAX_TAGS: int = 10

    MALWARE_SCAN_ENABLED: bool = True
    CLAMAV_HOST: str = "clamav"
    CLAMAV_PORT: int = 3310
    CLAMAV_MODE: str = "instream"  # instream | scan
    SCAN_TEMP_DIR: str = ""
    SCAN_TIMEOUT_SECONDS: int = 30
    SCAN_TIMEOUT_FATAL: bool = False
    SCAN_MAX_MB: int = 100
    DOWNLOAD_REQUIRES_CLEAN_SCAN: bool = False

    IMAGE_PROCESSING_ENABLED: bool = True
    IMAGE_DEFAULT_QUALITY: int = 85
    MAX_IMAGE_MB: int = 50
    THUMBNAIL_SIZES: str = "150,300,600,1200"
    TRANSCODE_TIMEOUT_SECONDS: int = 60
    PIPELINE_IO_WORKERS: int = 8

    RETENTION_ENABLED: bool = True
    RETENTION_BATCH_SIZE: int = 100
    ARCHIVED_RETENTION_DAYS: int = 365
    FAILED_PROCESSING_GRACE_DAYS: int = 7
    CLEANUP_INFECTED_FILES: bool = True
    CLEANUP_FAILED_FILES: bool = True
    ARCHIVE_AFTER_DAYS: int = 180
    ARCHIVE_INACTIVE_DAYS: int = 30
    ORPHAN_GRACE_HOURS: int = 24
    ORPHAN_SCAN_LIMIT: int = 1000
    RETENTION_LOCK_TTL_SECONDS: int = 3600

    EVENTS_CHANNEL_PREFIX: str = "filevault."
    CELERY_TIMEZONE: str = "UTC"

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def allowed_mime_types(self) -> set[str]:
        return {m.strip().lower() for m in self.ALLOWED_MIME_TYPES.split(",") if m.strip()}

    @property
    def blocked_extensions(self) -> set[str]:
        values = set()
        for raw in self.BLOCKED_EXTENSIONS.split(","):
            ext = raw.strip().lower()
            if ext:
                values.add(ext if ext.startswith(".") else "." + ext)
        return values

    @property
    def thumbnail_sizes(self) -> List[int]:
        return [int(s) for s in self.THUMBNAIL_SIZES.split(",") if s.strip()]

settings = Settings()
