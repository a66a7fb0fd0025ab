import os
import re
from functools import lru_cache
from pathlib import Path

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file early so env vars are available for YAML interpolation
_env_file = Path(__file__).parent.parent / ".env"
load_dotenv(_env_file)

# Pattern to match $VAR_NAME environment variable references
ENV_VAR_PATTERN = re.compile(r"\$([A-Z_][A-Z0-9_]*)")

CONFIG_PATH_ENV = "IMAGEPIPE_CONFIG"


def interpolate_env_vars(value):
    """Recursively replace $VAR_NAME with os.environ values."""
    if isinstance(value, str):

        def replace(match):
            var = match.group(1)
            val = os.environ.get(var)
            if val is None:
                raise ValueError(f"Environment variable ${var} not set")
            return val

        return ENV_VAR_PATTERN.sub(replace, value)
    elif isinstance(value, dict):
        return {k: interpolate_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [interpolate_env_vars(item) for item in value]
    return value


def get_config_path() -> Path:
    """Return the app.yaml path, honouring the IMAGEPIPE_CONFIG override."""
    override = os.environ.get(CONFIG_PATH_ENV)
    if override:
        return Path(override)
    return Path.cwd() / "app.yaml"


def load_app_config() -> dict:
    """Load and parse app.yaml with environment variable interpolation."""
    config_path = get_config_path()

    if not config_path.exists():
        raise FileNotFoundError(f"app.yaml not found at {config_path}")

    with open(config_path, "r") as f:
        config = yaml.safe_load(f) or {}

    return interpolate_env_vars(config)


class DatabaseConfig(BaseModel):
    """Database connection configuration."""

    url: str = "sqlite+aiosqlite:///./imagepipe.db"
    pool_size: int = 5
    pool_overflow: int = 10
    pool_timeout: int = 30
    pool_pre_ping: bool = True
    echo: bool = False
    # Create missing tables at startup instead of running migrations
    create_all: bool = False
    # Upper bound for a single metadata call made by the pipeline
    call_timeout: float = 15.0


class S3Config(BaseModel):
    """Connection settings for an S3-compatible bucket."""

    bucket: str = ""
    region: str = "us-east-1"
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    prefix: str = ""
    public_url: str | None = None
    cache_control: str = "max-age=31536000"


class BucketConfig(BaseModel):
    """A named bucket and the backend that stores it."""

    backend: str = "local"
    local_path: str = "./storage"
    public: bool = True
    # Overwrite an existing object at the same path unless a call says otherwise
    upsert: bool = False
    s3: S3Config = S3Config()


class StorageConfig(BaseModel):
    """Object storage configuration."""

    default: str = "uploads"
    private: str = "private_files"
    base_url: str = ""
    call_timeout: float = 30.0
    buckets: dict[str, BucketConfig] = Field(
        default_factory=lambda: {
            "uploads": BucketConfig(local_path="./storage/uploads", public=True),
            "private_files": BucketConfig(local_path="./storage/private_files", public=False),
        }
    )
    # entity type value -> top-level folder; unmapped types use their own value
    entity_folders: dict[str, str] = {}


class UploadPolicyConfig(BaseModel):
    """Allow-list and size ceiling for one family of upload endpoints."""

    allowed_types: list[str]
    max_bytes: int


def _default_policies() -> dict[str, UploadPolicyConfig]:
    raster = ["image/jpeg", "image/png", "image/webp"]
    return {
        "image": UploadPolicyConfig(allowed_types=raster, max_bytes=10 * 1024 * 1024),
        "profile": UploadPolicyConfig(allowed_types=raster, max_bytes=5 * 1024 * 1024),
        "attachment": UploadPolicyConfig(
            allowed_types=[
                *raster,
                "application/pdf",
                "application/postscript",
                "image/svg+xml",
            ],
            max_bytes=10 * 1024 * 1024,
        ),
    }


class UploadConfig(BaseModel):
    """Validation policies keyed by name."""

    policies: dict[str, UploadPolicyConfig] = Field(default_factory=_default_policies)
    max_files: int = 10


class VariantConfig(BaseModel):
    """One named output of the transcoder."""

    width: int | None = None
    height: int | None = None
    fit: str = "inside"
    quality: int = 85
    preserve_format: bool = False


def _default_variants() -> dict[str, VariantConfig]:
    return {
        "thumbnail": VariantConfig(width=150, height=150, fit="cover", quality=80),
        "medium": VariantConfig(width=400, height=400, fit="inside", quality=85),
        "large": VariantConfig(width=800, height=800, fit="inside", quality=90),
        "original": VariantConfig(fit="none", quality=95),
    }


class ImagingConfig(BaseModel):
    """Variant transcoder configuration."""

    output_format: str = "WEBP"
    variants: dict[str, VariantConfig] = Field(default_factory=_default_variants)
    variant_timeout: float = 20.0
    max_pixels: int = 50_000_000
    default_layout: str = "inline"


class AccessConfig(BaseModel):
    """Temporary access link policy."""

    min_ttl: int = 60
    max_ttl: int = 86400
    default_ttl: int = 3600
    max_bulk: int = 50


class LogfireConfig(BaseModel):
    """Pydantic Logfire observability configuration."""

    enabled: bool = False
    service_name: str = "imagepipe"
    environment: str | None = None
    sample_rate: float = 1.0
    console: bool = False


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    debug: bool = False
    secret_key: str

    db: DatabaseConfig = DatabaseConfig()
    storage: StorageConfig = StorageConfig()
    uploads: UploadConfig = UploadConfig()
    imaging: ImagingConfig = ImagingConfig()
    access: AccessConfig = AccessConfig()
    logfire: LogfireConfig = LogfireConfig()

    # "module:factory" strings or {factory, kwargs} dicts, e.g. the auth middleware
    middleware: list[str | dict] = []


_SECTIONS: dict[str, type[BaseModel]] = {
    "db": DatabaseConfig,
    "storage": StorageConfig,
    "uploads": UploadConfig,
    "imaging": ImagingConfig,
    "access": AccessConfig,
    "logfire": LogfireConfig,
}


@lru_cache
def get_settings() -> Settings:
    """Load settings from .env and app.yaml."""
    # First create base settings from .env
    base_settings = Settings()

    try:
        app_config = load_app_config()
    except FileNotFoundError:
        return base_settings

    # Merge YAML config with settings
    updates = {}
    for key, model in _SECTIONS.items():
        if key in app_config:
            updates[key] = model(**app_config[key])

    if "debug" in app_config:
        updates["debug"] = bool(app_config["debug"])

    if "middleware" in app_config:
        updates["middleware"] = list(app_config["middleware"] or [])

    if updates:
        return base_settings.model_copy(update=updates)

    return base_settings
