import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name, default) or default).strip()


def _env_int(name: str, default: int) -> int:
    raw_value = os.getenv(name, "")
    try:
        return int(raw_value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class S3Settings:
    access_key_id: str = ""
    secret_access_key: str = ""
    region: str = ""
    bucket_name: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(
            self.access_key_id
            and self.secret_access_key
            and self.region
            and self.bucket_name
        )

    @classmethod
    def from_env(cls) -> "S3Settings":
        return cls(
            access_key_id=_env("AWS_ACCESS_KEY_ID"),
            secret_access_key=_env("AWS_SECRET_ACCESS_KEY"),
            region=_env("AWS_REGION"),
            bucket_name=_env("AWS_BUCKET_NAME"),
        )


@dataclass(frozen=True)
class Settings:
    """Startup configuration for the storefront backend.

    Built once by ``from_env`` (or directly in tests) and handed to
    ``create_app``; nothing reads the environment after that.
    """

    mongo_uri: str = "mongodb://localhost:27017/storefront"
    jwt_secret_key: str = "change-me-in-production"
    jwt_expires_hours: int = 48
    max_upload_size_mb: int = 5
    # Directory that holds ``uploads/``; local references resolve against it.
    storage_root: Optional[str] = None
    default_image_prefix: str = "/images/"
    local_upload_prefix: str = "/uploads/"
    s3_domain_marker: str = "amazonaws.com"
    default_product_image: str = "/images/p1.jpg"
    default_admin_email: str = "admin@example.com"
    cors_allowed_origins: List[str] = field(default_factory=list)
    environment: str = "development"
    trusted_proxy_hops: int = 1
    s3: S3Settings = field(default_factory=S3Settings)

    @property
    def upload_folder_name(self) -> str:
        return self.local_upload_prefix.strip("/")

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()

        origins = [
            origin.strip()
            for origin in _env("CORS_ALLOWED_ORIGINS").split(",")
            if origin.strip()
        ]

        return cls(
            mongo_uri=_env("MONGO_URI", cls.mongo_uri),
            jwt_secret_key=_env("JWT_SECRET_KEY", cls.jwt_secret_key),
            jwt_expires_hours=_env_int("JWT_EXPIRES_HOURS", cls.jwt_expires_hours),
            max_upload_size_mb=_env_int("MAX_UPLOAD_SIZE_MB", cls.max_upload_size_mb),
            storage_root=_env("STORAGE_ROOT") or None,
            default_image_prefix=_env("DEFAULT_IMAGE_PREFIX", cls.default_image_prefix),
            local_upload_prefix=_env("LOCAL_UPLOAD_PREFIX", cls.local_upload_prefix),
            s3_domain_marker=_env("S3_DOMAIN_MARKER", cls.s3_domain_marker),
            default_product_image=_env(
                "DEFAULT_PRODUCT_IMAGE", cls.default_product_image
            ),
            default_admin_email=_env(
                "DEFAULT_ADMIN_EMAIL", cls.default_admin_email
            ).lower(),
            cors_allowed_origins=origins,
            environment=_env("APP_ENV", cls.environment),
            trusted_proxy_hops=max(
                0, _env_int("TRUSTED_PROXY_HOPS", cls.trusted_proxy_hops)
            ),
            s3=S3Settings.from_env(),
        )
