"""Configuration schema using Pydantic."""

from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FileTransferConfig(Base):
    """Chunked file transfer and local file storage."""

    enabled: bool = True  # Accept platform-initiated chunked uploads
    url_download_enabled: bool = True  # Accept file_url_download_initiate commands
    file_dir: str = "~/.wolk/files"  # Directory where received files are stored
    max_retry: int = Field(default=3, ge=1)  # Re-requests of one chunk before a restart
    max_restart: int = Field(default=3, ge=1)  # Restarts from chunk 0 before giving up


class UrlDownloadConfig(Base):
    """HTTP(S) whole-file download."""

    block_size: int = Field(default=16 * 1024, gt=0)  # Bytes read per stream iteration
    timeout: float = 60.0  # Seconds; applies to connect and each read
    follow_redirects: bool = True


class WolkConfig(BaseSettings):
    """Root configuration for a device."""

    device_key: str = ""  # Device identity; suffix of every topic
    qos: int = Field(default=0, ge=0, le=2)
    file_transfer: FileTransferConfig = Field(default_factory=FileTransferConfig)
    url_download: UrlDownloadConfig = Field(default_factory=UrlDownloadConfig)

    model_config = ConfigDict(env_prefix="WOLK_", env_nested_delimiter="__")
