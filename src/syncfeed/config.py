"""Configuration for syncfeed.

Everything comes from environment variables. Each instance needs its own
device id so that concurrent edits on two machines break ties the same way
everywhere; it defaults to the host name.
"""

import socket
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Config(BaseSettings):
    """Instance configuration loaded from environment variables."""

    data_dir: Path = Field(default=Path("syncfeed-data"), alias="SYNCFEED_DATA_DIR")
    device_id: str = Field(default_factory=socket.gethostname, alias="SYNCFEED_DEVICE_ID")
    poll_interval: float = Field(default=900, gt=0, alias="SYNCFEED_POLL_INTERVAL")
    debounce: float = Field(default=0.25, ge=0, alias="SYNCFEED_DEBOUNCE")
    rescan_interval: float = Field(default=60, gt=0, alias="SYNCFEED_RESCAN_INTERVAL")
    checkpoint_path: str = Field(
        default="syncfeed_checkpoints.db", alias="SYNCFEED_CHECKPOINT_PATH"
    )

    model_config = SettingsConfigDict(
        populate_by_name=True,
        extra="ignore",
    )


def load_config() -> Config:
    """Load and validate config from environment. Raises on malformed values."""
    return Config()
