"""Configuration loading for the ingestion pipeline."""

from __future__ import annotations

import json
import os
from pathlib import Path

import keyring
from keyring.errors import KeyringError

from designlib.models import IngestConfig

SERVICE_NAME = "designlib-storage"
KEY_NAME = "service_key"
ENV_KEY = "DESIGNLIB_SERVICE_KEY"

DEFAULT_CONFIG_PATH = Path("config/ingest_config.json")


def get_service_key() -> str:
    """Get the storage service key: system keyring first, then env var fallback.

    Raises:
        RuntimeError: If no key is found anywhere, with setup instructions.
    """
    key = _keyring_lookup()
    if key:
        return key

    key = os.environ.get(ENV_KEY)
    if key:
        return key

    raise RuntimeError(
        "Storage service key not found.\n"
        "Set it with: designlib config set-key YOUR_KEY\n"
        f"Or: export {ENV_KEY}=your-key"
    )


def set_service_key(key: str) -> None:
    keyring.set_password(SERVICE_NAME, KEY_NAME, key)


def load_ingest_config(config_path: Path | None = None) -> IngestConfig:
    """Load pipeline configuration from JSON, falling back to defaults.

    Reads ``config/ingest_config.json`` when *config_path* is ``None``.  A
    missing file yields an ``IngestConfig`` with defaults; unknown keys are
    ignored.  The service key is never read from the file: it comes from the
    keyring or the ``DESIGNLIB_SERVICE_KEY`` environment variable.

    Raises:
        ValueError: If a numeric setting is out of range.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    data: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            data = json.load(f)

    field_names = set(IngestConfig.__dataclass_fields__)
    kwargs = {k: v for k, v in data.items() if k in field_names and k != "service_key"}
    config = IngestConfig(**kwargs)

    if config.max_concurrent_uploads < 1:
        raise ValueError("max_concurrent_uploads must be at least 1")
    if config.chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")

    if config.service_key is None:
        config.service_key = _keyring_lookup() or os.environ.get(ENV_KEY)
    return config


def _keyring_lookup() -> str | None:
    # Headless hosts often have no keyring backend at all
    try:
        return keyring.get_password(SERVICE_NAME, KEY_NAME)
    except KeyringError:
        return None
