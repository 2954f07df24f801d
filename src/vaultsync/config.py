"""
Vault configuration -- YAML on disk, pydantic in memory.

    ~/.vaultsync/config/config.yaml
"""

from __future__ import annotations

import logging
import socket
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from . import VAULT_HOME
from .models import DeviceClass

logger = logging.getLogger("vaultsync.config")

CONFIG_FILE = Path("config") / "config.yaml"


class VaultConfig(BaseModel):
    """Tunables for identity, pairing, key derivation and sync."""

    device_name: str = Field(default_factory=socket.gethostname)
    device_class: DeviceClass = DeviceClass.DESKTOP
    pairing_ttl_seconds: int = Field(default=300, gt=0)
    pairing_code_length: int = Field(default=6, ge=4, le=12)
    kdf_iterations: int = Field(default=200_000, ge=1)
    transport_timeout: float = Field(default=30.0, gt=0)
    storage_timeout: float = Field(default=10.0, gt=0)
    history_limit: int = Field(default=20, ge=0)


def resolve_home(home: Optional[Path] = None) -> Path:
    """Expand the vault home, defaulting to $VAULTSYNC_HOME or ~/.vaultsync."""
    return Path(home or VAULT_HOME).expanduser()


def load_config(home: Path) -> VaultConfig:
    """Load config.yaml, falling back to defaults if missing or malformed."""
    config_file = home / CONFIG_FILE
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            return VaultConfig(**data)
        except (yaml.YAMLError, ValueError, OSError) as exc:
            logger.warning("Failed to load vault config: %s", exc)
    return VaultConfig()


def save_config(home: Path, config: VaultConfig) -> Path:
    """Persist the configuration to config.yaml."""
    config_file = home / CONFIG_FILE
    config_file.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="json")
    config_file.write_text(yaml.dump(data, default_flow_style=False), encoding="utf-8")
    return config_file
