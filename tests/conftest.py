"""Shared fixtures for the volume sync tests."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from volume_sync_manager import ConfigurationRoot, ReceiverConfig, TelevisionConfig


@pytest.fixture
def config() -> ConfigurationRoot:
    """Configuration with every delay zeroed so loops run instantly."""
    return ConfigurationRoot(
        television=TelevisionConfig(host="192.0.2.10", psk="1234"),
        receiver=ReceiverConfig(host="192.0.2.11"),
        poll_interval=0,
        display_retry_delay=0,
        receiver_retry_delay=0,
    )


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Write a minimal valid configuration file and return its path."""
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "television": {"host": "192.0.2.10", "psk": "from-file"},
                "receiver": {"host": "192.0.2.11"},
            }
        ),
        encoding="utf-8",
    )
    return path
