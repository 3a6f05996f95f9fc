from __future__ import annotations

from pathlib import Path

import pytest

from dcode_delivery.models import DeveloperProfile
from dcode_delivery.settings import RuntimeSettings
from dcode_delivery.state_store import DeliveryStateStore


@pytest.fixture
def profile() -> DeveloperProfile:
    return DeveloperProfile(name="Test Developer", languages=["python"], package_manager="pip")


@pytest.fixture
def settings(tmp_path: Path) -> RuntimeSettings:
    return RuntimeSettings(memory_dir=str(tmp_path / "memory"))


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def store(project_dir: Path) -> DeliveryStateStore:
    return DeliveryStateStore(project_dir)
