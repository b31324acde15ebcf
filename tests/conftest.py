from __future__ import annotations

import os
from collections.abc import Generator
from pathlib import Path

import pytest

from app.config import AppSettings, EditorSettings, StorageSettings
from domain.models import FunnelFlow
from tests.helpers.flow_fixtures import scenario_a_flow


def _clear_funnel_env() -> None:
    for key in list(os.environ):
        if key.startswith("FUNNEL_"):
            os.environ.pop(key, None)


_clear_funnel_env()


@pytest.fixture(autouse=True)
def clear_funnel_env() -> Generator[None, None, None]:
    _clear_funnel_env()
    yield
    _clear_funnel_env()


@pytest.fixture
def flow_a() -> FunnelFlow:
    return scenario_a_flow()


@pytest.fixture
def app_settings(tmp_path: Path) -> AppSettings:
    return AppSettings(
        editor=EditorSettings(),
        storage=StorageSettings(flows_dir=tmp_path / "flows"),
    )
