from __future__ import annotations

from pathlib import Path
from typing import Protocol

from domain.models import FunnelFlow


class FlowUpdateSink(Protocol):
    def on_update(self, flow: FunnelFlow) -> None: ...


class FlowRepository(Protocol):
    def load(self, path: Path) -> FunnelFlow: ...

    def save(self, flow: FunnelFlow, path: Path) -> None: ...
