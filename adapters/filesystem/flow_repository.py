from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import orjson
from filelock import FileLock

from domain.models import FunnelFlow
from domain.ports.flows import FlowRepository, FlowUpdateSink
from domain.services.flow_repair import validate_and_repair_flow


class FileSystemFlowRepository(FlowRepository):
    def load(self, path: Path) -> FunnelFlow:
        return FunnelFlow.model_validate(self.load_raw(path))

    def load_raw(self, path: Path) -> Any:
        return orjson.loads(path.read_bytes())

    def load_repaired(self, path: Path) -> Optional[FunnelFlow]:
        return validate_and_repair_flow(self.load_raw(path))

    def save(self, flow: FunnelFlow, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        lock_path = path.with_suffix(f"{path.suffix}.lock")
        with FileLock(str(lock_path)):
            tmp_path = path.with_suffix(f"{path.suffix}.tmp")
            tmp_path.write_bytes(orjson.dumps(flow.to_payload(), option=orjson.OPT_INDENT_2))
            tmp_path.replace(path)

    def list_paths(self, directory: Path) -> list[Path]:
        if not directory.exists():
            return []
        return sorted(directory.glob("*.json"))


class FileSystemFlowSink(FlowUpdateSink):
    def __init__(self, repository: FileSystemFlowRepository, path: Path) -> None:
        self._repository = repository
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def on_update(self, flow: FunnelFlow) -> None:
        self._repository.save(flow, self._path)
