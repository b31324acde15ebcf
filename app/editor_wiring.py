from __future__ import annotations

from pathlib import Path
from typing import Optional

from adapters.filesystem.flow_repository import FileSystemFlowRepository, FileSystemFlowSink
from app.config import AppSettings
from domain.models import FunnelFlow, FunnelMeta
from domain.services.connection_editor import ConnectionEditor
from domain.services.cross_stage_links import pick_unused_style, random_style_picker


def resolve_flow_path(settings: AppSettings, path: Path) -> Path:
    if path.is_absolute() or path.exists():
        return path
    return settings.storage.flows_dir / path


def build_editor(
    settings: AppSettings,
    flow: FunnelFlow,
    flow_path: Path,
    meta: Optional[FunnelMeta] = None,
) -> ConnectionEditor:
    editor_settings = settings.editor
    sink = FileSystemFlowSink(FileSystemFlowRepository(), flow_path)
    style_picker = (
        random_style_picker(editor_settings.style_seed)
        if editor_settings.style_seed is not None
        else pick_unused_style
    )
    return ConnectionEditor(
        flow,
        meta or FunnelMeta(merchant_type=editor_settings.default_merchant_type),
        sink,
        placeholder_prefix=editor_settings.placeholder_prefix,
        stage_id_prefix=editor_settings.stage_id_prefix,
        style_picker=style_picker,
        upsell_text=editor_settings.upsell_option_text,
        downsell_text=editor_settings.downsell_option_text,
    )
