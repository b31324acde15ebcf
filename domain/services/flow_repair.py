from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Optional

from domain.models import Block, CrossStageStyle, FunnelFlow, Option, Stage

_CARD_TYPES = {"qualification", "product"}


def validate_and_repair_flow(data: Any) -> Optional[FunnelFlow]:
    """Salvage a loosely-typed payload into a flow that satisfies the model invariants.

    Unusable stages, blocks and options are dropped, dangling targets are
    cleared, and blocks that no stage claims are discarded. Returns ``None``
    when nothing usable remains.
    """
    if not isinstance(data, Mapping):
        return None

    start_block_id = _field(data, "startBlockId", "start_block_id")
    raw_stages = data.get("stages")
    raw_blocks = data.get("blocks")
    if not _is_text(start_block_id):
        return None
    if not isinstance(raw_stages, list) or not raw_stages:
        return None
    if not isinstance(raw_blocks, Mapping) or not raw_blocks:
        return None

    candidates: dict[str, dict[str, Any]] = {}
    for raw_block in raw_blocks.values():
        block = _repair_block_fields(raw_block)
        if block is not None and block["id"] not in candidates:
            candidates[block["id"]] = block

    stages: list[Stage] = []
    claimed: set[str] = set()
    seen_stage_ids: set[str] = set()
    for raw_stage in raw_stages:
        stage = _repair_stage(raw_stage, candidates, claimed)
        if stage is None or stage.id in seen_stage_ids:
            continue
        seen_stage_ids.add(stage.id)
        claimed.update(stage.block_ids)
        stages.append(stage)
    if not stages:
        return None

    if start_block_id not in claimed:
        return None

    blocks = {
        block_id: _finish_block(fields, claimed)
        for block_id, fields in candidates.items()
        if block_id in claimed
    }
    return FunnelFlow(start_block_id=start_block_id, stages=tuple(stages), blocks=blocks)


def has_minimum_structure(flow: FunnelFlow) -> bool:
    if not flow.stages or not flow.blocks:
        return False
    return flow.start_block_id in flow.blocks


def _repair_block_fields(raw: Any) -> Optional[dict[str, Any]]:
    if not isinstance(raw, Mapping):
        return None
    block_id = raw.get("id")
    message = raw.get("message")
    raw_options = raw.get("options")
    if not _is_text(block_id) or not isinstance(message, str):
        return None
    if not isinstance(raw_options, list):
        return None

    options: list[dict[str, Any]] = []
    for raw_option in raw_options:
        if not isinstance(raw_option, Mapping):
            continue
        text = raw_option.get("text")
        next_block_id = _field(raw_option, "nextBlockId", "next_block_id")
        if not _is_text(text):
            continue
        if next_block_id is not None and not _is_text(next_block_id):
            continue
        options.append({"text": text, "next_block_id": next_block_id})

    timeout = _field(raw, "timeoutMinutes", "timeout_minutes")
    headline = raw.get("headline")
    return {
        "id": block_id,
        "message": message,
        "headline": headline if isinstance(headline, str) else None,
        "options": options,
        "resource_id": _optional_text(_field(raw, "resourceId", "resource_id")),
        "upsell_block_id": _optional_text(_field(raw, "upsellBlockId", "upsell_block_id")),
        "downsell_block_id": _optional_text(_field(raw, "downsellBlockId", "downsell_block_id")),
        "upsell_cross_stage_style": _repair_style(
            _field(raw, "upsellCrossStageStyle", "upsell_cross_stage_style")
        ),
        "downsell_cross_stage_style": _repair_style(
            _field(raw, "downsellCrossStageStyle", "downsell_cross_stage_style")
        ),
        "referenced_block_id": _optional_text(
            _field(raw, "referencedBlockId", "referenced_block_id")
        ),
        "timeout_minutes": timeout if isinstance(timeout, int) and timeout >= 0 else None,
        "send_dm_block": _field(raw, "sendDmBlock", "send_dm_block") is True,
    }


def _repair_stage(
    raw: Any, blocks: Mapping[str, dict[str, Any]], claimed: set[str]
) -> Optional[Stage]:
    if not isinstance(raw, Mapping):
        return None
    stage_id = raw.get("id")
    name = raw.get("name")
    explanation = raw.get("explanation")
    raw_block_ids = _field(raw, "blockIds", "block_ids")
    if not _is_text(stage_id) or not _is_text(name):
        return None
    if not isinstance(raw_block_ids, list):
        return None

    block_ids: list[str] = []
    for block_id in raw_block_ids:
        if not _is_text(block_id) or block_id not in blocks:
            continue
        if block_id in claimed or block_id in block_ids:
            continue
        block_ids.append(block_id)
    if not block_ids:
        return None

    card_type = _field(raw, "cardType", "card_type")
    return Stage(
        id=stage_id,
        name=name,
        explanation=explanation if isinstance(explanation, str) else "",
        block_ids=tuple(block_ids),
        card_type=card_type if card_type in _CARD_TYPES else None,
    )


def _finish_block(fields: dict[str, Any], known_ids: set[str]) -> Block:
    options = tuple(
        Option(
            text=option["text"],
            next_block_id=option["next_block_id"]
            if option["next_block_id"] in known_ids
            else None,
        )
        for option in fields["options"]
    )
    upsell = fields["upsell_block_id"] if fields["upsell_block_id"] in known_ids else None
    downsell = fields["downsell_block_id"] if fields["downsell_block_id"] in known_ids else None
    if upsell is not None and upsell == downsell:
        downsell = None
    referenced = fields["referenced_block_id"]
    return Block(
        id=fields["id"],
        message=fields["message"],
        headline=fields["headline"],
        options=options,
        resource_id=fields["resource_id"],
        upsell_block_id=upsell,
        downsell_block_id=downsell,
        upsell_cross_stage_style=fields["upsell_cross_stage_style"] if upsell else None,
        downsell_cross_stage_style=fields["downsell_cross_stage_style"] if downsell else None,
        referenced_block_id=referenced if referenced in known_ids else None,
        timeout_minutes=fields["timeout_minutes"],
        send_dm_block=fields["send_dm_block"],
    )


def _repair_style(raw: Any) -> Optional[CrossStageStyle]:
    if not isinstance(raw, Mapping):
        return None
    color_id = _field(raw, "colorId", "color_id")
    shape_id = _field(raw, "shapeId", "shape_id")
    if not _is_text(color_id) or not _is_text(shape_id):
        return None
    return CrossStageStyle(color_id=color_id, shape_id=shape_id)


def _field(raw: Mapping[str, Any], camel: str, snake: str) -> Any:
    value = raw.get(camel)
    return raw.get(snake) if value is None else value


def _optional_text(value: Any) -> Optional[str]:
    return value if _is_text(value) else None


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())
