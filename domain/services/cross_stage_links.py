from __future__ import annotations

import random
from typing import Optional, Protocol

from domain.errors import BlockNotFound, InvalidSelection
from domain.models import Block, CrossLinkKind, CrossStageStyle, FunnelFlow, Option
from domain.services.flow_mutations import get_block, replace_block

UPSELL_OPTION_TEXT = "Upsell"
DOWNSELL_OPTION_TEXT = "Downsell"

# Teal and amber are reserved for next-stage upsell/downsell arrows.
COLOR_POOL: tuple[str, ...] = (
    "cyan",
    "fuchsia",
    "sky",
    "rose",
    "emerald",
    "lime",
    "pink",
    "orange",
    "slate",
    "zinc",
    "indigo",
    "violet",
    "purple",
    "red",
    "yellow",
    "stone",
)
COLOR_HEX: dict[str, str] = {
    "cyan": "#06b6d4",
    "fuchsia": "#c026d3",
    "sky": "#0284c7",
    "rose": "#e11d48",
    "emerald": "#059669",
    "lime": "#65a30d",
    "pink": "#db2777",
    "orange": "#ea580c",
    "slate": "#475569",
    "zinc": "#52525b",
    "indigo": "#4f46e5",
    "violet": "#7c3aed",
    "purple": "#9333ea",
    "red": "#dc2626",
    "yellow": "#ca8a04",
    "stone": "#57534e",
}
SHAPE_POOL: tuple[str, ...] = (
    "hexagon",
    "diamond",
    "circle-dot",
    "crosshair",
    "octagon",
    "square",
    "triangle",
    "rectangle-horizontal",
    "circle",
    "pentagon",
    "square-dot",
    "octagon-alert",
    "circle-ellipsis",
    "rectangle-vertical",
    "circle-dashed",
    "vector-square",
)


class StylePicker(Protocol):
    def __call__(self, flow: FunnelFlow) -> CrossStageStyle: ...


def used_styles(flow: FunnelFlow) -> tuple[set[str], set[str]]:
    used_colors: set[str] = set()
    used_shapes: set[str] = set()
    for block in flow.blocks.values():
        for style in (block.upsell_cross_stage_style, block.downsell_cross_stage_style):
            if style is None:
                continue
            used_colors.add(style.color_id)
            used_shapes.add(style.shape_id)
    return used_colors, used_shapes


def pick_unused_style(
    flow: FunnelFlow, rng: Optional[random.Random] = None
) -> CrossStageStyle:
    """Pick a color and shape no other cross-stage arrow of the funnel uses.

    Without ``rng`` the first free entry of each pool wins. An exhausted pool
    falls back to the full pool.
    """
    used_colors, used_shapes = used_styles(flow)
    colors = [color for color in COLOR_POOL if color not in used_colors] or list(COLOR_POOL)
    shapes = [shape for shape in SHAPE_POOL if shape not in used_shapes] or list(SHAPE_POOL)
    if rng is None:
        return CrossStageStyle(color_id=colors[0], shape_id=shapes[0])
    return CrossStageStyle(color_id=rng.choice(colors), shape_id=rng.choice(shapes))


def random_style_picker(seed: Optional[int] = None) -> StylePicker:
    rng = random.Random(seed)

    def _pick(flow: FunnelFlow) -> CrossStageStyle:
        return pick_unused_style(flow, rng)

    return _pick


def is_next_stage_target(flow: FunnelFlow, source_block_id: str, target_block_id: str) -> bool:
    stage_index = flow.block_stage_index()
    source_index = stage_index.get(source_block_id)
    target_index = stage_index.get(target_block_id)
    if source_index is None or target_index is None:
        return False
    return target_index == source_index + 1


def assign_cross_link(
    flow: FunnelFlow,
    source_block_id: str,
    kind: CrossLinkKind,
    target_block_id: str,
    *,
    style_picker: StylePicker = pick_unused_style,
    upsell_text: str = UPSELL_OPTION_TEXT,
    downsell_text: str = DOWNSELL_OPTION_TEXT,
) -> FunnelFlow:
    source = get_block(flow, source_block_id)
    if target_block_id not in flow.blocks:
        raise BlockNotFound(target_block_id)
    if target_block_id == source_block_id:
        msg = f"Block {source_block_id} cannot link to itself"
        raise InvalidSelection(msg)

    had_slots = has_link_slots(source, upsell_text, downsell_text)
    other: CrossLinkKind = "downsell" if kind == "upsell" else "upsell"
    update: dict[str, object] = {
        f"{kind}_block_id": target_block_id,
        f"{kind}_cross_stage_style": None,
    }
    # A target cannot be both the upsell and the downsell of one block.
    if source.cross_link(other) == target_block_id:
        update[f"{other}_block_id"] = None
        update[f"{other}_cross_stage_style"] = None
    block = source.model_copy(update=update)

    interim = replace_block(flow, block)
    if not is_next_stage_target(interim, source_block_id, target_block_id):
        block = block.model_copy(update={f"{kind}_cross_stage_style": style_picker(interim)})

    block = sync_link_options(block, had_slots, upsell_text, downsell_text)
    return replace_block(flow, block)


def clear_cross_link(
    flow: FunnelFlow,
    source_block_id: str,
    kind: CrossLinkKind,
    *,
    upsell_text: str = UPSELL_OPTION_TEXT,
    downsell_text: str = DOWNSELL_OPTION_TEXT,
) -> FunnelFlow:
    source = get_block(flow, source_block_id)
    if source.cross_link(kind) is None:
        return flow
    had_slots = has_link_slots(source, upsell_text, downsell_text)
    block = source.model_copy(
        update={f"{kind}_block_id": None, f"{kind}_cross_stage_style": None}
    )
    return replace_block(flow, sync_link_options(block, had_slots, upsell_text, downsell_text))


def has_link_slots(block: Block, upsell_text: str, downsell_text: str) -> bool:
    if block.has_cross_links():
        return True
    options = block.options
    return len(options) >= 2 and (options[0].text, options[1].text) == (
        upsell_text,
        downsell_text,
    )


def sync_link_options(
    block: Block, had_slots: bool, upsell_text: str, downsell_text: str
) -> Block:
    """Mirror the two pointers into option slots 0 and 1.

    Slots already present keep their text; otherwise two slots are inserted in
    front of the block's regular options.
    """
    if had_slots and len(block.options) >= 2:
        texts = (block.options[0].text, block.options[1].text)
        rest = block.options[2:]
    else:
        texts = (upsell_text, downsell_text)
        rest = block.options
    slots = (
        Option(text=texts[0], next_block_id=block.upsell_block_id),
        Option(text=texts[1], next_block_id=block.downsell_block_id),
    )
    return block.model_copy(update={"options": (*slots, *rest)})
