from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from domain.models import (
    OFFER_STAGE_NAME,
    PLACEHOLDER_BLOCK_PREFIX,
    Block,
    FunnelFlow,
    FunnelMeta,
    Stage,
)

INVALID_MISSING_TARGET = "missing_target"
INVALID_TARGET_WITHOUT_STAGE = "target_without_stage"
INVALID_BACKWARD_TARGET = "backward_target"

DRAFT_NO_TRIGGER = "add a trigger to the funnel"
DRAFT_EMPTY_STAGE = "add at least one card to every middle stage"
DRAFT_INVALID_OPTIONS = "fix options that point to invalid cards"
DRAFT_UNCONNECTED_PLACEHOLDER = "connect new cards to the next stage"
DRAFT_ORPHANED_BLOCKS = "connect every card to the previous stage"
DRAFT_BROKEN_BLOCKS = "connect every card to the next stage"
DRAFT_MISSING_PRODUCT = "select a product for all product cards"


@dataclass(frozen=True)
class InvalidOption:
    block_id: str
    option_index: int
    reason: str


@dataclass(frozen=True)
class DraftStatus:
    is_draft: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class FlowHighlights:
    orphaned_block_ids: tuple[str, ...] = ()
    broken_block_ids: tuple[str, ...] = ()
    invalid_options: tuple[InvalidOption, ...] = ()

    @property
    def is_clean(self) -> bool:
        return not (self.orphaned_block_ids or self.broken_block_ids or self.invalid_options)


def find_invalid_options(flow: FunnelFlow) -> list[InvalidOption]:
    stage_index = flow.block_stage_index()
    invalid: list[InvalidOption] = []
    for block_id, block in flow.blocks.items():
        owner_index = stage_index.get(block_id)
        for option_index, option in enumerate(block.options):
            target = option.next_block_id
            if not target:
                continue
            if target not in flow.blocks:
                invalid.append(InvalidOption(block_id, option_index, INVALID_MISSING_TARGET))
                continue
            # Upsell/downsell slots may jump anywhere, backwards included.
            if block.is_reserved_slot(option_index):
                continue
            target_index = stage_index.get(target)
            if target_index is None:
                invalid.append(
                    InvalidOption(block_id, option_index, INVALID_TARGET_WITHOUT_STAGE)
                )
            elif owner_index is not None and target_index < owner_index:
                invalid.append(InvalidOption(block_id, option_index, INVALID_BACKWARD_TARGET))
    return invalid


def find_orphaned_blocks(flow: FunnelFlow) -> list[str]:
    stages = flow.funnel_stages()
    orphaned: list[str] = []
    for position in range(1, len(stages)):
        fed: set[str] = set()
        for source_id in stages[position - 1].block_ids:
            source = flow.blocks.get(source_id)
            if source is not None:
                fed.update(_normal_targets(source))
        for block_id in stages[position].block_ids:
            if block_id in flow.blocks and block_id not in fed:
                orphaned.append(block_id)
    return orphaned


def find_broken_blocks(flow: FunnelFlow) -> list[str]:
    stages = flow.funnel_stages()
    stage_index = flow.block_stage_index()
    broken: list[str] = []
    for position in range(len(stages) - 1):
        next_ids = {
            block_id for block_id in stages[position + 1].block_ids if block_id in flow.blocks
        }
        for block_id in stages[position].block_ids:
            block = flow.blocks.get(block_id)
            if block is None:
                continue
            if not next_ids:
                broken.append(block_id)
                continue
            reaches_next = any(option.next_block_id in next_ids for option in block.options)
            if not reaches_next and not _leaves_stage(block, position, stage_index):
                broken.append(block_id)
    return broken


def compute_highlights(flow: FunnelFlow) -> FlowHighlights:
    return FlowHighlights(
        orphaned_block_ids=tuple(find_orphaned_blocks(flow)),
        broken_block_ids=tuple(find_broken_blocks(flow)),
        invalid_options=tuple(find_invalid_options(flow)),
    )


def compute_draft_status(
    flow: FunnelFlow,
    meta: FunnelMeta,
    placeholder_prefix: str = PLACEHOLDER_BLOCK_PREFIX,
) -> DraftStatus:
    """Evaluate deployability checks in priority order; the first failure is the reason."""
    if not meta.has_trigger():
        return DraftStatus(is_draft=True, reason=DRAFT_NO_TRIGGER)

    stages = flow.funnel_stages()
    for stage in stages[1:-1]:
        if not any(block_id in flow.blocks for block_id in stage.block_ids):
            return DraftStatus(is_draft=True, reason=DRAFT_EMPTY_STAGE)

    if find_invalid_options(flow):
        return DraftStatus(is_draft=True, reason=DRAFT_INVALID_OPTIONS)

    if _has_unconnected_placeholder(flow, stages, placeholder_prefix):
        return DraftStatus(is_draft=True, reason=DRAFT_UNCONNECTED_PLACEHOLDER)

    if find_orphaned_blocks(flow):
        return DraftStatus(is_draft=True, reason=DRAFT_ORPHANED_BLOCKS)

    if find_broken_blocks(flow):
        return DraftStatus(is_draft=True, reason=DRAFT_BROKEN_BLOCKS)

    for stage in stages:
        if not stage_requires_product(stage, meta):
            continue
        for block_id in stage.block_ids:
            block = flow.blocks.get(block_id)
            if block is not None and not block.resource_id:
                return DraftStatus(is_draft=True, reason=DRAFT_MISSING_PRODUCT)

    return DraftStatus(is_draft=False)


def stage_requires_product(stage: Stage, meta: FunnelMeta) -> bool:
    if stage.is_send_dm:
        return False
    if stage.card_type is not None:
        return stage.card_type == "product"
    if meta.merchant_type == "upsell":
        return True
    return stage.name == OFFER_STAGE_NAME


def _normal_targets(block: Block) -> list[str]:
    # Upsell/downsell slots and pointers never feed the next stage.
    return [
        option.next_block_id
        for option_index, option in enumerate(block.options)
        if option.next_block_id and not block.is_reserved_slot(option_index)
    ]


def _leaves_stage(block: Block, position: int, stage_index: dict[str, int]) -> bool:
    for pointer in (block.upsell_block_id, block.downsell_block_id):
        if not pointer:
            continue
        target_index = stage_index.get(pointer)
        if target_index is not None and target_index > position:
            return True
    return False


def _has_unconnected_placeholder(
    flow: FunnelFlow, stages: list[Stage], placeholder_prefix: str
) -> bool:
    if not placeholder_prefix:
        return False
    stage_index = flow.block_stage_index()
    for position, stage in enumerate(stages[:-1]):
        for block_id in stage.block_ids:
            if not block_id.startswith(placeholder_prefix):
                continue
            block = flow.blocks.get(block_id)
            if block is None:
                continue
            if not any(
                target in flow.blocks and stage_index.get(target, -1) > position
                for target in block.connected_targets()
            ):
                return True
    return False
