from __future__ import annotations

from typing import Optional

from domain.errors import (
    BlockNotFound,
    DuplicateBlockId,
    DuplicateStageId,
    LastFunnelBlock,
    OptionIndexOutOfRange,
    StageIndexOutOfRange,
    StageNotFound,
)
from domain.models import (
    SEND_DM_STAGE_NAME,
    WELCOME_STAGE_NAME,
    Block,
    CardType,
    FunnelFlow,
    Option,
    Stage,
)

USER_PLACEHOLDER = "[USER]"
SEND_DM_BLOCK_ID = "send_dm"
SEND_DM_STAGE_ID = "stage-send-dm"
MINIMAL_WELCOME_BLOCK_ID = "welcome_1"
MINIMAL_WELCOME_STAGE_ID = "stage-welcome"


def create_minimal_flow() -> FunnelFlow:
    welcome = Block(
        id=MINIMAL_WELCOME_BLOCK_ID,
        message=f"{USER_PLACEHOLDER}, welcome! What brings you here today?",
    )
    stage = Stage(
        id=MINIMAL_WELCOME_STAGE_ID,
        name=WELCOME_STAGE_NAME,
        explanation="Greets the customer and opens the conversation.",
        block_ids=(welcome.id,),
    )
    return FunnelFlow(
        start_block_id=welcome.id,
        stages=(stage,),
        blocks={welcome.id: welcome},
    )


def get_block(flow: FunnelFlow, block_id: str) -> Block:
    block = flow.blocks.get(block_id)
    if block is None:
        raise BlockNotFound(block_id)
    return block


def add_block_to_stage(flow: FunnelFlow, stage_id: str, block: Block) -> FunnelFlow:
    if flow.stage_by_id(stage_id) is None:
        raise StageNotFound(stage_id)
    if block.id in flow.blocks:
        msg = f"Block id already exists: {block.id}"
        raise DuplicateBlockId(msg)

    stages = tuple(
        stage.model_copy(update={"block_ids": (*stage.block_ids, block.id)})
        if stage.id == stage_id
        else stage
        for stage in flow.stages
    )
    return flow.model_copy(update={"stages": stages, "blocks": {**flow.blocks, block.id: block}})


def remove_block(flow: FunnelFlow, block_id: str) -> FunnelFlow:
    if block_id not in flow.blocks:
        raise BlockNotFound(block_id)
    funnel_block_ids = {
        item
        for stage in flow.funnel_stages()
        for item in stage.block_ids
        if item in flow.blocks
    }
    if funnel_block_ids == {block_id}:
        raise LastFunnelBlock(block_id)

    first_funnel_stage = next(iter(flow.funnel_stages()), None)
    stages: list[Stage] = []
    for stage in flow.stages:
        if block_id not in stage.block_ids:
            stages.append(stage)
            continue
        remaining = tuple(item for item in stage.block_ids if item != block_id)
        keep_empty = first_funnel_stage is not None and stage.id == first_funnel_stage.id
        if remaining or keep_empty:
            stages.append(stage.model_copy(update={"block_ids": remaining}))

    blocks = {
        other_id: _detach_target(block, block_id)
        for other_id, block in flow.blocks.items()
        if other_id != block_id
    }

    start_block_id = flow.start_block_id
    if start_block_id == block_id:
        start_block_id = _first_funnel_block_id(stages) or start_block_id

    return flow.model_copy(
        update={"stages": tuple(stages), "blocks": blocks, "start_block_id": start_block_id}
    )


def append_stage(
    flow: FunnelFlow, stage: Stage, after_index: Optional[int] = None
) -> FunnelFlow:
    if flow.stage_by_id(stage.id) is not None:
        msg = f"Stage id already exists: {stage.id}"
        raise DuplicateStageId(msg)
    for block_id in stage.block_ids:
        if block_id not in flow.blocks:
            raise BlockNotFound(block_id)

    stages = list(flow.stages)
    if after_index is None:
        insert_at = len(stages)
    else:
        if after_index < -1 or after_index >= len(stages):
            msg = f"Stage index {after_index} out of range for {len(stages)} stages"
            raise StageIndexOutOfRange(msg)
        insert_at = after_index + 1
    stages.insert(insert_at, stage)
    return flow.model_copy(update={"stages": tuple(stages)})


def remove_stage(flow: FunnelFlow, stage_id: str) -> FunnelFlow:
    stage = flow.stage_by_id(stage_id)
    if stage is None:
        raise StageNotFound(stage_id)
    for block_id in stage.block_ids:
        if block_id in flow.blocks:
            flow = remove_block(flow, block_id)
    stages = tuple(item for item in flow.stages if item.id != stage_id)
    return flow.model_copy(update={"stages": stages})


def set_stage_card_type(
    flow: FunnelFlow, stage_id: str, card_type: Optional[CardType]
) -> FunnelFlow:
    if flow.stage_by_id(stage_id) is None:
        raise StageNotFound(stage_id)
    # Validated copy: model_copy would accept an unknown card type.
    stages = tuple(
        Stage.model_validate({**stage.model_dump(), "card_type": card_type})
        if stage.id == stage_id
        else stage
        for stage in flow.stages
    )
    return flow.model_copy(update={"stages": stages})


def move_block(flow: FunnelFlow, block_id: str, stage_id: str) -> FunnelFlow:
    if block_id not in flow.blocks:
        raise BlockNotFound(block_id)
    target = flow.stage_by_id(stage_id)
    if target is None:
        raise StageNotFound(stage_id)
    if block_id in target.block_ids:
        return flow

    first_funnel_stage = next(iter(flow.funnel_stages()), None)
    stages: list[Stage] = []
    for stage in flow.stages:
        if stage.id == stage_id:
            stages.append(stage.model_copy(update={"block_ids": (*stage.block_ids, block_id)}))
            continue
        if block_id not in stage.block_ids:
            stages.append(stage)
            continue
        remaining = tuple(item for item in stage.block_ids if item != block_id)
        keep_empty = first_funnel_stage is not None and stage.id == first_funnel_stage.id
        if remaining or keep_empty:
            stages.append(stage.model_copy(update={"block_ids": remaining}))
    return flow.model_copy(update={"stages": tuple(stages)})


def set_option(
    flow: FunnelFlow, block_id: str, option_index: int, next_block_id: Optional[str]
) -> FunnelFlow:
    block = get_block(flow, block_id)
    if option_index < 0 or option_index >= len(block.options):
        raise OptionIndexOutOfRange(block_id, option_index)
    options = list(block.options)
    options[option_index] = options[option_index].model_copy(
        update={"next_block_id": next_block_id}
    )
    return replace_block(flow, block.model_copy(update={"options": tuple(options)}))


def add_option(
    flow: FunnelFlow, block_id: str, text: str, next_block_id: Optional[str] = None
) -> FunnelFlow:
    block = get_block(flow, block_id)
    option = Option(text=text, next_block_id=next_block_id)
    return replace_block(flow, block.model_copy(update={"options": (*block.options, option)}))


def replace_block(flow: FunnelFlow, block: Block) -> FunnelFlow:
    if block.id not in flow.blocks:
        raise BlockNotFound(block.id)
    return flow.model_copy(update={"blocks": {**flow.blocks, block.id: block}})


def update_block(flow: FunnelFlow, block: Block) -> FunnelFlow:
    stage = flow.stage_of(block.id)
    if stage is not None and stage.name == WELCOME_STAGE_NAME:
        block = block.model_copy(update={"message": ensure_user_placeholder(block.message)})
    return replace_block(flow, block)


def ensure_user_placeholder(message: str) -> str:
    if USER_PLACEHOLDER in message:
        return message
    trimmed = message.strip()
    return f"{USER_PLACEHOLDER}, {trimmed}" if trimmed else USER_PLACEHOLDER


def find_send_dm_block(flow: FunnelFlow) -> Optional[Block]:
    for block in flow.blocks.values():
        if block.send_dm_block:
            return block
    return None


def with_send_dm_message(flow: FunnelFlow, message: str) -> FunnelFlow:
    existing = find_send_dm_block(flow)
    if not message.strip():
        return remove_block(flow, existing.id) if existing is not None else flow

    if existing is not None:
        return replace_block(flow, existing.model_copy(update={"message": message}))

    block = Block(id=SEND_DM_BLOCK_ID, message=message, send_dm_block=True)
    if block.id in flow.blocks:
        msg = f"Block id already exists: {block.id}"
        raise DuplicateBlockId(msg)
    stage = Stage(
        id=SEND_DM_STAGE_ID,
        name=SEND_DM_STAGE_NAME,
        explanation="One-shot direct message sent before the conversation starts.",
        block_ids=(block.id,),
    )
    stages = (stage, *(item for item in flow.stages if item.id != stage.id))
    return flow.model_copy(
        update={"stages": stages, "blocks": {**flow.blocks, block.id: block}}
    )


def _detach_target(block: Block, removed_id: str) -> Block:
    update: dict[str, object] = {}
    if any(option.next_block_id == removed_id for option in block.options):
        update["options"] = tuple(
            option.model_copy(update={"next_block_id": None})
            if option.next_block_id == removed_id
            else option
            for option in block.options
        )
    if block.upsell_block_id == removed_id:
        update["upsell_block_id"] = None
        update["upsell_cross_stage_style"] = None
    if block.downsell_block_id == removed_id:
        update["downsell_block_id"] = None
        update["downsell_cross_stage_style"] = None
    if block.referenced_block_id == removed_id:
        update["referenced_block_id"] = None
    return block.model_copy(update=update) if update else block


def _first_funnel_block_id(stages: list[Stage]) -> Optional[str]:
    for stage in stages:
        if stage.is_send_dm:
            continue
        if stage.block_ids:
            return stage.block_ids[0]
    return None
