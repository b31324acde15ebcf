from __future__ import annotations

from typing import Dict, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

SEND_DM_STAGE_NAME = "SEND_DM"
WELCOME_STAGE_NAME = "WELCOME"
OFFER_STAGE_NAME = "OFFER"
PLACEHOLDER_BLOCK_PREFIX = "new_block_"

CardType = Literal["qualification", "product"]
MerchantType = Literal["qualification", "upsell"]
CrossLinkKind = Literal["upsell", "downsell"]


class FlowModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Option(FlowModel):
    text: str
    next_block_id: Optional[str] = None


class CrossStageStyle(FlowModel):
    color_id: str
    shape_id: str


class Block(FlowModel):
    id: str = Field(..., min_length=1)
    message: str = ""
    headline: Optional[str] = None
    options: Tuple[Option, ...] = ()
    resource_id: Optional[str] = None
    upsell_block_id: Optional[str] = None
    downsell_block_id: Optional[str] = None
    upsell_cross_stage_style: Optional[CrossStageStyle] = None
    downsell_cross_stage_style: Optional[CrossStageStyle] = None
    referenced_block_id: Optional[str] = None
    timeout_minutes: Optional[int] = None
    send_dm_block: bool = False

    def has_cross_links(self) -> bool:
        return bool(self.upsell_block_id or self.downsell_block_id)

    def cross_link(self, kind: CrossLinkKind) -> Optional[str]:
        return self.upsell_block_id if kind == "upsell" else self.downsell_block_id

    def is_reserved_slot(self, option_index: int) -> bool:
        return self.has_cross_links() and option_index in (0, 1)

    def connected_targets(self) -> list[str]:
        targets = [option.next_block_id for option in self.options if option.next_block_id]
        for pointer in (self.upsell_block_id, self.downsell_block_id):
            if pointer and pointer not in targets:
                targets.append(pointer)
        return targets


class Stage(FlowModel):
    id: str = Field(..., min_length=1)
    name: str
    explanation: str = ""
    block_ids: Tuple[str, ...] = ()
    card_type: Optional[CardType] = None

    @property
    def is_send_dm(self) -> bool:
        return self.name == SEND_DM_STAGE_NAME


class FunnelFlow(FlowModel):
    """Stages in funnel order plus every block keyed by id.

    ``blocks`` is a plain dict shared between copies; treat it as read-only and
    go through ``domain.services.flow_mutations`` for every change.
    """

    start_block_id: str
    stages: Tuple[Stage, ...] = ()
    blocks: Dict[str, Block] = Field(default_factory=dict)

    @field_validator("stages", mode="after")
    @classmethod
    def ensure_unique_stage_ids(cls, stages: Tuple[Stage, ...]) -> Tuple[Stage, ...]:
        seen: set[str] = set()
        for stage in stages:
            if stage.id in seen:
                msg = f"Duplicate stage id found: {stage.id}"
                raise ValueError(msg)
            seen.add(stage.id)
        return stages

    def funnel_stages(self) -> list[Stage]:
        return [stage for stage in self.stages if not stage.is_send_dm]

    def stage_by_id(self, stage_id: str) -> Optional[Stage]:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        return None

    def stage_of(self, block_id: str) -> Optional[Stage]:
        for stage in self.stages:
            if block_id in stage.block_ids:
                return stage
        return None

    def stage_index_of(self, block_id: str) -> Optional[int]:
        """Position of the block's stage within the funnel progression.

        The synthetic send-DM stage sits outside the progression, so its block
        has no index.
        """
        for index, stage in enumerate(self.funnel_stages()):
            if block_id in stage.block_ids:
                return index
        return None

    def block_stage_index(self) -> dict[str, int]:
        index: dict[str, int] = {}
        for position, stage in enumerate(self.funnel_stages()):
            for block_id in stage.block_ids:
                index.setdefault(block_id, position)
        return index


class FunnelMeta(FlowModel):
    membership_trigger_type: Optional[str] = None
    app_trigger_type: Optional[str] = None
    merchant_type: MerchantType = "qualification"

    def has_trigger(self) -> bool:
        return bool(self.membership_trigger_type or self.app_trigger_type)
