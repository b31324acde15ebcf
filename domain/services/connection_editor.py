from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional, TypeVar, Union

from domain.errors import (
    ActionAlreadyPending,
    InvalidSelection,
    NoPendingAction,
    OptionIndexOutOfRange,
    UnresolvedUpstreamError,
)
from domain.models import (
    PLACEHOLDER_BLOCK_PREFIX,
    Block,
    CardType,
    CrossLinkKind,
    FunnelFlow,
    FunnelMeta,
    Stage,
)
from domain.ports.flows import FlowUpdateSink
from domain.services.cross_stage_links import (
    DOWNSELL_OPTION_TEXT,
    UPSELL_OPTION_TEXT,
    StylePicker,
    assign_cross_link,
    clear_cross_link,
    pick_unused_style,
)
from domain.services.flow_mutations import (
    add_block_to_stage,
    add_option,
    append_stage,
    get_block,
    remove_block,
    replace_block,
    set_option,
    set_stage_card_type,
    update_block,
    with_send_dm_message,
)
from domain.services.flow_validation import (
    DraftStatus,
    FlowHighlights,
    compute_draft_status,
    compute_highlights,
)

logger = logging.getLogger(__name__)

NEW_STAGE_NAME = "NEW_STAGE"
DEFAULT_STAGE_ID_PREFIX = "stage_"
PLACEHOLDER_MESSAGES: dict[Optional[str], str] = {
    None: "New card",
    "qualification": "New question card",
    "product": "New product card",
}


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class PendingCardTypeSelection:
    new_block_id: str
    new_stage_id: str
    source_block_id: str
    option_text: str
    base_flow: FunnelFlow
    option_index: Optional[int] = None
    previous_next_block_id: Optional[str] = None
    upsell_kind: Optional[CrossLinkKind] = None


@dataclass(frozen=True)
class PendingOptionSelection:
    source_block_id: str
    option_text: str
    new_block_id: str
    next_stage_block_ids: tuple[str, ...]
    base_flow: FunnelFlow
    option_index: Optional[int] = None
    previous_next_block_id: Optional[str] = None
    upsell_kind: Optional[CrossLinkKind] = None
    only_placeholder_selectable: bool = False
    cross_stage_block_ids: tuple[str, ...] = ()
    new_stage_id: Optional[str] = None

    @property
    def selectable_block_ids(self) -> tuple[str, ...]:
        if self.only_placeholder_selectable:
            return (self.new_block_id,)
        return (self.new_block_id, *self.next_stage_block_ids, *self.cross_stage_block_ids)


@dataclass(frozen=True)
class OptionRef:
    block_id: str
    option_index: int


@dataclass(frozen=True)
class CrossLinkRef:
    block_id: str
    kind: str  # "upsell", "downsell" or "reference"


@dataclass(frozen=True)
class DeleteImpact:
    block_id: str
    affected_options: tuple[OptionRef, ...]
    affected_cross_links: tuple[CrossLinkRef, ...]
    outgoing_targets: tuple[str, ...]
    projected: FlowHighlights


@dataclass(frozen=True)
class PendingDelete:
    block_id: str
    impact: DeleteImpact


EditingState = Union[Idle, PendingCardTypeSelection, PendingOptionSelection, PendingDelete]
PendingSelection = Union[PendingCardTypeSelection, PendingOptionSelection]

_StateT = TypeVar("_StateT")


def compute_delete_impact(flow: FunnelFlow, block_id: str) -> DeleteImpact:
    doomed = get_block(flow, block_id)
    affected_options: list[OptionRef] = []
    affected_links: list[CrossLinkRef] = []
    for other_id, block in flow.blocks.items():
        if other_id == block_id:
            continue
        for option_index, option in enumerate(block.options):
            if option.next_block_id == block_id:
                affected_options.append(OptionRef(other_id, option_index))
        if block.upsell_block_id == block_id:
            affected_links.append(CrossLinkRef(other_id, "upsell"))
        if block.downsell_block_id == block_id:
            affected_links.append(CrossLinkRef(other_id, "downsell"))
        if block.referenced_block_id == block_id:
            affected_links.append(CrossLinkRef(other_id, "reference"))
    return DeleteImpact(
        block_id=block_id,
        affected_options=tuple(affected_options),
        affected_cross_links=tuple(affected_links),
        outgoing_targets=tuple(doomed.connected_targets()),
        projected=compute_highlights(remove_block(flow, block_id)),
    )


def default_id_factory(prefix: str) -> str:
    return f"{prefix}{uuid.uuid4().hex[:8]}"


class ConnectionEditor:
    """Single-editor state machine over a working copy of a funnel flow.

    Pending actions keep the flow they started from, so cancelling restores it
    exactly. Every commit refreshes highlights and draft status and hands the
    flow to the sink.
    """

    def __init__(
        self,
        flow: FunnelFlow,
        meta: Optional[FunnelMeta] = None,
        sink: Optional[FlowUpdateSink] = None,
        *,
        placeholder_prefix: str = PLACEHOLDER_BLOCK_PREFIX,
        stage_id_prefix: str = DEFAULT_STAGE_ID_PREFIX,
        style_picker: StylePicker = pick_unused_style,
        id_factory: Callable[[str], str] = default_id_factory,
        upsell_text: str = UPSELL_OPTION_TEXT,
        downsell_text: str = DOWNSELL_OPTION_TEXT,
    ) -> None:
        self._flow = flow
        self._persisted_flow = flow
        self._meta = meta or FunnelMeta()
        self._sink = sink
        self._placeholder_prefix = placeholder_prefix
        self._stage_id_prefix = stage_id_prefix
        self._style_picker = style_picker
        self._id_factory = id_factory
        self._upsell_text = upsell_text
        self._downsell_text = downsell_text
        self._state: EditingState = Idle()
        self._highlights = FlowHighlights()
        self._draft_status = DraftStatus(is_draft=True)
        self._refresh()

    @property
    def flow(self) -> FunnelFlow:
        return self._flow

    @property
    def persisted_flow(self) -> FunnelFlow:
        return self._persisted_flow

    @property
    def meta(self) -> FunnelMeta:
        return self._meta

    @property
    def state(self) -> EditingState:
        return self._state

    @property
    def highlights(self) -> FlowHighlights:
        return self._highlights

    @property
    def draft_status(self) -> DraftStatus:
        return self._draft_status

    @property
    def is_dirty(self) -> bool:
        return not self._highlights.is_clean

    # Add-new-option / reconnect

    def start_new_option(self, source_block_id: str, option_text: str) -> EditingState:
        self._require_idle()
        get_block(self._flow, source_block_id)
        return self._open_selection(
            base_flow=self._flow,
            working=self._flow,
            source_block_id=source_block_id,
            option_text=option_text,
        )

    def start_reconnect(self, source_block_id: str, option_index: int) -> EditingState:
        self._require_idle()
        block = get_block(self._flow, source_block_id)
        if option_index < 0 or option_index >= len(block.options):
            raise OptionIndexOutOfRange(source_block_id, option_index)
        if block.is_reserved_slot(option_index):
            msg = f"Option {option_index} of {source_block_id} mirrors an upsell/downsell link"
            raise InvalidSelection(msg)
        option = block.options[option_index]
        return self._open_selection(
            base_flow=self._flow,
            working=set_option(self._flow, source_block_id, option_index, None),
            source_block_id=source_block_id,
            option_text=option.text,
            option_index=option_index,
            previous_next_block_id=option.next_block_id,
        )

    # Upsell / downsell

    def start_cross_link(self, source_block_id: str, kind: CrossLinkKind) -> EditingState:
        state = self._state
        if (
            isinstance(state, (PendingCardTypeSelection, PendingOptionSelection))
            and state.upsell_kind is not None
            and state.source_block_id == source_block_id
        ):
            if state.upsell_kind == kind:
                logger.debug("Ignoring repeated %s request for %s", kind, source_block_id)
                return state
            logger.debug("Switching %s to %s for %s", state.upsell_kind, kind, source_block_id)
            self._flow = state.base_flow
            self._state = Idle()

        self._require_idle()
        source = get_block(self._flow, source_block_id)
        return self._open_selection(
            base_flow=self._flow,
            working=self._flow,
            source_block_id=source_block_id,
            option_text=self._upsell_text if kind == "upsell" else self._downsell_text,
            previous_next_block_id=source.cross_link(kind),
            upsell_kind=kind,
        )

    def clear_cross_link(self, source_block_id: str, kind: CrossLinkKind) -> EditingState:
        self._require_idle()
        flow = clear_cross_link(
            self._flow,
            source_block_id,
            kind,
            upsell_text=self._upsell_text,
            downsell_text=self._downsell_text,
        )
        return self._commit(flow)

    # Pending selection transitions

    def choose_card_type(self, card_type: CardType) -> EditingState:
        state = self._expect(PendingCardTypeSelection)
        working = set_stage_card_type(self._flow, state.new_stage_id, card_type)
        working = replace_block(working, self._placeholder_block(state.new_block_id, card_type))

        if state.option_index is not None and state.upsell_kind is None:
            working = set_option(
                working, state.source_block_id, state.option_index, state.new_block_id
            )
            return self._commit(working)

        self._flow = working
        self._state = PendingOptionSelection(
            source_block_id=state.source_block_id,
            option_text=state.option_text,
            new_block_id=state.new_block_id,
            next_stage_block_ids=(),
            base_flow=state.base_flow,
            option_index=state.option_index,
            previous_next_block_id=state.previous_next_block_id,
            upsell_kind=state.upsell_kind,
            only_placeholder_selectable=state.upsell_kind is not None,
            new_stage_id=state.new_stage_id,
        )
        logger.debug("Card type %s chosen for %s", card_type, state.new_block_id)
        return self._state

    def select_block(self, block_id: str) -> EditingState:
        state = self._expect(PendingOptionSelection)
        working = self._flow
        if block_id != state.new_block_id:
            if block_id not in state.selectable_block_ids:
                msg = f"Block {block_id} cannot be selected for {state.source_block_id}"
                raise InvalidSelection(msg)
            working = remove_block(working, state.new_block_id)

        if state.upsell_kind is not None:
            working = assign_cross_link(
                working,
                state.source_block_id,
                state.upsell_kind,
                block_id,
                style_picker=self._style_picker,
                upsell_text=self._upsell_text,
                downsell_text=self._downsell_text,
            )
        elif state.option_index is None:
            working = add_option(working, state.source_block_id, state.option_text, block_id)
        else:
            working = set_option(working, state.source_block_id, state.option_index, block_id)
        return self._commit(working)

    def cancel(self) -> EditingState:
        state = self._state
        if isinstance(state, Idle):
            msg = "Nothing to cancel: no editing action is pending"
            raise NoPendingAction(msg)
        if isinstance(state, (PendingCardTypeSelection, PendingOptionSelection)):
            self._flow = state.base_flow
        self._state = Idle()
        self._refresh()
        logger.debug("Cancelled %s", type(state).__name__)
        return self._state

    # Delete

    def delete_block(self, block_id: str) -> EditingState:
        state = self._state
        if isinstance(state, PendingDelete) and state.block_id == block_id:
            return self.confirm_delete()
        self._require_idle()
        impact = compute_delete_impact(self._flow, block_id)
        self._state = PendingDelete(block_id=block_id, impact=impact)
        logger.debug(
            "Delete of %s pending: %d options and %d links affected",
            block_id,
            len(impact.affected_options),
            len(impact.affected_cross_links),
        )
        return self._state

    def confirm_delete(self) -> EditingState:
        state = self._expect(PendingDelete)
        return self._commit(remove_block(self._flow, state.block_id))

    # Direct edits

    def update_block(self, block: Block) -> EditingState:
        self._require_idle()
        return self._commit(update_block(self._flow, block))

    def set_send_dm_message(self, message: str) -> EditingState:
        self._require_idle()
        return self._commit(with_send_dm_message(self._flow, message))

    def update_meta(self, meta: FunnelMeta) -> DraftStatus:
        self._meta = meta
        self._refresh()
        return self._draft_status

    # Persistence recovery

    def retry_persist(self) -> None:
        self._require_idle()
        self._persist()

    def rollback(self) -> FunnelFlow:
        self._require_idle()
        self._flow = self._persisted_flow
        self._refresh()
        logger.info("Rolled back to the last persisted flow")
        return self._flow

    # Internals

    def _open_selection(
        self,
        *,
        base_flow: FunnelFlow,
        working: FunnelFlow,
        source_block_id: str,
        option_text: str,
        option_index: Optional[int] = None,
        previous_next_block_id: Optional[str] = None,
        upsell_kind: Optional[CrossLinkKind] = None,
    ) -> EditingState:
        stages = working.funnel_stages()
        source_index = working.stage_index_of(source_block_id)
        if source_index is None:
            msg = f"Block {source_block_id} is not part of a funnel stage"
            raise InvalidSelection(msg)

        new_block_id = self._new_block_id(working)
        if source_index + 1 >= len(stages):
            new_stage_id = self._new_stage_id(working)
            working = append_stage(working, Stage(id=new_stage_id, name=NEW_STAGE_NAME))
            working = add_block_to_stage(
                working, new_stage_id, self._placeholder_block(new_block_id, None)
            )
            self._flow = working
            self._state = PendingCardTypeSelection(
                new_block_id=new_block_id,
                new_stage_id=new_stage_id,
                source_block_id=source_block_id,
                option_text=option_text,
                base_flow=base_flow,
                option_index=option_index,
                previous_next_block_id=previous_next_block_id,
                upsell_kind=upsell_kind,
            )
            logger.debug("Awaiting card type for new stage %s", new_stage_id)
            return self._state

        target_stage = stages[source_index + 1]
        siblings = tuple(item for item in target_stage.block_ids if item in working.blocks)
        cross_stage: tuple[str, ...] = ()
        if upsell_kind is not None:
            cross_stage = tuple(
                block_id
                for stage in stages
                for block_id in stage.block_ids
                if block_id in working.blocks
                and block_id != source_block_id
                and block_id not in siblings
            )
        working = add_block_to_stage(
            working,
            target_stage.id,
            self._placeholder_block(new_block_id, target_stage.card_type),
        )
        self._flow = working
        self._state = PendingOptionSelection(
            source_block_id=source_block_id,
            option_text=option_text,
            new_block_id=new_block_id,
            next_stage_block_ids=siblings,
            base_flow=base_flow,
            option_index=option_index,
            previous_next_block_id=previous_next_block_id,
            upsell_kind=upsell_kind,
            cross_stage_block_ids=cross_stage,
        )
        logger.debug("Awaiting target selection for %s", source_block_id)
        return self._state

    def _placeholder_block(self, block_id: str, card_type: Optional[CardType]) -> Block:
        return Block(id=block_id, message=PLACEHOLDER_MESSAGES[card_type])

    def _new_block_id(self, flow: FunnelFlow) -> str:
        block_id = self._id_factory(self._placeholder_prefix)
        while block_id in flow.blocks:
            block_id = self._id_factory(self._placeholder_prefix)
        return block_id

    def _new_stage_id(self, flow: FunnelFlow) -> str:
        stage_id = self._id_factory(self._stage_id_prefix)
        while flow.stage_by_id(stage_id) is not None:
            stage_id = self._id_factory(self._stage_id_prefix)
        return stage_id

    def _require_idle(self) -> None:
        if not isinstance(self._state, Idle):
            msg = f"{type(self._state).__name__} is still pending"
            raise ActionAlreadyPending(msg)

    def _expect(self, state_type: type[_StateT]) -> _StateT:
        state = self._state
        if not isinstance(state, state_type):
            msg = f"No {state_type.__name__} pending (current state: {type(state).__name__})"
            raise NoPendingAction(msg)
        return state

    def _commit(self, flow: FunnelFlow) -> EditingState:
        self._flow = flow
        self._state = Idle()
        self._refresh()
        logger.info(
            "Committed funnel flow: %d stages, %d blocks, draft=%s",
            len(flow.stages),
            len(flow.blocks),
            self._draft_status.is_draft,
        )
        self._persist()
        return self._state

    def _persist(self) -> None:
        if self._sink is not None:
            try:
                self._sink.on_update(self._flow)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Persisting the committed funnel flow failed")
                msg = "Persistence collaborator rejected the committed flow"
                raise UnresolvedUpstreamError(msg) from exc
        self._persisted_flow = self._flow

    def _refresh(self) -> None:
        self._highlights = compute_highlights(self._flow)
        self._draft_status = compute_draft_status(
            self._flow, self._meta, self._placeholder_prefix
        )
