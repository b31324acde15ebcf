from __future__ import annotations

import logging
from typing import Optional

import pytest

from domain.errors import (
    ActionAlreadyPending,
    InvalidSelection,
    LastFunnelBlock,
    NoPendingAction,
    OptionIndexOutOfRange,
    UnresolvedUpstreamError,
)
from domain.models import CrossStageStyle, FunnelFlow, FunnelMeta, Option
from domain.ports.flows import FlowUpdateSink
from domain.services.connection_editor import (
    ConnectionEditor,
    CrossLinkRef,
    Idle,
    OptionRef,
    PendingCardTypeSelection,
    PendingDelete,
    PendingOptionSelection,
    compute_delete_impact,
    default_id_factory,
)
from domain.services.flow_mutations import add_option, create_minimal_flow
from domain.services.flow_validation import DRAFT_MISSING_PRODUCT, DRAFT_NO_TRIGGER
from tests.helpers.flow_fixtures import (
    FailingSink,
    RecordingSink,
    block,
    live_meta,
    make_flow,
    sequential_ids,
    stage,
    three_stage_flow,
)


def _editor(
    flow: FunnelFlow,
    sink: Optional[FlowUpdateSink] = None,
    meta: Optional[FunnelMeta] = None,
) -> ConnectionEditor:
    return ConnectionEditor(
        flow,
        meta or live_meta(),
        sink,
        id_factory=sequential_ids(),
    )


def _two_branch_flow() -> FunnelFlow:
    return make_flow(
        [
            stage("s1", "WELCOME", "w1"),
            stage("s2", "OFFER", "o1", "o2"),
            stage("s3", "TRANSITION", "x1", "x2"),
        ],
        [
            block("w1", "o1", "o2"),
            block("o1", "x1", resource_id="p1"),
            block("o2", "x2", resource_id="p2"),
            block("x1"),
            block("x2"),
        ],
    )


def test_cancel_from_last_stage_restores_flow(flow_a: FunnelFlow) -> None:
    sink = RecordingSink()
    editor = _editor(flow_a, sink)

    state = editor.start_new_option("o1", "Next step")

    assert isinstance(state, PendingCardTypeSelection)
    assert state.new_block_id == "new_block_1"
    assert state.new_stage_id == "stage_1"
    assert len(editor.flow.stages) == 3
    assert editor.flow.stages[-1].name == "NEW_STAGE"

    assert isinstance(editor.cancel(), Idle)
    assert editor.flow == flow_a
    assert sink.updates == []


def test_cancel_on_single_stage_flow_removes_new_stage() -> None:
    flow = create_minimal_flow()
    editor = _editor(flow)

    editor.start_new_option(flow.start_block_id, "Start")
    assert len(editor.flow.stages) == 2

    editor.cancel()

    assert editor.flow == flow
    assert list(editor.flow.blocks) == [flow.start_block_id]


def test_selecting_existing_sibling_discards_placeholder(flow_a: FunnelFlow) -> None:
    sink = RecordingSink()
    editor = _editor(flow_a, sink)

    state = editor.start_new_option("w1", "More")

    assert isinstance(state, PendingOptionSelection)
    assert state.selectable_block_ids == ("new_block_1", "o1")
    assert "new_block_1" in editor.flow.stages[1].block_ids

    editor.select_block("o1")

    assert isinstance(editor.state, Idle)
    assert "new_block_1" not in editor.flow.blocks
    assert editor.flow.blocks["w1"].options == (
        Option(text="Go", next_block_id="o1"),
        Option(text="More", next_block_id="o1"),
    )
    assert sink.updates == [editor.flow]
    assert editor.persisted_flow == editor.flow
    assert editor.draft_status.is_draft is False


def test_selecting_placeholder_keeps_it_as_new_card(flow_a: FunnelFlow) -> None:
    editor = _editor(flow_a, RecordingSink())

    editor.start_new_option("w1", "Other offer")
    editor.select_block("new_block_1")

    assert editor.flow.stages[1].block_ids == ("o1", "new_block_1")
    assert editor.flow.blocks["new_block_1"].message == "New card"
    assert editor.flow.blocks["w1"].options[-1].next_block_id == "new_block_1"
    assert editor.draft_status.reason == DRAFT_MISSING_PRODUCT


def test_new_stage_with_product_card_type_needs_product(flow_a: FunnelFlow) -> None:
    sink = RecordingSink()
    editor = _editor(flow_a, sink)

    editor.start_new_option("o1", "Continue")
    state = editor.choose_card_type("product")

    assert isinstance(state, PendingOptionSelection)
    assert state.only_placeholder_selectable is False
    assert state.next_stage_block_ids == ()
    assert state.new_stage_id == "stage_1"
    assert sink.updates == []

    editor.select_block("new_block_1")

    new_stage = editor.flow.stages[-1]
    assert new_stage.card_type == "product"
    assert new_stage.block_ids == ("new_block_1",)
    assert editor.flow.blocks["new_block_1"].message == "New product card"
    assert editor.flow.blocks["o1"].options == (
        Option(text="Continue", next_block_id="new_block_1"),
    )
    assert editor.draft_status.reason == DRAFT_MISSING_PRODUCT
    assert len(sink.updates) == 1


def test_select_block_rejects_blocks_outside_selection(flow_a: FunnelFlow) -> None:
    editor = _editor(flow_a)

    editor.start_new_option("w1", "More")

    with pytest.raises(InvalidSelection):
        editor.select_block("w1")
    with pytest.raises(InvalidSelection):
        editor.select_block("ghost")
    assert isinstance(editor.state, PendingOptionSelection)


def test_reconnect_rewires_existing_option() -> None:
    flow = three_stage_flow()
    editor = _editor(flow, RecordingSink())

    state = editor.start_reconnect("w1", 1)

    assert isinstance(state, PendingOptionSelection)
    assert state.previous_next_block_id == "u1"
    assert editor.flow.blocks["w1"].options[1].next_block_id is None

    editor.select_block("o1")

    assert [option.next_block_id for option in editor.flow.blocks["w1"].options] == ["o1", "o1"]
    assert editor.highlights.orphaned_block_ids == ("u1",)
    assert editor.is_dirty is True


def test_cancel_reconnect_restores_previous_target() -> None:
    flow = three_stage_flow()
    editor = _editor(flow)

    editor.start_reconnect("w1", 1)
    editor.cancel()

    assert editor.flow is flow
    assert editor.flow.blocks["w1"].options[1].next_block_id == "u1"


def test_reconnect_from_last_stage_commits_on_card_type(flow_a: FunnelFlow) -> None:
    sink = RecordingSink()
    editor = _editor(add_option(flow_a, "o1", "Continue"), sink)

    editor.start_reconnect("o1", 0)
    state = editor.choose_card_type("qualification")

    assert isinstance(state, Idle)
    assert editor.flow.blocks["o1"].options[0].next_block_id == "new_block_1"
    assert editor.flow.blocks["new_block_1"].message == "New question card"
    assert editor.flow.stages[-1].card_type == "qualification"
    assert len(sink.updates) == 1


def test_reconnect_validates_option_index(flow_a: FunnelFlow) -> None:
    editor = _editor(flow_a)

    with pytest.raises(OptionIndexOutOfRange):
        editor.start_reconnect("w1", 4)
    assert isinstance(editor.state, Idle)


def test_only_one_action_may_be_pending(flow_a: FunnelFlow) -> None:
    editor = _editor(flow_a)

    editor.start_new_option("w1", "More")

    with pytest.raises(ActionAlreadyPending):
        editor.start_new_option("w1", "Again")
    with pytest.raises(ActionAlreadyPending):
        editor.delete_block("o1")
    with pytest.raises(NoPendingAction):
        editor.choose_card_type("product")


def test_transitions_without_pending_action_fail(flow_a: FunnelFlow) -> None:
    editor = _editor(flow_a)

    with pytest.raises(NoPendingAction):
        editor.cancel()
    with pytest.raises(NoPendingAction):
        editor.select_block("o1")
    with pytest.raises(NoPendingAction):
        editor.confirm_delete()


def test_upsell_selection_offers_cross_stage_blocks() -> None:
    editor = _editor(three_stage_flow())

    state = editor.start_cross_link("o1", "upsell")

    assert isinstance(state, PendingOptionSelection)
    assert state.upsell_kind == "upsell"
    assert state.option_text == "Upsell"
    assert state.next_stage_block_ids == ("x1",)
    assert state.cross_stage_block_ids == ("w1", "u1")
    assert editor.start_cross_link("o1", "upsell") is state


def test_switching_link_kind_drops_stale_placeholder() -> None:
    flow = three_stage_flow()
    editor = _editor(flow)

    editor.start_cross_link("o1", "upsell")
    state = editor.start_cross_link("o1", "downsell")

    assert isinstance(state, PendingOptionSelection)
    assert state.upsell_kind == "downsell"
    assert state.new_block_id == "new_block_2"
    assert state.base_flow is flow
    assert "new_block_1" not in editor.flow.blocks


def test_upsell_then_downsell_to_same_target() -> None:
    sink = RecordingSink()
    editor = _editor(three_stage_flow(), sink)

    editor.start_cross_link("o1", "upsell")
    editor.select_block("u1")
    o1 = editor.flow.blocks["o1"]

    assert o1.upsell_block_id == "u1"
    assert o1.upsell_cross_stage_style == CrossStageStyle(color_id="cyan", shape_id="hexagon")
    assert [option.next_block_id for option in o1.options] == ["u1", None, "x1"]
    assert "new_block_1" not in editor.flow.blocks

    editor.start_cross_link("o1", "downsell")
    editor.select_block("u1")
    o1 = editor.flow.blocks["o1"]

    assert o1.upsell_block_id is None
    assert o1.upsell_cross_stage_style is None
    assert o1.downsell_block_id == "u1"
    assert [option.next_block_id for option in o1.options] == [None, "u1", "x1"]
    assert len(sink.updates) == 2
    assert editor.highlights.is_clean

    with pytest.raises(InvalidSelection):
        editor.start_reconnect("o1", 1)

    editor.clear_cross_link("o1", "downsell")
    assert editor.flow.blocks["o1"].options[1] == Option(text="Downsell", next_block_id=None)
    assert len(sink.updates) == 3


def test_upsell_from_last_stage_allows_only_placeholder(flow_a: FunnelFlow) -> None:
    editor = _editor(flow_a)

    editor.start_cross_link("o1", "upsell")
    state = editor.choose_card_type("product")

    assert isinstance(state, PendingOptionSelection)
    assert state.only_placeholder_selectable is True
    assert state.selectable_block_ids == ("new_block_1",)
    with pytest.raises(InvalidSelection):
        editor.select_block("w1")

    editor.select_block("new_block_1")
    o1 = editor.flow.blocks["o1"]

    assert o1.upsell_block_id == "new_block_1"
    assert o1.upsell_cross_stage_style is None
    assert o1.options == (
        Option(text="Upsell", next_block_id="new_block_1"),
        Option(text="Downsell", next_block_id=None),
    )


def test_delete_needs_confirmation_and_reports_impact() -> None:
    sink = RecordingSink()
    editor = _editor(_two_branch_flow(), sink)

    state = editor.delete_block("o1")

    assert isinstance(state, PendingDelete)
    assert state.impact.affected_options == (OptionRef("w1", 0),)
    assert state.impact.outgoing_targets == ("x1",)
    assert state.impact.projected.orphaned_block_ids == ("x1",)
    assert "o1" in editor.flow.blocks
    assert sink.updates == []

    editor.delete_block("o1")

    assert isinstance(editor.state, Idle)
    assert "o1" not in editor.flow.blocks
    assert editor.flow.blocks["w1"].options[0].next_block_id is None
    assert editor.highlights.orphaned_block_ids == ("x1",)
    assert len(sink.updates) == 1


def test_deleting_only_target_breaks_source() -> None:
    flow = make_flow(
        [stage("s1", "WELCOME", "w1"), stage("s2", "OFFER", "o1", "o2")],
        [block("w1", "o1"), block("o1", resource_id="p1"), block("o2", resource_id="p2")],
    )
    editor = _editor(flow, RecordingSink())

    editor.delete_block("o1")
    editor.confirm_delete()

    assert editor.flow.blocks["w1"].options[0].next_block_id is None
    assert editor.highlights.broken_block_ids == ("w1",)
    assert editor.is_dirty is True


def test_cancel_delete_keeps_flow() -> None:
    flow = _two_branch_flow()
    editor = _editor(flow)

    editor.delete_block("o1")
    with pytest.raises(ActionAlreadyPending):
        editor.delete_block("o2")
    editor.cancel()

    assert editor.flow is flow
    assert isinstance(editor.state, Idle)


def test_delete_impact_lists_pointer_references() -> None:
    flow = make_flow(
        [stage("s1", "WELCOME", "w1"), stage("s2", "OFFER", "o1", "o2")],
        [
            block("w1", "o1", "o2", upsell_block_id="o2"),
            block("o1", referenced_block_id="o2"),
            block("o2"),
        ],
    )

    impact = compute_delete_impact(flow, "o2")

    assert impact.affected_options == (OptionRef("w1", 1),)
    assert impact.affected_cross_links == (
        CrossLinkRef("w1", "upsell"),
        CrossLinkRef("o1", "reference"),
    )
    assert impact.outgoing_targets == ()


def test_failed_persist_keeps_working_copy_until_rollback(
    flow_a: FunnelFlow, caplog: pytest.LogCaptureFixture
) -> None:
    sink = FailingSink()
    editor = _editor(flow_a, sink)
    editor.start_new_option("w1", "More")

    with caplog.at_level(logging.ERROR), pytest.raises(UnresolvedUpstreamError):
        editor.select_block("o1")

    assert "Persisting the committed funnel flow failed" in caplog.text
    assert isinstance(editor.state, Idle)
    assert len(editor.flow.blocks["w1"].options) == 2
    assert editor.persisted_flow is flow_a

    assert editor.rollback() is flow_a
    assert editor.flow is flow_a


def test_retry_persist_after_sink_recovers(flow_a: FunnelFlow) -> None:
    sink = FailingSink()
    editor = _editor(flow_a, sink)
    editor.start_new_option("w1", "More")
    with pytest.raises(UnresolvedUpstreamError):
        editor.select_block("o1")

    sink.fail = False
    editor.retry_persist()

    assert sink.updates == [editor.flow]
    assert editor.persisted_flow is editor.flow


def test_update_meta_refreshes_draft_without_persisting(flow_a: FunnelFlow) -> None:
    sink = RecordingSink()
    editor = _editor(flow_a, sink, meta=FunnelMeta())

    assert editor.draft_status.reason == DRAFT_NO_TRIGGER

    status = editor.update_meta(live_meta())

    assert status.is_draft is False
    assert editor.meta.membership_trigger_type == "any_membership_buy"
    assert sink.updates == []


def test_update_block_goes_through_editor(flow_a: FunnelFlow) -> None:
    sink = RecordingSink()
    editor = _editor(flow_a, sink)

    editor.update_block(flow_a.blocks["w1"].model_copy(update={"message": "Hello"}))

    assert editor.flow.blocks["w1"].message == "[USER], Hello"
    assert len(sink.updates) == 1


def test_send_dm_block_cannot_start_a_connection(flow_a: FunnelFlow) -> None:
    sink = RecordingSink()
    editor = _editor(flow_a, sink)

    editor.set_send_dm_message("We saved a spot for you")

    assert editor.flow.stages[0].is_send_dm
    assert editor.draft_status.is_draft is False
    assert len(sink.updates) == 1
    with pytest.raises(InvalidSelection):
        editor.start_new_option("send_dm", "Reply")
    assert isinstance(editor.state, Idle)


def test_default_id_factory_uses_prefix() -> None:
    first = default_id_factory("new_block_")
    second = default_id_factory("new_block_")

    assert first.startswith("new_block_")
    assert len(first) == len("new_block_") + 8
    assert first != second


def test_last_funnel_block_cannot_be_deleted() -> None:
    editor = _editor(create_minimal_flow())

    with pytest.raises(LastFunnelBlock):
        editor.delete_block("welcome_1")
    assert isinstance(editor.state, Idle)
