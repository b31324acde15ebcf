from __future__ import annotations

from pathlib import Path

import orjson
import pytest
from typer.testing import CliRunner

from adapters.filesystem.flow_repository import FileSystemFlowRepository
from app.cli import app
from domain.models import FunnelFlow
from domain.services.flow_validation import DRAFT_NO_TRIGGER
from tests.helpers.flow_fixtures import three_stage_flow

runner = CliRunner()


def _write(flow: FunnelFlow, path: Path) -> Path:
    FileSystemFlowRepository().save(flow, path)
    return path


def test_new_writes_minimal_flow_and_refuses_overwrite(tmp_path: Path) -> None:
    target = tmp_path / "flow.json"

    result = runner.invoke(app, ["new", str(target)])

    assert result.exit_code == 0, result.output
    flow = FileSystemFlowRepository().load(target)
    assert len(flow.stages) == 1
    assert flow.start_block_id in flow.blocks

    again = runner.invoke(app, ["new", str(target)])
    assert again.exit_code == 1
    assert "Refusing to overwrite" in again.output

    forced = runner.invoke(app, ["new", str(target), "--force"])
    assert forced.exit_code == 0


def test_new_resolves_relative_path_against_flows_dir(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    flows_dir = tmp_path / "flows"
    config = tmp_path / "app.yaml"
    config.write_text(f"storage:\n  flows_dir: {flows_dir}\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)

    result = runner.invoke(app, ["new", "fresh.json", "--config", str(config)])

    assert result.exit_code == 0, result.output
    assert (flows_dir / "fresh.json").exists()


def test_check_reports_live_ready_flow(tmp_path: Path, flow_a: FunnelFlow) -> None:
    path = _write(flow_a, tmp_path / "flow.json")

    result = runner.invoke(
        app, ["check", str(path), "--membership-trigger", "any_membership_buy", "--strict"]
    )

    assert result.exit_code == 0, result.output
    assert "Live-ready" in result.output


def test_check_strict_fails_for_draft(tmp_path: Path, flow_a: FunnelFlow) -> None:
    path = _write(flow_a, tmp_path / "flow.json")

    lenient = runner.invoke(app, ["check", str(path)])
    strict = runner.invoke(app, ["check", str(path), "--strict"])

    assert lenient.exit_code == 0
    assert DRAFT_NO_TRIGGER in lenient.output
    assert strict.exit_code == 1


def test_check_lists_highlights(tmp_path: Path) -> None:
    flow = three_stage_flow()
    dead_end = flow.blocks["u1"].model_copy(update={"options": ()})
    flow = flow.model_copy(update={"blocks": {**flow.blocks, "u1": dead_end}})
    path = _write(flow, tmp_path / "flow.json")

    result = runner.invoke(app, ["check", str(path), "--app-trigger", "app_open"])

    assert result.exit_code == 0
    assert "broken" in result.output
    assert "u1" in result.output


def test_check_rejects_unknown_merchant_type(tmp_path: Path, flow_a: FunnelFlow) -> None:
    path = _write(flow_a, tmp_path / "flow.json")

    result = runner.invoke(app, ["check", str(path), "--merchant-type", "wholesale"])

    assert result.exit_code == 2


def test_check_missing_or_invalid_file(tmp_path: Path) -> None:
    missing = runner.invoke(app, ["check", str(tmp_path / "missing.json")])
    bad = tmp_path / "bad.json"
    bad.write_bytes(b'{"stages": "nope"}')
    invalid = runner.invoke(app, ["check", str(bad)])

    assert missing.exit_code == 1
    assert "File not found" in missing.output
    assert invalid.exit_code == 1


def test_repair_writes_salvaged_flow(tmp_path: Path, flow_a: FunnelFlow) -> None:
    payload = flow_a.to_payload()
    payload["blocks"]["w1"]["options"].append({"text": "Lost", "nextBlockId": "ghost"})
    source = tmp_path / "raw.json"
    source.write_bytes(orjson.dumps(payload))
    output = tmp_path / "fixed.json"

    result = runner.invoke(app, ["repair", str(source), str(output)])

    assert result.exit_code == 0, result.output
    repaired = FileSystemFlowRepository().load(output)
    assert repaired.blocks["w1"].options[-1].next_block_id is None


def test_repair_fails_when_nothing_salvageable(tmp_path: Path) -> None:
    source = tmp_path / "raw.json"
    source.write_bytes(orjson.dumps({"stages": []}))

    result = runner.invoke(app, ["repair", str(source), str(tmp_path / "out.json")])

    assert result.exit_code == 1
    assert not (tmp_path / "out.json").exists()


def test_delete_block_with_confirmation_flag(tmp_path: Path, flow_a: FunnelFlow) -> None:
    path = _write(flow_a, tmp_path / "flow.json")

    result = runner.invoke(app, ["delete-block", str(path), "o1", "--yes"])

    assert result.exit_code == 0, result.output
    assert "option #0 of w1" in result.output
    flow = FileSystemFlowRepository().load(path)
    assert "o1" not in flow.blocks
    assert flow.blocks["w1"].options[0].next_block_id is None


def test_delete_block_declined_leaves_file_untouched(tmp_path: Path, flow_a: FunnelFlow) -> None:
    path = _write(flow_a, tmp_path / "flow.json")
    before = path.read_bytes()

    result = runner.invoke(app, ["delete-block", str(path), "o1"], input="n\n")

    assert result.exit_code == 0
    assert "Cancelled" in result.output
    assert path.read_bytes() == before


def test_delete_unknown_block_fails(tmp_path: Path, flow_a: FunnelFlow) -> None:
    path = _write(flow_a, tmp_path / "flow.json")

    result = runner.invoke(app, ["delete-block", str(path), "ghost", "--yes"])

    assert result.exit_code == 1
    assert "Cannot delete" in result.output
