"""Tests for envelope assembly, persistence and the single-writer guarantee."""
import asyncio
import copy
import json
import time

import pytest

from campaignflow.handoffs import builder as builder_module
from campaignflow.specs.common.enums import STAGE_ORDER, Stage
from campaignflow.specs.common.errors import (
    ConfigurationError,
    HandoffConflictError,
    PathResolutionError,
    PersistenceError,
    SchemaValidationError,
)


@pytest.fixture
def started(context_manager, campaign_request):
    return context_manager.begin(context_manager.create_context(campaign_request))


@pytest.mark.asyncio
async def test_first_envelope_written_to_transition_file(builder, started, context_manager, stage_outputs, campaign_dir):
    produced = stage_outputs["data-collection"]
    context = context_manager.enhance_for_handoff(started, produced)

    envelope = await builder.build(Stage.DATA_COLLECTION, Stage.CONTENT, context, produced)

    path = campaign_dir / "handoffs" / "data-collection-to-content.json"
    assert path.is_file()
    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert on_disk["handoff_info"]["from_stage"] == "data-collection"
    assert on_disk["handoff_info"]["to_stage"] == "content"
    assert on_disk["handoff_info"]["data_version"] == "2.0"
    assert on_disk["workflow_status"]["workflow_phase"] == "content-generation"
    assert on_disk["workflow_status"]["completion_percentage"] == 20
    assert list(on_disk["specialist_outputs"]) == ["data-collection"]
    assert envelope.handoff_info.campaign_path.endswith("/")
    assert envelope.campaign_context.brand == "Kupibilet"


@pytest.mark.asyncio
async def test_outputs_accumulate_unchanged(build_through, started):
    """Envelope N holds outputs 1..N and never rewrites an earlier one."""
    _, envelopes = await build_through(started, Stage.DELIVERY)

    for n, envelope in enumerate(envelopes, start=1):
        expected = [s.value for s in STAGE_ORDER[:n]]
        assert sorted(envelope.specialist_outputs) == sorted(expected)
        assert [s.value for s in envelope.workflow_status.completed_stages] == expected
        for stage in expected:
            first = envelopes[expected.index(stage)].specialist_outputs[stage]
            assert envelope.specialist_outputs[stage].model_dump() == first.model_dump()


@pytest.mark.asyncio
async def test_completion_percentage_for_every_stage(build_through, started):
    _, envelopes = await build_through(started, Stage.DELIVERY)

    assert [e.workflow_status.completion_percentage for e in envelopes] == [20, 40, 60, 80, 100]


@pytest.mark.asyncio
async def test_terminal_envelope(build_through, started, campaign_dir):
    _, envelopes = await build_through(started, Stage.DELIVERY)

    final = envelopes[-1]
    assert final.to_stage is None
    assert final.workflow_status.next_stage is None
    assert final.workflow_status.workflow_phase.value == "delivery-preparation"
    assert (campaign_dir / "handoffs" / "delivery-final.json").is_file()


@pytest.mark.asyncio
async def test_round_trip_through_disk(build_through, started, builder, campaign_dir):
    _, envelopes = await build_through(started, Stage.DESIGN)

    loaded = await builder.load_envelope(campaign_dir, Stage.CONTENT, Stage.DESIGN)
    assert loaded.model_dump() == envelopes[1].model_dump()

    chain = await builder.load_chain(campaign_dir)
    assert [e.transition for e in chain] == [
        "data-collection-to-content",
        "content-to-design",
        "design-to-quality",
    ]


@pytest.mark.asyncio
async def test_existing_envelope_is_not_overwritten(builder, started, context_manager, stage_outputs):
    produced = stage_outputs["data-collection"]
    context = context_manager.enhance_for_handoff(started, produced)
    await builder.build(Stage.DATA_COLLECTION, Stage.CONTENT, context, produced)

    with pytest.raises(HandoffConflictError):
        await builder.build(Stage.DATA_COLLECTION, Stage.CONTENT, context, produced)


@pytest.mark.asyncio
async def test_supersede_renames_previous_envelope(builder, started, context_manager, stage_outputs, campaign_dir):
    produced = stage_outputs["data-collection"]
    context = context_manager.enhance_for_handoff(started, produced)
    first = await builder.build(Stage.DATA_COLLECTION, Stage.CONTENT, context, produced)

    second = await builder.build(Stage.DATA_COLLECTION, Stage.CONTENT, context, produced, supersede=True)

    handoffs = campaign_dir / "handoffs"
    superseded = list(handoffs.glob("data-collection-to-content.superseded-*.json"))
    assert len(superseded) == 1
    old = json.loads(superseded[0].read_text(encoding="utf-8"))
    assert old["handoff_info"]["handoff_id"] == first.handoff_info.handoff_id
    current = json.loads((handoffs / "data-collection-to-content.json").read_text(encoding="utf-8"))
    assert current["handoff_info"]["handoff_id"] == second.handoff_info.handoff_id


@pytest.mark.asyncio
async def test_concurrent_builds_commit_exactly_one_envelope(builder, started, context_manager, stage_outputs, campaign_dir):
    produced = stage_outputs["data-collection"]
    context = context_manager.enhance_for_handoff(started, produced)

    results = await asyncio.gather(
        builder.build(Stage.DATA_COLLECTION, Stage.CONTENT, context, copy.deepcopy(produced)),
        builder.build(Stage.DATA_COLLECTION, Stage.CONTENT, context, copy.deepcopy(produced)),
        return_exceptions=True,
    )

    conflicts = [r for r in results if isinstance(r, HandoffConflictError)]
    built = [r for r in results if not isinstance(r, BaseException)]
    assert len(conflicts) == 1 and len(built) == 1
    files = [p.name for p in (campaign_dir / "handoffs").glob("*.json")]
    assert files == ["data-collection-to-content.json"]


@pytest.mark.asyncio
async def test_cancellation_before_commit_leaves_no_envelope(
    builder, started, context_manager, stage_outputs, campaign_dir, monkeypatch
):
    real_write_temp = builder_module.write_temp

    def slow_write_temp(path, payload, tmp_path=None):
        time.sleep(0.5)
        return tmp_path

    monkeypatch.setattr(builder_module, "write_temp", slow_write_temp)
    produced = stage_outputs["data-collection"]
    context = context_manager.enhance_for_handoff(started, produced)

    task = asyncio.create_task(builder.build(Stage.DATA_COLLECTION, Stage.CONTENT, context, produced))
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    target = campaign_dir / "handoffs" / "data-collection-to-content.json"
    assert not target.exists()

    # the lock was released; a retry goes through
    monkeypatch.setattr(builder_module, "write_temp", real_write_temp)
    await builder.build(Stage.DATA_COLLECTION, Stage.CONTENT, context, produced)
    assert target.is_file()


@pytest.mark.asyncio
async def test_next_build_removes_temp_file_of_a_cancelled_write(
    builder, started, context_manager, stage_outputs, campaign_dir, monkeypatch
):
    real_write_temp = builder_module.write_temp

    def late_write_temp(path, payload, tmp_path=None):
        time.sleep(0.3)
        return real_write_temp(path, payload, tmp_path)

    monkeypatch.setattr(builder_module, "write_temp", late_write_temp)
    produced = stage_outputs["data-collection"]
    context = context_manager.enhance_for_handoff(started, produced)

    task = asyncio.create_task(builder.build(Stage.DATA_COLLECTION, Stage.CONTENT, context, produced))
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    # the worker thread finishes after the cancelled build cleaned up
    await asyncio.sleep(0.6)
    handoffs = campaign_dir / "handoffs"
    assert list(handoffs.glob(".*.tmp.*"))

    monkeypatch.setattr(builder_module, "write_temp", real_write_temp)
    await builder.build(Stage.DATA_COLLECTION, Stage.CONTENT, context, produced)

    assert list(handoffs.glob(".*.tmp.*")) == []
    assert (handoffs / "data-collection-to-content.json").is_file()


@pytest.mark.asyncio
async def test_non_adjacent_transition_is_rejected(builder, started, context_manager, stage_outputs):
    produced = stage_outputs["data-collection"]
    context = context_manager.enhance_for_handoff(started, produced)

    with pytest.raises(ConfigurationError):
        await builder.build(Stage.DATA_COLLECTION, Stage.DESIGN, context, produced)


@pytest.mark.asyncio
async def test_context_must_be_enhanced_first(builder, started, stage_outputs):
    with pytest.raises(ConfigurationError):
        await builder.build(Stage.DATA_COLLECTION, Stage.CONTENT, started, stage_outputs["data-collection"])


@pytest.mark.asyncio
async def test_missing_previous_envelope_is_a_persistence_error(builder, started, context_manager, stage_outputs):
    context = context_manager.enhance_for_handoff(started, stage_outputs["data-collection"])
    context = context_manager.enhance_for_handoff(context, stage_outputs["content"])

    with pytest.raises(PersistenceError):
        await builder.build(Stage.CONTENT, Stage.DESIGN, context, stage_outputs["content"])


@pytest.mark.asyncio
async def test_corrupt_previous_envelope_is_a_persistence_error(
    builder, started, context_manager, stage_outputs, campaign_dir
):
    (campaign_dir / "handoffs" / "data-collection-to-content.json").write_text("{not json", encoding="utf-8")
    context = context_manager.enhance_for_handoff(started, stage_outputs["data-collection"])
    context = context_manager.enhance_for_handoff(context, stage_outputs["content"])

    with pytest.raises(PersistenceError):
        await builder.build(Stage.CONTENT, Stage.DESIGN, context, stage_outputs["content"])


@pytest.mark.asyncio
async def test_invalid_stage_output_raises_schema_error(builder, started, context_manager, campaign_dir):
    produced = {"files": [{"path": ""}]}
    context = context_manager.enhance_for_handoff(started, produced)

    with pytest.raises(SchemaValidationError) as excinfo:
        await builder.build(Stage.DATA_COLLECTION, Stage.CONTENT, context, produced)

    assert excinfo.value.transition == "data-collection-to-content"
    assert excinfo.value.result.schemaErrors
    assert not list((campaign_dir / "handoffs").glob("*.json"))


@pytest.mark.asyncio
async def test_missing_handoffs_directory(builder, context_manager, campaign_request, tmp_path):
    campaign_request["campaign"]["storagePath"] = str(tmp_path / "unprepared")
    (tmp_path / "unprepared").mkdir()
    context = context_manager.begin(context_manager.create_context(campaign_request))
    context = context_manager.enhance_for_handoff(context, {})

    with pytest.raises(PathResolutionError):
        await builder.build(Stage.DATA_COLLECTION, Stage.CONTENT, context, {})
