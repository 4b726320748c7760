"""Tests for PlanRunner: ordering, variable flow between blocks, failure handling."""

import pytest

from migration_blocks.engine.blocks_core import CommandBlock
from migration_blocks.engine.execution_context import ExecutionContext
from migration_blocks.engine.loader import MigrationPlan, load_plan_from_yaml
from migration_blocks.engine.plan_runner import PlanRunner


def command(name: str, cmd: str, **extra) -> CommandBlock:
    return CommandBlock({"name": name, "command": cmd, **extra})


class TestPlanRunner:
    """Test suite for PlanRunner."""

    @pytest.mark.asyncio
    async def test_outputs_flow_to_later_blocks(self, context):
        plan = MigrationPlan(
            name="flow",
            blocks=[
                command("version", "echo 11", output_variable="java_version"),
                command("report", "echo target=${java_version}"),
            ],
        )
        result = await PlanRunner().run(plan, context)

        assert result.success is True
        assert [run.block_name for run in result.runs] == ["version", "report"]
        assert context.get("java_version") == "11"
        assert context.get("output") == "target=11"

    @pytest.mark.asyncio
    async def test_plan_variables_seeded_and_resolved(self, context, project_root):
        plan = MigrationPlan(
            name="vars",
            blocks=[command("show", "echo ${out_dir}")],
            variables={"out_dir": "${project_root}/migrated"},
        )
        await PlanRunner().run(plan, context)
        assert context.get("output") == f"{project_root.resolve()}/migrated"

    @pytest.mark.asyncio
    async def test_stops_after_failure(self, context):
        plan = MigrationPlan(
            name="stop",
            blocks=[command("ok", "true"), command("broken", "exit 2"), command("never", "true")],
        )
        result = await PlanRunner().run(plan, context)

        assert result.success is False
        assert result.stopped_early is True
        assert [run.block_name for run in result.runs] == ["ok", "broken"]
        assert [run.block_name for run in result.failed] == ["broken"]

    @pytest.mark.asyncio
    async def test_keep_going_runs_everything(self, context):
        plan = MigrationPlan(
            name="all",
            blocks=[command("broken", "exit 2"), command("after", "echo still here")],
        )
        result = await PlanRunner(stop_on_failure=False).run(plan, context)

        assert result.success is False
        assert result.stopped_early is False
        assert len(result.runs) == 2
        assert result.runs[1].outcome.success is True

    @pytest.mark.asyncio
    async def test_failed_block_outputs_not_merged(self, context):
        plan = MigrationPlan(
            name="partial",
            blocks=[command("fails", "echo half-done; exit 1", output_variable="result")],
        )
        await PlanRunner().run(plan, context)
        assert not context.has("result")
        assert not context.has("exit_code")

    @pytest.mark.asyncio
    async def test_last_block_failure_is_not_early_stop(self, context):
        plan = MigrationPlan(name="tail", blocks=[command("ok", "true"), command("bad", "false")])
        result = await PlanRunner().run(plan, context)
        assert result.stopped_early is False
        assert result.success is False

    @pytest.mark.asyncio
    async def test_invalid_block_skipped_with_failure(self, context):
        plan = MigrationPlan(name="invalid", blocks=[command("blank", "   ")])
        result = await PlanRunner().run(plan, context)

        outcome = result.runs[0].outcome
        assert outcome.success is False
        assert outcome.message == "Block validation failed: blank"
        assert outcome.error_detail == "Command cannot be empty"

    @pytest.mark.asyncio
    async def test_dry_run_executes_nothing(self, project_root):
        context = ExecutionContext(project_root, dry_run=True)
        marker = project_root / "touched"
        plan = MigrationPlan(name="dry", blocks=[command("touch", f"touch {marker}")])

        result = await PlanRunner().run(plan, context)

        assert result.success is True
        assert result.runs[0].outcome.message == "Dry run: touch skipped"
        assert not marker.exists()

    @pytest.mark.asyncio
    async def test_loaded_plan_runs_end_to_end(self, context, fake_assistant):
        cli = fake_assistant('input=$(cat); echo "ok: $input"')
        plan = load_plan_from_yaml(
            f"""
name: e2e
blocks:
  - type: COMMAND
    name: discover
    command: printf 'A\\nB\\n'
  - type: AI_ASSISTED_BATCH
    name: convert
    input-nodes: output_lines
    prompt-template: Convert ${{current_node_id}}
    working-directory-template: ${{project_root}}
    assistant:
      label: Fake CLI
      executable: {cli.executable}
      args: []
"""
        ).unwrap()

        result = await PlanRunner().run(plan, context)

        assert result.success is True, [r.outcome.error_detail for r in result.failed]
        assert context.get("processed_node_ids") == ["A", "B"]
        assert context.get("success_count") == 2
