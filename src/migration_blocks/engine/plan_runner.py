"""
Sequential plan runner.

Runs the blocks of a MigrationPlan one at a time against one shared
ExecutionContext. The runner, not the blocks, merges each successful block's
output variables into the context, so a failed block never leaves partial
outputs behind.
"""

import logging
from dataclasses import dataclass, field

from .block import Block, BlockOutcome
from .execution_context import ExecutionContext
from .loader import MigrationPlan

logger = logging.getLogger(__name__)


@dataclass
class BlockRun:
    """One executed (or skipped) block and its outcome."""

    block_name: str
    block_type: str
    outcome: BlockOutcome


@dataclass
class PlanResult:
    """Outcome of a plan run."""

    plan_name: str
    runs: list[BlockRun] = field(default_factory=list)
    stopped_early: bool = False

    @property
    def success(self) -> bool:
        return not self.stopped_early and all(run.outcome.success for run in self.runs)

    @property
    def failed(self) -> list[BlockRun]:
        return [run for run in self.runs if not run.outcome.success]


class PlanRunner:
    """
    Executes plans block by block.

    Example:
        plan = load_plan_from_file("plan.yml").unwrap()
        context = ExecutionContext(Path("/work/legacy-app"))
        result = await PlanRunner().run(plan, context)
    """

    def __init__(self, stop_on_failure: bool = True):
        self.stop_on_failure = stop_on_failure

    async def run(self, plan: MigrationPlan, context: ExecutionContext) -> PlanResult:
        """Seed plan variables, then run every block in order."""
        result = PlanResult(plan_name=plan.name)
        context.set_many(plan.variables, resolve_templates=True)
        logger.info(f"Running plan '{plan.name}' ({len(plan.blocks)} blocks)")

        for position, block in enumerate(plan.blocks, start=1):
            logger.info(f"[{position}/{len(plan.blocks)}] {block.type_name}: {block.name}")
            outcome = await self.run_block(block, context)
            result.runs.append(BlockRun(block.name, block.type_name, outcome))

            for warning in outcome.warnings:
                logger.warning(f"{block.name}: {warning}")
            if outcome.success:
                logger.info(f"{block.name}: {outcome.message} ({outcome.elapsed_ms} ms)")
                continue

            logger.error(f"{block.name}: {outcome.message}")
            if outcome.error_detail:
                logger.error(f"{block.name}: {outcome.error_detail}")
            if self.stop_on_failure and position < len(plan.blocks):
                logger.error(f"Stopping plan '{plan.name}' after failed block '{block.name}'")
                result.stopped_early = True
                break

        status = "succeeded" if result.success else "failed"
        logger.info(f"Plan '{plan.name}' {status}: {len(result.runs)} blocks run")
        return result

    async def run_block(self, block: Block, context: ExecutionContext) -> BlockOutcome:
        """Validate and execute one block, merging its outputs on success."""
        if not block.validate():
            return BlockOutcome.failure(
                f"Block validation failed: {block.name}",
                "; ".join(block.validation_errors()),
            )

        if context.dry_run:
            return BlockOutcome.ok(f"Dry run: {block.name} skipped")

        outcome = await block.execute(context)
        if outcome.success:
            context.set_many(outcome.output_variables)
        return outcome
