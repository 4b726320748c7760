"""Tests for AssistedBatchBlock and node id extraction."""

from dataclasses import dataclass

import pytest

from migration_blocks.engine.assistant import AssistantCli
from migration_blocks.engine.blocks_assisted import (
    BATCH_SCRATCH_VARIABLES,
    AssistedBatchBlock,
    extract_node_id,
    to_node_list,
)

# Fails for any prompt mentioning "bad", answers otherwise
SELECTIVE = (
    'input=$(cat)\n'
    'case "$input" in *bad*) echo "cannot convert" >&2; exit 1;; esac\n'
    'echo "converted: $input"'
)


def batch(cli, **overrides) -> AssistedBatchBlock:
    config = {
        "name": "convert",
        "input_nodes_variable": "beans",
        "prompt_template": "Convert ${current_node_id} (${current_index}/${total_nodes})",
        "working_directory_template": "${project_root}",
        "assistant": cli,
    }
    config.update(overrides)
    return AssistedBatchBlock(config)


@dataclass
class ClassNode:
    node_id: str


class AccessorNode:
    def __init__(self, value: str):
        self._value = value

    def get_id(self) -> str:
        return self._value


class TestExtractNodeId:
    """Test suite for node id derivation."""

    def test_none(self):
        assert extract_node_id(None) == "null"

    def test_mapping_keys_in_order(self):
        assert extract_node_id({"id": "a", "nodeId": "b"}) == "a"
        assert extract_node_id({"nodeId": "b"}) == "b"
        assert extract_node_id({"node_id": "c"}) == "c"

    def test_attributes_and_accessors(self):
        assert extract_node_id(ClassNode("com.shop.OrderBean")) == "com.shop.OrderBean"
        assert extract_node_id(AccessorNode("x1")) == "x1"

    def test_fallback_to_text(self):
        assert extract_node_id("com.shop.Cart") == "com.shop.Cart"
        assert extract_node_id(42) == "42"

    def test_never_raises(self):
        class Broken:
            def get_id(self):
                raise RuntimeError("no id")

            def __str__(self):
                raise RuntimeError("no text")

        assert extract_node_id(Broken()) == "<Broken>"


class TestToNodeList:
    """Test suite for node list normalization."""

    def test_sequences(self):
        assert to_node_list(["a", "b"]) == ["a", "b"]
        assert to_node_list(("a", "b")) == ["a", "b"]
        assert sorted(to_node_list({"a", "b"})) == ["a", "b"]

    def test_bare_values(self):
        assert to_node_list("single") == ["single"]
        assert to_node_list({"id": "n"}) == [{"id": "n"}]
        assert to_node_list(7) == [7]


class TestAssistedBatchBlock:
    """Test suite for AssistedBatchBlock."""

    @pytest.mark.asyncio
    async def test_all_nodes_succeed(self, context, fake_assistant):
        context.set("beans", [{"id": "A"}, {"id": "B"}, {"id": "C"}])
        outcome = await batch(fake_assistant(SELECTIVE)).execute(context)

        assert outcome.success is True
        variables = outcome.output_variables
        assert variables["processed_node_ids"] == ["A", "B", "C"]
        assert variables["failed_node_ids"] == []
        assert variables["node_count"] == 3
        assert variables["success_count"] == 3
        assert variables["failure_count"] == 0
        assert "error_messages" not in variables
        assert outcome.warnings == []

        transcripts = list((context.project_root / ".analysis" / "q" / "conversations").iterdir())
        assert len(transcripts) == 3
        assert any(t.name.endswith("_convert_node_0.md") for t in transcripts)

    @pytest.mark.asyncio
    async def test_partial_failure_is_success(self, context, fake_assistant):
        context.set("beans", ["good1", "bad2", "good3"])
        outcome = await batch(
            fake_assistant(SELECTIVE), prompt_template="Convert ${current_node_id}"
        ).execute(context)

        assert outcome.success is True
        variables = outcome.output_variables
        assert variables["processed_node_ids"] == ["good1", "good3"]
        assert variables["failed_node_ids"] == ["bad2"]
        assert variables["success_count"] + variables["failure_count"] == variables["node_count"]
        assert "cannot convert" in variables["error_messages"]["bad2"]
        assert "1 out of 3 nodes failed processing" in outcome.warnings

    @pytest.mark.asyncio
    async def test_all_nodes_fail(self, context, fake_assistant):
        context.set("beans", ["bad1", "bad2"])
        outcome = await batch(
            fake_assistant(SELECTIVE), prompt_template="Convert ${current_node_id}"
        ).execute(context)

        assert outcome.success is False
        assert outcome.message == "All nodes failed processing"
        assert outcome.output_variables["failure_count"] == 2
        assert set(outcome.output_variables["error_messages"]) == {"bad1", "bad2"}

    @pytest.mark.asyncio
    async def test_scratch_variables_removed(self, context, fake_assistant):
        context.set("beans", ["good", "bad"])
        await batch(
            fake_assistant(SELECTIVE), prompt_template="Convert ${current_node_id}"
        ).execute(context)

        for name in BATCH_SCRATCH_VARIABLES:
            assert not context.has(name)

    @pytest.mark.asyncio
    async def test_scratch_variables_removed_after_template_error(self, context, fake_assistant):
        context.set("beans", ["n1"])
        outcome = await batch(
            fake_assistant(SELECTIVE), working_directory_template="${undefined_dir}"
        ).execute(context)

        assert outcome.success is False
        assert "undefined_dir" in outcome.output_variables["error_messages"]["n1"]
        for name in BATCH_SCRATCH_VARIABLES:
            assert not context.has(name)

    @pytest.mark.asyncio
    async def test_max_nodes_limits_processing(self, context, fake_assistant):
        context.set("beans", ["n1", "n2", "n3", "n4"])
        outcome = await batch(fake_assistant(SELECTIVE), max_nodes=2).execute(context)

        assert outcome.output_variables["node_count"] == 2
        assert outcome.output_variables["processed_node_ids"] == ["n1", "n2"]
        assert "Limited to 2 nodes out of 4 total" in outcome.warnings

    @pytest.mark.asyncio
    async def test_non_positive_max_nodes_is_unlimited(self, context, fake_assistant):
        context.set("beans", ["n1", "n2", "n3"])
        outcome = await batch(fake_assistant(SELECTIVE), max_nodes=0).execute(context)
        assert outcome.output_variables["node_count"] == 3

    @pytest.mark.asyncio
    async def test_empty_list_succeeds_without_work(self, context, fake_assistant):
        context.set("beans", [])
        outcome = await batch(fake_assistant("exit 99")).execute(context)

        assert outcome.success is True
        assert outcome.message == "No nodes to process"
        assert outcome.warnings == ["Nodes list was empty"]

    @pytest.mark.asyncio
    async def test_missing_variable_fails(self, context, fake_assistant):
        outcome = await batch(fake_assistant(SELECTIVE)).execute(context)

        assert outcome.success is False
        assert outcome.message == "Input nodes variable not found in context"
        assert "beans" in outcome.error_detail

    @pytest.mark.asyncio
    async def test_variable_name_resolved_indirectly(self, context, fake_assistant):
        context.set("collection_var", "stateless_beans")
        context.set("stateless_beans", ["S1"])
        outcome = await batch(
            fake_assistant(SELECTIVE), input_nodes_variable="${collection_var}"
        ).execute(context)

        assert outcome.success is True
        assert outcome.output_variables["processed_node_ids"] == ["S1"]

    @pytest.mark.asyncio
    async def test_single_value_treated_as_one_node(self, context, fake_assistant):
        context.set("beans", "OnlyBean")
        outcome = await batch(fake_assistant(SELECTIVE)).execute(context)
        assert outcome.output_variables["processed_node_ids"] == ["OnlyBean"]

    @pytest.mark.asyncio
    async def test_working_directory_routed_per_node(
        self, context, fake_assistant, project_root
    ):
        for name in ("alpha", "beta"):
            (project_root / name).mkdir()
        context.set("modules", [{"id": "alpha"}, {"id": "beta"}])
        block = batch(
            fake_assistant("cat > /dev/null; pwd"),
            input_nodes_variable="modules",
            working_directory_template="${project_root}/${current_node_id}",
        )
        outcome = await block.execute(context)
        assert outcome.output_variables["processed_node_ids"] == ["alpha", "beta"]

        transcripts = sorted(
            (project_root / ".analysis" / "q" / "conversations").glob("*.md")
        )
        contents = " ".join(t.read_text(encoding="utf-8") for t in transcripts)
        assert str(context.project_root / "alpha") in contents
        assert str(context.project_root / "beta") in contents

    @pytest.mark.asyncio
    async def test_resolved_working_directory_not_substituted_twice(
        self, context, fake_assistant, project_root
    ):
        (project_root / "mod${x}").mkdir()
        context.set("modules", [{"id": "mod${x}"}])
        block = batch(
            fake_assistant("cat > /dev/null; pwd"),
            input_nodes_variable="modules",
            working_directory_template="${project_root}/${current_node_id}",
        )
        outcome = await block.execute(context)

        assert outcome.success is True, outcome.output_variables.get("error_messages")
        assert outcome.output_variables["processed_node_ids"] == ["mod${x}"]

    def test_required_variables(self):
        block = AssistedBatchBlock(
            {
                "name": "b",
                "input_nodes_variable": "${collection_var}",
                "prompt_template": "Fix ${current_node_id} using ${style_guide}",
                "working_directory_template": "${project_root}",
            }
        )
        assert block.required_variables() == ["style_guide", "project_root", "collection_var"]
        assert block.config.timeout_seconds == 600
        assert block.config.progress_message == "Processing node"

    def test_required_variables_skip_dotted_scratch_references(self):
        block = batch(
            AssistantCli(),
            prompt_template="Port ${current_node.name} (${current_node.layer}) to ${target}",
        )
        assert block.required_variables() == ["target", "project_root", "beans"]
