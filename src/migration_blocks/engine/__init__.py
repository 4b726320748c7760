"""Block execution engine: context, blocks, hosted model client, plan runner."""

from .assistant import AssistantCli, AssistantKind
from .block import Block, BlockConfig, BlockOutcome, BlockOutcomeBuilder
from .blocks_assisted import AssistedBatchBlock, AssistedBlock, extract_node_id
from .blocks_core import CommandBlock
from .blocks_hosted import HostedPromptBatchBlock, HostedPromptBlock, ResponseFormat
from .exceptions import (
    BlockValidationError,
    EmptyOutputError,
    EmptyOutputWithStderrError,
    FatalUpstreamError,
    MigrationBlockError,
    ProcessExitError,
    ProcessTimeoutError,
    RateLimitExceededError,
    RetryableUpstreamError,
    TemplateResolutionError,
    UpstreamError,
)
from .execution_context import ExecutionContext
from .hosted_client import HostedModelClient, HostedModelResponse, ModelFamily, RateLimiter
from .hosted_config import HostedConfigLoader, HostedModelConfig
from .load_result import LoadResult
from .loader import MigrationPlan, load_plan_from_file, load_plan_from_yaml
from .plan_runner import PlanResult, PlanRunner
from .registry import BlockRegistry, create_default_registry

__all__ = [
    "AssistantCli",
    "AssistantKind",
    "AssistedBatchBlock",
    "AssistedBlock",
    "Block",
    "BlockConfig",
    "BlockOutcome",
    "BlockOutcomeBuilder",
    "BlockRegistry",
    "BlockValidationError",
    "CommandBlock",
    "EmptyOutputError",
    "EmptyOutputWithStderrError",
    "ExecutionContext",
    "FatalUpstreamError",
    "HostedConfigLoader",
    "HostedModelClient",
    "HostedModelConfig",
    "HostedModelResponse",
    "HostedPromptBatchBlock",
    "HostedPromptBlock",
    "LoadResult",
    "MigrationBlockError",
    "MigrationPlan",
    "ModelFamily",
    "PlanResult",
    "PlanRunner",
    "ProcessExitError",
    "ProcessTimeoutError",
    "RateLimitExceededError",
    "RateLimiter",
    "ResponseFormat",
    "RetryableUpstreamError",
    "TemplateResolutionError",
    "UpstreamError",
    "create_default_registry",
    "extract_node_id",
    "load_plan_from_file",
    "load_plan_from_yaml",
]
