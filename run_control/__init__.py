"""
Run Control

Execution planning and run control for layered blueprint generation pipelines.

ARCHITECTURE:
- planner.py: layered, cost-annotated plan computation
- stage_status.py: per-producer statuses folded into per-layer stage statuses
- stage_validator.py: legal start stages and layer/stage range conversion
- log_stream.py: ordered event stream and the consumer that applies it
- state_machine.py: the controller owning all run state (plan, confirm, execute, cancel)
- job_manager.py, plan_runner.py, generation_service.py, api.py: the generation
  service side (plan cache, jobs, layered runner, HTTP + SSE)
- generation_client.py: httpx client for the generation API

DEFAULT BEHAVIOR: nothing runs until a plan has been confirmed.
"""

from run_control.errors import (
    ConnectivityError,
    InvalidTransitionError,
    PlanningError,
    PlanTimeoutError,
    ProducerError,
    RunControlError,
    ValidationError,
)
from run_control.models import (
    BlueprintEdge,
    BlueprintGraph,
    BlueprintNode,
    ExecutionState,
    ExecutionStatus,
    LayerRange,
    NodeKind,
    PlanInfo,
    ProducerStatus,
    StageRange,
    StageStatus,
)
from run_control.planner import PricingCostEstimator, compute_plan
from run_control.stage_status import derive_stage_statuses_from_producer_statuses
from run_control.stage_validator import StageValidationContext, get_valid_start_stages, is_valid_start_stage
from run_control.state_machine import ExecutionStateMachine

__all__ = [
    "BlueprintEdge",
    "BlueprintGraph",
    "BlueprintNode",
    "ConnectivityError",
    "ExecutionState",
    "ExecutionStateMachine",
    "ExecutionStatus",
    "InvalidTransitionError",
    "LayerRange",
    "NodeKind",
    "PlanInfo",
    "PlanningError",
    "PlanTimeoutError",
    "PricingCostEstimator",
    "ProducerError",
    "ProducerStatus",
    "RunControlError",
    "StageRange",
    "StageStatus",
    "StageValidationContext",
    "ValidationError",
    "compute_plan",
    "derive_stage_statuses_from_producer_statuses",
    "get_valid_start_stages",
    "is_valid_start_stage",
]
