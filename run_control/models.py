"""
Run Control: Data Models

Structural contracts shared by the planner, the stage validator, the stream
consumer and the execution state machine.

- The blueprint graph is consumed read-only.
- A PlanInfo is produced whole by the planner and replaced whole; nothing
  patches one in place.
- ExecutionState is the single mutable aggregate and belongs to exactly one
  ExecutionStateMachine. Everything else sees deep-copied snapshots.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4


class NodeKind(str, Enum):
    INPUT = "input"
    PRODUCER = "producer"
    OUTPUT = "output"


class StageStatus(str, Enum):
    """Derived per-layer status. Never authoritative on its own."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_RUN = "not-run"


class ProducerStatus(str, Enum):
    """Authoritative per-producer status, fed by a live stream or a manifest."""
    SUCCESS = "success"
    ERROR = "error"
    RUNNING = "running"
    PENDING = "pending"
    SKIPPED = "skipped"
    NOT_RUN_YET = "not-run-yet"


class ExecutionStatus(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    CONFIRMING = "confirming"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class LogEntryType(str, Enum):
    LAYER_START = "layer-start"
    LAYER_COMPLETE = "layer-complete"
    LAYER_SKIPPED = "layer-skipped"
    JOB_START = "job-start"
    JOB_COMPLETE = "job-complete"
    ERROR = "error"
    INFO = "info"


# ==========================================================================
# Blueprint graph
# ==========================================================================

@dataclass
class BlueprintNode:
    id: str
    kind: NodeKind
    # several producer nodes may share one producer name (looped instances)
    producer: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    produces: List[str] = field(default_factory=list)

    @property
    def producer_name(self) -> str:
        return self.producer or self.id


@dataclass
class BlueprintEdge:
    source: str
    target: str
    condition: Optional[str] = None

    @property
    def conditional(self) -> bool:
        return self.condition is not None


@dataclass
class BlueprintGraph:
    nodes: List[BlueprintNode] = field(default_factory=list)
    edges: List[BlueprintEdge] = field(default_factory=list)

    def node_map(self) -> Dict[str, BlueprintNode]:
        return {n.id: n for n in self.nodes}

    def producers(self) -> List[BlueprintNode]:
        return [n for n in self.nodes if n.kind == NodeKind.PRODUCER]


# ==========================================================================
# Plan
# ==========================================================================

@dataclass
class CostEstimate:
    cost: float
    is_placeholder: bool = False
    min_cost: Optional[float] = None
    max_cost: Optional[float] = None
    # the estimator has no pricing for this producer at all
    missing_pricing: bool = False
    note: Optional[str] = None

    @property
    def has_range(self) -> bool:
        return self.min_cost is not None and self.max_cost is not None


@dataclass
class Job:
    job_id: str
    producer: str
    layer_index: int
    inputs: List[str] = field(default_factory=list)
    produces: List[str] = field(default_factory=list)
    provider: Optional[str] = None
    model: Optional[str] = None
    estimated_cost: float = 0.0
    min_cost: Optional[float] = None
    max_cost: Optional[float] = None
    has_placeholder: bool = False
    conditional: bool = False

    @property
    def has_range(self) -> bool:
        return self.min_cost is not None and self.max_cost is not None

    @property
    def low(self) -> float:
        return self.min_cost if self.min_cost is not None else self.estimated_cost

    @property
    def high(self) -> float:
        return self.max_cost if self.max_cost is not None else self.estimated_cost


@dataclass
class LayerInfo:
    index: int
    jobs: List[Job] = field(default_factory=list)
    cost: float = 0.0
    min_cost: float = 0.0
    max_cost: float = 0.0
    has_placeholders: bool = False
    # below reRunFrom: artifacts reused, no jobs scheduled
    skipped: bool = False

    @property
    def job_count(self) -> int:
        return len(self.jobs)

    def producers(self) -> Set[str]:
        return {j.producer for j in self.jobs}


@dataclass
class ProducerCost:
    name: str
    count: int = 0
    cost: float = 0.0
    min_cost: float = 0.0
    max_cost: float = 0.0
    has_placeholders: bool = False
    has_ranges: bool = False


@dataclass
class SurgicalTarget:
    target_artifact_id: str
    source_job_id: str


@dataclass
class PlanInfo:
    plan_id: str
    layers: int
    total_jobs: int = 0
    total_cost: float = 0.0
    min_cost: float = 0.0
    max_cost: float = 0.0
    has_ranges: bool = False
    has_placeholders: bool = False
    layer_breakdown: List[LayerInfo] = field(default_factory=list)
    cost_by_producer: Dict[str, ProducerCost] = field(default_factory=dict)
    surgical_info: Optional[List[SurgicalTarget]] = None
    re_run_from: Optional[int] = None
    missing_providers: List[str] = field(default_factory=list)
    blueprint: Optional[str] = None
    build_id: Optional[str] = None

    def producers(self) -> Set[str]:
        out: Set[str] = set()
        for layer in self.layer_breakdown:
            out |= layer.producers()
        return out

    def to_dict(self) -> Dict[str, Any]:
        return to_plain(self)


@dataclass
class LayerRange:
    """None means an open end: 0 for re_run_from, the last layer for up_to_layer."""
    re_run_from: Optional[int] = None
    up_to_layer: Optional[int] = None


@dataclass(frozen=True)
class StageRange:
    start_stage: int
    end_stage: int


# ==========================================================================
# Run state
# ==========================================================================

@dataclass(frozen=True)
class ExecutionLogEntry:
    type: LogEntryType
    message: str
    id: str = field(default_factory=lambda: uuid4().hex)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: Optional[str] = None
    error_details: Optional[str] = None
    layer_index: Optional[int] = None
    job_id: Optional[str] = None
    producer: Optional[str] = None


@dataclass
class ExecutionState:
    status: ExecutionStatus = ExecutionStatus.IDLE
    plan_info: Optional[PlanInfo] = None
    layer_range: LayerRange = field(default_factory=LayerRange)
    producer_statuses: Dict[str, ProducerStatus] = field(default_factory=dict)
    execution_logs: List[ExecutionLogEntry] = field(default_factory=list)
    error: Optional[str] = None
    is_stopping: bool = False
    is_replanning: bool = False
    total_layers: Optional[int] = None
    selected_for_regeneration: Set[str] = field(default_factory=set)
    bottom_panel_visible: bool = False
    blueprint_name: Optional[str] = None
    build_id: Optional[str] = None
    run_id: Optional[str] = None
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return to_plain(self)


def to_plain(obj: Any) -> Any:
    """Convert dataclasses, enums, sets and datetimes into JSON-ready values."""
    if hasattr(obj, "__dataclass_fields__"):
        return {k: to_plain(v) for k, v in asdict(obj).items()}
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {str(to_plain(k)): to_plain(v) for k, v in obj.items()}
    if isinstance(obj, (set, frozenset)):
        return sorted(to_plain(v) for v in obj)
    if isinstance(obj, (list, tuple)):
        return [to_plain(v) for v in obj]
    return obj
