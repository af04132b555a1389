from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from .models import (
    BlueprintEdge,
    BlueprintGraph,
    BlueprintNode,
    Job,
    LayerInfo,
    NodeKind,
    PlanInfo,
    ProducerCost,
    SurgicalTarget,
)
from .stage_status import extract_producer_from_artifact_id


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ==========================================================================
# Blueprint graph and manifest
# ==========================================================================

class NodeModel(BaseModel):
    id: str
    kind: NodeKind
    producer: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    produces: List[str] = Field(default_factory=list)


class EdgeModel(BaseModel):
    source: str
    target: str
    condition: Optional[str] = None


class BlueprintGraphModel(BaseModel):
    nodes: List[NodeModel] = Field(default_factory=list)
    edges: List[EdgeModel] = Field(default_factory=list)

    def to_domain(self) -> BlueprintGraph:
        return BlueprintGraph(
            nodes=[BlueprintNode(**n.model_dump()) for n in self.nodes],
            edges=[BlueprintEdge(**e.model_dump()) for e in self.edges],
        )


class ArtifactInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    producer: Optional[str] = None
    status: str = "unknown"
    failure_reason: Optional[str] = Field(default=None, alias="failureReason")
    hash: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    size: Optional[int] = None

    @model_validator(mode="after")
    def fill_producer(self):
        if not self.producer:
            self.producer = extract_producer_from_artifact_id(self.id)
        return self


def artifact_status_map(artifacts: List[ArtifactInfo]) -> Dict[str, str]:
    return {a.id: a.status for a in artifacts}


# ==========================================================================
# Plan wire format
# ==========================================================================

class JobModel(BaseModel):
    job_id: str
    producer: str
    layer_index: int
    inputs: List[str] = Field(default_factory=list)
    produces: List[str] = Field(default_factory=list)
    provider: Optional[str] = None
    model: Optional[str] = None
    estimated_cost: float = 0.0
    min_cost: Optional[float] = None
    max_cost: Optional[float] = None
    has_placeholder: bool = False
    conditional: bool = False


class LayerModel(BaseModel):
    index: int
    jobs: List[JobModel] = Field(default_factory=list)
    cost: float = 0.0
    min_cost: float = 0.0
    max_cost: float = 0.0
    has_placeholders: bool = False
    skipped: bool = False


class ProducerCostModel(BaseModel):
    name: str
    count: int = 0
    cost: float = 0.0
    min_cost: float = 0.0
    max_cost: float = 0.0
    has_placeholders: bool = False
    has_ranges: bool = False


class SurgicalTargetModel(BaseModel):
    target_artifact_id: str
    source_job_id: str


class PlanInfoModel(BaseModel):
    plan_id: str
    layers: int
    total_jobs: int = 0
    total_cost: float = 0.0
    min_cost: float = 0.0
    max_cost: float = 0.0
    has_ranges: bool = False
    has_placeholders: bool = False
    layer_breakdown: List[LayerModel] = Field(default_factory=list)
    cost_by_producer: Dict[str, ProducerCostModel] = Field(default_factory=dict)
    surgical_info: Optional[List[SurgicalTargetModel]] = None
    re_run_from: Optional[int] = None
    missing_providers: List[str] = Field(default_factory=list)
    blueprint: Optional[str] = None
    build_id: Optional[str] = None

    @classmethod
    def from_domain(cls, plan: PlanInfo) -> "PlanInfoModel":
        return cls.model_validate(plan.to_dict())

    def to_domain(self) -> PlanInfo:
        data = self.model_dump()
        return PlanInfo(
            plan_id=data["plan_id"],
            layers=data["layers"],
            total_jobs=data["total_jobs"],
            total_cost=data["total_cost"],
            min_cost=data["min_cost"],
            max_cost=data["max_cost"],
            has_ranges=data["has_ranges"],
            has_placeholders=data["has_placeholders"],
            layer_breakdown=[
                LayerInfo(**{**layer, "jobs": [Job(**j) for j in layer["jobs"]]})
                for layer in data["layer_breakdown"]
            ],
            cost_by_producer={k: ProducerCost(**v) for k, v in data["cost_by_producer"].items()},
            surgical_info=(
                [SurgicalTarget(**s) for s in data["surgical_info"]]
                if data["surgical_info"] is not None else None
            ),
            re_run_from=data["re_run_from"],
            missing_providers=list(data["missing_providers"]),
            blueprint=data["blueprint"],
            build_id=data["build_id"],
        )


class PlanRequest(BaseModel):
    blueprint: str
    build_id: Optional[str] = None
    re_run_from: Optional[int] = Field(default=None, ge=0)
    up_to_layer: Optional[int] = Field(default=None, ge=0)
    # surgical regeneration targets
    artifact_ids: Optional[List[str]] = None

    @field_validator("blueprint")
    @classmethod
    def blueprint_non_empty(cls, v):
        if not v or not v.strip():
            raise ValueError("blueprint must be non-empty")
        return v


class ExecuteRequest(BaseModel):
    plan_id: str
    re_run_from: Optional[int] = Field(default=None, ge=0)
    up_to_layer: Optional[int] = Field(default=None, ge=0)
    dry_run: bool = False
    concurrency: Optional[int] = Field(default=None, ge=1)


class ExecuteResponse(BaseModel):
    job_id: str
    plan_id: str
    status: str
    stream_url: str


class JobStatusResponse(BaseModel):
    job_id: str
    plan_id: str
    blueprint: Optional[str] = None
    status: str
    dry_run: bool = False
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    summary: Optional[Dict[str, Any]] = None


# ==========================================================================
# Execution events
# ==========================================================================

class _Event(BaseModel):
    timestamp: datetime = Field(default_factory=_now)


class PlanReadyEvent(_Event):
    type: Literal["plan-ready"] = "plan-ready"
    plan_id: str
    total_layers: int
    total_jobs: int


class LayerStartEvent(_Event):
    type: Literal["layer-start"] = "layer-start"
    layer_index: int
    job_count: int


class LayerSkippedEvent(_Event):
    type: Literal["layer-skipped"] = "layer-skipped"
    layer_index: int
    reason: Optional[str] = None


class JobStartEvent(_Event):
    type: Literal["job-start"] = "job-start"
    job_id: str
    producer: str
    layer_index: int


class JobCompleteEvent(_Event):
    type: Literal["job-complete"] = "job-complete"
    job_id: str
    producer: str
    layer_index: Optional[int] = None
    # succeeded | failed | skipped; executors may report other producer statuses
    status: str
    error_message: Optional[str] = None


class LayerCompleteEvent(_Event):
    type: Literal["layer-complete"] = "layer-complete"
    layer_index: int
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


class ExecutionSummary(BaseModel):
    layers_run: int = 0
    jobs_succeeded: int = 0
    jobs_failed: int = 0
    jobs_skipped: int = 0
    duration_ms: Optional[int] = None


class ExecutionCompleteEvent(_Event):
    type: Literal["execution-complete"] = "execution-complete"
    status: Literal["succeeded", "failed", "partial"]
    summary: ExecutionSummary = Field(default_factory=ExecutionSummary)


class ExecutionCancelledEvent(_Event):
    type: Literal["execution-cancelled"] = "execution-cancelled"
    message: str = "Execution cancelled"


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    message: str
    code: Optional[str] = None


class InfoEvent(_Event):
    type: Literal["info"] = "info"
    message: str


class StatusEvent(_Event):
    """Job status snapshot sent first on a stream subscription."""
    type: Literal["status"] = "status"
    job_id: str
    status: str


ExecutionEvent = Annotated[
    Union[
        PlanReadyEvent,
        LayerStartEvent,
        LayerSkippedEvent,
        JobStartEvent,
        JobCompleteEvent,
        LayerCompleteEvent,
        ExecutionCompleteEvent,
        ExecutionCancelledEvent,
        ErrorEvent,
        InfoEvent,
        StatusEvent,
    ],
    Field(discriminator="type"),
]

TERMINAL_EVENT_TYPES = frozenset({"execution-complete", "execution-cancelled", "error"})

_event_adapter = TypeAdapter(ExecutionEvent)


def parse_event(data: Union[str, bytes, Dict[str, Any]]):
    """Parse a JSON string or dict into the matching event model."""
    if isinstance(data, (str, bytes)):
        return _event_adapter.validate_json(data)
    return _event_adapter.validate_python(data)
