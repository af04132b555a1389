"""Command objects accepted by ExecutionStateMachine.dispatch.

Every caller interaction is one of these, so a sequence of commands can be
replayed deterministically against a machine with fake collaborators.
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional

from .models import LayerRange


@dataclass(frozen=True)
class RequestPlan:
    blueprint_name: str
    build_id: Optional[str] = None
    up_to_layer: Optional[int] = None


@dataclass(frozen=True)
class ReplanWithRange:
    re_run_from: Optional[int]


@dataclass(frozen=True)
class SetLayerRange:
    layer_range: LayerRange


@dataclass(frozen=True)
class ConfirmExecution:
    dry_run: bool = False


@dataclass(frozen=True)
class CancelExecution:
    pass


@dataclass(frozen=True)
class DismissDialog:
    pass


@dataclass(frozen=True)
class Reset:
    pass


@dataclass(frozen=True)
class InitializeFromManifest:
    artifacts: List[Any] = field(default_factory=list)


@dataclass(frozen=True)
class SetTotalLayers:
    total_layers: int


# regeneration selection (surgical targets)

@dataclass(frozen=True)
class ToggleArtifactSelection:
    artifact_id: str


@dataclass(frozen=True)
class SelectArtifacts:
    artifact_ids: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class DeselectArtifacts:
    artifact_ids: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ClearRegenerationSelection:
    pass


# presentation

@dataclass(frozen=True)
class ShowBottomPanel:
    pass


@dataclass(frozen=True)
class HideBottomPanel:
    pass


@dataclass(frozen=True)
class ClearLogs:
    pass
