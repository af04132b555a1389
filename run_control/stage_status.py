import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .models import PlanInfo, ProducerStatus, StageStatus

logger = logging.getLogger(__name__)

# Artifact:<Producer>.<Output>[<index>]
_ARTIFACT_ID_RE = re.compile(r"^Artifact:([^.]+)\.")

_ARTIFACT_TO_PRODUCER_STATUS = {
    "succeeded": ProducerStatus.SUCCESS,
    "failed": ProducerStatus.ERROR,
    "skipped": ProducerStatus.SKIPPED,
}

# lower value wins when one producer has several artifacts
_STATUS_PRIORITY = {
    ProducerStatus.ERROR: 0,
    ProducerStatus.NOT_RUN_YET: 1,
    ProducerStatus.SKIPPED: 2,
    ProducerStatus.PENDING: 3,
    ProducerStatus.RUNNING: 4,
    ProducerStatus.SUCCESS: 5,
}


def extract_producer_from_artifact_id(artifact_id: str) -> Optional[str]:
    m = _ARTIFACT_ID_RE.match(artifact_id or "")
    return m.group(1) if m else None


def artifact_status_to_producer_status(status: Optional[str]) -> ProducerStatus:
    return _ARTIFACT_TO_PRODUCER_STATUS.get((status or "").lower(), ProducerStatus.NOT_RUN_YET)


def worst_status(a: ProducerStatus, b: ProducerStatus) -> ProducerStatus:
    return a if _STATUS_PRIORITY[a] <= _STATUS_PRIORITY[b] else b


def _field(artifact: Any, name: str) -> Any:
    if isinstance(artifact, Mapping):
        return artifact.get(name)
    return getattr(artifact, name, None)


def map_artifacts_to_producer_statuses(artifacts: Iterable[Any]) -> Dict[str, ProducerStatus]:
    """Fold per-artifact manifest records into per-producer statuses.

    Accepts ArtifactInfo models or plain dicts. If any artifact of a producer
    failed, the producer is ``error`` even when its other artifacts succeeded.
    """
    statuses: Dict[str, ProducerStatus] = {}
    for artifact in artifacts:
        producer = _field(artifact, "producer") or extract_producer_from_artifact_id(_field(artifact, "id") or "")
        if not producer:
            logger.debug("ignoring artifact without a resolvable producer: %s", _field(artifact, "id"))
            continue
        status = artifact_status_to_producer_status(_field(artifact, "status"))
        current = statuses.get(producer)
        statuses[producer] = status if current is None else worst_status(current, status)
    return statuses


def derive_stage_statuses_from_producer_statuses(
    plan_info: PlanInfo,
    producer_statuses: Mapping[str, ProducerStatus],
) -> Optional[List[StageStatus]]:
    """Per-layer status, or None for a clean run with no producer history."""
    if not producer_statuses:
        return None
    out: List[StageStatus] = []
    for layer in plan_info.layer_breakdown:
        names = layer.producers()
        if not names:
            out.append(StageStatus.SUCCEEDED)
            continue
        seen = [producer_statuses.get(n) for n in names]
        if any(s == ProducerStatus.ERROR for s in seen):
            out.append(StageStatus.FAILED)
        elif all(s == ProducerStatus.SUCCESS for s in seen):
            out.append(StageStatus.SUCCEEDED)
        else:
            # partially completed layers are never trusted as reusable
            out.append(StageStatus.NOT_RUN)
    return out
