"""
Execution State Machine

Owns the single ExecutionState of a blueprint session and drives it through

    idle -> planning -> confirming -> executing -> completed | failed | cancelled

Every mutation happens inside this class, either as a reaction to a command
delivered through ``dispatch`` or to a resolved plan request or stream event.
Listeners and callers only ever see deep-copied snapshots.

Only plan requests, replans and confirmation suspend. A plan response that
arrives after a newer plan request, a dismiss, a reset or a cancel is
discarded: each of those bumps a monotonically increasing request token and a
response is applied only if its token is still current.
"""

import asyncio
import copy
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Set

from . import metrics
from .commands import (
    CancelExecution,
    ClearLogs,
    ClearRegenerationSelection,
    ConfirmExecution,
    DeselectArtifacts,
    DismissDialog,
    HideBottomPanel,
    InitializeFromManifest,
    ReplanWithRange,
    RequestPlan,
    Reset,
    SelectArtifacts,
    SetLayerRange,
    SetTotalLayers,
    ShowBottomPanel,
    ToggleArtifactSelection,
)
from .config import get_settings
from .errors import (
    ConnectivityError,
    InvalidTransitionError,
    PlanningError,
    PlanTimeoutError,
    ValidationError,
)
from .log_stream import LogStreamConsumer, StreamOutcome
from .models import (
    ExecutionLogEntry,
    ExecutionState,
    ExecutionStatus,
    LayerRange,
    LogEntryType,
    PlanInfo,
    ProducerStatus,
    StageStatus,
)
from .schemas import ExecuteRequest, PlanRequest
from .stage_status import derive_stage_statuses_from_producer_statuses, map_artifacts_to_producer_statuses
from .stage_validator import (
    RangeTotals,
    StageValidationContext,
    compute_range_totals,
    describe_stage_range,
    get_valid_start_stages,
    is_valid_start_stage,
    layer_range_to_stage_range,
    resolve_layer_range,
    validate_stage_range,
)

logger = logging.getLogger(__name__)

S = ExecutionStatus
_TERMINAL = (S.COMPLETED, S.FAILED, S.CANCELLED)


class PlanService(Protocol):
    async def create_plan(self, request: PlanRequest) -> PlanInfo:
        ...


class Executor(Protocol):
    async def start_execution(self, request: ExecuteRequest) -> str:
        ...

    def stream_events(self, run_id: str) -> AsyncIterator[Any]:
        ...

    async def cancel(self, run_id: str) -> None:
        ...


Listener = Callable[[ExecutionState], None]


class _StateSink:
    """Gives the stream consumer write access to logs and producer statuses only."""

    def __init__(self, machine: "ExecutionStateMachine"):
        self._machine = machine

    def append_log(self, entry: ExecutionLogEntry) -> None:
        self._machine._append_log(entry)

    def set_producer_status(self, producer: str, status: ProducerStatus) -> None:
        self._machine._set_producer_status(producer, status)

    def is_stopping(self) -> bool:
        return self._machine._state.is_stopping


class ExecutionStateMachine:
    def __init__(
        self,
        plan_service: PlanService,
        executor: Executor,
        plan_timeout: Optional[float] = None,
        log_retention: Optional[int] = None,
        reset_clears_selection: Optional[bool] = None,
    ):
        cfg = get_settings()
        self._plan_service = plan_service
        self._executor = executor
        self._plan_timeout = plan_timeout if plan_timeout is not None else cfg.PLAN_TIMEOUT_SECONDS
        self._log_retention = log_retention if log_retention is not None else cfg.LOG_RETENTION_ENTRIES
        self._reset_clears_selection = (
            reset_clears_selection if reset_clears_selection is not None else cfg.RESET_CLEARS_SELECTION
        )
        self._state = ExecutionState()
        self._token = 0
        self._listeners: List[Listener] = []
        self._run_task: Optional[asyncio.Task] = None
        self._consumer = LogStreamConsumer(_StateSink(self))
        self._handlers: Dict[type, Callable] = {
            RequestPlan: self._on_request_plan,
            ReplanWithRange: self._on_replan_with_range,
            SetLayerRange: self._on_set_layer_range,
            ConfirmExecution: self._on_confirm_execution,
            CancelExecution: self._on_cancel_execution,
            DismissDialog: self._on_dismiss_dialog,
            Reset: self._on_reset,
            InitializeFromManifest: self._on_initialize_from_manifest,
            SetTotalLayers: self._on_set_total_layers,
            ToggleArtifactSelection: self._on_toggle_artifact_selection,
            SelectArtifacts: self._on_select_artifacts,
            DeselectArtifacts: self._on_deselect_artifacts,
            ClearRegenerationSelection: self._on_clear_selection,
            ShowBottomPanel: self._on_show_bottom_panel,
            HideBottomPanel: self._on_hide_bottom_panel,
            ClearLogs: self._on_clear_logs,
        }

    # ------------------------------------------------------------------
    # state access
    # ------------------------------------------------------------------

    @property
    def status(self) -> ExecutionStatus:
        return self._state.status

    def snapshot(self) -> ExecutionState:
        return copy.deepcopy(self._state)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        snap = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception:
                logger.exception("state listener %r raised", listener)

    # ------------------------------------------------------------------
    # dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, command: Any) -> None:
        handler = self._handlers.get(type(command))
        if handler is None:
            raise TypeError(f"unknown command {type(command).__name__}")
        logger.debug("dispatch %s while %s", type(command).__name__, self._state.status.value)
        await handler(command)

    async def request_plan(self, blueprint_name: str, build_id: Optional[str] = None,
                           up_to_layer: Optional[int] = None) -> None:
        await self.dispatch(RequestPlan(blueprint_name, build_id, up_to_layer))

    async def replan_with_range(self, re_run_from: Optional[int]) -> None:
        await self.dispatch(ReplanWithRange(re_run_from))

    async def set_layer_range(self, layer_range: LayerRange) -> None:
        await self.dispatch(SetLayerRange(layer_range))

    async def confirm_execution(self, dry_run: bool = False) -> None:
        await self.dispatch(ConfirmExecution(dry_run))

    async def cancel_execution(self) -> None:
        await self.dispatch(CancelExecution())

    async def dismiss_dialog(self) -> None:
        await self.dispatch(DismissDialog())

    async def reset(self) -> None:
        await self.dispatch(Reset())

    async def initialize_from_manifest(self, artifacts: List[Any]) -> None:
        await self.dispatch(InitializeFromManifest(list(artifacts)))

    async def set_total_layers(self, total_layers: int) -> None:
        await self.dispatch(SetTotalLayers(total_layers))

    async def wait_for_run(self) -> ExecutionState:
        """Wait for the active run's stream to finish and return a snapshot."""
        task = self._run_task
        if task is not None:
            await asyncio.shield(task)
        return self.snapshot()

    async def aclose(self) -> None:
        task, self._run_task = self._run_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------
    # derived views
    # ------------------------------------------------------------------

    def stage_statuses(self) -> Optional[List[StageStatus]]:
        plan = self._state.plan_info
        if plan is None:
            return None
        return derive_stage_statuses_from_producer_statuses(plan, self._state.producer_statuses)

    def _validation_context(self) -> StageValidationContext:
        plan = self._state.plan_info
        total = plan.layers if plan is not None else (self._state.total_layers or 0)
        return StageValidationContext(total_stages=total, stage_statuses=self.stage_statuses())

    def valid_start_stages(self) -> Set[int]:
        return get_valid_start_stages(self._validation_context())

    def range_totals(self) -> Optional[RangeTotals]:
        plan = self._state.plan_info
        if plan is None:
            return None
        return compute_range_totals(plan, self._state.layer_range)

    def range_description(self) -> Optional[str]:
        plan = self._state.plan_info
        if plan is None or plan.layers < 1:
            return None
        start, end = resolve_layer_range(self._state.layer_range, plan.layers)
        return describe_stage_range(start, end, plan.layers)

    # ------------------------------------------------------------------
    # internals shared by handlers
    # ------------------------------------------------------------------

    def _require(self, command: Any, *allowed: ExecutionStatus) -> None:
        if self._state.status not in allowed:
            raise InvalidTransitionError(type(command).__name__, self._state.status.value)

    def _next_token(self) -> int:
        self._token += 1
        return self._token

    def _is_stale(self, token: int) -> bool:
        if token != self._token:
            metrics.stale_plan_responses_total.inc()
            logger.info("discarding stale plan response (token %d, current %d)", token, self._token)
            return True
        return False

    async def _fetch_plan(self, request: PlanRequest) -> PlanInfo:
        try:
            return await asyncio.wait_for(self._plan_service.create_plan(request), timeout=self._plan_timeout)
        except asyncio.TimeoutError:
            raise PlanTimeoutError(f"Plan request timed out after {self._plan_timeout:g}s")

    def _append_log(self, entry: ExecutionLogEntry) -> None:
        logs = self._state.execution_logs
        logs.append(entry)
        overflow = len(logs) - self._log_retention
        if overflow > 0:
            del logs[:overflow]
        self._notify()

    def _set_producer_status(self, producer: str, status: ProducerStatus) -> None:
        self._state.producer_statuses[producer] = status
        self._notify()

    def _validate_range(self, layer_range: LayerRange, plan: PlanInfo) -> None:
        resolve_layer_range(layer_range, plan.layers)
        ctx = StageValidationContext(
            total_stages=plan.layers,
            stage_statuses=derive_stage_statuses_from_producer_statuses(plan, self._state.producer_statuses),
        )
        result = validate_stage_range(layer_range_to_stage_range(layer_range, plan.layers), ctx)
        if not result.valid:
            raise ValidationError("; ".join(i.message for i in result.issues), result.issues)

    # ------------------------------------------------------------------
    # planning
    # ------------------------------------------------------------------

    async def _on_request_plan(self, cmd: RequestPlan) -> None:
        self._require(cmd, S.IDLE, S.COMPLETED, S.FAILED, S.CANCELLED)
        s = self._state
        if cmd.up_to_layer is not None and s.total_layers and cmd.up_to_layer > s.total_layers - 1:
            raise ValidationError(f"upToLayer {cmd.up_to_layer} is outside layers 0-{s.total_layers - 1}")
        token = self._next_token()
        s.status = S.PLANNING
        s.blueprint_name = cmd.blueprint_name
        s.build_id = cmd.build_id
        s.error = None
        s.is_stopping = False
        s.is_replanning = False
        # the previous plan stays visible until a new one replaces it
        s.layer_range = LayerRange(re_run_from=None, up_to_layer=cmd.up_to_layer)
        self._notify()

        request = PlanRequest(
            blueprint=cmd.blueprint_name,
            build_id=cmd.build_id,
            up_to_layer=cmd.up_to_layer,
            artifact_ids=sorted(s.selected_for_regeneration) or None,
        )
        logger.info("requesting plan for %s (build=%s, upToLayer=%s)", cmd.blueprint_name, cmd.build_id, cmd.up_to_layer)
        try:
            plan = await self._fetch_plan(request)
        except Exception as exc:
            if self._is_stale(token):
                return
            self._plan_failed(exc)
            return
        if self._is_stale(token):
            return

        up_to = cmd.up_to_layer
        if up_to is not None and up_to > plan.layers - 1:
            logger.warning("upToLayer %d beyond plan's last layer %d; running to the end", up_to, plan.layers - 1)
            up_to = None
        metrics.plan_requests_total.labels("ok").inc()
        s.plan_info = plan
        s.total_layers = plan.layers
        s.layer_range = LayerRange(re_run_from=None, up_to_layer=up_to)
        s.status = S.CONFIRMING
        self._notify()

    async def _on_replan_with_range(self, cmd: ReplanWithRange) -> None:
        self._require(cmd, S.CONFIRMING, S.PLANNING)
        s = self._state
        if s.blueprint_name is None:
            raise InvalidTransitionError(type(cmd).__name__, "no blueprint has been planned")
        if cmd.re_run_from is not None:
            ctx = self._validation_context()
            if s.plan_info is not None:
                if not is_valid_start_stage(cmd.re_run_from, ctx):
                    raise ValidationError(f"Layer {cmd.re_run_from} is not a valid start layer")
            elif ctx.total_stages and not 0 <= cmd.re_run_from < ctx.total_stages:
                # no plan yet to derive stage statuses from; bounds only
                raise ValidationError(f"Layer {cmd.re_run_from} is outside layers 0-{ctx.total_stages - 1}")
        prior_up_to = s.layer_range.up_to_layer
        if cmd.re_run_from is not None and prior_up_to is not None:
            total = s.plan_info.layers if s.plan_info is not None else (s.total_layers or 0)
            if total:
                resolve_layer_range(LayerRange(cmd.re_run_from, prior_up_to), total)
            elif cmd.re_run_from > prior_up_to:
                raise ValidationError(f"upToLayer {prior_up_to} is before reRunFrom {cmd.re_run_from}")
        if s.status == S.CONFIRMING:
            s.is_replanning = s.plan_info is not None
        token = self._next_token()
        s.status = S.PLANNING
        s.error = None
        self._notify()

        request = PlanRequest(
            blueprint=s.blueprint_name,
            build_id=s.build_id,
            re_run_from=cmd.re_run_from,
            up_to_layer=prior_up_to,
        )
        logger.info("replanning %s from layer %s", s.blueprint_name, cmd.re_run_from)
        try:
            plan = await self._fetch_plan(request)
        except Exception as exc:
            if self._is_stale(token):
                return
            self._plan_failed(exc)
            return
        if self._is_stale(token):
            return

        if prior_up_to is not None and prior_up_to > plan.layers - 1:
            prior_up_to = None
        metrics.plan_requests_total.labels("ok").inc()
        s.plan_info = plan
        s.total_layers = plan.layers
        s.layer_range = LayerRange(re_run_from=cmd.re_run_from, up_to_layer=prior_up_to)
        s.is_replanning = False
        s.status = S.CONFIRMING
        self._notify()

    def _plan_failed(self, exc: BaseException) -> None:
        if isinstance(exc, (PlanningError, ConnectivityError)):
            logger.warning("plan request failed: %s", exc)
        else:
            logger.exception("plan request raised unexpectedly")
        metrics.plan_requests_total.labels("timeout" if isinstance(exc, PlanTimeoutError) else "error").inc()
        s = self._state
        # the last successful plan stays viewable
        s.status = S.FAILED
        s.error = str(exc) or type(exc).__name__
        s.is_replanning = False
        self._notify()

    async def _on_set_layer_range(self, cmd: SetLayerRange) -> None:
        self._require(cmd, S.CONFIRMING)
        self._validate_range(cmd.layer_range, self._state.plan_info)
        self._state.layer_range = LayerRange(cmd.layer_range.re_run_from, cmd.layer_range.up_to_layer)
        self._notify()

    async def _on_dismiss_dialog(self, cmd: DismissDialog) -> None:
        s = self._state
        if s.status not in (S.CONFIRMING, S.FAILED, S.PLANNING):
            logger.debug("dismiss ignored while %s", s.status.value)
            return
        self._next_token()
        s.status = S.IDLE
        s.plan_info = None
        s.layer_range = LayerRange()
        s.error = None
        s.is_replanning = False
        self._notify()

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------

    async def _on_confirm_execution(self, cmd: ConfirmExecution) -> None:
        self._require(cmd, S.CONFIRMING)
        s = self._state
        plan = s.plan_info
        self._validate_range(s.layer_range, plan)
        start, end = resolve_layer_range(s.layer_range, plan.layers)

        s.status = S.EXECUTING
        s.is_stopping = False
        s.error = None
        s.run_id = None
        s.dry_run = cmd.dry_run
        s.execution_logs = []
        s.bottom_panel_visible = True
        for layer in plan.layer_breakdown:
            if start <= layer.index <= end:
                for producer in layer.producers():
                    s.producer_statuses[producer] = ProducerStatus.PENDING
        self._notify()

        request = ExecuteRequest(
            plan_id=plan.plan_id,
            re_run_from=s.layer_range.re_run_from,
            up_to_layer=s.layer_range.up_to_layer,
            dry_run=cmd.dry_run,
        )
        logger.info("starting execution of plan %s (layers %d-%d, dry_run=%s)", plan.plan_id, start, end, cmd.dry_run)
        try:
            run_id = await self._executor.start_execution(request)
        except Exception as exc:
            logger.warning("execution request failed: %s", exc)
            self._finish(S.CANCELLED if s.is_stopping else S.FAILED, str(exc) or type(exc).__name__)
            return

        s.run_id = run_id
        self._notify()
        if s.is_stopping:
            # cancel arrived before the executor handed back a run handle
            await self._request_cancel(run_id)
        self._run_task = asyncio.create_task(self._consume(run_id))

    async def _consume(self, run_id: str) -> None:
        s = self._state
        try:
            outcome: StreamOutcome = await self._consumer.consume(self._executor.stream_events(run_id))
        except ConnectivityError as exc:
            if s.is_stopping:
                self._append_log(ExecutionLogEntry(
                    type=LogEntryType.ERROR,
                    message="Stream closed while stopping",
                    error_details=str(exc),
                ))
                self._finish(S.CANCELLED)
            else:
                self._finish(S.FAILED, str(exc))
            return

        if s.is_stopping or outcome.cancelled:
            self._finish(S.CANCELLED)
        elif outcome.error is not None:
            self._finish(S.FAILED, outcome.error)
        elif outcome.verdict == "succeeded":
            self._finish(S.COMPLETED)
        elif outcome.verdict == "partial":
            self._finish(S.FAILED, "Execution completed with some failures")
        else:
            self._finish(S.FAILED, "Execution failed")

    def _finish(self, status: ExecutionStatus, error: Optional[str] = None) -> None:
        s = self._state
        for producer, current in list(s.producer_statuses.items()):
            if current in (ProducerStatus.PENDING, ProducerStatus.RUNNING):
                s.producer_statuses[producer] = ProducerStatus.NOT_RUN_YET
        s.status = status
        s.error = error
        s.is_stopping = False
        metrics.runs_total.labels(status.value).inc()
        logger.info("run %s finished: %s%s", s.run_id, status.value, f" ({error})" if error else "")
        self._notify()

    async def _on_cancel_execution(self, cmd: CancelExecution) -> None:
        s = self._state
        if s.status == S.PLANNING:
            self._next_token()
            if s.is_replanning:
                s.status = S.CONFIRMING
            else:
                s.status = S.IDLE
                s.plan_info = None
                s.layer_range = LayerRange()
            s.is_replanning = False
            self._notify()
            return
        self._require(cmd, S.EXECUTING)
        if s.is_stopping:
            return
        s.is_stopping = True
        self._notify()
        if s.run_id is not None:
            await self._request_cancel(s.run_id)

    async def _request_cancel(self, run_id: str) -> None:
        try:
            await self._executor.cancel(run_id)
        except Exception as exc:
            logger.exception("cancel request for run %s failed", run_id)
            self._append_log(ExecutionLogEntry(
                type=LogEntryType.ERROR,
                message="Cancel request failed",
                error_details=str(exc),
            ))

    # ------------------------------------------------------------------
    # session
    # ------------------------------------------------------------------

    async def _on_reset(self, cmd: Reset) -> None:
        self._require(cmd, S.IDLE, *_TERMINAL)
        self._next_token()
        s = self._state
        s.status = S.IDLE
        s.plan_info = None
        s.layer_range = LayerRange()
        s.execution_logs = []
        s.producer_statuses = {}
        s.error = None
        s.is_stopping = False
        s.is_replanning = False
        s.run_id = None
        if self._reset_clears_selection:
            s.selected_for_regeneration = set()
        self._run_task = None
        self._notify()

    async def _on_initialize_from_manifest(self, cmd: InitializeFromManifest) -> None:
        self._require(cmd, S.IDLE)
        self._state.producer_statuses = map_artifacts_to_producer_statuses(cmd.artifacts)
        logger.debug("seeded %d producer status(es) from manifest", len(self._state.producer_statuses))
        self._notify()

    async def _on_set_total_layers(self, cmd: SetTotalLayers) -> None:
        if cmd.total_layers < 0:
            raise ValidationError(f"total layers must be >= 0, got {cmd.total_layers}")
        self._state.total_layers = cmd.total_layers
        self._notify()

    async def _on_toggle_artifact_selection(self, cmd: ToggleArtifactSelection) -> None:
        selected = self._state.selected_for_regeneration
        if cmd.artifact_id in selected:
            selected.discard(cmd.artifact_id)
        else:
            selected.add(cmd.artifact_id)
        self._notify()

    async def _on_select_artifacts(self, cmd: SelectArtifacts) -> None:
        self._state.selected_for_regeneration.update(cmd.artifact_ids)
        self._notify()

    async def _on_deselect_artifacts(self, cmd: DeselectArtifacts) -> None:
        self._state.selected_for_regeneration.difference_update(cmd.artifact_ids)
        self._notify()

    async def _on_clear_selection(self, cmd: ClearRegenerationSelection) -> None:
        self._state.selected_for_regeneration = set()
        self._notify()

    async def _on_show_bottom_panel(self, cmd: ShowBottomPanel) -> None:
        self._state.bottom_panel_visible = True
        self._notify()

    async def _on_hide_bottom_panel(self, cmd: HideBottomPanel) -> None:
        self._state.bottom_panel_visible = False
        self._notify()

    async def _on_clear_logs(self, cmd: ClearLogs) -> None:
        self._state.execution_logs = []
        self._notify()
