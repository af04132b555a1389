#!/usr/bin/env python
"""
Plan and dry-run a blueprint locally.

Loads a blueprint graph (JSON nodes/edges) and an optional artifact manifest,
prints the layered plan with costs and the legal start layers, then runs the
selected range through the execution state machine against an in-process
generation service with a simulated producer invoker.

Usage:
    python scripts/run_blueprint.py --graph blueprint.json

Partial re-run from layer 2 using a previous run's manifest:
    python scripts/run_blueprint.py \\
        --graph blueprint.json \\
        --manifest artifacts.json \\
        --from 2 --up-to 3 --yes
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add parent directory to path to allow running as script
sys.path.insert(0, str(Path(__file__).parent.parent))

from run_control.errors import RunControlError
from run_control.generation_service import (
    BlueprintSnapshot,
    GenerationService,
    InMemoryBlueprintSource,
    load_graph_file,
    load_manifest_file,
)
from run_control.job_manager import JobManager
from run_control.logging_setup import setup_logging
from run_control.models import ExecutionStatus, LayerRange
from run_control.plan_runner import LayeredPlanRunner, SimulatedInvoker
from run_control.planner import PricingCostEstimator
from run_control.state_machine import ExecutionStateMachine


def print_plan(machine: ExecutionStateMachine) -> None:
    state = machine.snapshot()
    plan = state.plan_info
    print(f"Plan {plan.plan_id}: {plan.layers} layer(s), {plan.total_jobs} job(s)")
    cost = f"${plan.total_cost:.4f}"
    if plan.has_ranges:
        cost += f" (range ${plan.min_cost:.4f}-${plan.max_cost:.4f})"
    if plan.has_placeholders:
        cost += " *includes placeholder estimates"
    print(f"Estimated cost: {cost}")
    for layer in plan.layer_breakdown:
        marker = " [skipped]" if layer.skipped else ""
        print(f"  Layer {layer.index}{marker}: {layer.job_count} job(s), ${layer.cost:.4f}")
        for job in layer.jobs:
            flag = " *" if job.has_placeholder else ""
            print(f"    - {job.producer} ${job.estimated_cost:.4f}{flag}")
    if plan.missing_providers:
        print(f"No pricing for: {', '.join(plan.missing_providers)}")
    print(f"Valid start layers: {sorted(machine.valid_start_stages())}")
    print(machine.range_description())


async def run(args) -> int:
    graph = load_graph_file(args.graph)
    artifacts = load_manifest_file(args.manifest) if args.manifest else []
    pricing = {}
    if args.pricing:
        with open(args.pricing, "r", encoding="utf-8") as fh:
            pricing = json.load(fh)

    name = Path(args.graph).stem
    source = InMemoryBlueprintSource({name: BlueprintSnapshot(graph=graph, artifacts=artifacts)})
    invoker = SimulatedInvoker(delay=args.delay)
    service = GenerationService(
        source=source,
        jobs=JobManager(),
        runner=LayeredPlanRunner(invoker, dry_run_invoker=invoker, concurrency=args.concurrency),
        cost_estimator=PricingCostEstimator(pricing),
    )
    machine = ExecutionStateMachine(service, service)

    if artifacts:
        await machine.initialize_from_manifest(artifacts)
    await machine.request_plan(name, up_to_layer=args.up_to)
    if args.from_layer is not None and machine.status == ExecutionStatus.CONFIRMING:
        await machine.replan_with_range(args.from_layer)
    state = machine.snapshot()
    if state.status != ExecutionStatus.CONFIRMING:
        print(f"Planning failed: {state.error}")
        return 1

    print_plan(machine)
    if not args.yes:
        answer = input("Run this plan? [y/N] ").strip().lower()
        if answer not in ("y", "yes"):
            await machine.dismiss_dialog()
            print("Dismissed.")
            return 0

    await machine.set_layer_range(LayerRange(args.from_layer, args.up_to))
    await machine.confirm_execution(dry_run=True)
    state = await machine.wait_for_run()
    for entry in state.execution_logs:
        print(f"[{entry.timestamp:%H:%M:%S}] {entry.message}")
    print(f"Final status: {state.status.value}")
    return 0 if state.status == ExecutionStatus.COMPLETED else 1


def main():
    parser = argparse.ArgumentParser(description="Plan and dry-run a blueprint locally")
    parser.add_argument("--graph", required=True, help="Blueprint graph JSON (nodes, edges)")
    parser.add_argument("--manifest", help="Artifact manifest JSON from a previous run")
    parser.add_argument("--pricing", help="Pricing catalog JSON keyed by producer")
    parser.add_argument("--from", dest="from_layer", type=int, default=None, help="Re-run from this layer")
    parser.add_argument("--up-to", dest="up_to", type=int, default=None, help="Stop after this layer")
    parser.add_argument("--concurrency", type=int, default=1)
    parser.add_argument("--delay", type=float, default=0.0, help="Simulated seconds per job")
    parser.add_argument("--yes", action="store_true", help="Run without asking for confirmation")
    args = parser.parse_args()

    setup_logging()
    try:
        code = asyncio.run(run(args))
    except RunControlError as e:
        print(f"Error: {e.message}")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
