"""Rebuild a Scheduler from a plan and a saved ProgressSnapshot."""

import logging
from typing import Callable, Optional

from ..errors import SnapshotMismatchError
from ..orchestrator.graph import DependencyGraph, build_graph
from ..orchestrator.scheduler import Scheduler
from ..plans.models import Plan
from ..plans.serializer import plan_fingerprint
from .models import SCHEMA_VERSION, ProgressSnapshot

logger = logging.getLogger(__name__)


def check_snapshot(plan: Plan, snapshot: ProgressSnapshot) -> None:
	"""
	Verify a snapshot belongs to this exact plan version.

	Raises:
		SnapshotMismatchError: on a different plan id, fingerprint, schema or chunk set
	"""
	if snapshot.schema_version != SCHEMA_VERSION:
		raise SnapshotMismatchError(
			f"Snapshot schema v{snapshot.schema_version} is not supported (expected v{SCHEMA_VERSION})"
		)
	if snapshot.plan_id != plan.id:
		raise SnapshotMismatchError(f"Snapshot is for plan '{snapshot.plan_id}', not '{plan.id}'")
	version = plan_fingerprint(plan)
	if snapshot.plan_version != version:
		raise SnapshotMismatchError(
			f"Snapshot was taken against plan version {snapshot.plan_version}; current version is {version}"
		)
	expected = {c.id for c in plan.iter_chunks()}
	actual = set(snapshot.chunks)
	if expected != actual:
		missing = sorted(expected - actual)
		extra = sorted(actual - expected)
		raise SnapshotMismatchError(f"Snapshot chunk set differs (missing: {missing}, unknown: {extra})")


def restore_scheduler(
	plan: Plan,
	snapshot: ProgressSnapshot,
	graph: Optional[DependencyGraph] = None,
	clock: Optional[Callable[[], str]] = None,
) -> Scheduler:
	"""
	Reconstruct the scheduler a snapshot was taken from.

	The restored scheduler's ready_chunks() equals what the original would
	have returned had execution never stopped. In-flight chunks are not
	requeued; call Scheduler.requeue explicitly to re-offer them.
	"""
	check_snapshot(plan, snapshot)
	scheduler = Scheduler(plan, graph=graph or build_graph(plan), clock=clock)
	scheduler.load_snapshot(snapshot)
	in_flight = scheduler.in_flight
	if in_flight:
		logger.warning(
			f"Plan {plan.id} restored with interrupted chunks: {', '.join(in_flight.values())}"
		)
	return scheduler
