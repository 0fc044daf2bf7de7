"""Shared test fixtures and helpers for spec-orchestrator tests."""

from datetime import datetime, timedelta
from pathlib import Path

from spec_orchestrator.orchestrator.scheduler import Scheduler
from spec_orchestrator.plans.models import Plan
from spec_orchestrator.plans.parser import parse_plan

SAMPLE_PLAN = """\
# Plan: checkout-flow

## Meta

| Field | Value |
|-------|-------|
| Type | feature |
| Repo | acme/shop |
| Status | draft |

## Work Streams

| Stream | Responsibility | Owns | Capabilities |
|--------|----------------|------|--------------|
| api | Backend endpoints | `src/api/`, `migrations/` | python, sql |
| web | Frontend pages | `src/web/` | typescript |
| docs | Documentation | `docs/` | - |

## Phase 0: Foundations

| Chunk | Stream | Outcome | Depends On |
|-------|--------|---------|------------|
| a1 | api | Cart schema exists | - |
| w1 | web | Cart page skeleton renders | - |

- [ ] **a1**
  - Outcome: Cart schema exists
  - Stream: api
  - Capabilities: sql
  - Sub-tasks:
    1. Write migration
    2. Run migration

- [ ] **w1**
  - Outcome: Cart page skeleton renders
  - Stream: web

## Phase 1: Checkout

| Chunk | Stream | Outcome | Depends On |
|-------|--------|---------|------------|
| a2 | api | Checkout endpoint returns order id | - |
| w2 | web | Checkout form submits | a2 |
| d1 | docs | Checkout documented | - |

## Communication

| From | To | When | What |
|------|----|------|------|
| api | web | after a1 | Cart API contract |
| api | web, docs | after phase 1 | Release notes |

## Acceptance Criteria

- [ ] Unit tests pass: `exit 0`
- [x] Design reviewed
- [ ] Load test signed off

## Completion Promise

<promise>CHECKOUT_DONE</promise>
"""

# Two phases: a1@S1 and a2@S2, then b1@S1 which also depends explicitly on a2.
SCENARIO_PLAN = """\
# Plan: scenario

## Work Streams

| Stream | Responsibility | Owns | Capabilities |
|--------|----------------|------|--------------|
| S1 | First stream | `s1/` | - |
| S2 | Second stream | `s2/` | - |

## Phase 0: One

| Chunk | Stream | Outcome | Depends On |
|-------|--------|---------|------------|
| a1 | S1 | A1 done | - |
| a2 | S2 | A2 done | - |

## Phase 1: Two

| Chunk | Stream | Outcome | Depends On |
|-------|--------|---------|------------|
| b1 | S1 | B1 done | a2 |

## Acceptance Criteria

- [ ] Integration suite green

## Completion Promise

<promise>SCENARIO_DONE</promise>
"""


class StepClock:
	"""Deterministic clock: each call advances one second."""

	def __init__(self, start: str = "2026-01-01T09:00:00"):
		self._now = datetime.fromisoformat(start)

	def __call__(self) -> str:
		self._now += timedelta(seconds=1)
		return self._now.isoformat()


class RecordingListener:
	"""Scheduler listener that records events in order."""

	def __init__(self):
		self.events: list[tuple[str, object]] = []

	def on_chunk_complete(self, chunk_id: str) -> None:
		self.events.append(("chunk", chunk_id))

	def on_phase_complete(self, phase_index: int) -> None:
		self.events.append(("phase", phase_index))


def sample_plan() -> Plan:
	return parse_plan(SAMPLE_PLAN)


def scenario_plan() -> Plan:
	return parse_plan(SCENARIO_PLAN)


def make_scheduler(plan: Plan | None = None, workers: bool = True) -> Scheduler:
	"""Scheduler over the plan with one worker 'w-<stream>' registered per stream."""
	plan = plan or sample_plan()
	scheduler = Scheduler(plan, clock=StepClock())
	if workers:
		for stream in plan.streams:
			scheduler.register_worker(f"w-{stream.name}", stream.name)
	return scheduler


def run_chunk(scheduler: Scheduler, chunk_id: str) -> None:
	"""Claim and complete a chunk with its stream's default worker."""
	worker_id = f"w-{scheduler.graph.stream_of(chunk_id)}"
	scheduler.claim(chunk_id, worker_id)
	scheduler.complete(chunk_id, worker_id)


def write_plan(directory: Path, document: str = SAMPLE_PLAN, name: str = "plan.md") -> Path:
	path = directory / name
	path.write_text(document)
	return path
