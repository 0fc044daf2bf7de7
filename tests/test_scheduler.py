"""Tests for the scheduler state machine."""

import random
import threading

import pytest

from spec_orchestrator.errors import (
	AlreadyClaimedError,
	ChunkNotReadyError,
	InvalidTransitionError,
	PlanNotFinishedError,
	SchedulerError,
	StreamBindingError,
	UnknownChunkError,
)
from spec_orchestrator.orchestrator.scheduler import Scheduler
from spec_orchestrator.plans.models import ChunkStatus, PlanStatus
from spec_orchestrator.plans.parser import parse_plan
from spec_orchestrator.progress.models import DecisionKind

from .helpers import (
	SAMPLE_PLAN,
	RecordingListener,
	StepClock,
	make_scheduler,
	run_chunk,
	sample_plan,
	scenario_plan,
)


class TestReadyChunks:
	"""Readiness: predecessors resolved and stream free."""

	def test_initial_ready_set(self):
		scheduler = make_scheduler()
		assert scheduler.ready_chunks() == ["a1", "w1"]

	def test_stream_filter(self):
		scheduler = make_scheduler()
		assert scheduler.ready_chunks("web") == ["w1"]
		assert scheduler.ready_chunks("docs") == []

	def test_phase_barrier(self):
		"""Nothing in phase 1 is ready until all of phase 0 is done."""
		scheduler = make_scheduler()
		run_chunk(scheduler, "a1")
		assert scheduler.ready_chunks() == ["w1"]
		run_chunk(scheduler, "w1")
		assert scheduler.ready_chunks() == ["a2", "d1"]

	def test_explicit_dependency_within_phase(self):
		scheduler = make_scheduler()
		run_chunk(scheduler, "a1")
		run_chunk(scheduler, "w1")
		assert "w2" not in scheduler.ready_chunks()
		run_chunk(scheduler, "a2")
		assert scheduler.ready_chunks() == ["w2", "d1"]

	def test_busy_stream_withholds_its_chunks(self):
		"""A stream with a chunk in flight offers nothing else."""
		plan = parse_plan(SAMPLE_PLAN.replace(
			"| w1 | web | Cart page skeleton renders | - |",
			"| w1 | web | Cart page skeleton renders | - |\n| a0 | api | Seed data loaded | - |",
		))
		scheduler = make_scheduler(plan)
		assert scheduler.ready_chunks("api") == ["a1", "a0"]
		scheduler.claim("a1", "w-api")
		assert scheduler.ready_chunks("api") == []
		assert scheduler.in_flight == {"api": "a1"}

	def test_parse_time_done_chunks(self):
		"""Checkbox-done chunks count as resolved from the start."""
		doc = SAMPLE_PLAN.replace("- [ ] **a1**", "- [x] **a1**").replace("- [ ] **w1**", "- [x] **w1**")
		scheduler = make_scheduler(parse_plan(doc))
		assert scheduler.status("a1") == ChunkStatus.DONE
		assert scheduler.ready_chunks() == ["a2", "d1"]
		assert scheduler.current_phase() == 1


class TestClaim:
	"""Claim validation."""

	def test_claim_moves_to_in_progress(self):
		scheduler = make_scheduler()
		scheduler.claim("a1", "w-api")
		record = scheduler.record("a1")
		assert record.status == ChunkStatus.IN_PROGRESS
		assert record.worker_id == "w-api"
		assert record.started_at is not None
		assert scheduler.plan_status == PlanStatus.IN_PROGRESS

	def test_claim_twice(self):
		scheduler = make_scheduler()
		scheduler.claim("a1", "w-api")
		with pytest.raises(AlreadyClaimedError):
			scheduler.claim("a1", "w-api")

	def test_claim_done_chunk(self):
		scheduler = make_scheduler()
		run_chunk(scheduler, "a1")
		with pytest.raises(AlreadyClaimedError):
			scheduler.claim("a1", "w-api")

	def test_claim_on_busy_stream(self):
		"""A second worker on the same stream cannot claim while one chunk is in flight."""
		plan = parse_plan(SAMPLE_PLAN.replace(
			"| w1 | web | Cart page skeleton renders | - |",
			"| w1 | web | Cart page skeleton renders | - |\n| a0 | api | Seed data loaded | - |",
		))
		scheduler = make_scheduler(plan)
		scheduler.register_worker("w-api-2", "api")
		scheduler.claim("a1", "w-api")
		with pytest.raises(AlreadyClaimedError, match="already has a1"):
			scheduler.claim("a0", "w-api-2")

	def test_claim_before_predecessors(self):
		scheduler = make_scheduler()
		with pytest.raises(ChunkNotReadyError, match="a1"):
			scheduler.claim("a2", "w-api")

	def test_claim_outside_bound_stream(self):
		scheduler = make_scheduler()
		with pytest.raises(StreamBindingError):
			scheduler.claim("w1", "w-api")

	def test_claim_unregistered_worker(self):
		scheduler = make_scheduler(workers=False)
		with pytest.raises(StreamBindingError):
			scheduler.claim("a1", "nobody")

	def test_claim_unknown_chunk(self):
		scheduler = make_scheduler()
		with pytest.raises(UnknownChunkError):
			scheduler.claim("zz", "w-api")

	def test_rebinding_worker_rejected(self):
		scheduler = make_scheduler()
		with pytest.raises(StreamBindingError):
			scheduler.register_worker("w-api", "web")
		scheduler.register_worker("w-api", "api")

	def test_unknown_stream_binding(self):
		scheduler = make_scheduler(workers=False)
		with pytest.raises(StreamBindingError):
			scheduler.register_worker("w", "ops")


class TestTransitions:
	"""complete / fail / unblock / skip / requeue."""

	def test_complete_requires_claim_holder(self):
		scheduler = make_scheduler()
		scheduler.register_worker("w-api-2", "api")
		scheduler.claim("a1", "w-api")
		with pytest.raises(InvalidTransitionError):
			scheduler.complete("a1", "w-api-2")
		scheduler.complete("a1", "w-api")
		assert scheduler.status("a1") == ChunkStatus.DONE
		assert scheduler.record("a1").completed_at is not None

	def test_complete_unclaimed(self):
		scheduler = make_scheduler()
		with pytest.raises(InvalidTransitionError):
			scheduler.complete("a1", "w-api")

	def test_fail_records_open_question(self):
		scheduler = make_scheduler()
		scheduler.claim("a1", "w-api")
		question = scheduler.fail("a1", "database unreachable", worker_id="w-api")
		assert question.id == "q-1"
		assert question.chunk_id == "a1"
		assert question.question == "database unreachable"
		assert question.is_open
		assert scheduler.status("a1") == ChunkStatus.BLOCKED
		assert scheduler.record("a1").notes == "database unreachable"
		assert scheduler.in_flight == {}

	def test_fail_requires_in_progress(self):
		scheduler = make_scheduler()
		with pytest.raises(InvalidTransitionError):
			scheduler.fail("a1", "nope")

	def test_unblock_returns_to_pending(self):
		scheduler = make_scheduler()
		scheduler.claim("a1", "w-api")
		scheduler.fail("a1", "flaky")
		scheduler.unblock("a1", "fixed the database")
		assert scheduler.status("a1") == ChunkStatus.PENDING
		assert scheduler.open_questions() == []
		resolved = scheduler.open_questions(include_resolved=True)[0]
		assert resolved.resolution == "fixed the database"
		assert scheduler.decisions[-1].kind == DecisionKind.UNBLOCK
		assert "a1" in scheduler.ready_chunks()

	def test_unblock_only_from_blocked(self):
		scheduler = make_scheduler()
		with pytest.raises(InvalidTransitionError):
			scheduler.unblock("a1")

	def test_skip_pending_resolves_dependents(self):
		scheduler = make_scheduler()
		run_chunk(scheduler, "a1")
		scheduler.skip("w1", "design postponed")
		assert scheduler.status("w1") == ChunkStatus.SKIPPED
		assert scheduler.ready_chunks() == ["a2", "d1"]
		assert scheduler.decisions[-1].kind == DecisionKind.SKIP

	def test_skip_blocked_closes_question(self):
		scheduler = make_scheduler()
		scheduler.claim("a1", "w-api")
		scheduler.fail("a1", "broken")
		scheduler.skip("a1", "not needed")
		assert scheduler.status("a1") == ChunkStatus.SKIPPED
		assert scheduler.open_questions() == []

	def test_skip_in_progress_rejected(self):
		scheduler = make_scheduler()
		scheduler.claim("a1", "w-api")
		with pytest.raises(InvalidTransitionError):
			scheduler.skip("a1")

	def test_requeue_interrupted_chunk(self):
		scheduler = make_scheduler()
		scheduler.claim("a1", "w-api")
		scheduler.requeue("a1", "worker crashed")
		assert scheduler.status("a1") == ChunkStatus.PENDING
		assert scheduler.record("a1").worker_id is None
		assert scheduler.in_flight == {}
		assert scheduler.decisions[-1].kind == DecisionKind.REQUEUE

	def test_requeue_requires_in_progress(self):
		scheduler = make_scheduler()
		with pytest.raises(InvalidTransitionError):
			scheduler.requeue("a1")

	def test_resolve_question(self):
		scheduler = make_scheduler()
		scheduler.claim("a1", "w-api")
		question = scheduler.fail("a1", "which schema version?")
		resolved = scheduler.resolve_question(question.id, "use v2")
		assert not resolved.is_open
		assert scheduler.status("a1") == ChunkStatus.BLOCKED
		with pytest.raises(InvalidTransitionError):
			scheduler.resolve_question(question.id, "again")
		with pytest.raises(SchedulerError):
			scheduler.resolve_question("q-99", "?")

	def test_session_log(self):
		scheduler = make_scheduler()
		scheduler.claim("a1", "w-api")
		scheduler.fail("a1", "boom")
		scheduler.unblock("a1")
		run_chunk(scheduler, "a1")
		events = [(e.event, e.chunk_id) for e in scheduler.session_log]
		assert events == [
			("claim", "a1"),
			("fail", "a1"),
			("unblock", "a1"),
			("claim", "a1"),
			("complete", "a1"),
		]


class TestPartialFailure:
	"""A blocked chunk withholds only what depends on it."""

	def test_scenario_initial_ready(self):
		"""a1 and a2 are ready immediately; b1 waits for both."""
		scheduler = make_scheduler(scenario_plan())
		assert scheduler.ready_chunks() == ["a1", "a2"]
		run_chunk(scheduler, "a2")
		assert "b1" not in scheduler.ready_chunks()
		run_chunk(scheduler, "a1")
		assert scheduler.ready_chunks() == ["b1"]

	def test_b1_waits_on_barrier_even_after_explicit_dependency(self):
		scheduler = make_scheduler(scenario_plan())
		run_chunk(scheduler, "a2")
		with pytest.raises(ChunkNotReadyError, match="a1"):
			scheduler.claim("b1", "w-S1")

	def test_scenario_fail_then_unblock(self):
		"""Blocking a2 keeps a1 ready and withholds b1 until a2 is unblocked and done."""
		scheduler = make_scheduler(scenario_plan())
		scheduler.claim("a2", "w-S2")
		scheduler.fail("a2", "external service down")
		assert scheduler.status("a2") == ChunkStatus.BLOCKED
		assert scheduler.ready_chunks() == ["a1"]

		run_chunk(scheduler, "a1")
		assert scheduler.ready_chunks() == []
		assert scheduler.withheld_by("b1") == ["a2"]

		scheduler.unblock("a2")
		assert scheduler.ready_chunks() == ["a2"]
		run_chunk(scheduler, "a2")
		assert scheduler.ready_chunks() == ["b1"]

	def test_unrelated_streams_continue(self):
		scheduler = make_scheduler()
		run_chunk(scheduler, "a1")
		run_chunk(scheduler, "w1")
		scheduler.claim("a2", "w-api")
		scheduler.fail("a2", "payment sandbox down")
		assert scheduler.ready_chunks() == ["d1"]
		assert scheduler.withheld_by("w2") == ["a2"]
		assert scheduler.withheld_by("d1") == []


class TestEvents:
	"""Completion events raised to listeners."""

	def test_chunk_and_phase_events(self):
		scheduler = make_scheduler()
		listener = RecordingListener()
		scheduler.add_listener(listener)
		run_chunk(scheduler, "a1")
		run_chunk(scheduler, "w1")
		assert listener.events == [("chunk", "a1"), ("chunk", "w1"), ("phase", 0)]

	def test_skip_raises_phase_but_not_chunk_event(self):
		scheduler = make_scheduler()
		listener = RecordingListener()
		scheduler.add_listener(listener)
		run_chunk(scheduler, "a1")
		scheduler.skip("w1")
		assert listener.events == [("chunk", "a1"), ("phase", 0)]

	def test_phase_event_fires_once(self):
		scheduler = make_scheduler()
		listener = RecordingListener()
		scheduler.add_listener(listener)
		run_chunk(scheduler, "a1")
		scheduler.claim("w1", "w-web")
		scheduler.fail("w1", "oops")
		scheduler.unblock("w1")
		run_chunk(scheduler, "w1")
		assert listener.events.count(("phase", 0)) == 1

	def test_failing_listener_does_not_break_transition(self):
		class Broken:
			def on_chunk_complete(self, chunk_id):
				raise RuntimeError("listener bug")

			def on_phase_complete(self, phase_index):
				raise RuntimeError("listener bug")

		scheduler = make_scheduler()
		scheduler.add_listener(Broken())
		run_chunk(scheduler, "a1")
		assert scheduler.status("a1") == ChunkStatus.DONE

	def test_replay_events(self):
		scheduler = make_scheduler()
		run_chunk(scheduler, "a1")
		run_chunk(scheduler, "w1")
		run_chunk(scheduler, "a2")
		listener = RecordingListener()
		scheduler.add_listener(listener)
		scheduler.replay_events()
		assert listener.events == [("chunk", "a1"), ("chunk", "w1"), ("phase", 0), ("chunk", "a2")]


class TestCompletion:
	"""Plan-level state."""

	def test_progress_counts(self):
		scheduler = make_scheduler()
		run_chunk(scheduler, "a1")
		scheduler.claim("w1", "w-web")
		progress = scheduler.progress()
		assert progress["total_chunks"] == 5
		assert progress["done"] == 1
		assert progress["in_progress"] == 1
		assert progress["pending"] == 3
		assert progress["percent_complete"] == 20.0

	def test_mark_complete_requires_finished(self):
		scheduler = make_scheduler()
		with pytest.raises(PlanNotFinishedError):
			scheduler.mark_complete()

	def test_mark_complete(self):
		scheduler = make_scheduler()
		for chunk_id in ["a1", "w1", "a2", "w2"]:
			run_chunk(scheduler, chunk_id)
		scheduler.skip("d1", "docs later")
		assert scheduler.is_finished()
		assert scheduler.current_phase() is None
		assert scheduler.next_ready_hint() is None
		scheduler.mark_complete()
		assert scheduler.plan_status == PlanStatus.COMPLETE


class TestInvariants:
	"""Randomized operation sequences keep the scheduling invariants."""

	@pytest.mark.parametrize("seed", range(20))
	def test_random_walk(self, seed: int):
		rng = random.Random(seed)
		plan = sample_plan()
		scheduler = Scheduler(plan, clock=StepClock())
		for stream in plan.streams:
			scheduler.register_worker(f"w-{stream.name}", stream.name)

		for _ in range(60):
			statuses = scheduler.statuses()

			# Phase barrier: a ready chunk's earlier phases are fully resolved.
			for chunk_id in scheduler.ready_chunks():
				phase = scheduler.graph.phase_of(chunk_id)
				for other, status in statuses.items():
					if scheduler.graph.phase_of(other) < phase:
						assert status.is_terminal

			# Mutual exclusion per stream.
			in_progress = [c for c, s in statuses.items() if s == ChunkStatus.IN_PROGRESS]
			streams = [scheduler.graph.stream_of(c) for c in in_progress]
			assert len(streams) == len(set(streams))

			actions = []
			ready = scheduler.ready_chunks()
			if ready:
				actions.append(("claim", rng.choice(ready)))
			if in_progress:
				actions.append(("complete", rng.choice(in_progress)))
				actions.append(("fail", rng.choice(in_progress)))
			blocked = [c for c, s in statuses.items() if s == ChunkStatus.BLOCKED]
			if blocked:
				actions.append(("unblock", rng.choice(blocked)))
			if not actions:
				break

			action, chunk_id = rng.choice(actions)
			worker_id = f"w-{scheduler.graph.stream_of(chunk_id)}"
			if action == "claim":
				scheduler.claim(chunk_id, worker_id)
			elif action == "complete":
				scheduler.complete(chunk_id, worker_id)
			elif action == "fail":
				scheduler.fail(chunk_id, "random failure", worker_id=worker_id)
			else:
				scheduler.unblock(chunk_id)

	def test_concurrent_claims_single_winner(self):
		"""Several threads racing for one stream: exactly one claim succeeds."""
		scheduler = make_scheduler(workers=False)
		for n in range(8):
			scheduler.register_worker(f"w{n}", "api")

		winners: list[str] = []
		barrier = threading.Barrier(8)

		def attempt(worker_id: str) -> None:
			barrier.wait()
			try:
				scheduler.claim("a1", worker_id)
				winners.append(worker_id)
			except AlreadyClaimedError:
				pass

		threads = [threading.Thread(target=attempt, args=(f"w{n}",)) for n in range(8)]
		for t in threads:
			t.start()
		for t in threads:
			t.join()

		assert len(winners) == 1
		assert scheduler.in_flight == {"api": "a1"}
