"""
Scheduler - The authoritative state machine over chunk statuses.

Workers only request transitions (claim/complete/fail); the scheduler
validates and commits them under a single lock. A blocked chunk never halts
the plan: unrelated chunks keep becoming ready, and only chunks that depend
on the blocked one (directly or through a phase barrier) are withheld.

Usage:
	scheduler = Scheduler(plan)
	scheduler.register_worker("w-api", "api")
	for chunk_id in scheduler.ready_chunks("api"):
		scheduler.claim(chunk_id, "w-api")
		...
		scheduler.complete(chunk_id, "w-api")
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Optional, Protocol

from ..errors import (
	AlreadyClaimedError,
	ChunkNotReadyError,
	InvalidTransitionError,
	PlanNotFinishedError,
	SchedulerError,
	SnapshotMismatchError,
	StreamBindingError,
	UnknownChunkError,
)
from ..plans.models import ChunkStatus, Plan, PlanStatus
from ..plans.serializer import plan_fingerprint
from ..progress.models import (
	ChunkProgress,
	Decision,
	DecisionKind,
	OpenQuestion,
	ProgressSnapshot,
	SessionLogEntry,
)
from .graph import DependencyGraph, build_graph

logger = logging.getLogger(__name__)


class SchedulerListener(Protocol):
	"""Receives completion events raised by the scheduler."""

	def on_chunk_complete(self, chunk_id: str) -> None: ...

	def on_phase_complete(self, phase_index: int) -> None: ...


def _now() -> str:
	return datetime.now().isoformat()


class Scheduler:
	"""
	Owns chunk statuses, worker bindings and the per-stream claim.

	All public methods are safe to call from several threads; listener
	callbacks run after the lock is released.
	"""

	def __init__(
		self,
		plan: Plan,
		graph: Optional[DependencyGraph] = None,
		clock: Optional[Callable[[], str]] = None,
	):
		"""
		Initialize the scheduler from parse-time chunk statuses.

		Args:
			plan: Parsed plan
			graph: Pre-built dependency graph (built from plan if omitted)
			clock: Returns ISO timestamps; defaults to datetime.now
		"""
		self.plan = plan
		self.graph = graph or build_graph(plan)
		self.plan_version = plan_fingerprint(plan)
		self._clock = clock or _now
		self._lock = threading.RLock()

		self._records: dict[str, ChunkProgress] = {
			chunk.id: ChunkProgress(status=chunk.status) for chunk in plan.iter_chunks()
		}
		self._in_flight: dict[str, str] = {}  # stream -> chunk_id
		self._workers: dict[str, str] = {}  # worker_id -> stream
		self._questions: list[OpenQuestion] = []
		self._decisions: list[Decision] = []
		self._log: list[SessionLogEntry] = []
		self._plan_status = plan.meta.status
		self._listeners: list[SchedulerListener] = []
		self._completed_phases: set[int] = {
			phase.index for phase in plan.phases if self._phase_resolved(phase.index)
		}

	# Listeners

	def add_listener(self, listener: SchedulerListener) -> None:
		self._listeners.append(listener)

	def remove_listener(self, listener: SchedulerListener) -> None:
		if listener in self._listeners:
			self._listeners.remove(listener)

	def _emit(self, events: list[tuple[str, object]]) -> None:
		for kind, value in events:
			for listener in list(self._listeners):
				try:
					if kind == "chunk":
						listener.on_chunk_complete(value)
					else:
						listener.on_phase_complete(value)
				except Exception as e:
					logger.warning(f"Listener failed on {kind} event {value}: {e}")

	def replay_events(self) -> None:
		"""Re-raise completion events for everything already resolved."""
		events: list[tuple[str, object]] = []
		with self._lock:
			for phase in self.plan.phases:
				for chunk in phase.chunks:
					if self._records[chunk.id].status == ChunkStatus.DONE:
						events.append(("chunk", chunk.id))
				if phase.index in self._completed_phases:
					events.append(("phase", phase.index))
		logger.debug(f"Replaying {len(events)} completion events for plan {self.plan.id}")
		self._emit(events)

	# Workers

	def register_worker(self, worker_id: str, stream: str) -> None:
		"""Bind a worker to one stream for its lifetime."""
		with self._lock:
			if self.plan.get_stream(stream) is None:
				raise StreamBindingError(f"Unknown stream: {stream}")
			bound = self._workers.get(worker_id)
			if bound is not None and bound != stream:
				raise StreamBindingError(
					f"Worker {worker_id} is bound to stream '{bound}', not '{stream}'"
				)
			self._workers[worker_id] = stream
		logger.info(f"Worker {worker_id} bound to stream {stream}")

	def unregister_worker(self, worker_id: str) -> None:
		with self._lock:
			self._workers.pop(worker_id, None)

	def worker_stream(self, worker_id: str) -> Optional[str]:
		with self._lock:
			return self._workers.get(worker_id)

	@property
	def registered_streams(self) -> set[str]:
		with self._lock:
			return set(self._workers.values())

	# Readiness

	def _get(self, chunk_id: str) -> ChunkProgress:
		record = self._records.get(chunk_id)
		if record is None:
			raise UnknownChunkError(chunk_id)
		return record

	def _unresolved_predecessors(self, chunk_id: str) -> list[str]:
		preds = self.graph.predecessors(chunk_id)
		return [c for c in self.graph.order if c in preds and not self._records[c].status.is_terminal]

	def _is_ready(self, chunk_id: str) -> bool:
		return (
			self._records[chunk_id].status == ChunkStatus.PENDING
			and self.graph.streams[chunk_id] not in self._in_flight
			and not self._unresolved_predecessors(chunk_id)
		)

	def _phase_resolved(self, index: int) -> bool:
		return all(self._records[c].status.is_terminal for c in self.graph.chunks_in_phase(index))

	def _phase_events(self, chunk_id: str) -> list[tuple[str, object]]:
		index = self.graph.phase_of(chunk_id)
		if index not in self._completed_phases and self._phase_resolved(index):
			self._completed_phases.add(index)
			return [("phase", index)]
		return []

	def ready_chunks(self, stream: Optional[str] = None) -> list[str]:
		"""
		Pending chunks whose predecessors are all done or skipped and whose
		stream has no chunk in flight, in declaration order.

		Args:
			stream: Only return chunks owned by this stream
		"""
		with self._lock:
			return [
				c for c in self.graph.order
				if (stream is None or self.graph.streams[c] == stream) and self._is_ready(c)
			]

	# Transitions

	def claim(self, chunk_id: str, worker_id: str) -> None:
		"""
		Move a ready chunk to in_progress on behalf of a worker.

		Raises:
			StreamBindingError: worker unregistered or bound to another stream
			AlreadyClaimedError: chunk not pending, or its stream is busy
			ChunkNotReadyError: predecessors not yet done or skipped
		"""
		with self._lock:
			record = self._get(chunk_id)
			stream = self.graph.stream_of(chunk_id)
			bound = self._workers.get(worker_id)
			if bound is None:
				raise StreamBindingError(f"Worker {worker_id} is not registered")
			if bound != stream:
				raise StreamBindingError(
					f"Worker {worker_id} is bound to '{bound}' and cannot claim {chunk_id} of '{stream}'"
				)
			if record.status != ChunkStatus.PENDING:
				raise AlreadyClaimedError(f"Chunk {chunk_id} is {record.status.value}")
			if stream in self._in_flight:
				raise AlreadyClaimedError(
					f"Stream {stream} already has {self._in_flight[stream]} in progress"
				)
			waiting = self._unresolved_predecessors(chunk_id)
			if waiting:
				raise ChunkNotReadyError(f"Chunk {chunk_id} is waiting on: {', '.join(waiting)}")

			record.status = ChunkStatus.IN_PROGRESS
			record.worker_id = worker_id
			record.started_at = self._clock()
			record.completed_at = None
			record.notes = ""
			self._in_flight[stream] = chunk_id
			if self._plan_status == PlanStatus.DRAFT:
				self._plan_status = PlanStatus.IN_PROGRESS
			self._append_log("claim", chunk_id, f"worker {worker_id}")
		logger.info(f"Chunk {chunk_id} claimed by {worker_id}")

	def complete(self, chunk_id: str, worker_id: str) -> None:
		"""Move an in_progress chunk to done. Only the claiming worker may complete it."""
		with self._lock:
			record = self._get(chunk_id)
			self._require_claim(chunk_id, record, worker_id)
			record.status = ChunkStatus.DONE
			record.completed_at = self._clock()
			self._release(chunk_id)
			self._append_log("complete", chunk_id, f"worker {worker_id}")
			events: list[tuple[str, object]] = [("chunk", chunk_id)]
			events.extend(self._phase_events(chunk_id))
		logger.info(f"Chunk {chunk_id} done")
		self._emit(events)

	def fail(self, chunk_id: str, reason: str, worker_id: Optional[str] = None) -> OpenQuestion:
		"""
		Move an in_progress chunk to blocked and record an open question.

		Returns:
			The OpenQuestion describing the blocker
		"""
		with self._lock:
			record = self._get(chunk_id)
			if worker_id is not None:
				self._require_claim(chunk_id, record, worker_id)
			elif record.status != ChunkStatus.IN_PROGRESS:
				raise InvalidTransitionError(f"Chunk {chunk_id} is {record.status.value}, not in_progress")
			record.status = ChunkStatus.BLOCKED
			record.notes = reason
			self._release(chunk_id)
			question = OpenQuestion(
				id=f"q-{len(self._questions) + 1}",
				chunk_id=chunk_id,
				question=reason,
				raised_at=self._clock(),
			)
			self._questions.append(question)
			self._append_log("fail", chunk_id, reason)
		logger.warning(f"Chunk {chunk_id} blocked: {reason}")
		return question.model_copy()

	def unblock(self, chunk_id: str, note: str = "") -> None:
		"""Explicit override: blocked -> pending. Resolves the chunk's open questions."""
		with self._lock:
			record = self._get(chunk_id)
			if record.status != ChunkStatus.BLOCKED:
				raise InvalidTransitionError(f"Chunk {chunk_id} is {record.status.value}, not blocked")
			record.status = ChunkStatus.PENDING
			record.worker_id = None
			record.started_at = None
			record.notes = ""
			self._resolve_chunk_questions(chunk_id, note or "unblocked")
			self._record_decision(DecisionKind.UNBLOCK, chunk_id, note)
			self._append_log("unblock", chunk_id, note)
		logger.info(f"Chunk {chunk_id} unblocked")

	def skip(self, chunk_id: str, reason: str = "") -> None:
		"""External decision: pending or blocked -> skipped."""
		with self._lock:
			record = self._get(chunk_id)
			if record.status not in (ChunkStatus.PENDING, ChunkStatus.BLOCKED):
				raise InvalidTransitionError(f"Chunk {chunk_id} is {record.status.value} and cannot be skipped")
			if record.status == ChunkStatus.BLOCKED:
				self._resolve_chunk_questions(chunk_id, reason or "skipped")
			record.status = ChunkStatus.SKIPPED
			record.completed_at = self._clock()
			record.notes = reason
			self._record_decision(DecisionKind.SKIP, chunk_id, reason)
			self._append_log("skip", chunk_id, reason)
			events = self._phase_events(chunk_id)
		logger.info(f"Chunk {chunk_id} skipped")
		self._emit(events)

	def requeue(self, chunk_id: str, note: str = "") -> None:
		"""Re-offer an interrupted in_progress chunk. Never done automatically."""
		with self._lock:
			record = self._get(chunk_id)
			if record.status != ChunkStatus.IN_PROGRESS:
				raise InvalidTransitionError(f"Chunk {chunk_id} is {record.status.value}, not in_progress")
			self._release(chunk_id)
			record.status = ChunkStatus.PENDING
			record.worker_id = None
			record.started_at = None
			self._record_decision(DecisionKind.REQUEUE, chunk_id, note)
			self._append_log("requeue", chunk_id, note)
		logger.info(f"Chunk {chunk_id} requeued")

	def resolve_question(self, question_id: str, resolution: str) -> OpenQuestion:
		"""Close an open question without changing chunk state."""
		with self._lock:
			for question in self._questions:
				if question.id == question_id:
					if not question.is_open:
						raise InvalidTransitionError(f"Question {question_id} is already resolved")
					question.resolved_at = self._clock()
					question.resolution = resolution
					self._record_decision(DecisionKind.RESOLVE, question.chunk_id, resolution)
					self._append_log("resolve", question.chunk_id, f"{question_id}: {resolution}")
					return question.model_copy()
		raise SchedulerError(f"Unknown question: {question_id}")

	def mark_complete(self) -> None:
		"""Finalize the plan status once acceptance has passed."""
		with self._lock:
			if not self.is_finished():
				raise PlanNotFinishedError(f"Plan {self.plan.id} still has unresolved chunks")
			self._plan_status = PlanStatus.COMPLETE
			self._append_log("plan_complete", None, self.plan.id)
		logger.info(f"Plan {self.plan.id} complete")

	def _require_claim(self, chunk_id: str, record: ChunkProgress, worker_id: str) -> None:
		if record.status != ChunkStatus.IN_PROGRESS:
			raise InvalidTransitionError(f"Chunk {chunk_id} is {record.status.value}, not in_progress")
		if record.worker_id != worker_id:
			raise InvalidTransitionError(f"Chunk {chunk_id} is claimed by {record.worker_id}, not {worker_id}")

	def _release(self, chunk_id: str) -> None:
		stream = self.graph.streams[chunk_id]
		if self._in_flight.get(stream) == chunk_id:
			del self._in_flight[stream]

	def _resolve_chunk_questions(self, chunk_id: str, resolution: str) -> None:
		now = self._clock()
		for question in self._questions:
			if question.chunk_id == chunk_id and question.is_open:
				question.resolved_at = now
				question.resolution = resolution

	def _record_decision(self, kind: DecisionKind, chunk_id: Optional[str], detail: str) -> None:
		self._decisions.append(Decision(
			id=f"d-{len(self._decisions) + 1}",
			kind=kind,
			chunk_id=chunk_id,
			detail=detail,
			made_at=self._clock(),
		))

	def _append_log(self, event: str, chunk_id: Optional[str], detail: str = "") -> None:
		self._log.append(SessionLogEntry(at=self._clock(), event=event, chunk_id=chunk_id, detail=detail))

	# Queries

	def status(self, chunk_id: str) -> ChunkStatus:
		with self._lock:
			return self._get(chunk_id).status

	def statuses(self) -> dict[str, ChunkStatus]:
		with self._lock:
			return {c: self._records[c].status for c in self.graph.order}

	def record(self, chunk_id: str) -> ChunkProgress:
		with self._lock:
			return self._get(chunk_id).model_copy()

	@property
	def plan_status(self) -> PlanStatus:
		return self._plan_status

	@property
	def in_flight(self) -> dict[str, str]:
		"""Stream -> chunk currently in progress."""
		with self._lock:
			return dict(self._in_flight)

	def is_finished(self) -> bool:
		with self._lock:
			return all(r.status.is_terminal for r in self._records.values())

	def current_phase(self) -> Optional[int]:
		"""Lowest phase index that still has an unresolved chunk."""
		with self._lock:
			for c in self.graph.order:
				if not self._records[c].status.is_terminal:
					return self.graph.phase_index[c]
			return None

	def next_ready_hint(self) -> Optional[str]:
		ready = self.ready_chunks()
		return ready[0] if ready else None

	def withheld_by(self, chunk_id: str) -> list[str]:
		"""Blocked chunks among chunk_id's transitive predecessors."""
		with self._lock:
			seen: set[str] = set()
			frontier = list(self.graph.predecessors(chunk_id))
			while frontier:
				current = frontier.pop()
				if current in seen:
					continue
				seen.add(current)
				frontier.extend(self.graph.predecessor_sets[current])
			return [
				c for c in self.graph.order
				if c in seen and self._records[c].status == ChunkStatus.BLOCKED
			]

	def open_questions(self, include_resolved: bool = False) -> list[OpenQuestion]:
		with self._lock:
			return [q.model_copy() for q in self._questions if include_resolved or q.is_open]

	@property
	def decisions(self) -> list[Decision]:
		with self._lock:
			return [d.model_copy() for d in self._decisions]

	@property
	def session_log(self) -> list[SessionLogEntry]:
		with self._lock:
			return [e.model_copy() for e in self._log]

	def progress(self) -> dict:
		"""Counts per status plus percent resolved."""
		with self._lock:
			counts = {status.value: 0 for status in ChunkStatus}
			for record in self._records.values():
				counts[record.status.value] += 1
			total = len(self._records)
			resolved = counts[ChunkStatus.DONE.value] + counts[ChunkStatus.SKIPPED.value]
			return {
				"total_chunks": total,
				**counts,
				"percent_complete": round(resolved / total * 100, 1) if total else 0,
			}

	# Persistence

	def snapshot(self) -> ProgressSnapshot:
		"""Capture the full execution state."""
		with self._lock:
			return ProgressSnapshot(
				plan_id=self.plan.id,
				plan_version=self.plan_version,
				plan_status=self._plan_status,
				chunks={c: self._records[c].model_copy() for c in self.graph.order},
				open_questions=[q.model_copy() for q in self._questions],
				decisions=[d.model_copy() for d in self._decisions],
				session_log=[e.model_copy() for e in self._log],
				current_phase=self.current_phase(),
				next_ready_chunk_hint=self.next_ready_hint(),
				saved_at=self._clock(),
			)

	def load_snapshot(self, snapshot: ProgressSnapshot) -> None:
		"""
		Replace execution state with a snapshot's. In-flight chunks stay
		in_progress and keep their stream occupied until requeued.
		"""
		if snapshot.plan_id != self.plan.id:
			raise SnapshotMismatchError(f"Snapshot is for plan '{snapshot.plan_id}', not '{self.plan.id}'")
		missing = [c for c in self.graph.order if c not in snapshot.chunks]
		unknown = sorted(set(snapshot.chunks) - set(self.graph.order))
		if missing or unknown:
			raise SnapshotMismatchError(f"Snapshot chunk set differs (missing: {missing}, unknown: {unknown})")
		with self._lock:
			in_flight: dict[str, str] = {}
			for chunk_id in self.graph.order:
				record = snapshot.chunks[chunk_id]
				if record.status == ChunkStatus.IN_PROGRESS:
					stream = self.graph.streams[chunk_id]
					if stream in in_flight:
						raise SnapshotMismatchError(
							f"Snapshot has {in_flight[stream]} and {chunk_id} both in progress on stream {stream}"
						)
					in_flight[stream] = chunk_id
			self._records = {c: snapshot.chunks[c].model_copy() for c in self.graph.order}
			self._in_flight = in_flight
			self._questions = [q.model_copy() for q in snapshot.open_questions]
			self._decisions = [d.model_copy() for d in snapshot.decisions]
			self._log = [e.model_copy() for e in snapshot.session_log]
			self._plan_status = snapshot.plan_status
			self._completed_phases = {
				phase.index for phase in self.plan.phases if self._phase_resolved(phase.index)
			}
		logger.info(
			f"Restored plan {self.plan.id}: {len(in_flight)} in flight, "
			f"{len([q for q in self._questions if q.is_open])} open questions"
		)
