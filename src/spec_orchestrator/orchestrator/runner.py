"""
Plan Runner - Fan-out/fan-in execution of a plan across stream workers.

Concurrent mode starts one task per worker; each loops poll -> claim ->
execute -> complete/fail until the dispatcher closes. Sequential mode runs
a single chunk at a time in declaration order. A failing chunk is recorded
as blocked with an open question and never aborts the run.

When every chunk is done or skipped and a verifier is configured, the
acceptance criteria are checked; only an all-pass result finalizes the plan
and hands the completion promise back to the caller.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Mapping, Optional

from ..errors import ChunkBlockedError, ClaimError
from ..plans.models import ChunkStatus, Plan
from ..progress.models import OpenQuestion
from ..progress.store import ProgressStore
from .dispatcher import Dispatcher
from .router import CommunicationRouter
from .scheduler import Scheduler
from .verifier import AcceptanceVerifier, VerificationResult, authorize_completion
from .worker import ChunkResult, Worker

logger = logging.getLogger(__name__)


class ExecutionMode(str, Enum):
	"""How workers are driven."""
	SEQUENTIAL = "sequential"
	CONCURRENT = "concurrent"


class RunStatus(str, Enum):
	"""Outcome of a plan run."""
	COMPLETED = "completed"
	ACCEPTANCE_FAILED = "acceptance_failed"
	PARTIAL_FAILURE = "partial_failure"
	STALLED = "stalled"


@dataclass
class RunSummary:
	"""Summary of a plan run."""
	status: RunStatus
	plan_id: str
	results: list[ChunkResult] = field(default_factory=list)
	statuses: dict[str, ChunkStatus] = field(default_factory=dict)
	open_questions: list[OpenQuestion] = field(default_factory=list)
	verification: Optional[VerificationResult] = None
	completion_promise: Optional[str] = None

	@property
	def succeeded(self) -> int:
		return sum(1 for r in self.results if r.success)

	@property
	def failed(self) -> int:
		return sum(1 for r in self.results if not r.success)

	@property
	def blocked(self) -> list[str]:
		return [c for c, s in self.statuses.items() if s == ChunkStatus.BLOCKED]


class PlanRunner:
	"""
	Drives workers through a plan.

	Usage:
		runner = PlanRunner(plan, [CallableWorker("w-api", "api", handler)], store=store)
		summary = await runner.run()
		if summary.completion_promise:
			print(summary.completion_promise)
	"""

	def __init__(
		self,
		plan: Plan,
		workers: list[Worker],
		scheduler: Optional[Scheduler] = None,
		router: Optional[CommunicationRouter] = None,
		store: Optional[ProgressStore] = None,
		verifier: Optional[AcceptanceVerifier] = None,
		mode: ExecutionMode = ExecutionMode.CONCURRENT,
		acceptance_results: Optional[Mapping[str, bool]] = None,
		on_result: Optional[Callable[[ChunkResult], Awaitable[None]]] = None,
	):
		"""
		Initialize the runner.

		Args:
			plan: Parsed plan
			workers: Stream-bound workers; streams without a worker are never run
			scheduler: Existing (e.g. restored) scheduler; a fresh one is built if omitted
			router: Communication router; one is built if omitted
			store: Progress store saved after every transition
			verifier: Acceptance verifier run once every chunk is resolved
			mode: Sequential or concurrent execution
			acceptance_results: Caller-supplied criterion results for the verifier
			on_result: Optional callback after each chunk executes
		"""
		self.plan = plan
		self.workers = list(workers)
		self.scheduler = scheduler or Scheduler(plan)
		self.router = router or CommunicationRouter(plan)
		self.store = store
		self.verifier = verifier
		self.mode = ExecutionMode(mode)
		self.acceptance_results = acceptance_results
		self.on_result = on_result

		self.dispatcher = Dispatcher(self.scheduler, router=self.router, store=store)
		self._results: list[ChunkResult] = []

	async def run(self) -> RunSummary:
		"""Execute until the plan is finished or nothing more can progress."""
		self.scheduler.add_listener(self.router)
		try:
			for worker in self.workers:
				self.dispatcher.register(worker)

			# Re-raise triggers for work finished before this run; receivers dedupe.
			self.scheduler.replay_events()

			interrupted = self.scheduler.in_flight
			if interrupted:
				logger.warning(
					f"Chunks left in progress by an earlier run keep their streams busy: "
					f"{', '.join(interrupted.values())}"
				)

			missing = {s.name for s in self.plan.streams} - self.scheduler.registered_streams
			if missing:
				logger.info(f"No worker for streams: {', '.join(sorted(missing))}")

			logger.info(f"Running plan {self.plan.id} ({self.mode.value}, {len(self.workers)} workers)")
			if self.mode == ExecutionMode.CONCURRENT:
				await self._run_concurrent()
			else:
				await self._run_sequential()
		finally:
			await self.dispatcher.close()
			self.scheduler.remove_listener(self.router)

		return await self._finish()

	async def _run_concurrent(self) -> None:
		# Fan out
		tasks = [asyncio.create_task(self._worker_loop(worker)) for worker in self.workers]
		await asyncio.gather(*tasks)

	async def _run_sequential(self) -> None:
		by_stream: dict[str, Worker] = {}
		for worker in self.workers:
			by_stream.setdefault(worker.stream, worker)

		while True:
			ready = [c for c in self.scheduler.ready_chunks() if self.scheduler.graph.streams[c] in by_stream]
			if not ready:
				break
			chunk_id = ready[0]
			await self._run_chunk(by_stream[self.scheduler.graph.streams[chunk_id]], chunk_id)

	async def _worker_loop(self, worker: Worker) -> None:
		while True:
			ready = await worker.poll()
			if not ready:
				logger.debug(f"Worker {worker.worker_id} finished")
				return
			try:
				await self._run_chunk(worker, ready[0])
			except ClaimError as e:
				logger.debug(f"Worker {worker.worker_id} lost claim on {ready[0]}: {e}")

	async def _run_chunk(self, worker: Worker, chunk_id: str) -> None:
		await self.dispatcher.claim(worker, chunk_id)
		chunk = self.plan.get_chunk(chunk_id)
		result = await self._execute(worker, chunk)
		self._results.append(result)

		if result.success:
			await self.dispatcher.complete(worker, chunk_id)
		else:
			await self.dispatcher.fail(worker, chunk_id, result.error or "chunk reported failure")

		if self.on_result:
			try:
				await self.on_result(result)
			except Exception as e:
				logger.warning(f"on_result callback failed for {chunk_id}: {e}")

	async def _execute(self, worker: Worker, chunk) -> ChunkResult:
		try:
			return await worker.execute(chunk)
		except ChunkBlockedError as e:
			return ChunkResult(chunk_id=chunk.id, success=False, error=e.reason)
		except Exception as e:
			logger.warning(f"Chunk {chunk.id} raised in {worker.worker_id}: {e}")
			return ChunkResult(chunk_id=chunk.id, success=False, error=f"{type(e).__name__}: {e}")

	async def _finish(self) -> RunSummary:
		# Fan in
		summary = RunSummary(
			status=RunStatus.STALLED,
			plan_id=self.plan.id,
			results=list(self._results),
		)

		if self.scheduler.is_finished():
			summary.status = RunStatus.COMPLETED
			if self.verifier is not None:
				summary.verification = await self.verifier.verify(
					self.plan, self.scheduler, self.acceptance_results
				)
				if summary.verification.passed:
					summary.completion_promise = authorize_completion(self.plan, summary.verification)
					self.scheduler.mark_complete()
				else:
					summary.status = RunStatus.ACCEPTANCE_FAILED
		elif any(s == ChunkStatus.BLOCKED for s in self.scheduler.statuses().values()):
			summary.status = RunStatus.PARTIAL_FAILURE

		await self.dispatcher.save()
		summary.statuses = self.scheduler.statuses()
		summary.open_questions = self.scheduler.open_questions()
		logger.info(
			f"Plan {self.plan.id} run ended {summary.status.value}: "
			f"{summary.succeeded} succeeded, {summary.failed} failed"
		)
		return summary
