"""
Dispatcher - Async coordination point between workers and the scheduler.

Workers suspend in poll() on a shared asyncio.Condition until a chunk of
their stream becomes ready. Every transition goes through the dispatcher,
which commits it on the scheduler, persists a snapshot when a store is
configured, and wakes waiting workers. Once the plan is finished, or no
worker is executing a chunk and none is ready for a registered stream,
the dispatcher closes and every poll() returns []. Chunks left in progress
by an earlier run do not count as executing.
"""

import asyncio
import logging
from typing import Optional

from ..progress.models import OpenQuestion
from ..progress.store import ProgressStore
from .router import CommunicationRouter
from .scheduler import Scheduler
from .worker import Worker

logger = logging.getLogger(__name__)


class Dispatcher:
	"""
	Serializes worker requests onto one Scheduler.

	Usage:
		dispatcher = Dispatcher(scheduler, router=router, store=store)
		dispatcher.register(worker)
		while chunk_ids := await worker.poll():
			await dispatcher.claim(worker, chunk_ids[0])
			...
	"""

	def __init__(
		self,
		scheduler: Scheduler,
		router: Optional[CommunicationRouter] = None,
		store: Optional[ProgressStore] = None,
	):
		self.scheduler = scheduler
		self.router = router
		self.store = store
		self._workers: dict[str, Worker] = {}
		self._active: set[str] = set()  # chunks claimed through this dispatcher
		self._condition = asyncio.Condition()
		self._save_lock = asyncio.Lock()
		self._closed = False

	@property
	def closed(self) -> bool:
		return self._closed

	@property
	def workers(self) -> list[Worker]:
		return list(self._workers.values())

	def register(self, worker: Worker) -> None:
		"""Bind a worker to its stream on the scheduler and the router."""
		self.scheduler.register_worker(worker.worker_id, worker.stream)
		worker.attach(self)
		if self.router is not None:
			self.router.register(worker)
		self._workers[worker.worker_id] = worker

	def unregister(self, worker: Worker) -> None:
		self._workers.pop(worker.worker_id, None)
		self.scheduler.unregister_worker(worker.worker_id)
		if self.router is not None:
			self.router.unregister(worker)

	def is_quiescent(self) -> bool:
		"""True when no worker is executing and no registered stream has a ready chunk."""
		if self._active:
			return False
		streams = self.scheduler.registered_streams
		return not any(self.scheduler.ready_chunks(stream) for stream in streams)

	async def poll(self, worker: Worker) -> list[str]:
		"""Wait until a chunk of the worker's stream is ready, or the dispatcher closes."""
		async with self._condition:
			while True:
				if self._closed:
					return []
				ready = self.scheduler.ready_chunks(worker.stream)
				if ready:
					return ready
				if self.scheduler.is_finished() or self.is_quiescent():
					self._close_locked()
					return []
				await self._condition.wait()

	async def claim(self, worker: Worker, chunk_id: str) -> None:
		self.scheduler.claim(chunk_id, worker.worker_id)
		self._active.add(chunk_id)
		await self._changed()

	async def complete(self, worker: Worker, chunk_id: str) -> None:
		self.scheduler.complete(chunk_id, worker.worker_id)
		self._active.discard(chunk_id)
		await self._changed()

	async def fail(self, worker: Worker, chunk_id: str, reason: str) -> OpenQuestion:
		question = self.scheduler.fail(chunk_id, reason, worker_id=worker.worker_id)
		self._active.discard(chunk_id)
		await self._changed()
		return question

	async def unblock(self, chunk_id: str, note: str = "") -> None:
		self.scheduler.unblock(chunk_id, note)
		await self._changed()

	async def skip(self, chunk_id: str, reason: str = "") -> None:
		self.scheduler.skip(chunk_id, reason)
		await self._changed()

	async def requeue(self, chunk_id: str, note: str = "") -> None:
		self.scheduler.requeue(chunk_id, note)
		self._active.discard(chunk_id)
		await self._changed()

	async def save(self) -> None:
		"""Persist the current snapshot. Saves are serialized so the newest state wins."""
		if self.store is None:
			return
		async with self._save_lock:
			await self.store.save(self.scheduler.snapshot())

	async def _changed(self) -> None:
		await self.save()
		async with self._condition:
			if self.scheduler.is_finished() or self.is_quiescent():
				self._close_locked()
			self._condition.notify_all()

	def _close_locked(self) -> None:
		if not self._closed:
			self._closed = True
			state = "finished" if self.scheduler.is_finished() else "quiescent"
			logger.info(f"Dispatcher for plan {self.scheduler.plan.id} closed ({state})")
		self._condition.notify_all()

	async def close(self) -> None:
		"""Release every waiting poll()."""
		async with self._condition:
			self._close_locked()
