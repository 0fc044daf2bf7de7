"""
Worker - Abstract execution agent bound to one stream.

A worker never mutates scheduler state directly: it polls for ready chunks
of its stream through the dispatcher, executes them, and exchanges messages
with other streams through the communication router. What "executing" a
chunk means is entirely up to the subclass.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from ..errors import OrchestratorError
from ..plans.models import Chunk
from .router import Message

if TYPE_CHECKING:
	from .dispatcher import Dispatcher

logger = logging.getLogger(__name__)


@dataclass
class ChunkResult:
	"""Outcome of executing a single chunk."""
	chunk_id: str
	success: bool
	output: Any = None
	error: Optional[str] = None
	notes: list[str] = field(default_factory=list)


class Worker(ABC):
	"""
	Base class for stream-bound workers.

	The (worker_id, stream) binding is fixed at construction; the scheduler
	rejects claims for chunks of any other stream.
	"""

	def __init__(self, worker_id: str, stream: str):
		self._worker_id = worker_id
		self._stream = stream
		self._inbox: asyncio.Queue[Message] = asyncio.Queue()
		self._seen: set[tuple[str, str, str]] = set()
		self._dispatcher: Optional["Dispatcher"] = None

	@property
	def worker_id(self) -> str:
		return self._worker_id

	@property
	def stream(self) -> str:
		return self._stream

	def attach(self, dispatcher: "Dispatcher") -> None:
		"""Called by Dispatcher.register."""
		self._dispatcher = dispatcher

	def _require_dispatcher(self) -> "Dispatcher":
		if self._dispatcher is None:
			raise OrchestratorError(f"Worker {self.worker_id} is not registered with a dispatcher")
		return self._dispatcher

	async def poll(self) -> list[str]:
		"""
		Ready chunk ids of this worker's stream.

		Waits until at least one is ready; returns [] only once the
		dispatcher has closed (plan finished or nothing can progress).
		"""
		return await self._require_dispatcher().poll(self)

	@abstractmethod
	async def execute(self, chunk: Chunk) -> ChunkResult:
		"""Perform the chunk's work. Raise ChunkBlockedError to report a blocker."""
		...

	async def send(self, rule_id: str, payload: str) -> None:
		"""Attach a payload to one of this stream's outgoing communication rules."""
		router = self._require_dispatcher().router
		if router is None:
			raise OrchestratorError("Dispatcher has no communication router")
		router.send(rule_id, payload, self.stream)

	async def receive(self) -> Message:
		"""Wait for the next inbound message."""
		return await self._inbox.get()

	def receive_nowait(self) -> Optional[Message]:
		try:
			return self._inbox.get_nowait()
		except asyncio.QueueEmpty:
			return None

	def deliver(self, message: Message) -> bool:
		"""
		Router-side entry point. Duplicate deliveries are dropped.

		Returns:
			True if the message was queued, False if it was a duplicate
		"""
		if message.key in self._seen:
			logger.debug(f"Worker {self.worker_id} dropped duplicate {message.rule_id}")
			return False
		self._seen.add(message.key)
		self._inbox.put_nowait(message)
		return True

	@property
	def pending_messages(self) -> int:
		return self._inbox.qsize()

	def __repr__(self) -> str:
		return f"{type(self).__name__}({self.worker_id!r}, stream={self.stream!r})"


ChunkHandler = Callable[[Chunk, "CallableWorker"], Awaitable[Any]]


class CallableWorker(Worker):
	"""
	Worker backed by an async handler.

	The handler may return a ChunkResult, or any other value which is taken
	as a successful output.

	Usage:
		async def build(chunk, worker):
			...
			return "built"

		worker = CallableWorker("w-api", "api", build)
	"""

	def __init__(self, worker_id: str, stream: str, handler: ChunkHandler):
		super().__init__(worker_id, stream)
		self.handler = handler

	async def execute(self, chunk: Chunk) -> ChunkResult:
		result = await self.handler(chunk, self)
		if isinstance(result, ChunkResult):
			return result
		return ChunkResult(chunk_id=chunk.id, success=True, output=result)
