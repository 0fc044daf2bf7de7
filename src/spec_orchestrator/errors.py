"""
Error taxonomy for plan orchestration.

Structural errors (ParseError, OwnershipConflictError, DependencyCycleError)
are raised before any worker runs. Runtime errors are raised to the caller
of a single operation and never abort the scheduler.
"""

from typing import Optional


class OrchestratorError(Exception):
	"""Base class for all orchestrator errors."""
	pass


class ParseError(OrchestratorError):
	"""Raised when a plan document is malformed or contradictory."""

	def __init__(self, message: str, line: Optional[int] = None, field: Optional[str] = None):
		self.message = message
		self.line = line
		self.field = field
		location = []
		if line is not None:
			location.append(f"line {line}")
		if field:
			location.append(f"field '{field}'")
		prefix = f"[{', '.join(location)}] " if location else ""
		super().__init__(f"{prefix}{message}")


class OwnershipConflictError(ParseError):
	"""Raised when two streams declare overlapping owned paths."""

	def __init__(self, first: str, second: str, path: str, line: Optional[int] = None):
		self.streams = (first, second)
		self.path = path
		super().__init__(
			f"Streams '{first}' and '{second}' both own '{path}'",
			line=line,
			field="Owns",
		)


class DependencyCycleError(OrchestratorError):
	"""Raised when chunk dependencies form a cycle."""

	def __init__(self, cycle: list[str]):
		self.cycle = list(cycle)
		super().__init__(f"Dependency cycle: {' -> '.join(self.cycle)}")


class SchedulerError(OrchestratorError):
	"""Base class for rejected scheduler operations."""
	pass


class UnknownChunkError(SchedulerError):
	"""Raised when an operation references a chunk id not in the plan."""

	def __init__(self, chunk_id: str):
		self.chunk_id = chunk_id
		super().__init__(f"Unknown chunk: {chunk_id}")


class InvalidTransitionError(SchedulerError):
	"""Raised when a status transition is not allowed from the current state."""
	pass


class ClaimError(SchedulerError):
	"""Base class for rejected claims."""
	pass


class AlreadyClaimedError(ClaimError):
	"""Raised when a chunk is not pending or its stream already has a chunk in flight."""
	pass


class ChunkNotReadyError(ClaimError):
	"""Raised when a chunk still has unresolved predecessors."""
	pass


class StreamBindingError(ClaimError):
	"""Raised when a worker claims outside its bound stream."""
	pass


class ChunkBlockedError(OrchestratorError):
	"""Raised by a worker to report an unrecoverable chunk failure."""

	def __init__(self, reason: str, chunk_id: Optional[str] = None):
		self.reason = reason
		self.chunk_id = chunk_id
		super().__init__(reason)


class PlanNotFinishedError(OrchestratorError):
	"""Raised when acceptance is requested before every chunk is resolved."""
	pass


class AcceptanceFailure(OrchestratorError):
	"""Raised when completion is requested while acceptance criteria fail."""

	def __init__(self, failed: list):
		self.failed = list(failed)
		names = ", ".join(c.criterion_id for c in self.failed)
		super().__init__(f"Acceptance criteria failing: {names}")


class SnapshotError(OrchestratorError):
	"""Base class for progress persistence errors."""
	pass


class SnapshotNotFoundError(SnapshotError):
	"""Raised when no snapshot has been saved yet."""
	pass


class SnapshotMismatchError(SnapshotError):
	"""Raised when a snapshot does not belong to the plan being restored."""
	pass


class RoutingError(OrchestratorError):
	"""Raised when a message names an unknown rule or a stream other than the rule's sender."""
	pass
