"""
Plan Models - Pydantic schemas for parsed execution plans.

A plan partitions work into streams (ownership), phases (barriers) and
chunks (schedulable units). Plans are immutable once parsed; a new plan
version requires re-parsing the document.
"""

from enum import Enum
from typing import Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class PlanStatus(str, Enum):
	"""Status of a plan."""
	DRAFT = "draft"
	IN_PROGRESS = "in-progress"
	COMPLETE = "complete"


class ChunkStatus(str, Enum):
	"""Status of a chunk."""
	PENDING = "pending"
	IN_PROGRESS = "in_progress"
	DONE = "done"
	BLOCKED = "blocked"
	SKIPPED = "skipped"

	@property
	def is_terminal(self) -> bool:
		"""Done and skipped chunks satisfy their dependents."""
		return self in (ChunkStatus.DONE, ChunkStatus.SKIPPED)


class PlanMeta(BaseModel):
	"""Plan metadata from the Meta table."""
	model_config = ConfigDict(frozen=True)

	type: str = Field(default="", description="Kind of work (e.g., 'feature')")
	repo: str = Field(default="", description="Target repository or system")
	status: PlanStatus = Field(default=PlanStatus.DRAFT)


class Stream(BaseModel):
	"""A named partition of ownership executed by one worker at a time."""
	model_config = ConfigDict(frozen=True)

	name: str = Field(description="Unique stream name")
	responsibility: str = Field(default="", description="What this stream is responsible for")
	owned_paths: tuple[str, ...] = Field(default=(), description="Resources only this stream may mutate")
	capabilities: tuple[str, ...] = Field(default=(), description="Opaque capability tags")


class Chunk(BaseModel):
	"""The atomic unit of schedulable work."""
	model_config = ConfigDict(frozen=True)

	id: str = Field(description="Chunk identifier, unique within the plan")
	stream: str = Field(description="Owning stream name")
	outcome: str = Field(default="", description="Human-readable success statement")
	depends_on: tuple[str, ...] = Field(default=(), description="Explicit chunk dependencies")
	sub_tasks: tuple[str, ...] = Field(default=(), description="Ordered opaque work items")
	capabilities: tuple[str, ...] = Field(default=(), description="Capabilities the chunk needs")
	status: ChunkStatus = Field(default=ChunkStatus.PENDING, description="Status at parse time")


class Phase(BaseModel):
	"""An ordered barrier grouping chunks."""
	model_config = ConfigDict(frozen=True)

	index: int = Field(description="0-based phase index")
	name: str = Field(default="")
	chunks: tuple[Chunk, ...] = Field(default=())


class CommunicationRule(BaseModel):
	"""A trigger-gated hand-off from one stream to others."""
	model_config = ConfigDict(frozen=True)

	id: str = Field(description="Rule identifier (e.g., 'rule-1')")
	from_stream: str
	to_streams: tuple[str, ...]
	trigger_phase: Optional[int] = Field(default=None, description="Phase whose completion fires the rule")
	trigger_chunk: Optional[str] = Field(default=None, description="Chunk whose completion fires the rule")
	payload_description: str = Field(default="")

	@model_validator(mode="after")
	def _one_trigger(self) -> "CommunicationRule":
		if (self.trigger_phase is None) == (self.trigger_chunk is None):
			raise ValueError("exactly one of trigger_phase or trigger_chunk must be set")
		return self

	@property
	def trigger_key(self) -> str:
		if self.trigger_chunk is not None:
			return f"chunk:{self.trigger_chunk}"
		return f"phase:{self.trigger_phase}"


class AcceptanceCriterion(BaseModel):
	"""A completion criterion, optionally backed by an executable check."""
	model_config = ConfigDict(frozen=True)

	id: str = Field(description="Criterion identifier (e.g., 'ac-1')")
	description: str = Field(default="")
	command: Optional[str] = Field(default=None, description="Shell command whose exit code decides the criterion")
	checked: bool = Field(default=False, description="Ticked in the source document")


class Plan(BaseModel):
	"""
	A complete, validated execution plan.

	Construct plans through the parser; the model itself does not re-check
	cross-references.
	"""
	model_config = ConfigDict(frozen=True)

	id: str = Field(description="Plan identifier")
	meta: PlanMeta = Field(default_factory=PlanMeta)
	streams: tuple[Stream, ...] = Field(default=())
	phases: tuple[Phase, ...] = Field(default=())
	communication: tuple[CommunicationRule, ...] = Field(default=())
	acceptance_criteria: tuple[AcceptanceCriterion, ...] = Field(default=())
	completion_promise: str = Field(description="Opaque token emitted after acceptance passes")

	def iter_chunks(self) -> Iterator[Chunk]:
		"""Yield chunks in declaration order (phase index, then position)."""
		for phase in self.phases:
			yield from phase.chunks

	def get_chunk(self, chunk_id: str) -> Optional[Chunk]:
		for chunk in self.iter_chunks():
			if chunk.id == chunk_id:
				return chunk
		return None

	def get_stream(self, name: str) -> Optional[Stream]:
		for stream in self.streams:
			if stream.name == name:
				return stream
		return None

	def phase_of(self, chunk_id: str) -> Optional[Phase]:
		for phase in self.phases:
			if any(c.id == chunk_id for c in phase.chunks):
				return phase
		return None

	def chunks_for_stream(self, stream: str) -> list[Chunk]:
		return [c for c in self.iter_chunks() if c.stream == stream]

	def rules_for_trigger(self, trigger_key: str) -> list[CommunicationRule]:
		return [r for r in self.communication if r.trigger_key == trigger_key]

	def get_progress(self) -> dict:
		"""Parse-time progress counts (checkbox state only)."""
		chunks = list(self.iter_chunks())
		done = len([c for c in chunks if c.status == ChunkStatus.DONE])
		return {
			"total_phases": len(self.phases),
			"total_chunks": len(chunks),
			"completed_chunks": done,
			"percent_complete": round(done / len(chunks) * 100, 1) if chunks else 0,
		}
