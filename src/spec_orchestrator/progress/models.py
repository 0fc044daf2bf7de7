"""
Progress Models - The durable record of plan execution.

A ProgressSnapshot plus its open questions is a complete explanation of
what has run, what failed and what remains.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from ..plans.models import ChunkStatus, PlanStatus

SCHEMA_VERSION = 1


class ChunkProgress(BaseModel):
	"""Execution record of a single chunk."""
	status: ChunkStatus = Field(default=ChunkStatus.PENDING)
	worker_id: Optional[str] = Field(default=None, description="Worker holding or last holding the claim")
	started_at: Optional[str] = Field(default=None)
	completed_at: Optional[str] = Field(default=None)
	notes: str = Field(default="", description="Block reason or skip rationale")


class OpenQuestion(BaseModel):
	"""A blocker awaiting external (human) resolution."""
	id: str = Field(description="Question identifier (e.g., 'q-1')")
	chunk_id: Optional[str] = Field(default=None)
	question: str = Field(description="What failed or what needs deciding")
	raised_at: str = Field(default_factory=lambda: datetime.now().isoformat())
	resolved_at: Optional[str] = Field(default=None)
	resolution: str = Field(default="")

	@property
	def is_open(self) -> bool:
		return self.resolved_at is None


class DecisionKind(str, Enum):
	"""Explicit interventions recorded against the plan."""
	UNBLOCK = "unblock"
	SKIP = "skip"
	REQUEUE = "requeue"
	RESOLVE = "resolve"


class Decision(BaseModel):
	"""An explicit external decision that changed execution state."""
	id: str = Field(description="Decision identifier (e.g., 'd-1')")
	kind: DecisionKind
	chunk_id: Optional[str] = Field(default=None)
	detail: str = Field(default="", description="Rationale supplied by the caller")
	made_at: str = Field(default_factory=lambda: datetime.now().isoformat())


class SessionLogEntry(BaseModel):
	"""One chronological event of the execution session log."""
	at: str
	event: str
	chunk_id: Optional[str] = Field(default=None)
	detail: str = Field(default="")


class ProgressSnapshot(BaseModel):
	"""
	Serializable execution state of one plan.

	Restoring a scheduler from the same plan plus this snapshot is
	deterministic and lossless.
	"""
	schema_version: int = Field(default=SCHEMA_VERSION)
	plan_id: str
	plan_version: str = Field(description="Fingerprint of the plan document")
	plan_status: PlanStatus = Field(default=PlanStatus.DRAFT)
	chunks: dict[str, ChunkProgress] = Field(default_factory=dict)
	open_questions: list[OpenQuestion] = Field(default_factory=list)
	decisions: list[Decision] = Field(default_factory=list)
	session_log: list[SessionLogEntry] = Field(default_factory=list)
	current_phase: Optional[int] = Field(default=None)
	next_ready_chunk_hint: Optional[str] = Field(default=None)
	saved_at: str = Field(default_factory=lambda: datetime.now().isoformat())

	def statuses(self) -> dict[str, ChunkStatus]:
		return {chunk_id: record.status for chunk_id, record in self.chunks.items()}

	def unresolved_questions(self) -> list[OpenQuestion]:
		return [q for q in self.open_questions if q.is_open]
