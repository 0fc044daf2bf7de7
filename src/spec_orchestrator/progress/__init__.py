"""Durable progress tracking: snapshot models, progress.md document, stores."""

from .document import parse_progress, render_progress
from .models import (
	SCHEMA_VERSION,
	ChunkProgress,
	Decision,
	DecisionKind,
	OpenQuestion,
	ProgressSnapshot,
	SessionLogEntry,
)
from .store import (
	FileProgressStore,
	ProgressStore,
	SqliteProgressStore,
	atomic_write_text,
	get_progress_store,
)

__all__ = [
	"SCHEMA_VERSION",
	"ChunkProgress",
	"Decision",
	"DecisionKind",
	"OpenQuestion",
	"ProgressSnapshot",
	"SessionLogEntry",
	"parse_progress",
	"render_progress",
	"FileProgressStore",
	"ProgressStore",
	"SqliteProgressStore",
	"atomic_write_text",
	"get_progress_store",
]
