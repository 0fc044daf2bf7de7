"""spec-orchestrator - Plan-driven execution across stream-bound workers."""

from .errors import OrchestratorError
from .orchestrator import (
	AcceptanceVerifier,
	CallableWorker,
	CommunicationRouter,
	ExecutionMode,
	PlanRunner,
	Scheduler,
	Worker,
	build_graph,
)
from .plans import Plan, load_plan, parse_plan, serialize_plan
from .progress import FileProgressStore, ProgressSnapshot, SqliteProgressStore
from .progress.restore import restore_scheduler

__version__ = "0.1.0"

__all__ = [
	"OrchestratorError",
	"Plan",
	"parse_plan",
	"load_plan",
	"serialize_plan",
	"build_graph",
	"Scheduler",
	"Worker",
	"CallableWorker",
	"CommunicationRouter",
	"PlanRunner",
	"ExecutionMode",
	"AcceptanceVerifier",
	"ProgressSnapshot",
	"FileProgressStore",
	"SqliteProgressStore",
	"restore_scheduler",
]
