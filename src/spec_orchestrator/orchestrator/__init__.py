"""Orchestrator module - Dependency graph, scheduling, dispatch, routing and acceptance."""

from .dispatcher import Dispatcher
from .graph import DependencyGraph, build_graph
from .router import CommunicationRouter, Message
from .runner import ExecutionMode, PlanRunner, RunStatus, RunSummary
from .scheduler import Scheduler, SchedulerListener
from .verifier import AcceptanceVerifier, VerificationResult, authorize_completion
from .worker import CallableWorker, ChunkResult, Worker

__all__ = [
	"DependencyGraph",
	"build_graph",
	"Scheduler",
	"SchedulerListener",
	"CommunicationRouter",
	"Message",
	"Worker",
	"CallableWorker",
	"ChunkResult",
	"Dispatcher",
	"PlanRunner",
	"ExecutionMode",
	"RunStatus",
	"RunSummary",
	"AcceptanceVerifier",
	"VerificationResult",
	"authorize_completion",
]
