"""CLI for spec-orchestrator: validate, inspect and intervene on plan progress."""

import argparse
import asyncio
import sys
from pathlib import Path

from .errors import OrchestratorError, SnapshotNotFoundError
from .orchestrator.graph import build_graph
from .orchestrator.scheduler import Scheduler
from .orchestrator.verifier import AcceptanceVerifier, authorize_completion
from .plans.models import Plan
from .plans.parser import load_plan
from .progress.restore import restore_scheduler
from .progress.store import FileProgressStore


def _progress_path(args: argparse.Namespace) -> Path:
	if getattr(args, "progress", None):
		return Path(args.progress)
	from .config import get_config
	return Path(args.plan).parent / get_config().progress_filename


def _open(args: argparse.Namespace) -> tuple[Plan, Scheduler, FileProgressStore]:
	"""Parse the plan and restore its scheduler from the progress file, if any."""
	plan = load_plan(args.plan)
	graph = build_graph(plan)
	store = FileProgressStore(_progress_path(args), plan)
	try:
		snapshot = asyncio.run(store.load(plan.id))
	except SnapshotNotFoundError:
		return plan, Scheduler(plan, graph=graph), store
	return plan, restore_scheduler(plan, snapshot, graph=graph), store


def _save(scheduler: Scheduler, store: FileProgressStore) -> None:
	asyncio.run(store.save(scheduler.snapshot()))


def cmd_validate(args: argparse.Namespace) -> None:
	"""Parse a plan and build its dependency graph."""
	plan = load_plan(args.plan)
	graph = build_graph(plan)
	chunks = len(graph.order)
	print(f"Plan '{plan.id}' is valid")
	print(f"  Streams:        {len(plan.streams)}")
	print(f"  Phases:         {len(plan.phases)}")
	print(f"  Chunks:         {chunks}")
	print(f"  Rules:          {len(plan.communication)}")
	print(f"  Criteria:       {len(plan.acceptance_criteria)}")


def cmd_status(args: argparse.Namespace) -> None:
	"""Show plan progress as a tree or summary panel."""
	from .visualizer.plan_progress import render_plan_progress, render_plan_summary

	_, scheduler, _ = _open(args)
	if args.summary:
		render_plan_summary(scheduler)
	else:
		render_plan_progress(scheduler)


def cmd_ready(args: argparse.Namespace) -> None:
	"""List chunks that can be claimed now."""
	plan, scheduler, _ = _open(args)
	ready = scheduler.ready_chunks(args.stream)
	if not ready:
		print("No chunks ready.")
		withheld = [c.id for c in plan.iter_chunks() if scheduler.withheld_by(c.id)]
		if withheld:
			print(f"Withheld by blocked chunks: {', '.join(withheld)}")
		return
	for chunk_id in ready:
		chunk = plan.get_chunk(chunk_id)
		print(f"{chunk_id}\t{chunk.stream}\t{chunk.outcome}")


def cmd_unblock(args: argparse.Namespace) -> None:
	"""Return a blocked chunk to pending."""
	_, scheduler, store = _open(args)
	scheduler.unblock(args.chunk, args.note)
	_save(scheduler, store)
	print(f"Unblocked {args.chunk}")


def cmd_skip(args: argparse.Namespace) -> None:
	"""Mark a pending or blocked chunk as skipped."""
	_, scheduler, store = _open(args)
	scheduler.skip(args.chunk, args.reason)
	_save(scheduler, store)
	print(f"Skipped {args.chunk}")


def cmd_requeue(args: argparse.Namespace) -> None:
	"""Re-offer a chunk left in progress by an interrupted run."""
	_, scheduler, store = _open(args)
	scheduler.requeue(args.chunk, args.note)
	_save(scheduler, store)
	print(f"Requeued {args.chunk}")


def cmd_resolve(args: argparse.Namespace) -> None:
	"""Close an open question."""
	_, scheduler, store = _open(args)
	scheduler.resolve_question(args.question, args.resolution)
	_save(scheduler, store)
	print(f"Resolved {args.question}")


def cmd_verify(args: argparse.Namespace) -> None:
	"""Run acceptance criteria; print the completion promise on success."""
	plan, scheduler, store = _open(args)

	supplied = {criterion_id: True for criterion_id in args.passed}
	supplied.update({criterion_id: False for criterion_id in args.failed})

	timeout = args.timeout
	if timeout is None:
		from .config import get_config
		timeout = get_config().command_timeout
	project_dir = args.project_dir or Path(args.plan).parent
	verifier = AcceptanceVerifier(project_dir, timeout=timeout)

	result = asyncio.run(verifier.verify(plan, scheduler, supplied))
	for check in result.checks:
		mark = "PASS" if check.passed else "FAIL"
		print(f"  [{mark}] {check.criterion_id} {check.description} ({check.source.value})")
	print(result.summary)

	promise = authorize_completion(plan, result)
	scheduler.mark_complete()
	_save(scheduler, store)
	print(promise)


def main(argv: list[str] | None = None) -> None:
	"""CLI entry point."""
	parser = argparse.ArgumentParser(
		prog="spec-orchestrator",
		description="Plan-driven execution: validate plans, inspect progress, record decisions",
	)
	parser.add_argument("--log-level", default=None, help="Enable logging at this level (e.g. INFO, DEBUG)")
	subparsers = parser.add_subparsers(dest="command")

	def plan_command(name: str, help_text: str) -> argparse.ArgumentParser:
		sub = subparsers.add_parser(name, help=help_text)
		sub.add_argument("plan", help="Path to the plan document")
		sub.add_argument("--progress", default=None, help="Progress file (default: beside the plan)")
		return sub

	# validate
	validate_parser = subparsers.add_parser("validate", help="Parse a plan and check its dependency graph")
	validate_parser.add_argument("plan", help="Path to the plan document")
	validate_parser.set_defaults(func=cmd_validate)

	# status
	status_parser = plan_command("status", "Show plan progress")
	status_parser.add_argument("--summary", action="store_true", help="Show summary panel instead of tree")
	status_parser.set_defaults(func=cmd_status)

	# ready
	ready_parser = plan_command("ready", "List chunks ready to claim")
	ready_parser.add_argument("--stream", default=None, help="Only chunks of this stream")
	ready_parser.set_defaults(func=cmd_ready)

	# unblock
	unblock_parser = plan_command("unblock", "Return a blocked chunk to pending")
	unblock_parser.add_argument("chunk", help="Chunk ID")
	unblock_parser.add_argument("--note", default="", help="Why the blocker is cleared")
	unblock_parser.set_defaults(func=cmd_unblock)

	# skip
	skip_parser = plan_command("skip", "Skip a pending or blocked chunk")
	skip_parser.add_argument("chunk", help="Chunk ID")
	skip_parser.add_argument("--reason", required=True, help="Why the chunk is skipped")
	skip_parser.set_defaults(func=cmd_skip)

	# requeue
	requeue_parser = plan_command("requeue", "Re-offer an interrupted in-progress chunk")
	requeue_parser.add_argument("chunk", help="Chunk ID")
	requeue_parser.add_argument("--note", default="", help="Why the chunk is re-offered")
	requeue_parser.set_defaults(func=cmd_requeue)

	# resolve
	resolve_parser = plan_command("resolve", "Resolve an open question")
	resolve_parser.add_argument("question", help="Question ID (e.g. q-1)")
	resolve_parser.add_argument("--resolution", required=True, help="The answer or decision")
	resolve_parser.set_defaults(func=cmd_resolve)

	# verify
	verify_parser = plan_command("verify", "Run acceptance criteria")
	verify_parser.add_argument(
		"--pass", dest="passed", action="append", default=[], metavar="ID",
		help="Record a criterion as passed (repeatable)",
	)
	verify_parser.add_argument(
		"--fail", dest="failed", action="append", default=[], metavar="ID",
		help="Record a criterion as failed (repeatable)",
	)
	verify_parser.add_argument("--project-dir", default=None, help="Working directory for criterion commands")
	verify_parser.add_argument("--timeout", type=int, default=None, help="Seconds per criterion command")
	verify_parser.set_defaults(func=cmd_verify)

	args = parser.parse_args(argv)

	if not args.command:
		parser.print_help()
		sys.exit(1)

	if args.log_level:
		from .logging_config import setup_logging
		setup_logging(level=args.log_level)

	try:
		args.func(args)
	except (OrchestratorError, OSError) as e:
		print(f"Error: {e}", file=sys.stderr)
		sys.exit(1)
