"""Rich views for plan progress visualization."""

from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.tree import Tree

from ..orchestrator.scheduler import Scheduler
from ..plans.models import ChunkStatus

STATUS_ICONS = {
	ChunkStatus.PENDING: "[dim][ ][/dim]",
	ChunkStatus.IN_PROGRESS: "[yellow][~][/yellow]",
	ChunkStatus.DONE: "[green][x][/green]",
	ChunkStatus.BLOCKED: "[red][!][/red]",
	ChunkStatus.SKIPPED: "[dim][-][/dim]",
}


def _phase_icon(statuses: list[ChunkStatus]) -> str:
	if all(s.is_terminal for s in statuses):
		return STATUS_ICONS[ChunkStatus.DONE]
	if any(s == ChunkStatus.BLOCKED for s in statuses):
		return STATUS_ICONS[ChunkStatus.BLOCKED]
	if any(s != ChunkStatus.PENDING for s in statuses):
		return STATUS_ICONS[ChunkStatus.IN_PROGRESS]
	return STATUS_ICONS[ChunkStatus.PENDING]


def render_plan_progress(scheduler: Scheduler, console: Optional[Console] = None) -> None:
	"""Render a plan as a Rich Tree with phases and chunks."""
	console = console or Console()

	plan = scheduler.plan
	statuses = scheduler.statuses()
	progress = scheduler.progress()
	resolved = progress[ChunkStatus.DONE.value] + progress[ChunkStatus.SKIPPED.value]
	ready = set(scheduler.ready_chunks())

	tree = Tree(
		f"[bold]{plan.id}[/bold]  "
		f"[dim]({resolved}/{progress['total_chunks']} chunks, {progress['percent_complete']:.0f}%)[/dim]"
	)

	for phase in plan.phases:
		icon = _phase_icon([statuses[c.id] for c in phase.chunks])
		phase_branch = tree.add(f"{icon} [bold]Phase {phase.index}: {phase.name}[/bold]")

		for chunk in phase.chunks:
			chunk_icon = STATUS_ICONS[statuses[chunk.id]]
			label = f"{chunk_icon} {chunk.id} [dim]({chunk.stream})[/dim] {escape(chunk.outcome)}"
			if chunk.id in ready:
				label += " [cyan]ready[/cyan]"
			record = scheduler.record(chunk.id)
			if record.notes:
				label += f" [dim]- {escape(record.notes)}[/dim]"
			phase_branch.add(label)

	console.print(tree)


def render_plan_summary(scheduler: Scheduler, console: Optional[Console] = None) -> None:
	"""Render a summary panel for a plan."""
	console = console or Console()

	plan = scheduler.plan
	progress = scheduler.progress()

	lines = []
	lines.append(f"[bold]Type:[/bold] {plan.meta.type or '-'}")
	lines.append(f"[bold]Repo:[/bold] {plan.meta.repo or '-'}")
	lines.append(f"[bold]Status:[/bold] {scheduler.plan_status.value}")
	lines.append(f"[bold]Version:[/bold] {scheduler.plan_version}")
	lines.append("")
	lines.append(
		f"[bold]Progress:[/bold] {progress['done']} done, {progress['skipped']} skipped, "
		f"{progress['in_progress']} in progress, {progress['blocked']} blocked, "
		f"{progress['pending']} pending ({progress['percent_complete']:.0f}%)"
	)
	current = scheduler.current_phase()
	lines.append(f"[bold]Current phase:[/bold] {current if current is not None else 'all resolved'}")

	in_flight = scheduler.in_flight
	if in_flight:
		lines.append("")
		lines.append("[bold]In flight:[/bold]")
		for stream, chunk_id in in_flight.items():
			lines.append(f"  - {chunk_id} ({stream})")

	questions = scheduler.open_questions()
	if questions:
		lines.append("")
		lines.append(f"[bold]Open questions:[/bold] {len(questions)}")
		for q in questions:
			lines.append(f"  - {q.id} ({q.chunk_id or '-'}) {escape(q.question)}")

	decisions = scheduler.decisions
	if decisions:
		lines.append("")
		lines.append(f"[bold]Decisions:[/bold] {len(decisions)}")
		for d in decisions[-3:]:
			lines.append(f"  - {d.kind.value} {d.chunk_id or ''} {escape(d.detail)}".rstrip())

	console.print(Panel("\n".join(lines), title=f"Plan: {plan.id}", border_style="cyan"))
