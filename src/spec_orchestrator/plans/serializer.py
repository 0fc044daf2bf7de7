"""Render a Plan back into its canonical markdown document."""

import hashlib

from .markdown import escape_cell, render_list, render_table
from .models import ChunkStatus, CommunicationRule, Plan


def _when(rule: CommunicationRule) -> str:
	if rule.trigger_chunk is not None:
		return f"after {rule.trigger_chunk}"
	return f"after phase {rule.trigger_phase}"


def serialize_plan(plan: Plan) -> str:
	"""
	Render a plan in the document format the parser accepts.

	parse_plan(serialize_plan(plan)) == plan for every parsed plan.
	"""
	lines = [
		f"# Plan: {plan.id}",
		"",
		"## Meta",
		"",
		*render_table(["Field", "Value"], [
			["Type", plan.meta.type or "-"],
			["Repo", plan.meta.repo or "-"],
			["Status", plan.meta.status.value],
		]),
		"",
		"## Work Streams",
		"",
		*render_table(
			["Stream", "Responsibility", "Owns", "Capabilities"],
			[
				[
					s.name,
					s.responsibility or "-",
					render_list(s.owned_paths, code=True),
					render_list(s.capabilities),
				]
				for s in plan.streams
			],
		),
		"",
	]

	for phase in plan.phases:
		heading = f"## Phase {phase.index}"
		if phase.name:
			heading += f": {phase.name}"
		lines.append(heading)
		lines.append("")
		lines.extend(render_table(
			["Chunk", "Stream", "Outcome", "Depends On"],
			[
				[c.id, c.stream, c.outcome or "-", render_list(c.depends_on)]
				for c in phase.chunks
			],
		))
		lines.append("")

		for chunk in phase.chunks:
			mark = "x" if chunk.status == ChunkStatus.DONE else " "
			lines.append(f"- [{mark}] **{chunk.id}**")
			if chunk.outcome:
				lines.append(f"  - Outcome: {escape_cell(chunk.outcome)}")
			lines.append(f"  - Stream: {chunk.stream}")
			if chunk.capabilities:
				lines.append(f"  - Capabilities: {render_list(chunk.capabilities)}")
			if chunk.sub_tasks:
				lines.append("  - Sub-tasks:")
				for n, task in enumerate(chunk.sub_tasks, start=1):
					lines.append(f"    {n}. {task}")
		lines.append("")

	if plan.communication:
		lines.append("## Communication")
		lines.append("")
		lines.extend(render_table(
			["From", "To", "When", "What"],
			[
				[r.from_stream, render_list(r.to_streams), _when(r), r.payload_description or "-"]
				for r in plan.communication
			],
		))
		lines.append("")

	if plan.acceptance_criteria:
		lines.append("## Acceptance Criteria")
		lines.append("")
		for criterion in plan.acceptance_criteria:
			mark = "x" if criterion.checked else " "
			text = criterion.description
			if criterion.command:
				text = f"{text}: `{criterion.command}`" if text else f"`{criterion.command}`"
			lines.append(f"- [{mark}] {text}")
		lines.append("")

	lines.append("## Completion Promise")
	lines.append("")
	lines.append(f"<promise>{plan.completion_promise}</promise>")
	lines.append("")
	return "\n".join(lines)


def plan_fingerprint(plan: Plan) -> str:
	"""Short content hash identifying a plan version."""
	return hashlib.sha256(serialize_plan(plan).encode("utf-8")).hexdigest()[:12]
