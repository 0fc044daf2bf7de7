"""
Progress Document - Markdown rendering of a ProgressSnapshot.

The document mirrors the plan's phase/chunk structure with a Status column
per chunk, followed by Decisions, Open Questions and the Session Log. It is
the on-disk contract for restoring a scheduler, so every snapshot field is
written and read back verbatim. Empty strings are empty cells; missing
optional values are written as '-'.
"""

import re
from typing import Optional

from pydantic import ValidationError

from ..errors import SnapshotError
from ..plans.markdown import is_table_line, read_table, render_table
from ..plans.models import Plan
from .models import (
	ChunkProgress,
	Decision,
	OpenQuestion,
	ProgressSnapshot,
	SessionLogEntry,
)

_TITLE = re.compile(r"^#\s+Progress:\s*(?P<id>\S.*?)\s*$")
_SECTION = re.compile(r"^##\s+(?P<title>.+?)\s*$")
_PHASE = re.compile(r"^phase\s+\d+", re.IGNORECASE)

CHUNK_COLUMNS = ["Chunk", "Stream", "Status", "Worker", "Started", "Completed", "Notes"]
DECISION_COLUMNS = ["ID", "Kind", "Chunk", "Detail", "Made At"]
QUESTION_COLUMNS = ["ID", "Chunk", "Raised", "Question", "Resolved", "Resolution"]
LOG_COLUMNS = ["At", "Event", "Chunk", "Detail"]


def _cell(value: Optional[object]) -> str:
	return "-" if value is None else str(value)


def _opt(cell: str) -> Optional[str]:
	return None if cell == "-" else cell


def render_progress(plan: Plan, snapshot: ProgressSnapshot) -> str:
	"""Render a snapshot against the plan it was taken from."""
	lines = [
		f"# Progress: {snapshot.plan_id}",
		"",
		"## Summary",
		"",
		*render_table(["Field", "Value"], [
			["Schema", str(snapshot.schema_version)],
			["Plan", snapshot.plan_id],
			["Plan Version", snapshot.plan_version],
			["Plan Status", snapshot.plan_status.value],
			["Current Phase", _cell(snapshot.current_phase)],
			["Next Ready", _cell(snapshot.next_ready_chunk_hint)],
			["Saved At", snapshot.saved_at],
		]),
		"",
	]

	for phase in plan.phases:
		heading = f"## Phase {phase.index}"
		if phase.name:
			heading += f": {phase.name}"
		rows = []
		for chunk in phase.chunks:
			record = snapshot.chunks.get(chunk.id, ChunkProgress())
			rows.append([
				chunk.id,
				chunk.stream,
				record.status.value,
				_cell(record.worker_id),
				_cell(record.started_at),
				_cell(record.completed_at),
				record.notes,
			])
		lines.extend([heading, "", *render_table(CHUNK_COLUMNS, rows), ""])

	lines.extend(["## Decisions", ""])
	lines.extend(render_table(DECISION_COLUMNS, [
		[d.id, d.kind.value, _cell(d.chunk_id), d.detail, d.made_at]
		for d in snapshot.decisions
	]))
	lines.extend(["", "## Open Questions", ""])
	lines.extend(render_table(QUESTION_COLUMNS, [
		[q.id, _cell(q.chunk_id), q.raised_at, q.question, _cell(q.resolved_at), q.resolution]
		for q in snapshot.open_questions
	]))
	lines.extend(["", "## Session Log", ""])
	lines.extend(render_table(LOG_COLUMNS, [
		[e.at, e.event, _cell(e.chunk_id), e.detail]
		for e in snapshot.session_log
	]))
	lines.append("")
	return "\n".join(lines)


def _section_tables(lines: list[str]) -> dict[str, list]:
	"""Map section title -> list of row records of the section's tables."""
	sections: dict[str, list] = {}
	current: Optional[str] = None
	i = 0
	while i < len(lines):
		line = lines[i]
		match = _SECTION.match(line)
		if match:
			current = match.group("title")
			sections.setdefault(current, [])
			i += 1
			continue
		if current is not None and is_table_line(line):
			try:
				table, i = read_table(lines, i)
			except ValueError as e:
				raise SnapshotError(f"Malformed progress table: {e}") from e
			sections[current].extend(table.records())
			continue
		i += 1
	return sections


def parse_progress(text: str) -> ProgressSnapshot:
	"""
	Parse a progress document back into a snapshot.

	Raises:
		SnapshotError: if the document is malformed
	"""
	lines = text.splitlines()
	if not any(_TITLE.match(line) for line in lines):
		raise SnapshotError("Missing '# Progress: <plan-id>' title")

	sections = _section_tables(lines)
	summary = {record["field"].lower(): record["value"] for _, record in sections.get("Summary", [])}
	if "plan" not in summary:
		raise SnapshotError("Progress document has no Summary table")

	try:
		chunks: dict[str, ChunkProgress] = {}
		for title, records in sections.items():
			if not _PHASE.match(title):
				continue
			for _, r in records:
				chunks[r["chunk"]] = ChunkProgress(
					status=r["status"],
					worker_id=_opt(r["worker"]),
					started_at=_opt(r["started"]),
					completed_at=_opt(r["completed"]),
					notes=r["notes"],
				)

		decisions = [
			Decision(id=r["id"], kind=r["kind"], chunk_id=_opt(r["chunk"]), detail=r["detail"], made_at=r["made at"])
			for _, r in sections.get("Decisions", [])
		]
		questions = [
			OpenQuestion(
				id=r["id"],
				chunk_id=_opt(r["chunk"]),
				raised_at=r["raised"],
				question=r["question"],
				resolved_at=_opt(r["resolved"]),
				resolution=r["resolution"],
			)
			for _, r in sections.get("Open Questions", [])
		]
		log = [
			SessionLogEntry(at=r["at"], event=r["event"], chunk_id=_opt(r["chunk"]), detail=r["detail"])
			for _, r in sections.get("Session Log", [])
		]

		current_phase = _opt(summary.get("current phase", "-"))
		return ProgressSnapshot(
			schema_version=int(summary.get("schema", "1")),
			plan_id=summary["plan"],
			plan_version=summary.get("plan version", ""),
			plan_status=summary.get("plan status", "draft"),
			chunks=chunks,
			open_questions=questions,
			decisions=decisions,
			session_log=log,
			current_phase=int(current_phase) if current_phase is not None else None,
			next_ready_chunk_hint=_opt(summary.get("next ready", "-")),
			saved_at=summary.get("saved at", ""),
		)
	except (KeyError, ValueError, ValidationError) as e:
		raise SnapshotError(f"Malformed progress document: {e}") from e
