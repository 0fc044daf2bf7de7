"""
Plan Parser - Converts a markdown plan document into a validated Plan.

Parsing is all-or-nothing: any structural problem raises ParseError with
the offending line and field, and no partial Plan is returned.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from ..errors import OwnershipConflictError, ParseError
from .markdown import Table, is_table_line, optional_cell, read_table, split_list, unescape_cell
from .models import (
	AcceptanceCriterion,
	Chunk,
	ChunkStatus,
	CommunicationRule,
	Phase,
	Plan,
	PlanMeta,
	PlanStatus,
	Stream,
)

logger = logging.getLogger(__name__)

_TITLE = re.compile(r"^#\s+Plan:\s*(?P<id>\S.*?)\s*$", re.IGNORECASE)
_SECTION = re.compile(r"^##\s+(?P<title>.+?)\s*$")
_PHASE = re.compile(r"^phase\s+(?P<index>\d+)\s*(?::\s*(?P<name>.*))?$", re.IGNORECASE)
_DETAIL_HEAD = re.compile(r"^- \[(?P<mark>[ xX])\]\s+\*\*(?P<id>[^*]+)\*\*\s*$")
_DETAIL_FIELD = re.compile(r"^-\s+(?P<key>[A-Za-z][A-Za-z -]*?):\s*(?P<value>.*)$")
_SUB_TASK = re.compile(r"^\d+\.\s+(?P<text>.+)$")
_CRITERION = re.compile(r"^- \[(?P<mark>[ xX])\]\s*(?P<text>.*)$")
_COMMAND = re.compile(r"^(?P<desc>.*?)\s*:?\s*`(?P<cmd>[^`]+)`\s*$")
_PROMISE = re.compile(r"<promise>(?P<token>.*?)</promise>", re.DOTALL)
_TRIGGER_PHASE = re.compile(r"^(?:after\s+)?phase\s+(?P<index>\d+)(?:\s+(?:completes?|done))?$", re.IGNORECASE)
_TRIGGER_CHUNK = re.compile(r"^(?:after\s+)?(?:chunk\s+)?(?P<id>\S+?)(?:\s+(?:completes?|done))?$", re.IGNORECASE)

_SINGLE_SECTIONS = {
	"meta": "meta",
	"work streams": "streams",
	"streams": "streams",
	"communication": "communication",
	"acceptance criteria": "acceptance",
	"completion promise": "promise",
}


@dataclass
class _Section:
	"""A '## ' section of the document (line indexes are 0-based)."""
	title: str
	heading: int
	start: int
	end: int


@dataclass
class _Detail:
	"""A chunk detail block."""
	chunk_id: str
	line: int
	done: bool
	fields: dict[str, tuple[str, int]] = field(default_factory=dict)
	sub_tasks: list[str] = field(default_factory=list)


class PlanParser:
	"""
	Single-use parser for one plan document.

	Usage:
		plan = PlanParser(text).parse()
	"""

	def __init__(self, document: str):
		self.lines = document.splitlines()

	def parse(self) -> Plan:
		plan_id = self._parse_title()
		sections = self._split_sections()

		singles: dict[str, _Section] = {}
		phase_sections: list[_Section] = []
		for section in sections:
			key = section.title.lower()
			if _PHASE.match(section.title):
				phase_sections.append(section)
			elif key in _SINGLE_SECTIONS:
				kind = _SINGLE_SECTIONS[key]
				if kind in singles:
					raise ParseError(f"Duplicate section '{section.title}'", line=section.heading + 1)
				singles[kind] = section

		meta = self._parse_meta(singles["meta"]) if "meta" in singles else PlanMeta()

		if "streams" not in singles:
			raise ParseError("Missing 'Work Streams' section", field="Work Streams")
		streams = self._parse_streams(singles["streams"])
		stream_names = {s.name for s in streams}

		if not phase_sections:
			raise ParseError("Plan declares no phases", field="Phase")
		phases = [
			self._parse_phase(section, expected_index, stream_names)
			for expected_index, section in enumerate(phase_sections)
		]
		self._check_chunk_references(phases, phase_sections)

		chunk_ids = {c.id for p in phases for c in p.chunks}
		communication = ()
		if "communication" in singles:
			communication = self._parse_communication(
				singles["communication"], stream_names, chunk_ids, len(phases)
			)

		criteria = ()
		if "acceptance" in singles:
			criteria = self._parse_acceptance(singles["acceptance"])

		if "promise" not in singles:
			raise ParseError("Missing 'Completion Promise' section", field="Completion Promise")
		promise = self._parse_promise(singles["promise"])

		plan = Plan(
			id=plan_id,
			meta=meta,
			streams=tuple(streams),
			phases=tuple(phases),
			communication=tuple(communication),
			acceptance_criteria=tuple(criteria),
			completion_promise=promise,
		)
		logger.debug(
			f"Parsed plan {plan.id}: {len(plan.streams)} streams, "
			f"{len(plan.phases)} phases, {len(chunk_ids)} chunks"
		)
		return plan

	# Document structure

	def _parse_title(self) -> str:
		for i, line in enumerate(self.lines):
			if line.startswith("# "):
				match = _TITLE.match(line)
				if not match:
					raise ParseError("Title must read '# Plan: <id>'", line=i + 1, field="title")
				return match.group("id")
		raise ParseError("Missing '# Plan: <id>' title", field="title")

	def _split_sections(self) -> list[_Section]:
		sections: list[_Section] = []
		for i, line in enumerate(self.lines):
			match = _SECTION.match(line)
			if match:
				if sections:
					sections[-1].end = i
				sections.append(_Section(match.group("title"), i, i + 1, len(self.lines)))
		return sections

	def _table(self, section: _Section, required: list[str]) -> Table:
		for i in range(section.start, section.end):
			if is_table_line(self.lines[i]):
				try:
					table, _ = read_table(self.lines[: section.end], i)
				except ValueError as e:
					raise ParseError(str(e), field=section.title) from e
				for name in required:
					if table.column(name) < 0:
						raise ParseError(
							f"Table in '{section.title}' is missing column '{name}'",
							line=table.line,
							field=name,
						)
				return table
		raise ParseError(f"Section '{section.title}' has no table", line=section.heading + 1, field=section.title)

	# Sections

	def _parse_meta(self, section: _Section) -> PlanMeta:
		table = self._table(section, ["field", "value"])
		values: dict[str, str] = {}
		status = PlanStatus.DRAFT
		for line, record in table.records():
			key = record["field"].strip().lower()
			value = record["value"].strip()
			if key == "status":
				try:
					status = PlanStatus(value.lower())
				except ValueError:
					allowed = ", ".join(s.value for s in PlanStatus)
					raise ParseError(f"Invalid status '{value}' (expected one of: {allowed})", line=line, field="Status")
			elif key in ("repo", "target"):
				values["repo"] = optional_cell(value)
			elif key == "type":
				values["type"] = optional_cell(value)
		return PlanMeta(status=status, **values)

	def _parse_streams(self, section: _Section) -> list[Stream]:
		table = self._table(section, ["stream", "responsibility", "owns"])
		streams: list[Stream] = []
		owners: list[tuple[str, str, str]] = []  # (normalized path, raw path, stream)

		for line, record in table.records():
			name = record["stream"].strip()
			if not name:
				raise ParseError("Stream name is empty", line=line, field="Stream")
			if any(s.name == name for s in streams):
				raise ParseError(f"Duplicate stream '{name}'", line=line, field="Stream")

			paths = split_list(record["owns"])
			for raw in paths:
				normalized = _normalize_path(raw)
				for other_norm, other_raw, other_stream in owners:
					if other_stream != name and _paths_overlap(normalized, other_norm):
						raise OwnershipConflictError(other_stream, name, raw, line=line)
				owners.append((normalized, raw, name))

			streams.append(Stream(
				name=name,
				responsibility=optional_cell(record["responsibility"].strip()),
				owned_paths=tuple(paths),
				capabilities=tuple(split_list(record.get("capabilities", ""))),
			))
		return streams

	def _parse_phase(self, section: _Section, expected_index: int, stream_names: set[str]) -> Phase:
		match = _PHASE.match(section.title)
		index = int(match.group("index"))
		if index != expected_index:
			raise ParseError(
				f"Phase indices must be contiguous from 0: expected {expected_index}, found {index}",
				line=section.heading + 1,
				field="Phase",
			)
		name = (match.group("name") or "").strip()

		table = self._table(section, ["chunk", "stream", "outcome", "depends on"])
		details = self._parse_details(section)
		table_ids = {record["chunk"].strip() for _, record in table.records()}
		for detail in details.values():
			if detail.chunk_id not in table_ids:
				raise ParseError(
					f"Detail block for '{detail.chunk_id}' has no row in the Phase {index} table",
					line=detail.line,
					field="Chunk",
				)

		chunks: list[Chunk] = []
		for line, record in table.records():
			chunk_id = record["chunk"].strip()
			stream = record["stream"].strip()
			outcome = optional_cell(record["outcome"].strip())
			if not chunk_id:
				raise ParseError("Chunk id is empty", line=line, field="Chunk")
			if stream not in stream_names:
				raise ParseError(f"Chunk '{chunk_id}' references unknown stream '{stream}'", line=line, field="Stream")

			detail = details.get(chunk_id)
			capabilities: list[str] = []
			sub_tasks: list[str] = []
			status = ChunkStatus.PENDING
			if detail:
				for key, expected in (("stream", stream), ("outcome", outcome)):
					if key in detail.fields and detail.fields[key][0] != expected:
						value, detail_line = detail.fields[key]
						raise ParseError(
							f"Chunk '{chunk_id}' {key} '{value}' contradicts the phase table ('{expected}')",
							line=detail_line,
							field=key.capitalize(),
						)
				if "capabilities" in detail.fields:
					capabilities = split_list(detail.fields["capabilities"][0])
				sub_tasks = detail.sub_tasks
				if detail.done:
					status = ChunkStatus.DONE

			chunks.append(Chunk(
				id=chunk_id,
				stream=stream,
				outcome=outcome,
				depends_on=tuple(split_list(record["depends on"])),
				sub_tasks=tuple(sub_tasks),
				capabilities=tuple(capabilities),
				status=status,
			))
		return Phase(index=index, name=name, chunks=tuple(chunks))

	def _parse_details(self, section: _Section) -> dict[str, _Detail]:
		details: dict[str, _Detail] = {}
		current: Optional[_Detail] = None

		for i in range(section.start, section.end):
			line = self.lines[i]
			if not line.strip():
				continue
			if not line[0].isspace():
				current = None
				match = _DETAIL_HEAD.match(line)
				if match:
					chunk_id = match.group("id").strip()
					if chunk_id in details:
						raise ParseError(f"Duplicate detail block for '{chunk_id}'", line=i + 1, field="Chunk")
					current = _Detail(chunk_id=chunk_id, line=i + 1, done=match.group("mark") != " ")
					details[chunk_id] = current
				continue
			if current is None:
				continue

			text = line.strip()
			sub_task = _SUB_TASK.match(text)
			if sub_task:
				current.sub_tasks.append(sub_task.group("text").strip())
				continue
			detail_field = _DETAIL_FIELD.match(text)
			if detail_field:
				key = detail_field.group("key").strip().lower()
				if key in ("outcome", "stream", "capabilities"):
					current.fields[key] = (unescape_cell(detail_field.group("value").strip()), i + 1)
		return details

	def _check_chunk_references(self, phases: list[Phase], sections: list[_Section]) -> None:
		seen: set[str] = set()
		for phase, section in zip(phases, sections):
			for chunk in phase.chunks:
				if chunk.id in seen:
					raise ParseError(f"Duplicate chunk id '{chunk.id}'", line=section.heading + 1, field="Chunk")
				seen.add(chunk.id)
		for phase, section in zip(phases, sections):
			for chunk in phase.chunks:
				for dep in chunk.depends_on:
					if dep not in seen:
						raise ParseError(
							f"Chunk '{chunk.id}' depends on unknown chunk '{dep}'",
							line=section.heading + 1,
							field="Depends On",
						)

	def _parse_communication(
		self,
		section: _Section,
		stream_names: set[str],
		chunk_ids: set[str],
		phase_count: int,
	) -> list[CommunicationRule]:
		table = self._table(section, ["from", "to", "when", "what"])
		rules: list[CommunicationRule] = []

		for n, (line, record) in enumerate(table.records(), start=1):
			from_stream = record["from"].strip()
			to_streams = split_list(record["to"])
			for name in [from_stream, *to_streams]:
				if name not in stream_names:
					raise ParseError(f"Communication rule references unknown stream '{name}'", line=line, field="From/To")
			if not to_streams:
				raise ParseError("Communication rule has no recipient", line=line, field="To")

			when = record["when"].strip()
			trigger_phase: Optional[int] = None
			trigger_chunk: Optional[str] = None
			phase_match = _TRIGGER_PHASE.match(when)
			chunk_match = _TRIGGER_CHUNK.match(when)
			if phase_match:
				trigger_phase = int(phase_match.group("index"))
				if trigger_phase >= phase_count:
					raise ParseError(f"Trigger references unknown phase {trigger_phase}", line=line, field="When")
			elif chunk_match and chunk_match.group("id") in chunk_ids:
				trigger_chunk = chunk_match.group("id")
			else:
				raise ParseError(f"Trigger '{when}' is neither a phase nor a known chunk", line=line, field="When")

			rules.append(CommunicationRule(
				id=f"rule-{n}",
				from_stream=from_stream,
				to_streams=tuple(to_streams),
				trigger_phase=trigger_phase,
				trigger_chunk=trigger_chunk,
				payload_description=optional_cell(record["what"].strip()),
			))
		return rules

	def _parse_acceptance(self, section: _Section) -> list[AcceptanceCriterion]:
		criteria: list[AcceptanceCriterion] = []
		for i in range(section.start, section.end):
			match = _CRITERION.match(self.lines[i])
			if not match:
				continue
			text = match.group("text").strip()
			if not text:
				raise ParseError("Acceptance criterion is empty", line=i + 1, field="Acceptance Criteria")
			command = None
			command_match = _COMMAND.match(text)
			if command_match:
				text = command_match.group("desc")
				command = command_match.group("cmd").strip()
			criteria.append(AcceptanceCriterion(
				id=f"ac-{len(criteria) + 1}",
				description=text,
				command=command,
				checked=match.group("mark") != " ",
			))
		return criteria

	def _parse_promise(self, section: _Section) -> str:
		body = "\n".join(self.lines[section.start:section.end])
		match = _PROMISE.search(body)
		if not match or not match.group("token").strip():
			raise ParseError(
				"Completion promise must be a non-empty <promise>TOKEN</promise>",
				line=section.heading + 1,
				field="Completion Promise",
			)
		return match.group("token").strip()


def _normalize_path(path: str) -> str:
	path = path.strip().replace("\\", "/")
	while path.startswith("./"):
		path = path[2:]
	return path.rstrip("/") or "/"


def _paths_overlap(a: str, b: str) -> bool:
	"""Equal paths, or one nested under the other, overlap."""
	if a == b or "/" in (a, b):
		return True
	return a.startswith(b + "/") or b.startswith(a + "/")


def parse_plan(document: str) -> Plan:
	"""Parse a plan document. Raises ParseError on any violation."""
	return PlanParser(document).parse()


def load_plan(path: Union[str, Path]) -> Plan:
	"""Read and parse a plan document from disk."""
	return parse_plan(Path(path).read_text(encoding="utf-8"))
