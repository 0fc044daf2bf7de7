"""Tests for the markdown progress document."""

import pytest

from spec_orchestrator.errors import SnapshotError
from spec_orchestrator.plans.models import ChunkStatus, PlanStatus
from spec_orchestrator.progress.document import parse_progress, render_progress
from spec_orchestrator.progress.models import DecisionKind

from .helpers import make_scheduler, run_chunk, sample_plan


def _busy_scheduler():
	"""Scheduler with every kind of record: done, blocked, skipped, in flight, decisions."""
	scheduler = make_scheduler()
	run_chunk(scheduler, "a1")
	scheduler.skip("w1", "design | postponed")
	scheduler.claim("a2", "w-api")
	scheduler.fail("a2", "payment sandbox down\nretry after 5pm", worker_id="w-api")
	scheduler.unblock("a2", "sandbox restored")
	scheduler.claim("a2", "w-api")
	scheduler.complete("a2", "w-api")
	scheduler.claim("w2", "w-web")
	scheduler.fail("w2", "design tokens missing", worker_id="w-web")
	scheduler.claim("d1", "w-docs")
	return scheduler


class TestRender:
	"""Document layout."""

	def test_sections_in_order(self):
		text = render_progress(sample_plan(), _busy_scheduler().snapshot())
		headings = [line for line in text.splitlines() if line.startswith("#")]
		assert headings == [
			"# Progress: checkout-flow",
			"## Summary",
			"## Phase 0: Foundations",
			"## Phase 1: Checkout",
			"## Decisions",
			"## Open Questions",
			"## Session Log",
		]

	def test_summary_fields(self):
		scheduler = _busy_scheduler()
		text = render_progress(sample_plan(), scheduler.snapshot())
		assert f"| Plan Version | {scheduler.plan_version} |" in text
		assert "| Plan Status | in_progress |" in text
		assert "| Current Phase | 1 |" in text
		assert "| Next Ready | - |" in text

	def test_chunk_rows_carry_status(self):
		text = render_progress(sample_plan(), _busy_scheduler().snapshot())
		row = next(line for line in text.splitlines() if line.startswith("| w2 "))
		assert "| blocked |" in row
		assert "design tokens missing" in row

	def test_escaping(self):
		"""Pipes and newlines in notes do not break the table."""
		text = render_progress(sample_plan(), _busy_scheduler().snapshot())
		assert "design \\| postponed" in text
		assert "payment sandbox down<br>retry after 5pm" in text


class TestParse:
	"""Reading a document back yields the same snapshot."""

	def test_round_trip(self):
		snapshot = _busy_scheduler().snapshot()
		parsed = parse_progress(render_progress(sample_plan(), snapshot))
		assert parsed == snapshot

	def test_round_trip_fresh_plan(self):
		"""No decisions, questions or log entries yet."""
		snapshot = make_scheduler().snapshot()
		parsed = parse_progress(render_progress(sample_plan(), snapshot))
		assert parsed == snapshot
		assert parsed.plan_status == PlanStatus.DRAFT
		assert parsed.next_ready_chunk_hint == "a1"

	def test_parsed_details(self):
		snapshot = _busy_scheduler().snapshot()
		parsed = parse_progress(render_progress(sample_plan(), snapshot))
		assert parsed.chunks["d1"].status == ChunkStatus.IN_PROGRESS
		assert parsed.chunks["d1"].worker_id == "w-docs"
		assert parsed.chunks["d1"].completed_at is None
		assert parsed.chunks["w1"].notes == "design | postponed"
		assert [d.kind for d in parsed.decisions] == [DecisionKind.SKIP, DecisionKind.UNBLOCK]
		first, second = parsed.open_questions
		assert first.question == "payment sandbox down\nretry after 5pm"
		assert first.resolution == "sandbox restored"
		assert second.is_open

	@pytest.mark.parametrize("reason", [
		"line1\r\nline2",
		"carriage\rreturn",
		"form\x0cfeed",
		"vertical\x0btab",
		"sep\x1cfile\x1dgroup\x1erecord",
		"next\x85line",
		"sep\u2028line\u2029para",
	])
	def test_round_trip_line_breaks(self, reason: str):
		"""Every character str.splitlines breaks on survives a save."""
		scheduler = make_scheduler()
		scheduler.claim("a1", "w-api")
		scheduler.fail("a1", reason, worker_id="w-api")
		snapshot = scheduler.snapshot()

		text = render_progress(sample_plan(), snapshot)
		row = next(line for line in text.splitlines() if line.startswith("| a1 "))
		assert row.endswith(" |")
		parsed = parse_progress(text)
		assert parsed == snapshot
		assert parsed.open_questions[0].question == reason

	@pytest.mark.parametrize("reason", [
		"  padded  ",
		"\ttabbed\n",
		"   ",
		"literal <br> tag",
		"&lt; and &amp; and &#13; stay literal",
		"ends with a backslash \\",
		"escaped \\| pipe",
	])
	def test_round_trip_free_text_verbatim(self, reason: str):
		scheduler = make_scheduler()
		scheduler.claim("a1", "w-api")
		scheduler.fail("a1", reason, worker_id="w-api")
		scheduler.unblock("a1", reason)
		snapshot = scheduler.snapshot()

		parsed = parse_progress(render_progress(sample_plan(), snapshot))
		assert parsed == snapshot
		assert parsed.open_questions[0].question == reason
		assert parsed.decisions[0].detail == reason

	def test_hand_edited_padding_is_tolerated(self):
		text = render_progress(sample_plan(), make_scheduler().snapshot())
		edited = text.replace("| a1 | api | pending |", "|   a1   |  api |   pending   |")
		assert parse_progress(edited).chunks["a1"].status == ChunkStatus.PENDING


class TestParseErrors:
	"""Malformed documents raise SnapshotError."""

	def test_missing_title(self):
		text = render_progress(sample_plan(), make_scheduler().snapshot())
		with pytest.raises(SnapshotError, match="title"):
			parse_progress(text.replace("# Progress: checkout-flow", "# Notes"))

	def test_missing_summary(self):
		with pytest.raises(SnapshotError, match="Summary"):
			parse_progress("# Progress: x\n\n## Phase 0\n")

	def test_bad_status(self):
		text = render_progress(sample_plan(), make_scheduler().snapshot())
		with pytest.raises(SnapshotError):
			parse_progress(text.replace("| a1 | api | pending |", "| a1 | api | finished |"))

	def test_bad_current_phase(self):
		text = render_progress(sample_plan(), make_scheduler().snapshot())
		with pytest.raises(SnapshotError):
			parse_progress(text.replace("| Current Phase | 0 |", "| Current Phase | zero |"))
