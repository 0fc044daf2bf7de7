"""Tests for the CLI module."""

import asyncio
from pathlib import Path

import pytest

from spec_orchestrator.cli import main
from spec_orchestrator.orchestrator.scheduler import Scheduler
from spec_orchestrator.plans.models import ChunkStatus, PlanStatus
from spec_orchestrator.plans.parser import load_plan
from spec_orchestrator.progress.store import FileProgressStore

from .helpers import SAMPLE_PLAN, StepClock, run_chunk, write_plan


def _load(plan_path: Path, progress: Path):
	store = FileProgressStore(progress, load_plan(plan_path))
	return asyncio.run(store.load())


def _seed(plan_path: Path, progress: Path, setup) -> None:
	"""Write a progress file produced by running setup(scheduler)."""
	plan = load_plan(plan_path)
	scheduler = Scheduler(plan, clock=StepClock())
	for stream in plan.streams:
		scheduler.register_worker(f"w-{stream.name}", stream.name)
	setup(scheduler)
	asyncio.run(FileProgressStore(progress, plan).save(scheduler.snapshot()))


@pytest.fixture
def plan_path(tmp_path: Path) -> Path:
	return write_plan(tmp_path)


@pytest.fixture
def progress(tmp_path: Path) -> Path:
	return tmp_path / "progress.md"


def test_validate(plan_path: Path, capsys):
	"""validate prints plan counts."""
	main(["validate", str(plan_path)])
	out = capsys.readouterr().out
	assert "Plan 'checkout-flow' is valid" in out
	assert "Chunks:         5" in out


def test_validate_reports_parse_error(tmp_path: Path, capsys):
	plan_path = write_plan(tmp_path, SAMPLE_PLAN.replace("| d1 | docs |", "| d1 | ops |"))
	with pytest.raises(SystemExit) as exc:
		main(["validate", str(plan_path)])
	assert exc.value.code == 1
	assert "unknown stream 'ops'" in capsys.readouterr().err


def test_missing_plan_file(tmp_path: Path, capsys):
	with pytest.raises(SystemExit):
		main(["validate", str(tmp_path / "nope.md")])
	assert capsys.readouterr().err.startswith("Error:")


def test_no_command_prints_help(capsys):
	with pytest.raises(SystemExit) as exc:
		main([])
	assert exc.value.code == 1
	assert "usage" in capsys.readouterr().out


def test_ready_fresh_plan(plan_path: Path, progress: Path, capsys):
	"""Without a progress file, ready reflects parse-time statuses."""
	main(["ready", str(plan_path), "--progress", str(progress)])
	lines = capsys.readouterr().out.strip().splitlines()
	assert lines == ["a1\tapi\tCart schema exists", "w1\tweb\tCart page skeleton renders"]
	assert not progress.exists()


def test_ready_stream_filter(plan_path: Path, progress: Path, capsys):
	main(["ready", str(plan_path), "--progress", str(progress), "--stream", "docs"])
	assert capsys.readouterr().out.strip() == "No chunks ready."


def test_progress_defaults_beside_plan(plan_path: Path, tmp_path: Path, monkeypatch):
	from spec_orchestrator import config as config_module

	monkeypatch.setattr(config_module, "_config", None)
	monkeypatch.setenv("SPEC_ORCHESTRATOR_DATA_DIR", str(tmp_path / "data"))
	monkeypatch.setenv("SPEC_ORCHESTRATOR_CONFIG_DIR", str(tmp_path / "config"))
	main(["skip", str(plan_path), "d1", "--reason", "later"])
	assert (plan_path.parent / "progress.md").exists()


def test_unblock_then_ready(plan_path: Path, progress: Path, capsys):
	def setup(scheduler):
		scheduler.claim("a1", "w-api")
		scheduler.fail("a1", "migration lock held")

	_seed(plan_path, progress, setup)

	main(["ready", str(plan_path), "--progress", str(progress), "--stream", "api"])
	out = capsys.readouterr().out
	assert "No chunks ready." in out

	main(["unblock", str(plan_path), "a1", "--progress", str(progress), "--note", "lock released"])
	assert "Unblocked a1" in capsys.readouterr().out

	snapshot = _load(plan_path, progress)
	assert snapshot.chunks["a1"].status == ChunkStatus.PENDING
	assert snapshot.decisions[-1].detail == "lock released"
	assert snapshot.unresolved_questions() == []


def test_ready_reports_withheld(plan_path: Path, progress: Path, capsys):
	def setup(scheduler):
		run_chunk(scheduler, "a1")
		run_chunk(scheduler, "w1")
		scheduler.claim("a2", "w-api")
		scheduler.fail("a2", "sandbox down")
		scheduler.skip("d1", "later")

	_seed(plan_path, progress, setup)
	main(["ready", str(plan_path), "--progress", str(progress)])
	out = capsys.readouterr().out
	assert "No chunks ready." in out
	assert "Withheld by blocked chunks: w2" in out


def test_skip_requires_reason(plan_path: Path, progress: Path):
	with pytest.raises(SystemExit) as exc:
		main(["skip", str(plan_path), "d1", "--progress", str(progress)])
	assert exc.value.code == 2


def test_invalid_transition_is_reported(plan_path: Path, progress: Path, capsys):
	with pytest.raises(SystemExit) as exc:
		main(["unblock", str(plan_path), "a1", "--progress", str(progress)])
	assert exc.value.code == 1
	assert "not blocked" in capsys.readouterr().err


def test_requeue_and_resolve(plan_path: Path, progress: Path, capsys):
	def setup(scheduler):
		scheduler.claim("a1", "w-api")
		scheduler.fail("a1", "which migration tool?")
		scheduler.unblock("a1")
		scheduler.claim("a1", "w-api")

	_seed(plan_path, progress, setup)
	main(["requeue", str(plan_path), "a1", "--progress", str(progress), "--note", "worker crashed"])
	assert _load(plan_path, progress).chunks["a1"].status == ChunkStatus.PENDING

	def setup_question(scheduler):
		scheduler.claim("w1", "w-web")
		scheduler.fail("w1", "which design system?")

	_seed(plan_path, progress, setup_question)
	main(["resolve", str(plan_path), "q-1", "--progress", str(progress), "--resolution", "use tokens v2"])
	assert "Resolved q-1" in capsys.readouterr().out
	question = _load(plan_path, progress).open_questions[0]
	assert question.resolution == "use tokens v2"
	assert not question.is_open


def test_status_renders(plan_path: Path, progress: Path, capsys):
	_seed(plan_path, progress, lambda s: run_chunk(s, "a1"))
	main(["status", str(plan_path), "--progress", str(progress)])
	out = capsys.readouterr().out
	assert "checkout-flow" in out
	assert "a1" in out

	main(["status", str(plan_path), "--progress", str(progress), "--summary"])
	assert "1 done" in capsys.readouterr().out


def test_verify_prints_promise(plan_path: Path, progress: Path, tmp_path: Path, capsys):
	def setup(scheduler):
		for chunk_id in ["a1", "w1", "a2", "w2", "d1"]:
			run_chunk(scheduler, chunk_id)

	_seed(plan_path, progress, setup)
	main([
		"verify", str(plan_path), "--progress", str(progress),
		"--pass", "ac-3", "--project-dir", str(tmp_path), "--timeout", "30",
	])
	out = capsys.readouterr().out
	assert "[PASS] ac-1" in out
	assert "3 passed, 0 failed out of 3 criteria" in out
	assert out.strip().splitlines()[-1] == "CHECKOUT_DONE"
	assert _load(plan_path, progress).plan_status == PlanStatus.COMPLETE


def test_verify_failure_withholds_promise(plan_path: Path, progress: Path, tmp_path: Path, capsys):
	def setup(scheduler):
		for chunk_id in ["a1", "w1", "a2", "w2", "d1"]:
			run_chunk(scheduler, chunk_id)

	_seed(plan_path, progress, setup)
	with pytest.raises(SystemExit) as exc:
		main([
			"verify", str(plan_path), "--progress", str(progress),
			"--fail", "ac-2", "--pass", "ac-3", "--project-dir", str(tmp_path), "--timeout", "30",
		])
	assert exc.value.code == 1
	captured = capsys.readouterr()
	assert "CHECKOUT_DONE" not in captured.out
	assert "ac-2" in captured.err


def test_verify_unfinished_plan(plan_path: Path, progress: Path, capsys):
	with pytest.raises(SystemExit):
		main(["verify", str(plan_path), "--progress", str(progress), "--timeout", "30"])
	assert "unresolved" in capsys.readouterr().err
