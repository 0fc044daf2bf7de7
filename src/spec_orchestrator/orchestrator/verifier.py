"""
Acceptance Verifier - Completion gate for a fully resolved plan.

Key Principle: the completion promise is never emitted by the core. The
verifier only evaluates acceptance criteria and authorizes the caller to
emit the promise once every criterion passes.

Each criterion is resolved, in order:
- a result supplied by the caller (criterion id -> bool)
- its embedded command, run in the project directory (exit code 0 passes)
- a checkbox already ticked in the plan document
Anything else fails with "no result supplied".
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

from ..errors import AcceptanceFailure, PlanNotFinishedError
from ..plans.models import AcceptanceCriterion, ChunkStatus, Plan
from .scheduler import Scheduler

logger = logging.getLogger(__name__)


class CheckStatus(str, Enum):
	"""Status of an acceptance check."""
	PASSED = "passed"
	FAILED = "failed"
	ERROR = "error"


class CheckSource(str, Enum):
	"""Where a criterion's result came from."""
	SUPPLIED = "supplied"
	COMMAND = "command"
	CHECKBOX = "checkbox"
	MISSING = "missing"


@dataclass
class CriterionResult:
	"""Result of a single acceptance criterion."""
	criterion_id: str
	description: str
	status: CheckStatus
	source: CheckSource
	output: str = ""
	duration_seconds: float = 0.0
	details: dict = field(default_factory=dict)

	@property
	def passed(self) -> bool:
		return self.status == CheckStatus.PASSED


@dataclass
class VerificationResult:
	"""Result of verifying every acceptance criterion of a plan."""
	plan_id: str
	checks: list[CriterionResult]
	summary: str = ""
	verified_at: str = ""

	def __post_init__(self):
		if not self.verified_at:
			self.verified_at = datetime.now().isoformat()

		passed = sum(1 for c in self.checks if c.passed)
		self.summary = f"{passed} passed, {len(self.checks) - passed} failed out of {len(self.checks)} criteria"

	@property
	def passed(self) -> bool:
		return all(c.passed for c in self.checks)

	@property
	def failed(self) -> list[CriterionResult]:
		return [c for c in self.checks if not c.passed]


class AcceptanceVerifier:
	"""
	Evaluates a plan's acceptance criteria.

	Usage:
		verifier = AcceptanceVerifier(project_path="/path/to/repo")
		result = await verifier.verify(plan, scheduler, results={"ac-2": True})
		promise = authorize_completion(plan, result)
	"""

	def __init__(
		self,
		project_path: Optional[str | Path] = None,
		timeout: int = 300,  # 5 minutes per command
	):
		"""
		Initialize the verifier.

		Args:
			project_path: Working directory for criterion commands
			timeout: Timeout per command in seconds
		"""
		self.project_path = Path(project_path) if project_path else Path.cwd()
		self.timeout = timeout

	async def verify(
		self,
		plan: Plan,
		scheduler: Optional[Scheduler] = None,
		results: Optional[Mapping[str, bool]] = None,
	) -> VerificationResult:
		"""
		Verify every acceptance criterion.

		Args:
			plan: Plan whose criteria to evaluate
			scheduler: Live execution state (parse-time statuses are used if omitted)
			results: Caller-supplied pass/fail per criterion id

		Raises:
			PlanNotFinishedError: if any chunk is not done or skipped
		"""
		if scheduler is not None:
			finished = scheduler.is_finished()
		else:
			finished = all(c.status in (ChunkStatus.DONE, ChunkStatus.SKIPPED) for c in plan.iter_chunks())
		if not finished:
			raise PlanNotFinishedError(f"Plan {plan.id} has unresolved chunks; acceptance cannot run")

		results = results or {}
		unknown = set(results) - {c.id for c in plan.acceptance_criteria}
		if unknown:
			logger.warning(f"Ignoring results for unknown criteria: {', '.join(sorted(unknown))}")

		checks = []
		for criterion in plan.acceptance_criteria:
			check = await self._check(criterion, results)
			if not check.passed:
				logger.warning(f"Acceptance criterion {criterion.id} failed ({check.source.value}): {criterion.description}")
			checks.append(check)

		result = VerificationResult(plan_id=plan.id, checks=checks)
		logger.info(f"Acceptance for {plan.id}: {result.summary}")
		return result

	async def _check(self, criterion: AcceptanceCriterion, results: Mapping[str, bool]) -> CriterionResult:
		if criterion.id in results:
			return CriterionResult(
				criterion_id=criterion.id,
				description=criterion.description,
				status=CheckStatus.PASSED if results[criterion.id] else CheckStatus.FAILED,
				source=CheckSource.SUPPLIED,
			)
		if criterion.command:
			return await self.run_command(criterion)
		if criterion.checked:
			return CriterionResult(
				criterion_id=criterion.id,
				description=criterion.description,
				status=CheckStatus.PASSED,
				source=CheckSource.CHECKBOX,
			)
		return CriterionResult(
			criterion_id=criterion.id,
			description=criterion.description,
			status=CheckStatus.FAILED,
			source=CheckSource.MISSING,
			output="no result supplied",
		)

	async def run_command(self, criterion: AcceptanceCriterion) -> CriterionResult:
		"""
		Run a criterion's command.

		Returns:
			CriterionResult (ERROR on timeout or when the command cannot start)
		"""
		start = datetime.now()

		try:
			proc = await asyncio.create_subprocess_shell(
				criterion.command,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.STDOUT,
				cwd=str(self.project_path),
			)

			try:
				stdout, _ = await asyncio.wait_for(
					proc.communicate(),
					timeout=self.timeout,
				)
			except asyncio.TimeoutError:
				proc.kill()
				await proc.wait()
				raise

			duration = (datetime.now() - start).total_seconds()
			status = CheckStatus.PASSED if proc.returncode == 0 else CheckStatus.FAILED

			return CriterionResult(
				criterion_id=criterion.id,
				description=criterion.description,
				status=status,
				source=CheckSource.COMMAND,
				output=stdout.decode("utf-8", errors="replace")[-2000:],
				duration_seconds=duration,
				details={"command": criterion.command, "returncode": proc.returncode},
			)

		except asyncio.TimeoutError:
			return CriterionResult(
				criterion_id=criterion.id,
				description=criterion.description,
				status=CheckStatus.ERROR,
				source=CheckSource.COMMAND,
				output=f"Timed out after {self.timeout}s",
				details={"command": criterion.command},
			)
		except OSError as e:
			return CriterionResult(
				criterion_id=criterion.id,
				description=criterion.description,
				status=CheckStatus.ERROR,
				source=CheckSource.COMMAND,
				output=str(e),
				details={"command": criterion.command},
			)


def authorize_completion(plan: Plan, result: VerificationResult) -> str:
	"""
	Return the completion promise token if every criterion passed.

	Raises:
		AcceptanceFailure: listing the failing criteria
	"""
	if result.plan_id != plan.id:
		raise ValueError(f"Verification result is for {result.plan_id}, not {plan.id}")
	if not result.passed:
		raise AcceptanceFailure(result.failed)
	return plan.completion_promise


# Global verifier instance
_verifier: Optional[AcceptanceVerifier] = None


def get_verifier(project_path: Optional[str] = None) -> AcceptanceVerifier:
	"""Get or create the global verifier instance."""
	global _verifier
	if _verifier is None:
		from ..config import get_config
		_verifier = AcceptanceVerifier(project_path, timeout=get_config().command_timeout)
	return _verifier
