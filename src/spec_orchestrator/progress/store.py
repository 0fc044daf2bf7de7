"""
Progress Store - Durable persistence of ProgressSnapshots.

Two backends share the save/load contract:
- FileProgressStore: a human-readable progress.md beside the plan, replaced
  atomically so a crash mid-save leaves the previous state intact
- SqliteProgressStore: versioned snapshots in SQLite; every save is a new
  version and older versions are retained for history
"""

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional, Protocol

import aiosqlite

from ..errors import SnapshotError, SnapshotNotFoundError
from ..plans.models import Plan
from .document import parse_progress, render_progress
from .models import ProgressSnapshot

logger = logging.getLogger(__name__)


class ProgressStore(Protocol):
	"""Durable snapshot persistence."""

	async def save(self, snapshot: ProgressSnapshot) -> None: ...

	async def load(self, plan_id: Optional[str] = None) -> ProgressSnapshot: ...


def atomic_write_text(path: Path, text: str, backup: bool = True) -> None:
	"""
	Write text atomically: temp file in the same directory, fsync, then os.replace.

	Args:
		path: Destination file
		text: Content to write
		backup: Copy the previous file to <name>.bak before replacing it
	"""
	path.parent.mkdir(parents=True, exist_ok=True)
	fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
	try:
		with os.fdopen(fd, "w", encoding="utf-8") as f:
			f.write(text)
			f.flush()
			os.fsync(f.fileno())
		if backup and path.exists():
			shutil.copy2(path, path.with_name(path.name + ".bak"))
		os.replace(tmp_path, path)
	except Exception:
		try:
			os.unlink(tmp_path)
		except OSError:
			pass
		raise


class FileProgressStore:
	"""
	Progress document on disk.

	Usage:
		store = FileProgressStore(plan_path.parent / "progress.md", plan)
		await store.save(scheduler.snapshot())
		snapshot = await store.load()
	"""

	def __init__(self, path: Path | str, plan: Plan, backup: bool = True):
		self.path = Path(path)
		self.plan = plan
		self.backup = backup

	def exists(self) -> bool:
		return self.path.exists()

	def _write(self, snapshot: ProgressSnapshot) -> None:
		if snapshot.plan_id != self.plan.id:
			raise SnapshotError(f"Snapshot for plan '{snapshot.plan_id}' cannot be saved as '{self.plan.id}'")
		atomic_write_text(self.path, render_progress(self.plan, snapshot), backup=self.backup)

	def _read(self, plan_id: Optional[str]) -> ProgressSnapshot:
		if not self.path.exists():
			raise SnapshotNotFoundError(f"No progress file at {self.path}")
		snapshot = parse_progress(self.path.read_text(encoding="utf-8"))
		if plan_id is not None and snapshot.plan_id != plan_id:
			raise SnapshotNotFoundError(f"{self.path} holds progress for '{snapshot.plan_id}', not '{plan_id}'")
		return snapshot

	async def save(self, snapshot: ProgressSnapshot) -> None:
		"""Atomically replace the progress file."""
		await asyncio.to_thread(self._write, snapshot)
		logger.debug(f"Saved progress for {snapshot.plan_id} to {self.path}")

	async def load(self, plan_id: Optional[str] = None) -> ProgressSnapshot:
		"""
		Read the progress file.

		Raises:
			SnapshotNotFoundError: if the file is missing or belongs to another plan
			SnapshotError: if the file is malformed
		"""
		return await asyncio.to_thread(self._read, plan_id)


class SqliteProgressStore:
	"""
	SQLite-backed snapshot storage with versioning.

	Usage:
		store = SqliteProgressStore("data/progress.db")
		await store.init()

		version = await store.save(snapshot)
		latest = await store.load("my-plan")
		history = await store.history("my-plan")
	"""

	def __init__(self, db_path: Path | str):
		"""Initialize the progress store."""
		self.db_path = Path(db_path)
		self.db_path.parent.mkdir(parents=True, exist_ok=True)
		self._db: Optional[aiosqlite.Connection] = None
		self._lock = asyncio.Lock()

	async def init(self):
		"""Initialize the database schema."""
		self._db = await aiosqlite.connect(str(self.db_path))
		self._db.row_factory = aiosqlite.Row

		await self._db.execute("""
			CREATE TABLE IF NOT EXISTS snapshots (
				seq INTEGER PRIMARY KEY AUTOINCREMENT,
				plan_id TEXT NOT NULL,
				version INTEGER NOT NULL,
				plan_version TEXT NOT NULL,
				plan_status TEXT NOT NULL,
				data TEXT NOT NULL,
				saved_at TEXT NOT NULL,
				UNIQUE(plan_id, version)
			)
		""")

		await self._db.execute("""
			CREATE INDEX IF NOT EXISTS idx_snapshots_plan ON snapshots(plan_id, version)
		""")

		await self._db.commit()
		logger.info(f"Progress store initialized: {self.db_path}")

	async def close(self):
		"""Close the database connection."""
		if self._db:
			await self._db.close()
			self._db = None

	async def save(self, snapshot: ProgressSnapshot) -> int:
		"""
		Store a snapshot as the next version for its plan.

		Returns:
			The new version number (1-based per plan)
		"""
		if not self._db:
			await self.init()

		async with self._lock:
			async with self._db.execute(
				"SELECT COALESCE(MAX(version), 0) AS latest FROM snapshots WHERE plan_id = ?",
				(snapshot.plan_id,)
			) as cursor:
				row = await cursor.fetchone()
			version = row["latest"] + 1

			await self._db.execute(
				"""
				INSERT INTO snapshots (plan_id, version, plan_version, plan_status, data, saved_at)
				VALUES (?, ?, ?, ?, ?, ?)
				""",
				(
					snapshot.plan_id,
					version,
					snapshot.plan_version,
					snapshot.plan_status.value,
					snapshot.model_dump_json(),
					snapshot.saved_at,
				)
			)
			await self._db.commit()

		logger.debug(f"Saved snapshot v{version} for plan {snapshot.plan_id}")
		return version

	async def load(self, plan_id: Optional[str] = None, version: Optional[int] = None) -> ProgressSnapshot:
		"""
		Get the latest snapshot, optionally for one plan or at a specific version.

		Raises:
			SnapshotNotFoundError: if nothing matches
		"""
		if not self._db:
			await self.init()

		if plan_id is None:
			query = "SELECT data FROM snapshots ORDER BY seq DESC LIMIT 1"
			params: tuple = ()
		elif version:
			query = "SELECT data FROM snapshots WHERE plan_id = ? AND version = ?"
			params = (plan_id, version)
		else:
			query = "SELECT data FROM snapshots WHERE plan_id = ? ORDER BY version DESC LIMIT 1"
			params = (plan_id,)

		async with self._db.execute(query, params) as cursor:
			row = await cursor.fetchone()

		if not row:
			target = plan_id or "any plan"
			raise SnapshotNotFoundError(f"No snapshot found for {target}" + (f" at v{version}" if version else ""))

		return ProgressSnapshot.model_validate_json(row["data"])

	async def history(self, plan_id: str) -> list[dict]:
		"""
		List stored versions of a plan's progress, newest first.

		Returns:
			Dicts with version, plan_version, plan_status and saved_at
		"""
		if not self._db:
			await self.init()

		async with self._db.execute(
			"""
			SELECT version, plan_version, plan_status, saved_at
			FROM snapshots WHERE plan_id = ? ORDER BY version DESC
			""",
			(plan_id,)
		) as cursor:
			rows = await cursor.fetchall()

		return [
			{
				"version": row["version"],
				"plan_version": row["plan_version"],
				"plan_status": row["plan_status"],
				"saved_at": row["saved_at"],
			}
			for row in rows
		]

	async def prune(self, plan_id: str, keep: int = 20) -> int:
		"""
		Delete all but the newest `keep` versions of a plan.

		Returns:
			Number of versions removed
		"""
		if keep < 1:
			raise ValueError("keep must be at least 1")
		if not self._db:
			await self.init()

		async with self._lock:
			cursor = await self._db.execute(
				"""
				DELETE FROM snapshots WHERE plan_id = ? AND version NOT IN (
					SELECT version FROM snapshots WHERE plan_id = ? ORDER BY version DESC LIMIT ?
				)
				""",
				(plan_id, plan_id, keep)
			)
			removed = cursor.rowcount
			await self._db.commit()

		if removed:
			logger.info(f"Pruned {removed} old snapshots of plan {plan_id}")
		return removed


# Global store instance
_store: Optional[SqliteProgressStore] = None


async def get_progress_store(db_path: str = "") -> SqliteProgressStore:
	"""Get or create the global progress store."""
	global _store
	if _store is None:
		if not db_path:
			from ..config import get_config
			db_path = str(get_config().progress_db_path)
		_store = SqliteProgressStore(db_path)
		await _store.init()
	return _store
