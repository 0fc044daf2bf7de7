"""
Dependency Graph - Chunk readiness relation derived from a plan.

A chunk's predecessors are every chunk in an earlier phase (phase-barrier
edges) plus its explicit depends_on (fine-grained, possibly cross-phase).
Declaration order (phase index, then position) is the deterministic
tie-break whenever several chunks become ready together.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..errors import DependencyCycleError, UnknownChunkError
from ..plans.models import Plan

logger = logging.getLogger(__name__)

_WHITE, _GRAY, _BLACK = 0, 1, 2


@dataclass(frozen=True)
class DependencyGraph:
	"""Immutable predecessor relation over a plan's chunks."""
	order: tuple[str, ...]
	phase_index: dict[str, int]
	streams: dict[str, str]
	explicit: dict[str, frozenset[str]]
	predecessor_sets: dict[str, frozenset[str]]

	def __contains__(self, chunk_id: str) -> bool:
		return chunk_id in self.phase_index

	def _require(self, chunk_id: str) -> None:
		if chunk_id not in self.phase_index:
			raise UnknownChunkError(chunk_id)

	def predecessors(self, chunk_id: str) -> frozenset[str]:
		"""Full predecessor set: earlier phases plus explicit dependencies."""
		self._require(chunk_id)
		return self.predecessor_sets[chunk_id]

	def explicit_dependencies(self, chunk_id: str) -> frozenset[str]:
		self._require(chunk_id)
		return self.explicit[chunk_id]

	def dependents(self, chunk_id: str) -> list[str]:
		"""Chunks that wait on chunk_id, in declaration order."""
		self._require(chunk_id)
		return [c for c in self.order if chunk_id in self.predecessor_sets[c]]

	def stream_of(self, chunk_id: str) -> str:
		self._require(chunk_id)
		return self.streams[chunk_id]

	def phase_of(self, chunk_id: str) -> int:
		self._require(chunk_id)
		return self.phase_index[chunk_id]

	def chunks_in_phase(self, index: int) -> list[str]:
		return [c for c in self.order if self.phase_index[c] == index]

	@property
	def phase_count(self) -> int:
		return max(self.phase_index.values()) + 1 if self.phase_index else 0

	def topological_order(self) -> list[str]:
		"""Kahn's algorithm, always picking the earliest-declared ready chunk."""
		remaining = {c: set(self.predecessor_sets[c]) for c in self.order}
		result: list[str] = []
		while remaining:
			ready = next(c for c in self.order if c in remaining and not remaining[c])
			result.append(ready)
			del remaining[ready]
			for preds in remaining.values():
				preds.discard(ready)
		return result


def _find_cycle(order: tuple[str, ...], preds: dict[str, frozenset[str]]) -> Optional[list[str]]:
	"""Colouring DFS with an explicit stack; returns the first cycle found as a closed path."""
	position = {c: i for i, c in enumerate(order)}
	color = {c: _WHITE for c in order}

	def deps_of(node: str):
		return iter(sorted(preds[node], key=position.__getitem__))

	for root in order:
		if color[root] != _WHITE:
			continue
		color[root] = _GRAY
		path = [root]
		frames = [deps_of(root)]
		while frames:
			for dep in frames[-1]:
				if color[dep] == _GRAY:
					return path[path.index(dep):] + [dep]
				if color[dep] == _WHITE:
					color[dep] = _GRAY
					path.append(dep)
					frames.append(deps_of(dep))
					break
			else:
				frames.pop()
				color[path.pop()] = _BLACK
	return None


def build_graph(plan: Plan) -> DependencyGraph:
	"""
	Build the dependency graph for a plan.

	Raises:
		DependencyCycleError: if the predecessor relation has a cycle
		UnknownChunkError: if an explicit dependency names no chunk
	"""
	order: list[str] = []
	phase_index: dict[str, int] = {}
	streams: dict[str, str] = {}
	explicit: dict[str, frozenset[str]] = {}
	preds: dict[str, frozenset[str]] = {}

	earlier: list[str] = []
	for phase in plan.phases:
		for chunk in phase.chunks:
			order.append(chunk.id)
			phase_index[chunk.id] = phase.index
			streams[chunk.id] = chunk.stream
			explicit[chunk.id] = frozenset(chunk.depends_on)
			preds[chunk.id] = frozenset(earlier) | explicit[chunk.id]
		earlier.extend(c.id for c in phase.chunks)

	for chunk_id, deps in explicit.items():
		for dep in deps:
			if dep not in phase_index:
				raise UnknownChunkError(dep)

	cycle = _find_cycle(tuple(order), preds)
	if cycle:
		logger.warning(f"Plan {plan.id} rejected: dependency cycle {' -> '.join(cycle)}")
		raise DependencyCycleError(cycle)

	return DependencyGraph(
		order=tuple(order),
		phase_index=phase_index,
		streams=streams,
		explicit=explicit,
		predecessor_sets=preds,
	)
