"""Plans module - Plan model, document parser and serializer."""

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
from .parser import load_plan, parse_plan
from .serializer import plan_fingerprint, serialize_plan

__all__ = [
	"Plan",
	"PlanMeta",
	"PlanStatus",
	"Stream",
	"Phase",
	"Chunk",
	"ChunkStatus",
	"CommunicationRule",
	"AcceptanceCriterion",
	"parse_plan",
	"load_plan",
	"serialize_plan",
	"plan_fingerprint",
]
