"""
Communication Router - Trigger-gated message hand-off between streams.

The router listens to scheduler completion events. When a communication
rule's trigger (a chunk or a whole phase) completes, the rule fires once
and its payload is delivered to every worker bound to each target stream.
Messages for streams with no registered worker queue until one registers.

Delivery is at-least-once: a router rebuilt after a restart re-fires
triggers that fired before the crash. Receivers drop duplicates by
Message.key.
"""

import logging
import threading
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..errors import RoutingError
from ..plans.models import CommunicationRule, Plan

if TYPE_CHECKING:
	from .worker import Worker

logger = logging.getLogger(__name__)


class Message(BaseModel):
	"""A payload delivered from one stream to another under a rule."""
	model_config = ConfigDict(frozen=True)

	rule_id: str
	from_stream: str
	to_stream: str
	trigger: str = Field(description="Trigger key that fired the rule (chunk:<id> or phase:<n>)")
	payload: str
	sent_at: str = Field(default_factory=lambda: datetime.now().isoformat())

	@property
	def key(self) -> tuple[str, str, str]:
		"""Identity used by receivers to drop duplicate deliveries."""
		return (self.rule_id, self.to_stream, self.payload)


class CommunicationRouter:
	"""
	Delivers rule payloads on chunk/phase completion.

	Usage:
		router = CommunicationRouter(plan)
		scheduler.add_listener(router)
		router.register(worker)
	"""

	def __init__(self, plan: Plan):
		self.plan = plan
		self._rules: dict[str, CommunicationRule] = {rule.id: rule for rule in plan.communication}
		self._lock = threading.RLock()
		self._workers: dict[str, list["Worker"]] = {}
		self._pending: dict[str, list[Message]] = {}
		self._staged: dict[str, list[str]] = {}
		self._fired: dict[str, str] = {}  # rule_id -> trigger key
		self._delivered: list[Message] = []

	# Scheduler events

	def on_chunk_complete(self, chunk_id: str) -> None:
		self._trigger(f"chunk:{chunk_id}")

	def on_phase_complete(self, phase_index: int) -> None:
		self._trigger(f"phase:{phase_index}")

	def _trigger(self, trigger_key: str) -> None:
		for rule in self.plan.rules_for_trigger(trigger_key):
			with self._lock:
				if rule.id in self._fired:
					logger.debug(f"Rule {rule.id} already fired; ignoring {trigger_key}")
					continue
				self._fired[rule.id] = trigger_key
				payloads = self._staged.pop(rule.id, None) or [rule.payload_description]
			logger.info(f"Rule {rule.id} fired by {trigger_key}: {rule.from_stream} -> {', '.join(rule.to_streams)}")
			for payload in payloads:
				self._fan_out(rule, trigger_key, payload)

	def _fan_out(self, rule: CommunicationRule, trigger_key: str, payload: str) -> None:
		for stream in rule.to_streams:
			self._deliver(Message(
				rule_id=rule.id,
				from_stream=rule.from_stream,
				to_stream=stream,
				trigger=trigger_key,
				payload=payload,
			))

	def _deliver(self, message: Message) -> None:
		with self._lock:
			workers = list(self._workers.get(message.to_stream, []))
			if not workers:
				self._pending.setdefault(message.to_stream, []).append(message)
				logger.debug(f"Queued {message.rule_id} for unregistered stream {message.to_stream}")
				return
			self._delivered.append(message)
		for worker in workers:
			worker.deliver(message)

	# Workers

	def register(self, worker: "Worker") -> None:
		"""Attach a worker to its stream and flush anything queued for it."""
		if self.plan.get_stream(worker.stream) is None:
			raise RoutingError(f"Unknown stream: {worker.stream}")
		with self._lock:
			self._workers.setdefault(worker.stream, []).append(worker)
			queued = self._pending.pop(worker.stream, [])
			self._delivered.extend(queued)
		if queued:
			logger.info(f"Flushing {len(queued)} queued messages to {worker.worker_id}")
		for message in queued:
			worker.deliver(message)

	def unregister(self, worker: "Worker") -> None:
		with self._lock:
			workers = self._workers.get(worker.stream, [])
			if worker in workers:
				workers.remove(worker)

	# Explicit sends

	def send(self, rule_id: str, payload: str, sender_stream: str) -> None:
		"""
		Attach an explicit payload to a rule.

		The payload is held until the rule's trigger completes, or delivered
		immediately if it already fired.

		Raises:
			RoutingError: unknown rule, or sender is not the rule's from-stream
		"""
		rule = self._rules.get(rule_id)
		if rule is None:
			raise RoutingError(f"Unknown communication rule: {rule_id}")
		if rule.from_stream != sender_stream:
			raise RoutingError(f"Stream {sender_stream} cannot send on {rule_id} (sender is {rule.from_stream})")
		with self._lock:
			trigger_key = self._fired.get(rule_id)
			if trigger_key is None:
				self._staged.setdefault(rule_id, []).append(payload)
				logger.debug(f"Staged payload for {rule_id} until {rule.trigger_key} completes")
				return
		self._fan_out(rule, trigger_key, payload)

	# Queries

	def pending_for(self, stream: str) -> list[Message]:
		"""Messages waiting for a worker of this stream to register."""
		with self._lock:
			return list(self._pending.get(stream, []))

	def has_fired(self, rule_id: str) -> bool:
		with self._lock:
			return rule_id in self._fired

	@property
	def fired(self) -> set[str]:
		with self._lock:
			return set(self._fired)

	@property
	def delivered(self) -> list[Message]:
		with self._lock:
			return list(self._delivered)

	def rules_from(self, stream: str) -> list[CommunicationRule]:
		return [rule for rule in self.plan.communication if rule.from_stream == stream]

	def rules_to(self, stream: str) -> list[CommunicationRule]:
		return [rule for rule in self.plan.communication if stream in rule.to_streams]

	def get_rule(self, rule_id: str) -> Optional[CommunicationRule]:
		return self._rules.get(rule_id)
