"""
Durable queue domain model.

Every message follows an explicit state machine:

    Pending -> InFlight(expiresAt) -> Deleted
                                   -> Pending       (visibility expired or released)
                                   -> DeadLettered  (receive budget spent)

Visibility timeouts are the only cancellation mechanism: a consumer that
does not delete a message before its timeout implicitly hands it back.
"""

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple


class MessageState(str, enum.Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DELETED = "deleted"
    DEAD_LETTERED = "dead_lettered"


class InvalidTransition(Exception):
    pass


@dataclass(frozen=True)
class QueuePolicy:
    visibility_timeout: timedelta = timedelta(seconds=30)
    max_receive_count: int = 3
    max_batch_size: int = 10
    dedup_window: timedelta = timedelta(seconds=300)

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> "QueuePolicy":
        return cls(
            visibility_timeout=timedelta(seconds=settings["visibility_timeout_seconds"]),
            max_receive_count=settings["max_receive_count"],
            max_batch_size=settings["max_batch_size"],
            dedup_window=timedelta(seconds=settings["dedup_window_seconds"]),
        )

    @staticmethod
    def dead_letter_queue(queue_name: str) -> str:
        return f"{queue_name}-dead-letter"


@dataclass(eq=False)
class QueuedMessage:
    message_id: str
    queue_name: str
    body: Dict[str, Any]
    enqueued_at: datetime
    visible_after: datetime
    group_key: Optional[str] = None
    dedup_id: Optional[str] = None
    receive_count: int = 0
    state: str = MessageState.PENDING.value
    last_error: Optional[str] = None
    source_queue: Optional[str] = None
    dead_lettered_at: Optional[datetime] = None
    sequence: Optional[int] = None

    def __eq__(self, other):
        if not isinstance(other, QueuedMessage):
            return False
        return other.message_id == self.message_id

    def __hash__(self):
        return hash(self.message_id)

    @classmethod
    def create(
        cls,
        queue_name: str,
        body: Dict[str, Any],
        now: datetime,
        group_key: Optional[str] = None,
        dedup_id: Optional[str] = None,
    ) -> "QueuedMessage":
        return cls(
            message_id=str(uuid.uuid4()),
            queue_name=queue_name,
            body=body,
            enqueued_at=now,
            visible_after=now,
            group_key=group_key,
            dedup_id=dedup_id,
        )

    @property
    def idempotency_key(self) -> str:
        """Stable identity for deduplicating side effects of redelivered messages."""
        return self.dedup_id or self.message_id

    def is_deliverable(self, now: datetime) -> bool:
        return (
            self.state in (MessageState.PENDING.value, MessageState.IN_FLIGHT.value)
            and self.visible_after <= now
        )

    def is_hidden(self, now: datetime) -> bool:
        return (
            self.state in (MessageState.PENDING.value, MessageState.IN_FLIGHT.value)
            and self.visible_after > now
        )

    def is_exhausted(self, policy: QueuePolicy) -> bool:
        return self.receive_count >= policy.max_receive_count

    def receive(self, now: datetime, visibility_timeout: timedelta) -> None:
        if not self.is_deliverable(now):
            raise InvalidTransition(f"Message {self.message_id} is not deliverable ({self.state})")
        self.receive_count += 1
        self.state = MessageState.IN_FLIGHT.value
        self.visible_after = now + visibility_timeout

    def delete(self) -> None:
        if self.state not in (MessageState.PENDING.value, MessageState.IN_FLIGHT.value):
            raise InvalidTransition(f"Message {self.message_id} is already {self.state}")
        self.state = MessageState.DELETED.value

    def change_visibility(self, now: datetime, timeout: timedelta) -> None:
        """Extend or end the current lease; a zero timeout makes it visible again at once."""
        if self.state != MessageState.IN_FLIGHT.value:
            raise InvalidTransition(f"Message {self.message_id} is not in flight ({self.state})")
        self.visible_after = now + timeout
        if timeout <= timedelta(0):
            self.state = MessageState.PENDING.value

    def fail(self, now: datetime, error: str, policy: QueuePolicy) -> bool:
        """
        Record a processing failure.

        Dead-letters the message when its receive budget is spent, otherwise
        leaves it to reappear when its visibility timeout expires. Returns
        True if the message was dead-lettered.
        """
        if self.state != MessageState.IN_FLIGHT.value:
            raise InvalidTransition(f"Message {self.message_id} is not in flight ({self.state})")
        self.last_error = error
        if self.is_exhausted(policy):
            self.dead_letter(now, error)
            return True
        return False

    def dead_letter(self, now: datetime, reason: str) -> None:
        self.source_queue = self.queue_name
        self.queue_name = QueuePolicy.dead_letter_queue(self.queue_name)
        self.state = MessageState.DEAD_LETTERED.value
        self.dead_lettered_at = now
        self.last_error = reason

    def redrive(self, now: datetime) -> None:
        """Move a dead-lettered message back to its source queue with a fresh receive budget."""
        if self.state != MessageState.DEAD_LETTERED.value:
            raise InvalidTransition(f"Message {self.message_id} is not dead-lettered ({self.state})")
        self.queue_name = self.source_queue
        self.source_queue = None
        self.state = MessageState.PENDING.value
        self.receive_count = 0
        self.visible_after = now
        self.dead_lettered_at = None


def select_deliverable(
    candidates: List[QueuedMessage],
    busy_groups: Set[str],
    max_count: int,
    now: datetime,
    policy: QueuePolicy,
) -> Tuple[List[QueuedMessage], List[QueuedMessage]]:
    """
    Pick messages to deliver from candidates ordered by enqueue sequence.

    Returns (deliver, exhausted). Exhausted messages have spent their receive
    budget and must be dead-lettered instead of delivered. Grouped messages
    are skipped while their group has a hidden message, and at most one
    message per group is handed out, so within a group delivery follows
    enqueue order.
    """
    blocked = set(busy_groups)
    deliver = []  # type: List[QueuedMessage]
    exhausted = []  # type: List[QueuedMessage]

    for message in candidates:
        if len(deliver) >= max_count:
            break
        if not message.is_deliverable(now):
            continue
        if message.group_key is not None and message.group_key in blocked:
            continue
        if message.is_exhausted(policy):
            exhausted.append(message)
            continue
        deliver.append(message)
        if message.group_key is not None:
            blocked.add(message.group_key)

    return deliver, exhausted
