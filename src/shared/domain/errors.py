"""
Error taxonomy for the event pipeline.

Authentication and validation errors are resolved at the HTTP boundary and
never enter the asynchronous pipeline. Processing errors are retried locally
and only surface once the retry budget is spent.
"""

from dataclasses import dataclass


class PipelineError(Exception):
    """Base class for all pipeline errors."""
    pass


class AuthError(PipelineError):
    """Signature mismatch, missing signature header or stale payload."""
    pass


class MalformedPayload(PipelineError):
    """Authentic request whose body is not a JSON object."""
    pass


class WriteError(PipelineError):
    """Durable store unavailable at ingest time."""
    pass


class TransientProcessingError(PipelineError):
    """Downstream call failed in a way that may succeed on retry."""
    pass


class TerminalProcessingError(PipelineError):
    """Message exhausted its retry budget or can never succeed."""
    pass


class PositionExpired(PipelineError):
    """Requested change stream position fell out of the retention window."""

    def __init__(self, partition: str, position: str):
        super().__init__(f"Position {position} in partition {partition} is older than the retention window")
        self.partition = partition
        self.position = position


class MessageNotFound(PipelineError):
    """Queue message does not exist or is no longer owned by the caller."""
    pass


@dataclass(frozen=True)
class RoutingMiss:
    """A change notification matched no routing rule. Logged, never raised."""
    event_key: str
    partition: str
    stream_position: str
