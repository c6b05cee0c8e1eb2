"""Job handle passed to handlers, plus the outcome of running one."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Mapping

# Envelope keys for values written by JobQueue.enqueue.
PAYLOAD_FIELD = 'payload'
IDENTIFIER_FIELD = 'identifier'


@dataclass(frozen=True, slots=True)
class Job:
    """One unit of work as seen by a handler.

    `identifier` is set by the producer or, failing that, assigned from the
    feed key when the job is claimed. It cannot change afterwards.
    """

    identifier: str | None
    payload: Any

    @classmethod
    def from_value(cls, value: Any) -> Job:
        """Build a Job from a raw feed value.

        Envelopes (`{"payload": ..., "identifier": ...}`) are unwrapped; any
        other value is treated as the payload of an anonymous job.
        """
        if isinstance(value, Mapping) and PAYLOAD_FIELD in value:
            extra = set(value) - {PAYLOAD_FIELD, IDENTIFIER_FIELD}
            if not extra:
                identifier = value.get(IDENTIFIER_FIELD)
                return cls(
                    identifier=str(identifier) if identifier is not None else None,
                    payload=value[PAYLOAD_FIELD],
                )
        return cls(identifier=None, payload=value)

    def to_value(self) -> dict[str, Any]:
        value: dict[str, Any] = {PAYLOAD_FIELD: self.payload}
        if self.identifier is not None:
            value[IDENTIFIER_FIELD] = self.identifier
        return value

    def with_identifier(self, identifier: str) -> Job:
        if self.identifier is not None:
            raise ValueError(
                f'job already has identifier {self.identifier!r}; refusing to set {identifier!r}'
            )
        return replace(self, identifier=identifier)


@dataclass(frozen=True, slots=True)
class JobSuccess:
    """The handler completed without an error."""


@dataclass(frozen=True, slots=True)
class JobFailure:
    """The handler reported `error` or raised it."""

    error: Any


type JobResult = JobSuccess | JobFailure
