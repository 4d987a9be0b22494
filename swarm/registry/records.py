"""
SWARM Registry - Records

Typed payloads stored in the shared registry, plus the key layout.

Each record decodes from JSON while ignoring fields it does not know, so
writers can add fields without breaking older readers.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from swarm.shared.errors import RegistryError


class LeaseStatus(str, Enum):
    """Worker-reported state carried by the lease."""
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class TerminalStatus(str, Enum):
    """Terminal outcome written once by the worker."""
    DONE = "done"
    ERROR = "error"


def _decode(raw: str | bytes, kind: str) -> Any:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise RegistryError(f"Malformed {kind} payload: {raw!r}") from exc


def _as_float(value: Any, field_name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise RegistryError(f"Invalid {field_name}: {value!r}") from None


# =============================================================================
# Keys
# =============================================================================
@dataclass(frozen=True)
class RegistryKeys:
    """Per-session key layout: ``{prefix}:{kind}:{session_id}``."""

    prefix: str = "agent"

    def heartbeat(self, session_id: str) -> str:
        return f"{self.prefix}:heartbeat:{session_id}"

    def status(self, session_id: str) -> str:
        return f"{self.prefix}:status:{session_id}"

    def resource(self, session_id: str) -> str:
        return f"{self.prefix}:resource:{session_id}"

    def all_for(self, session_id: str) -> tuple[str, str, str]:
        return (
            self.heartbeat(session_id),
            self.status(session_id),
            self.resource(session_id),
        )


# =============================================================================
# Lease
# =============================================================================
@dataclass
class Lease:
    """Liveness record renewed by the worker. ``started_at`` never changes."""

    resource_id: str
    started_at: float
    status: LeaseStatus = LeaseStatus.RUNNING
    renewed_at: float | None = None

    def elapsed(self, now: float) -> float:
        return now - self.started_at

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "resource_id": self.resource_id,
            "started_at": self.started_at,
            "status": self.status.value,
        }
        if self.renewed_at is not None:
            data["renewed_at"] = self.renewed_at
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Lease":
        if "started_at" not in data:
            raise RegistryError(f"Lease payload missing started_at: {data!r}")
        try:
            status = LeaseStatus(str(data.get("status") or "running"))
        except ValueError:
            status = LeaseStatus.RUNNING
        renewed_at = data.get("renewed_at")
        return cls(
            # Older writers used machine_id.
            resource_id=str(data.get("resource_id") or data.get("machine_id") or ""),
            started_at=_as_float(data["started_at"], "started_at"),
            status=status,
            renewed_at=_as_float(renewed_at, "renewed_at") if renewed_at is not None else None,
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Lease":
        data = _decode(raw, "lease")
        if not isinstance(data, dict):
            raise RegistryError(f"Lease payload is not an object: {data!r}")
        return cls.from_dict(data)


# =============================================================================
# Status Record
# =============================================================================
@dataclass
class StatusRecord:
    """Terminal outcome of a session. Its presence always wins over the lease."""

    status: TerminalStatus
    message: str = ""
    finished_at: float | None = None

    @property
    def is_error(self) -> bool:
        return self.status is TerminalStatus.ERROR

    @classmethod
    def done(cls, finished_at: float | None = None) -> "StatusRecord":
        return cls(status=TerminalStatus.DONE, finished_at=finished_at)

    @classmethod
    def error(cls, message: str, finished_at: float | None = None) -> "StatusRecord":
        return cls(status=TerminalStatus.ERROR, message=message, finished_at=finished_at)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status.value}
        if self.message:
            data["message"] = self.message
        if self.finished_at is not None:
            data["finished_at"] = self.finished_at
        return data

    def to_json(self) -> str:
        """Stored form: bare ``done``, or a JSON object for errors."""
        if self.status is TerminalStatus.DONE:
            return TerminalStatus.DONE.value
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str | bytes) -> "StatusRecord":
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        # Bare "done" is the minimal form.
        if raw.strip() == TerminalStatus.DONE.value:
            return cls.done()
        data = _decode(raw, "status")
        if isinstance(data, str):
            data = {"status": data}
        if not isinstance(data, dict):
            raise RegistryError(f"Status payload is not an object: {data!r}")
        try:
            status = TerminalStatus(str(data.get("status")))
        except ValueError:
            raise RegistryError(f"Unknown terminal status: {data.get('status')!r}") from None
        finished_at = data.get("finished_at")
        return cls(
            status=status,
            message=str(data.get("message") or ""),
            finished_at=_as_float(finished_at, "finished_at") if finished_at is not None else None,
        )


# =============================================================================
# Session → Resource Mapping
# =============================================================================
@dataclass
class SessionMapping:
    """Dedup record binding a session to its provisioned resource."""

    session_id: str
    resource_id: str
    created_at: str
    resource_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "resource_id": self.resource_id,
            "resource_name": self.resource_name,
            "created_at": self.created_at,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str | bytes) -> "SessionMapping":
        data = _decode(raw, "mapping")
        if not isinstance(data, dict) or "session_id" not in data:
            raise RegistryError(f"Mapping payload missing session_id: {data!r}")
        return cls(
            session_id=str(data["session_id"]),
            resource_id=str(data.get("resource_id") or data.get("machine_id") or ""),
            created_at=str(data.get("created_at") or ""),
            resource_name=str(data.get("resource_name") or ""),
        )
