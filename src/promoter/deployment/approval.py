"""Manual approval gates.

A gate suspends the coordinator until someone fills in a set of named
fields or cancels. Field specs map each name to its default; ``None``
marks a field that must be supplied explicitly.
"""
import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from loguru import logger

from src.promoter.monitoring.metrics import PENDING_APPROVALS

from .errors import ApprovalCancelled

FieldSpec = Dict[str, Optional[str]]


def fill_fields(fields: FieldSpec, values: Dict[str, str]) -> Dict[str, str]:
    """Merge supplied values over field defaults.

    Raises:
        ValueError: If a field without a default was not supplied
    """
    filled = {}
    missing = []
    for name, default in fields.items():
        value = values.get(name)
        if value is None or value == "":
            value = default
        if value is None:
            missing.append(name)
        else:
            filled[name] = value

    if missing:
        raise ValueError(f"Missing required approval fields: {', '.join(missing)}")
    return filled


class ApprovalGate(ABC):
    @abstractmethod
    async def request_approval(self, message: str, fields: FieldSpec) -> Dict[str, str]:
        """Block until approved and return the filled fields.

        Raises:
            ApprovalCancelled: If the request is cancelled or expires
        """
        pass


class StaticApprovalGate(ApprovalGate):
    """Answers every request from values supplied up front (CI inputs)."""

    def __init__(self, answers: Optional[Dict[str, str]] = None, approve: bool = True):
        self.answers = dict(answers or {})
        self.approve = approve
        self.requests: List[str] = []

    async def request_approval(self, message: str, fields: FieldSpec) -> Dict[str, str]:
        self.requests.append(message)
        if not self.approve:
            raise ApprovalCancelled(f"Approval declined: {message}")
        try:
            filled = fill_fields(fields, self.answers)
        except ValueError as e:
            raise ApprovalCancelled(str(e)) from e

        logger.info(f"Approval granted from static inputs: {message}")
        return filled


@dataclass
class ApprovalRequest:
    """An approval waiting for a human decision."""
    id: str
    message: str
    fields: FieldSpec
    future: "asyncio.Future[Dict[str, str]]"
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "message": self.message,
            "fields": dict(self.fields),
            "created_at": self.created_at.isoformat(),
        }


class PendingApprovalGate(ApprovalGate):
    """Parks each request on a future that is resolved from outside.

    ``resolve`` and ``cancel`` must be called from the event loop that
    awaits the request (the API handlers do this).
    """

    def __init__(self, expiry: Optional[float] = None):
        """Initialize pending gate.

        Args:
            expiry: Seconds before an unanswered request is cancelled;
                None or 0 waits indefinitely
        """
        self.expiry = expiry or None
        self._pending: Dict[str, ApprovalRequest] = {}

    def pending(self) -> List[ApprovalRequest]:
        return list(self._pending.values())

    def get(self, request_id: str) -> ApprovalRequest:
        """Raises KeyError for unknown or already answered requests."""
        return self._pending[request_id]

    async def request_approval(self, message: str, fields: FieldSpec) -> Dict[str, str]:
        loop = asyncio.get_running_loop()
        request = ApprovalRequest(
            id=uuid.uuid4().hex,
            message=message,
            fields=dict(fields),
            future=loop.create_future(),
        )
        self._pending[request.id] = request
        PENDING_APPROVALS.inc()
        logger.info(f"⏸️  Waiting for approval {request.id}: {message}")

        try:
            return await asyncio.wait_for(request.future, timeout=self.expiry)
        except asyncio.TimeoutError as e:
            raise ApprovalCancelled(
                f"Approval {request.id} expired after {self.expiry:.0f}s: {message}"
            ) from e
        finally:
            self._pending.pop(request.id, None)
            PENDING_APPROVALS.dec()

    def resolve(self, request_id: str, values: Dict[str, str]) -> Dict[str, str]:
        """Approve a pending request.

        Raises:
            KeyError: If the request is unknown
            ValueError: If a required field is missing
        """
        request = self.get(request_id)
        filled = fill_fields(request.fields, values)
        if not request.future.done():
            request.future.set_result(filled)
        logger.info(f"Approval {request_id} granted")
        return filled

    def cancel(self, request_id: str, reason: str = "cancelled") -> None:
        """Cancel a pending request.

        Raises:
            KeyError: If the request is unknown
        """
        request = self.get(request_id)
        if not request.future.done():
            request.future.set_exception(
                ApprovalCancelled(f"Approval {request_id} {reason}: {request.message}")
            )
        logger.warning(f"Approval {request_id} {reason}")
