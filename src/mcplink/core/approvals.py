"""Pending human-in-the-loop decisions keyed by id."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class PendingApproval:
    """An outstanding sampling request or tool-call approval."""

    id: str
    kind: str
    tool_name: str
    input: Any
    future: asyncio.Future = field(repr=False)


class ApprovalQueue:
    """Holds pending approvals until an operator approves or rejects them.

    Each entry is removed exactly once, either by ``approve`` or by
    ``reject``. Callers await the value returned by ``request``.
    """

    def __init__(self) -> None:
        self._pending: Dict[str, PendingApproval] = {}

    async def request(
        self,
        kind: str,
        tool_name: str,
        input: Any,
        approval_id: Optional[str] = None,
    ) -> Any:
        approval_id = approval_id or str(uuid.uuid4())
        if approval_id in self._pending:
            raise ValueError(f"Approval '{approval_id}' is already pending")
        future = asyncio.get_running_loop().create_future()
        self._pending[approval_id] = PendingApproval(
            id=approval_id,
            kind=kind,
            tool_name=tool_name,
            input=input,
            future=future,
        )
        logger.debug(f"Waiting for {kind} approval {approval_id} ({tool_name})")
        try:
            return await future
        finally:
            # Cancelled waiters must not leave an orphaned entry behind
            self._pending.pop(approval_id, None)

    def approve(self, approval_id: str, value: Any = True) -> None:
        pending = self._pending.pop(approval_id)
        if not pending.future.done():
            pending.future.set_result(value)

    def reject(self, approval_id: str, reason: Any = None) -> None:
        """Reject a pending approval.

        An exception instance as ``reason`` is raised in the waiter; any other
        value (including ``None``) resolves the waiter with ``False``.
        """
        pending = self._pending.pop(approval_id)
        if pending.future.done():
            return
        if isinstance(reason, BaseException):
            pending.future.set_exception(reason)
        else:
            pending.future.set_result(False)

    def get(self, approval_id: str) -> Optional[PendingApproval]:
        return self._pending.get(approval_id)

    @property
    def pending(self) -> List[PendingApproval]:
        return list(self._pending.values())

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, approval_id: str) -> bool:
        return approval_id in self._pending


class QueueToolCallApprover:
    """Tool-call approver backed by an ``ApprovalQueue``."""

    def __init__(self, queue: ApprovalQueue):
        self.queue = queue

    async def request_tool_call_approval(self, name: str, input: Any, tool_call_id: str) -> bool:
        result = await self.queue.request("tool_call", name, input, approval_id=tool_call_id)
        return bool(result)


class QueueSamplingHandler:
    """``sampling/createMessage`` handler that defers to an operator.

    The operator approves with the ``CreateMessageResult`` dict to send back
    to the server; a plain rejection turns into a JSON-RPC error.
    """

    def __init__(self, queue: ApprovalQueue):
        self.queue = queue

    async def __call__(self, params: Dict[str, Any]) -> Dict[str, Any]:
        result = await self.queue.request("sampling", "sampling/createMessage", params)
        if not isinstance(result, dict):
            raise PermissionError("Sampling request was rejected by user")
        return result


class QueueElicitationHandler:
    """``elicitation/create`` handler that defers to an operator.

    Approving with a dict of field values accepts the request with that
    content; a rejection declines it.
    """

    def __init__(self, queue: ApprovalQueue):
        self.queue = queue

    async def __call__(self, params: Dict[str, Any]) -> Dict[str, Any]:
        result = await self.queue.request("elicitation", "elicitation/create", params)
        if isinstance(result, dict):
            return {"action": "accept", "content": result}
        return {"action": "decline"}
