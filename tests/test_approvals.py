"""Tests for the approval queue and request history."""

import asyncio

import pytest

from mcplink.core.approvals import ApprovalQueue, QueueToolCallApprover
from mcplink.core.history import RequestHistory


class TestApprovalQueue:
    @pytest.mark.asyncio
    async def test_approve_resolves_waiter_once(self):
        queue = ApprovalQueue()
        waiter = asyncio.create_task(queue.request("tool_call", "echo", {"message": "hi"}, approval_id="a1"))
        await asyncio.sleep(0)

        pending = queue.get("a1")
        assert pending.tool_name == "echo" and pending.kind == "tool_call"

        queue.approve("a1")

        assert await waiter is True
        assert len(queue) == 0
        with pytest.raises(KeyError):
            queue.approve("a1")
        with pytest.raises(KeyError):
            queue.reject("a1")

    @pytest.mark.asyncio
    async def test_reject_with_exception_raises_in_waiter(self):
        queue = ApprovalQueue()
        waiter = asyncio.create_task(queue.request("sampling", "sampling/createMessage", {}, approval_id="s1"))
        await asyncio.sleep(0)

        queue.reject("s1", PermissionError("denied"))

        with pytest.raises(PermissionError):
            await waiter
        assert "s1" not in queue

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_no_entry(self):
        queue = ApprovalQueue()
        waiter = asyncio.create_task(queue.request("tool_call", "echo", {}, approval_id="c1"))
        await asyncio.sleep(0)

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_duplicate_id_is_refused(self):
        queue = ApprovalQueue()
        first = asyncio.create_task(queue.request("tool_call", "echo", {}, approval_id="dup"))
        await asyncio.sleep(0)

        with pytest.raises(ValueError):
            await queue.request("tool_call", "echo", {}, approval_id="dup")

        queue.approve("dup")
        await first

    @pytest.mark.asyncio
    async def test_tool_call_approver_uses_tool_call_id(self):
        queue = ApprovalQueue()
        approver = QueueToolCallApprover(queue)
        decision = asyncio.create_task(approver.request_tool_call_approval("echo", {}, "toolu_1"))
        await asyncio.sleep(0)

        queue.reject("toolu_1", "not now")

        assert await decision is False


class TestRequestHistory:
    def test_entries_are_appended_and_forwarded(self):
        seen = []
        history = RequestHistory(listener=seen.append)

        ok = history.append({"method": "ping"}, response={}, latency_ms=1.5)
        failed = history.append({"method": "tools/call"}, error="boom")

        assert history.entries == [ok, failed]
        assert seen == [ok, failed]
        assert ok.succeeded and not failed.succeeded
        assert ok.timestamp > 0

    def test_entries_are_immutable(self):
        history = RequestHistory()
        entry = history.append({"method": "ping"})

        with pytest.raises(AttributeError):
            entry.response = {"changed": True}

    def test_listener_failure_does_not_break_append(self):
        def broken_listener(entry):
            raise RuntimeError("ui went away")

        history = RequestHistory(listener=broken_listener)
        history.append({"method": "ping"})

        assert len(history) == 1
