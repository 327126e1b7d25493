"""Append-only request history."""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestHistoryEntry:
    """One outbound request or notification and its outcome."""
    request: Dict[str, Any]
    response: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    timestamp: float = 0.0
    latency_ms: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


HistoryListener = Callable[[RequestHistoryEntry], None]


class RequestHistory:
    """Ordered log of request history entries.

    Entries are never mutated or removed; ``append`` is the only write path.
    """

    def __init__(self, listener: Optional[HistoryListener] = None):
        self._entries: List[RequestHistoryEntry] = []
        self._listener = listener

    def append(
        self,
        request: Dict[str, Any],
        response: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        latency_ms: Optional[float] = None,
    ) -> RequestHistoryEntry:
        entry = RequestHistoryEntry(
            request=dict(request),
            response=response,
            error=error,
            timestamp=time.time(),
            latency_ms=latency_ms,
        )
        self._entries.append(entry)
        if self._listener is not None:
            try:
                self._listener(entry)
            except Exception as e:
                logger.warning(f"Request history listener failed: {e}")
        return entry

    @property
    def entries(self) -> List[RequestHistoryEntry]:
        return list(self._entries)

    def __iter__(self) -> Iterator[RequestHistoryEntry]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)
