from __future__ import annotations

from collections import deque
from typing import Any, Deque, List

from .utils import now_ms


class ChangeLog:
    """Record tree writes so clients without a live subscription can poll."""

    def __init__(self, limit: int = 1000):
        self.seq = 0
        self._records: Deque[dict[str, Any]] = deque(maxlen=limit)

    def append(self, paths: List[str]) -> int:
        """Store a new change record and return its sequence number."""

        self.seq += 1
        self._records.append(
            {
                "seq": self.seq,
                "timestamp": now_ms(),
                "paths": list(paths),
            }
        )
        return self.seq

    def list(self, after: int | None = None, limit: int = 200) -> List[dict[str, Any]]:
        """Return records that occur after the given sequence."""

        records = [r for r in self._records if after is None or r["seq"] > after]
        return [dict(r, paths=list(r["paths"])) for r in records[:limit]]

    def touched(self, prefix: str, after: int) -> bool:
        """True when any write after ``after`` touched ``prefix`` or a path below it."""

        prefix = prefix.strip("/")
        for record in self._records:
            if record["seq"] <= after:
                continue
            for path in record["paths"]:
                if path == prefix or path.startswith(prefix + "/") or prefix.startswith(path + "/"):
                    return True
        return False
