"""Session-scoped persistence of the outbound queue and pending acknowledgements.

The connection manager snapshots its state on every enqueue, after every
flush and on the end-of-session signal, so a restarted process in the same
session can resend what was not yet acknowledged. Snapshot layout (JSON):

    {
        "queue":   [<console message>, ...],                      # <= limit
        "pending": [{"id": int, "message": {...}, "retries": int}, ...]  # <= limit
    }

Writes are atomic (temporary file then rename) so an interrupted write never
leaves a truncated snapshot behind. Storage failures are reported as
`PersistenceError`; callers treat them as non-fatal.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import PersistenceError

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    queue: List[Dict[str, Any]] = field(default_factory=list)
    pending: List[Dict[str, Any]] = field(default_factory=list)


class SessionStore:
    """File-backed store for one session's queue snapshot."""

    def __init__(self, path: str):
        self.path = path

    def load(self) -> Optional[Snapshot]:
        """Read the stored snapshot.

        Returns:
            The snapshot, or None when nothing is stored.

        Raises:
            PersistenceError: If the file cannot be read or is not a snapshot.
        """
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = f.read().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"cannot read {self.path}: {e}") from e
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise PersistenceError(f"corrupt snapshot {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceError(f"corrupt snapshot {self.path}: not an object")
        queue = data.get("queue") or []
        pending = data.get("pending") or []
        if not isinstance(queue, list) or not isinstance(pending, list):
            raise PersistenceError(f"corrupt snapshot {self.path}: bad field types")
        return Snapshot(queue=queue, pending=pending)

    def save(self, snapshot: Snapshot) -> None:
        """Atomically write ``snapshot``.

        Raises:
            PersistenceError: If the directory or file cannot be written.
        """
        tmp_path = f"{self.path}.tmp"
        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump({"queue": snapshot.queue, "pending": snapshot.pending}, f)
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"cannot write {self.path}: {e}") from e

    def clear(self) -> None:
        try:
            os.remove(self.path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise PersistenceError(f"cannot remove {self.path}: {e}") from e


__all__ = ["Snapshot", "SessionStore"]
