# outputs.py
from __future__ import annotations

import threading
from typing import Any, Dict, Mapping

from .errors import DuplicateOutput, MissingOutput


class OutputStore:
    """
    Per-run store of job outputs: job -> key -> value.

    Every (job, key) is written exactly once. Writers may be concurrent
    (parallel job completions), so all access goes through one lock.
    """

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def set(self, job: str, key: str, value: Any) -> None:
        with self._lock:
            slot = self._data.setdefault(job, {})
            if key in slot:
                raise DuplicateOutput(job, key)
            slot[key] = value

    def set_many(self, job: str, outputs: Mapping[str, Any]) -> None:
        """Write several outputs of one job atomically: all or none."""
        with self._lock:
            slot = self._data.get(job, {})
            for key in outputs:
                if key in slot:
                    raise DuplicateOutput(job, key)
            self._data.setdefault(job, {}).update(outputs)

    def get(self, job: str, key: str) -> Any:
        with self._lock:
            try:
                return self._data[job][key]
            except KeyError:
                raise MissingOutput(job, key) from None

    def has(self, job: str, key: str) -> bool:
        with self._lock:
            return key in self._data.get(job, {})

    def outputs_of(self, job: str) -> Dict[str, Any]:
        with self._lock:
            return dict(self._data.get(job, {}))

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {job: dict(values) for job, values in self._data.items()}

    def __contains__(self, job: object) -> bool:
        with self._lock:
            return job in self._data
