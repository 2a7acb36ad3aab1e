"""Run registry: sequential run ids mapped to AgentRun records (thread-safe, optionally on disk)."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from utils.io import atomic_write_json, read_json

from .errors import RunNotFound
from .messages import MessageLog, Role

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    WAITING_COMPLETION = "waiting_completion"
    WAITING_FUNCTION = "waiting_function"
    FINISHED = "finished"


@dataclass
class AgentRun:
    id: int
    owner: str
    max_iterations: int
    messages: MessageLog = field(default_factory=MessageLog)
    response_count: int = 0
    state: RunState = RunState.WAITING_COMPLETION

    @property
    def finished(self) -> bool:
        return self.state is RunState.FINISHED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "max_iterations": self.max_iterations,
            "messages": self.messages.to_list(),
            "response_count": self.response_count,
            "state": self.state.value,
            "finished": self.finished,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentRun":
        return cls(
            id=int(data["id"]),
            owner=str(data["owner"]),
            max_iterations=int(data["max_iterations"]),
            messages=MessageLog.from_list(data.get("messages") or []),
            response_count=int(data.get("response_count", 0)),
            state=RunState(data.get("state", RunState.WAITING_COMPLETION.value)),
        )


class RunRegistry:
    """Owns run id allocation and the id -> AgentRun mapping.

    Layout when persisted:
        runs_dir/
          registry.json      # {"next_id": int}
          runs/<id>.json     # AgentRun.to_dict()

    ``lock`` is the single exclusive lock for id allocation and every run
    mutation. Callers that mutate a run hold it and call :meth:`commit`
    with that run, which rewrites only its own file.
    """

    def __init__(self, runs_dir: Optional[str] = None) -> None:
        self.root = Path(runs_dir) if runs_dir else None
        self.lock = threading.RLock()
        self._runs: Dict[int, AgentRun] = {}
        self._next_id = 0
        if self.root is not None:
            self._load()

    # --------- paths ----------
    def _meta_path(self) -> Path:
        return self.root / "registry.json"

    def _run_path(self, run_id: int) -> Path:
        return self.root / "runs" / f"{run_id}.json"

    # --------- core API ----------
    def create(
        self,
        owner: str,
        initial_query: str,
        max_iterations: int,
        system_prompt: str,
    ) -> int:
        """Allocate the next id and seed the log with [system, user].

        Nothing is written to disk here; the caller commits the new run.
        """
        with self.lock:
            run_id = self._next_id
            self._next_id += 1
            run = AgentRun(id=run_id, owner=owner, max_iterations=max_iterations)
            run.messages.append(Role.SYSTEM, system_prompt)
            run.messages.append(Role.USER, initial_query)
            self._runs[run_id] = run
            return run_id

    def get(self, run_id: int) -> AgentRun:
        with self.lock:
            run = self._runs.get(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    def commit(self, run: Optional[AgentRun] = None) -> None:
        """Persist the id counter and ``run`` (every run when None), if backed by disk."""
        if self.root is None:
            return
        with self.lock:
            atomic_write_json(self._meta_path(), {"next_id": self._next_id})
            targets = [run] if run is not None else list(self._runs.values())
            for r in targets:
                atomic_write_json(self._run_path(r.id), r.to_dict())

    # --------- convenience ----------
    def ids(self) -> List[int]:
        with self.lock:
            return sorted(self._runs)

    def __len__(self) -> int:
        return len(self._runs)

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._runs

    # --------- internals ----------
    def _load(self) -> None:
        meta = read_json(self._meta_path())
        if meta is not None and not isinstance(meta, dict):
            raise RuntimeError(f"Invalid registry format in {self._meta_path()}, expected dict.")
        for path in sorted((self.root / "runs").glob("*.json")):
            data = read_json(path)
            if not isinstance(data, dict):
                raise RuntimeError(f"Invalid run format in {path}, expected dict.")
            run = AgentRun.from_dict(data)
            self._runs[run.id] = run
        # Never hand out an id that was already used, even if its file is gone.
        highest = max(self._runs, default=-1)
        self._next_id = max(int((meta or {}).get("next_id", 0)), highest + 1)
        logger.info("Loaded %d runs from %s (next id %d)", len(self._runs), self.root, self._next_id)
