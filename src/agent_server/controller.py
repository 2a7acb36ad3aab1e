"""Run lifecycle state machine.

States per run::

    create ──> WAITING_COMPLETION ──(completion, function requested)──> WAITING_FUNCTION
                      ^                                                      │
                      └──────────────────(function result)──────────────────┘
    WAITING_COMPLETION ──(error | budget spent | no function)──> FINISHED

The callback handlers are the only mutation entry points. Each one holds the
registry lock for its whole body, so callbacks arriving on any thread are
serialized against each other and against run creation.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .client import ExternalServiceClient
from .errors import InvalidState
from .events import ENDPOINT_UPDATED, RUN_CREATED, EventLog
from .guard import AccessGuard
from .messages import Role
from .model_config import DEFAULT_MODEL_CONFIG, ModelConfig
from .registry import AgentRun, RunRegistry, RunState

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant"
MIN_ITERATIONS = 1
MAX_ITERATIONS = 255


@dataclass
class CompletionResult:
    content: str = ""
    function_name: str = ""
    function_arguments: str = ""


class RunController:
    def __init__(
        self,
        registry: RunRegistry,
        client: ExternalServiceClient,
        guard: AccessGuard,
        *,
        events: Optional[EventLog] = None,
        model_config: ModelConfig = DEFAULT_MODEL_CONFIG,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> None:
        self.registry = registry
        self.client = client
        self.guard = guard
        self.events = events or EventLog()
        self.model_config = model_config
        self.system_prompt = system_prompt

    # -------------------------
    # Run creation
    # -------------------------
    def create(self, owner: str, query: str, max_iterations: int) -> int:
        """Start a run and issue its first completion request. Open to any caller."""
        if query is None:
            raise ValueError("query must not be None")
        if not MIN_ITERATIONS <= int(max_iterations) <= MAX_ITERATIONS:
            raise ValueError(
                f"max_iterations must be between {MIN_ITERATIONS} and {MAX_ITERATIONS}"
            )
        with self.registry.lock:
            run_id = self.registry.create(owner, query, int(max_iterations), self.system_prompt)
            self.events.emit(RUN_CREATED, owner=owner, run_id=run_id)
            logger.info("run %d created by %r (budget %d)", run_id, owner, max_iterations)
            self._request_completion(self.registry.get(run_id))
        return run_id

    # -------------------------
    # Callbacks
    # -------------------------
    def on_completion_result(
        self,
        caller: str,
        run_id: int,
        result: CompletionResult,
        error: str = "",
    ) -> None:
        """Apply a completion delivered by the inference service. Service identity only."""
        self.guard.require_service(caller)
        with self.registry.lock:
            run = self.registry.get(run_id)
            self._expect(run, RunState.WAITING_COMPLETION)

            if error:
                run.messages.append(Role.ASSISTANT, error)
                run.response_count += 1
                self._finish(run, "upstream error")
                return

            # Budget check comes before the append: the completion that arrives
            # after the budget is spent is dropped, not recorded.
            if run.response_count >= run.max_iterations:
                if result.content or result.function_name:
                    logger.warning("run %d: discarding completion past budget", run.id)
                self._finish(run, "iteration budget spent")
                return

            if result.content:
                run.messages.append(Role.ASSISTANT, result.content)
                run.response_count += 1

            if result.function_name:
                run.state = RunState.WAITING_FUNCTION
                self._commit(run)
                logger.info("run %d: calling function %s", run.id, result.function_name)
                self.client.request_function_call(
                    run.id, result.function_name, result.function_arguments
                )
                return

            self._finish(run, "no function requested")

    def on_function_result(
        self,
        caller: str,
        run_id: int,
        result: str,
        error: str = "",
    ) -> None:
        """Record a function result and ask for the next completion. Service identity only."""
        self.guard.require_service(caller)
        with self.registry.lock:
            run = self.registry.get(run_id)
            if run.finished:
                raise InvalidState(f"Run {run_id} is already finished.")
            self._expect(run, RunState.WAITING_FUNCTION)

            effective = error if error else result
            run.messages.append(Role.USER, effective or "")
            # No budget check here; the next completion callback enforces it.
            run.response_count += 1
            self._request_completion(run)

    # -------------------------
    # Administrative
    # -------------------------
    def set_service_endpoint(self, caller: str, endpoint: str) -> None:
        """Retarget the inference service client. Administrator only."""
        self.guard.require_admin(caller)
        if not endpoint:
            raise ValueError("endpoint must not be empty")
        with self.registry.lock:
            self.client.set_endpoint(endpoint)
            self.events.emit(ENDPOINT_UPDATED, endpoint=endpoint)

    # -------------------------
    # Read-only queries
    # -------------------------
    def get_run(self, run_id: int) -> AgentRun:
        return self.registry.get(run_id)

    def get_message_contents(self, run_id: int) -> List[str]:
        with self.registry.lock:
            return self.registry.get(run_id).messages.contents()

    def get_message_roles(self, run_id: int) -> List[Role]:
        with self.registry.lock:
            return self.registry.get(run_id).messages.roles()

    def is_finished(self, run_id: int) -> bool:
        return self.registry.get(run_id).finished

    # -------------------------
    # Internals
    # -------------------------
    def _expect(self, run: AgentRun, state: RunState) -> None:
        if run.state is not state:
            raise InvalidState(
                f"Run {run.id} is {run.state.value}, expected {state.value}."
            )

    def _commit(self, run: AgentRun) -> None:
        # The in-memory record stays authoritative; a failed write must not
        # keep the outbound request from going out.
        try:
            self.registry.commit(run)
        except OSError:
            logger.exception("run %d: could not persist state", run.id)

    def _request_completion(self, run: AgentRun) -> None:
        # State is set before the request goes out so a synchronous callback
        # finds the run already waiting for it.
        run.state = RunState.WAITING_COMPLETION
        self._commit(run)
        payload: Dict[str, Any] = self.model_config.to_dict()
        self.client.request_completion(run.id, run.messages.snapshot(), payload)

    def _finish(self, run: AgentRun, reason: str) -> None:
        run.state = RunState.FINISHED
        self._commit(run)
        logger.info(
            "run %d finished (%s) after %d responses", run.id, reason, run.response_count
        )
