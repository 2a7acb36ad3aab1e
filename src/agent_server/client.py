"""Outbound side of the external inference service.

Both request kinds are fire-and-forget: the call returns immediately and the
result arrives later through one of the server's callback endpoints.
"""
from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx

logger = logging.getLogger(__name__)

UA = "AgentRunServer/0.1"
TIMEOUT = httpx.Timeout(connect=5.0, read=20.0, write=10.0, pool=5.0)


class ExternalServiceClient(Protocol):
    endpoint: str

    def set_endpoint(self, endpoint: str) -> None: ...

    def request_completion(
        self,
        run_id: int,
        conversation: List[Dict[str, str]],
        model_config: Dict[str, Any],
    ) -> None: ...

    def request_function_call(
        self,
        run_id: int,
        function_name: str,
        function_arguments: str,
    ) -> None: ...


# -----------------------------
# In-memory recorder
# -----------------------------
@dataclass
class OutboundRequest:
    kind: str  # "completion" | "function"
    run_id: int
    payload: Dict[str, Any] = field(default_factory=dict)


class RecordingServiceClient:
    """Keeps every outbound request in issue order instead of sending it.

    Used by the test-suite in place of the HTTP client.
    """

    def __init__(self, endpoint: str = "") -> None:
        self.endpoint = endpoint
        self.requests: List[OutboundRequest] = []

    def set_endpoint(self, endpoint: str) -> None:
        self.endpoint = endpoint

    def request_completion(self, run_id, conversation, model_config) -> None:
        self.requests.append(
            OutboundRequest(
                "completion",
                run_id,
                {"messages": [dict(m) for m in conversation], "model_config": dict(model_config)},
            )
        )

    def request_function_call(self, run_id, function_name, function_arguments) -> None:
        self.requests.append(
            OutboundRequest(
                "function",
                run_id,
                {"function_name": function_name, "arguments": function_arguments},
            )
        )

    def of_kind(self, kind: str) -> List[OutboundRequest]:
        return [r for r in self.requests if r.kind == kind]

    @property
    def last(self) -> Optional[OutboundRequest]:
        return self.requests[-1] if self.requests else None


# -----------------------------
# HTTP client
# -----------------------------
class HttpServiceClient:
    """Posts requests to the inference service from a background worker thread.

    Delivery failures are logged and dropped; there is no retry. A run whose
    request never reached the service stays waiting for its callback.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        callback_url: str = "",
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.callback_url = callback_url.rstrip("/")
        headers = {"User-Agent": UA}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._http = httpx.Client(
            headers=headers,
            timeout=httpx.Timeout(timeout) if timeout else TIMEOUT,
            transport=transport,
        )
        self._queue: "queue.Queue[Optional[Tuple[str, Dict[str, Any]]]]" = queue.Queue()
        self._lock = threading.Lock()
        self._worker: Optional[threading.Thread] = None

    def set_endpoint(self, endpoint: str) -> None:
        with self._lock:
            self.endpoint = endpoint.rstrip("/")

    def request_completion(self, run_id, conversation, model_config) -> None:
        self._enqueue(
            "completions",
            {
                "run_id": run_id,
                "messages": list(conversation),
                "model_config": model_config,
                "callback_url": self._callback("completion"),
            },
        )

    def request_function_call(self, run_id, function_name, function_arguments) -> None:
        self._enqueue(
            "functions",
            {
                "run_id": run_id,
                "function_name": function_name,
                "arguments": function_arguments,
                "callback_url": self._callback("function"),
            },
        )

    def flush(self) -> None:
        """Block until every queued request has been attempted."""
        self._queue.join()

    def close(self) -> None:
        with self._lock:
            worker = self._worker
            self._worker = None
        if worker is not None:
            self._queue.put(None)
            worker.join()
        self._http.close()

    # --------- internals ----------
    def _callback(self, kind: str) -> str:
        return f"{self.callback_url}/callbacks/{kind}" if self.callback_url else ""

    def _enqueue(self, path: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            if self._worker is None:
                self._worker = threading.Thread(
                    target=self._drain, name="service-client", daemon=True
                )
                self._worker.start()
        self._queue.put((path, payload))

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                self._post(*item)
            finally:
                self._queue.task_done()

    def _post(self, path: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            endpoint = self.endpoint
        if not endpoint:
            logger.warning(
                "No service endpoint set; dropping %s request for run %s", path, payload.get("run_id")
            )
            return
        url = f"{endpoint}/{path}"
        try:
            resp = self._http.post(url, json=payload)
            resp.raise_for_status()
        except httpx.HTTPError:
            logger.exception("Delivery to %s failed for run %s", url, payload.get("run_id"))
            return
        logger.debug("Delivered %s request for run %s", path, payload.get("run_id"))
