"""A coordinator reached over its REST API.

Paths are relative to the configured base URL, e.g.
`http://localhost:8080/engine-rest`:

    POST /external-task/fetchAndLock
    POST /external-task/{id}/complete
    POST /external-task/{id}/failure
    POST /external-task/{id}/bpmnError
    POST /external-task/{id}/extendLock
    POST /external-task/{id}/unlock
"""

from collections.abc import Mapping, Sequence
from typing import Any

import httpx

from pullman.config import ClientConfig
from pullman.exception import LockExpiredError, TransportError
from pullman.types.coordinator import BpmnErrorReport, Coordinator, FailureReport, FetchAndLockRequest
from pullman.types.value import SerialisedVariable
from pullman.utils.logging_config import get_logger

log = get_logger(__name__)

# the coordinator answers these when the task isn't locked by us, or no longer exists
LOCK_LOST_STATUSES = frozenset({400, 404})


class HttpCoordinator(Coordinator):
    """Talks to the coordinator's external task REST endpoints with httpx."""

    def __init__(self, config: ClientConfig, client: httpx.Client | None = None) -> None:
        """
        @param config: Supplies the base URL and request timeouts
        @param client: An httpx client to use instead of creating one, e.g. with a mock transport
        """

        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.Client(
            base_url=config.base_url,
            timeout=config.request_timeout,
        )

    def fetch_and_lock(self, request: FetchAndLockRequest) -> Sequence[Mapping[str, Any]]:
        timeout = self.config.request_timeout
        if request.async_response_timeout:
            # the coordinator holds long polls open for up to asyncResponseTimeout
            timeout += request.async_response_timeout / 1000

        try:
            response = self._client.post("/external-task/fetchAndLock", json=request.save(), timeout=timeout)
        except httpx.HTTPError as err:
            raise TransportError(f"Fetch and lock failed: {err}") from err

        if not response.is_success:
            raise TransportError(
                f"Fetch and lock failed with status {response.status_code}: {_error_message(response)}",
                status_code=response.status_code,
            )

        try:
            records = response.json()
        except ValueError as err:
            raise TransportError(f"Fetch and lock returned invalid JSON: {err}") from err

        if not isinstance(records, list):
            raise TransportError(f"Fetch and lock returned {type(records).__name__}, expected a list")

        return records

    def complete(
        self,
        task_id: str,
        worker_id: str,
        variables: Mapping[str, SerialisedVariable] | None = None,
        local_variables: Mapping[str, SerialisedVariable] | None = None,
    ) -> None:
        body: dict[str, Any] = {"workerId": worker_id}
        if variables:
            body["variables"] = dict(variables)
        if local_variables:
            body["localVariables"] = dict(local_variables)

        self._report(task_id, "complete", body)

    def handle_failure(self, task_id: str, worker_id: str, failure: FailureReport) -> None:
        self._report(
            task_id,
            "failure",
            {
                "workerId": worker_id,
                "errorMessage": failure.error_message,
                "errorDetails": failure.error_details,
                "retries": failure.retries,
                "retryTimeout": failure.retry_timeout,
            },
        )

    def handle_bpmn_error(self, task_id: str, worker_id: str, error: BpmnErrorReport) -> None:
        body: dict[str, Any] = {"workerId": worker_id, "errorCode": error.error_code}
        if error.error_message is not None:
            body["errorMessage"] = error.error_message
        if error.variables:
            body["variables"] = dict(error.variables)

        self._report(task_id, "bpmnError", body)

    def extend_lock(self, task_id: str, worker_id: str, new_duration: int) -> None:
        self._report(task_id, "extendLock", {"workerId": worker_id, "newDuration": new_duration})

    def unlock(self, task_id: str) -> None:
        self._report(task_id, "unlock", None)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _report(self, task_id: str, action: str, body: dict[str, Any] | None) -> None:
        path = f"/external-task/{task_id}/{action}"
        log.debug("POST %s", path)

        try:
            response = self._client.post(path, json=body)
        except httpx.HTTPError as err:
            raise TransportError(f"{action} of task '{task_id}' failed: {err}") from err

        if response.is_success:
            return

        message = _error_message(response)

        if response.status_code in LOCK_LOST_STATUSES:
            raise LockExpiredError(task_id, f"{action} of task '{task_id}' was rejected: {message}")

        raise TransportError(
            f"{action} of task '{task_id}' failed with status {response.status_code}: {message}",
            status_code=response.status_code,
        )


def _error_message(response: httpx.Response) -> str:
    """The coordinator's error message, from its `{"type": ..., "message": ...}` error body."""

    try:
        data = response.json()
    except ValueError:
        return response.text or response.reason_phrase

    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])

    return response.text
