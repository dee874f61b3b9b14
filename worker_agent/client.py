# worker_agent/client.py
"""HTTP client for the control plane's worker API."""

import logging
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

import requests

from paas_engine.core.errors import (
    AuthenticationError,
    LeaseError,
    NotFoundError,
    TransientInfrastructureError,
    ValidationError,
)

logger = logging.getLogger(__name__)

WORKER_API = "/api/paas/worker"


class ControlPlaneClient:
    """
    Talks to the control plane on behalf of one worker node.

    Every call except registration and health carries the node's bearer
    token and node id.
    """

    def __init__(self, base_url: str, timeout: float = 30):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.node_id: Optional[UUID] = None
        self.auth_token: Optional[str] = None

    def set_credentials(self, node_id: UUID, auth_token: str) -> None:
        self.node_id = node_id
        self.auth_token = auth_token

    def has_credentials(self) -> bool:
        return self.node_id is not None and bool(self.auth_token)

    # -------------------------
    # HEALTH / REGISTRATION
    # -------------------------

    def health(self) -> bool:
        try:
            response = requests.get(f"{self.base_url}/api/health", timeout=5)
            return response.status_code == 200
        except requests.exceptions.RequestException as e:
            logger.debug(f"[agent] control plane health check failed: {e}")
            return False

    def register_worker(
        self,
        *,
        name: str,
        region: str,
        host_address: Optional[str] = None,
        runtime_agent_url: Optional[str] = None,
        metrics: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        registration_token: Optional[str] = None,
    ) -> Tuple[UUID, str]:
        payload = {
            "name": name,
            "region": region,
            "host_address": host_address,
            "runtime_agent_url": runtime_agent_url,
            "metrics": metrics,
            "metadata": metadata or {},
            "registration_token": registration_token,
        }
        data = self._request("POST", "/register", json=payload, authenticated=False)
        node_id, auth_token = UUID(data["node_id"]), data["auth_token"]
        self.set_credentials(node_id, auth_token)
        return node_id, auth_token

    def send_heartbeat(self, metrics: Dict[str, Any], active_job_ids: List[UUID]) -> Dict[str, Any]:
        payload = {
            "metrics": metrics,
            "active_job_ids": [str(job_id) for job_id in active_job_ids],
        }
        return self._request("POST", "/heartbeat", json=payload)

    # -------------------------
    # BUILDS
    # -------------------------

    def get_queued_builds(self, limit: int = 10) -> List[Dict[str, Any]]:
        return self._request("GET", "/builds/queued", params={"limit": limit})

    def accept_build(self, job_id: UUID) -> Optional[Dict[str, Any]]:
        """Returns None when another worker claimed the build first."""
        try:
            return self._request("POST", f"/builds/{job_id}/accept")
        except LeaseError:
            return None

    def update_build_status(
        self,
        job_id: UUID,
        status: str,
        *,
        progress: Optional[int] = None,
        error: Optional[str] = None,
        retryable: bool = True,
        result: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        payload = {
            "status": status,
            "progress": progress,
            "error": error,
            "retryable": retryable,
            "result": result,
        }
        return self._request("POST", f"/builds/{job_id}/status", json=payload)

    def add_build_log(self, job_id: UUID, lines: List[str]) -> bool:
        """Log upload is best effort; failures are logged, never raised."""
        if not lines:
            return True
        try:
            self._request("POST", f"/builds/{job_id}/logs", json={"lines": lines})
            return True
        except Exception as e:
            logger.warning(f"[agent] failed to upload {len(lines)} log line(s) for {job_id}: {e}")
            return False

    # -------------------------
    # INTERNALS
    # -------------------------

    def _headers(self) -> Dict[str, str]:
        if not self.has_credentials():
            raise AuthenticationError("Worker is not registered")
        return {
            "Authorization": f"Bearer {self.auth_token}",
            "X-Node-Id": str(self.node_id),
        }

    def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
    ) -> Any:
        url = f"{self.base_url}{WORKER_API}{path}"
        headers = self._headers() if authenticated else {}
        try:
            response = requests.request(
                method, url, json=json, params=params, headers=headers, timeout=self.timeout
            )
        except requests.exceptions.Timeout as e:
            raise TransientInfrastructureError(f"Control plane timeout after {self.timeout}s ({method} {path})") from e
        except requests.exceptions.ConnectionError as e:
            raise TransientInfrastructureError(f"Cannot connect to control plane at {self.base_url}") from e

        if response.status_code >= 400:
            detail = _detail(response)
            message = f"Control plane {method} {path} failed ({response.status_code}): {detail}"
            if response.status_code == 401:
                raise AuthenticationError(message)
            if response.status_code == 404:
                raise NotFoundError(message)
            if response.status_code == 409:
                raise LeaseError(message)
            if response.status_code < 500:
                raise ValidationError(message)
            raise TransientInfrastructureError(message)

        return response.json() if response.content else {}


def _detail(response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict):
        return str(body.get("detail", body))
    return str(body)
