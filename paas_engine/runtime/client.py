# paas_engine/runtime/client.py
"""Client for the runtime agent running on each node."""

import logging
from typing import Any, Dict, Optional

import requests

from paas_engine.core.errors import TransientInfrastructureError
from paas_engine.runtime.backend import ServiceSpec

logger = logging.getLogger(__name__)


class RuntimeAgentClient:
    """Talks to one node's runtime agent over HTTP."""

    def __init__(self, agent_url: str, timeout: float = 30):
        """
        Args:
            agent_url: Base URL of runtime agent (e.g., "http://10.0.1.10:9000")
            timeout: Request timeout in seconds
        """
        self.base_url = agent_url.rstrip('/')
        self.timeout = timeout

    def health_check(self) -> bool:
        try:
            response = requests.get(f"{self.base_url}/health", timeout=5)
            return response.status_code == 200
        except requests.exceptions.RequestException as e:
            logger.error(f"Health check of {self.base_url} failed: {e}")
            return False

    def get_node_info(self) -> Dict[str, Any]:
        return self._request("GET", "/info")

    def run_service(self, spec: ServiceSpec) -> Dict[str, Any]:
        payload = {
            "name": spec.name,
            "slug_url": spec.slug_url,
            "replicas": spec.replicas,
            "memory_mb": spec.memory_mb,
            "cpu_millicores": spec.cpu_millicores,
            "port": spec.port,
            "env": spec.env,
            "labels": spec.labels,
        }
        logger.info(f"[runtime] running {spec.name} x{spec.replicas} on {self.base_url}")
        return self._request("POST", "/services", json=payload)

    def scale_service(self, name: str, replicas: int) -> Dict[str, Any]:
        return self._request("POST", f"/services/{name}/scale", json={"replicas": replicas})

    def restart_service(self, name: str) -> Dict[str, Any]:
        return self._request("POST", f"/services/{name}/restart")

    def service_stats(self, name: str) -> Dict[str, Any]:
        return self._request("GET", f"/services/{name}/stats")

    def remove_service(self, name: str) -> Dict[str, Any]:
        return self._request("DELETE", f"/services/{name}")

    # -------------------------
    # INTERNALS
    # -------------------------

    def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = requests.request(method, url, json=json, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise TransientInfrastructureError(f"Runtime agent timeout after {self.timeout}s ({method} {path})") from e
        except requests.exceptions.ConnectionError as e:
            raise TransientInfrastructureError(f"Cannot connect to runtime agent at {self.base_url}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise TransientInfrastructureError(f"Runtime agent {method} {path} failed ({response.status_code}): {detail}")

        return response.json() if response.content else {}


class RuntimeAgentClientFactory:
    """One client per agent URL."""

    def __init__(self, timeout: float = 30):
        self.timeout = timeout

    def for_url(self, agent_url: str) -> RuntimeAgentClient:
        return RuntimeAgentClient(agent_url, timeout=self.timeout)
