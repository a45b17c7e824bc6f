# agent/api_client.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Optional
from urllib.parse import urljoin

from .models import Lease


class APIError(Exception):
    """Raised when API requests fail."""
    pass


class APIClient:
    """HTTP client for communicating with the runway control plane."""

    def __init__(self, base_url: str, agent_id: str, timeout: float = 30.0):
        """
        Initialize API client.

        Args:
            base_url: Base URL of the API (e.g., "https://ci.example.com")
            agent_id: Unique identifier for this agent instance
            timeout: Socket timeout per request, in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.agent_id = agent_id
        self.timeout = timeout

    def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
    ) -> dict:
        """
        Make an HTTP request to the API.

        Returns:
            Parsed JSON response ({} for an empty body, e.g. 204 No Content)

        Raises:
            APIError: If the request fails
        """
        url = urljoin(self.base_url + "/", path.lstrip("/"))

        req_data = None
        if data is not None:
            req_data = json.dumps(data).encode("utf-8")

        req = urllib.request.Request(
            url,
            data=req_data,
            headers={"Content-Type": "application/json"},
            method=method,
        )

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                response_data = response.read().decode("utf-8")
                if response_data:
                    return json.loads(response_data)
                return {}
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise APIError(f"API request failed: {e.code} {e.reason}. {error_body}")
        except urllib.error.URLError as e:
            raise APIError(f"Network error: {e.reason}")
        except json.JSONDecodeError as e:
            raise APIError(f"Invalid JSON response: {e}")

    def claim_lease(self) -> Optional[Lease]:
        """
        Claim the next queued run.

        Returns:
            Lease object if a run is available, None otherwise
        """
        response = self._request(
            "POST",
            "/leases/claim",
            data={"agent_id": self.agent_id},
        )
        # 204: nothing queued (this is normal)
        if not isinstance(response, dict) or "run_id" not in response:
            return None
        try:
            return Lease.from_dict(response)
        except (KeyError, TypeError):
            raise APIError(f"Malformed lease: {response}")

    def run_status(self, run_id: str) -> str:
        """Current status of a run as the control plane sees it."""
        response = self._request("GET", f"/runs/{run_id}")
        return str(response.get("status", ""))
