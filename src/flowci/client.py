# client.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode, urljoin

from .model import Event, Run


class APIError(Exception):
    """Raised when API requests fail."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class APIClient:
    """HTTP client for a running `flowci serve`."""

    def __init__(self, base_url: str, timeout: float = 30.0):
        """
        Initialize API client.

        Args:
            base_url: Base URL of the API (e.g., "http://127.0.0.1:8080")
            timeout: Socket timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> Any:
        """
        Make an HTTP request to the API.

        Returns:
            Parsed JSON response

        Raises:
            APIError: If the request fails
        """
        url = urljoin(self.base_url + "/", path.lstrip("/"))

        req_headers = {
            "Content-Type": "application/json",
        }
        if headers:
            req_headers.update(headers)

        req_data = None
        if data is not None:
            req_data = json.dumps(data).encode("utf-8")

        req = urllib.request.Request(url, data=req_data, headers=req_headers, method=method)

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                response_data = response.read().decode("utf-8")
                if response_data:
                    return json.loads(response_data)
                return {}
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            detail = error_body
            try:
                detail = json.loads(error_body).get("detail", error_body)
            except (json.JSONDecodeError, AttributeError):
                pass
            raise APIError(f"API request failed: {e.code} {e.reason}. {detail}", status=e.code)
        except urllib.error.URLError as e:
            raise APIError(f"Network error: {e.reason}")
        except json.JSONDecodeError as e:
            raise APIError(f"Invalid JSON response: {e}")

    def submit_event(self, event: Event) -> Dict[str, List[str]]:
        """Returns {"run_ids": [...], "errors": [...]}."""
        body = event.to_dict()
        body.pop("timestamp", None)
        return self._request("POST", "/events", data=body)

    def get_run(self, run_id: str) -> Run:
        return Run.from_dict(self._request("GET", f"/runs/{run_id}"))

    def list_runs(self, *, workflow: Optional[str] = None, status: Optional[str] = None, limit: int = 50) -> List[Run]:
        query = {"limit": limit}
        if workflow:
            query["workflow"] = workflow
        if status:
            query["status"] = status
        return [Run.from_dict(r) for r in self._request("GET", "/runs?" + urlencode(query))]

    def cancel_run(self, run_id: str) -> bool:
        return bool(self._request("POST", f"/runs/{run_id}/cancel").get("cancelled"))

    def list_workflows(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/workflows")
