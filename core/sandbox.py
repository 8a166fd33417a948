"""HTTP client for the remote sandbox runtime.

Every method returns the service's JSON response as a dict with at least a
``success`` key. Transport failures and non-2xx responses come back as
``{"success": False, "error": "..."}`` rather than raising, so callers can
decide per call whether a failure matters.
"""

import logging
import os

import httpx

from config.defaults import DEFAULTS

logger = logging.getLogger(__name__)


class SandboxClient:
    """Async client for one sandbox service."""

    def __init__(self, base_url=None, api_key=None, timeout=None, transport=None):
        self.base_url = (base_url or os.environ.get("SANDBOX_SERVICE_URL") or DEFAULTS["sandbox_url"]).rstrip("/")
        api_key = api_key or os.environ.get("SANDBOX_API_KEY")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout or DEFAULTS["sandbox_request_timeout"]),
            transport=transport,
        )

    async def _request(self, method, path, **kwargs):
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("Sandbox %s %s failed: %s", method, path, e)
            return {"success": False, "error": str(e)}

        try:
            data = resp.json()
        except ValueError:
            data = {"error": resp.text}
        if not isinstance(data, dict):
            data = {"data": data}
        if resp.status_code >= 400:
            data["success"] = False
            data.setdefault("error", f"HTTP {resp.status_code}")
        else:
            data.setdefault("success", True)
        return data

    async def create_instance(self, template_name, project_name, webhook_url=None, env_vars=None):
        """Create a sandbox instance. Response carries runId, previewURL, tunnelURL."""
        return await self._request("POST", "/instances", json={
            "templateName": template_name,
            "projectName": project_name,
            "webhookUrl": webhook_url,
            "envVars": env_vars or {},
        })

    async def write_files(self, instance_id, files):
        payload = [{"filePath": f.file_path, "fileContents": f.file_contents} for f in files]
        return await self._request("POST", f"/instances/{instance_id}/files", json={"files": payload})

    async def execute_commands(self, instance_id, commands, timeout=None):
        """Run commands. Response ``results`` holds one {command, success, output, error} per command."""
        body = {"commands": list(commands)}
        if timeout:
            body["timeout"] = timeout
        return await self._request("POST", f"/instances/{instance_id}/commands", json=body)

    async def get_instance_status(self, instance_id):
        return await self._request("GET", f"/instances/{instance_id}/status")

    async def get_instance_errors(self, instance_id):
        return await self._request("GET", f"/instances/{instance_id}/errors")

    async def clear_instance_errors(self, instance_id):
        return await self._request("DELETE", f"/instances/{instance_id}/errors")

    async def run_static_analysis(self, instance_id, file_paths=None):
        """Lint + typecheck. Response has ``lint`` and ``typecheck``, each {issues, summary}."""
        return await self._request(
            "POST", f"/instances/{instance_id}/analysis", json={"files": list(file_paths or [])}
        )

    async def get_files(self, instance_id, file_paths):
        return await self._request(
            "GET", f"/instances/{instance_id}/files", params={"path": list(file_paths)}
        )

    async def close(self):
        await self._client.aclose()
