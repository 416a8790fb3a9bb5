# project_store.py - client for the durable project storage HTTP API

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from config.app_config import appConfig
from routes.errors import PersistenceSyncFailure

logger = logging.getLogger(__name__)


class SandboxInfo(BaseModel):
    sandboxId: str
    previewUrl: Optional[str] = None
    startTime: Optional[int] = None
    endTime: Optional[int] = None


class Project(BaseModel):
    id: str
    name: Optional[str] = None
    files: Dict[str, str] = Field(default_factory=dict)
    dependencies: Dict[str, str] = Field(default_factory=dict)
    version: int = 0
    lastSavedAt: Optional[int] = None
    sandboxInfo: Optional[SandboxInfo] = None


class ProjectVersion(BaseModel):
    id: str
    projectId: str
    version: int
    files: Dict[str, str] = Field(default_factory=dict)
    dependencies: Dict[str, str] = Field(default_factory=dict)
    message: str = ""
    changeType: str = "manual"
    createdAt: Optional[Any] = None


def _unwrap(payload: Any, key: str) -> Any:
    """Accept ``{"success": true, "data": {key: ...}}``, ``{"data": ...}`` or a bare body."""
    if isinstance(payload, dict) and "data" in payload:
        if payload.get("success") is False:
            return None
        payload = payload["data"]
    if isinstance(payload, dict) and isinstance(payload.get(key), (dict, list)):
        return payload[key]
    return payload


class ProjectStoreClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        token = token or appConfig.projectStore.token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = client or httpx.AsyncClient(
            base_url=base_url or appConfig.projectStore.baseUrl,
            headers=headers,
            timeout=appConfig.projectStore.timeoutSeconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, project_id: str, method: str, url: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise PersistenceSyncFailure(
                project_id,
                f"{method} {url} returned {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise PersistenceSyncFailure(project_id, f"{method} {url} failed: {exc}") from exc
        if not response.content:
            return None
        return response.json()

    async def get_project(self, project_id: str) -> Project:
        data = _unwrap(await self._request(project_id, "GET", f"/projects/{project_id}"), "project")
        if not data:
            raise PersistenceSyncFailure(project_id, "project not found", status_code=404)
        return Project.model_validate({"id": project_id, **data})

    async def replace_files(self, project_id: str, files: Dict[str, str], dependencies: Dict[str, str],
                            version: int, last_saved_at: int) -> Optional[Dict[str, Any]]:
        body = {"files": files, "dependencies": dependencies, "version": version, "lastSavedAt": last_saved_at}
        return _unwrap(await self._request(project_id, "PUT", f"/projects/{project_id}/files", json=body), "project")

    async def merge_files(self, project_id: str, files: Dict[str, str], version: int,
                          last_saved_at: int) -> Optional[Dict[str, Any]]:
        body = {"files": files, "version": version, "lastSavedAt": last_saved_at}
        return _unwrap(await self._request(project_id, "PATCH", f"/projects/{project_id}/files", json=body), "project")

    async def update_project(self, project_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return _unwrap(await self._request(project_id, "PATCH", f"/projects/{project_id}", json=fields), "project")

    async def list_versions(self, project_id: str) -> List[ProjectVersion]:
        data = _unwrap(await self._request(project_id, "GET", f"/projects/{project_id}/versions"), "versions") or []
        return [ProjectVersion.model_validate({"projectId": project_id, **item}) for item in data]

    async def get_version(self, project_id: str, version_id: str) -> ProjectVersion:
        data = _unwrap(
            await self._request(project_id, "GET", f"/projects/{project_id}/versions/{version_id}"), "version"
        )
        if not data:
            raise PersistenceSyncFailure(project_id, f"version {version_id} not found", status_code=404)
        return ProjectVersion.model_validate({"projectId": project_id, **data})

    async def create_version(self, project_id: str, files: Dict[str, str], dependencies: Dict[str, str],
                             version: int, message: str, change_type: str) -> Optional[Dict[str, Any]]:
        body = {
            "files": files,
            "dependencies": dependencies,
            "version": version,
            "message": message,
            "changeType": change_type,
        }
        return _unwrap(await self._request(project_id, "POST", f"/projects/{project_id}/versions", json=body), "version")

    async def delete_version(self, project_id: str, version_id: str) -> None:
        await self._request(project_id, "DELETE", f"/projects/{project_id}/versions/{version_id}")
