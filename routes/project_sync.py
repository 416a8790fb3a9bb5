# project_sync.py - reconcile the sandbox filesystem with durable project storage
"""
ProjectSync moves files between a SandboxSession and durable storage.

Every successful durable write carries a version one above the highest
version seen for the project, and a lastSavedAt that never goes backwards.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from config.app_config import appConfig
from routes.create_zip import archive_name, build_zip
from routes.errors import PersistenceSyncFailure, SandboxUnavailable
from routes.project_store import Project, ProjectStoreClient, ProjectVersion, SandboxInfo
from routes.sandbox_session import SandboxSession

logger = logging.getLogger(__name__)

VITE_CONFIG_RE = re.compile(r"(^|/)vite\.config\.(js|mjs|ts|mts)$")


def dependencies_from_manifest(package_json: Optional[str]) -> Optional[Dict[str, str]]:
    if not package_json:
        return None
    try:
        data = json.loads(package_json)
    except ValueError:
        logger.warning("[project-sync] package.json in sandbox is not valid JSON")
        return None
    return {**(data.get("devDependencies") or {}), **(data.get("dependencies") or {})}


def ensure_allowed_hosts(content: str, host: Optional[str] = None) -> str:
    """Make sure a vite config lets the sandbox preview host through."""
    host = host or appConfig.sandbox.allowedHost
    if host in content:
        return content
    if "allowedHosts" in content:
        return re.sub(r"allowedHosts\s*:\s*\[", f"allowedHosts: ['{host}', ", content, count=1)
    if re.search(r"server\s*:\s*\{", content):
        return re.sub(r"server\s*:\s*\{", f"server: {{\n    allowedHosts: ['{host}'],", content, count=1)
    if "defineConfig({" in content:
        return content.replace("defineConfig({", f"defineConfig({{\n  server: {{ allowedHosts: ['{host}'] }},", 1)
    return content


def has_content(files: Dict[str, Any]) -> bool:
    return any(isinstance(content, str) and content.strip() for content in files.values())


def compare_files(from_files: Dict[str, str], to_files: Dict[str, str]) -> Dict[str, Any]:
    changes: List[Dict[str, Any]] = []
    stats = {"totalFiles": 0, "added": 0, "removed": 0, "modified": 0, "unchanged": 0}
    for path in sorted(set(from_files) | set(to_files)):
        before = from_files.get(path)
        after = to_files.get(path)
        if before is None:
            change = "added"
        elif after is None:
            change = "removed"
        elif before != after:
            change = "modified"
        else:
            change = "unchanged"
        stats[change] += 1
        changes.append({
            "path": path,
            "type": change,
            "fromSize": len(before) if before is not None else 0,
            "toSize": len(after) if after is not None else 0,
        })
    stats["totalFiles"] = len(changes)
    return {"changes": changes, "stats": stats}


class ProjectSync:
    def __init__(
        self,
        store: ProjectStoreClient,
        *,
        auto_save_delay: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self._auto_save_delay = (
            appConfig.projectStore.autoSaveDelaySeconds if auto_save_delay is None else auto_save_delay
        )
        self._clock = clock
        self._sleep = sleep
        self._versions: Dict[str, int] = {}
        self._saved_at: Dict[str, int] = {}
        self._auto_save_task: Optional[asyncio.Task] = None
        self._write_locks: Dict[str, asyncio.Lock] = {}

    # ---- version bookkeeping ----
    def last_version(self, project_id: str) -> int:
        return self._versions.get(project_id, 0)

    def _write_lock(self, project_id: str) -> asyncio.Lock:
        # held from reading the project until the new version is recorded
        lock = self._write_locks.get(project_id)
        if lock is None:
            lock = self._write_locks[project_id] = asyncio.Lock()
        return lock

    def _next_stamp(self, project: Project) -> Tuple[int, int]:
        version = max(project.version or 0, self._versions.get(project.id, 0)) + 1
        saved_at = max(int(self._clock() * 1000), project.lastSavedAt or 0, self._saved_at.get(project.id, 0))
        return version, saved_at

    def _record(self, project_id: str, version: int, saved_at: int, returned: Optional[Dict[str, Any]]) -> int:
        if isinstance(returned, dict) and isinstance(returned.get("version"), int):
            version = max(version, returned["version"])
        self._versions[project_id] = version
        self._saved_at[project_id] = saved_at
        return version

    async def _snapshot(self, project_id: str, files: Dict[str, str], dependencies: Dict[str, str],
                        version: int, message: str, change_type: str) -> Optional[str]:
        try:
            await self.store.create_version(project_id, files, dependencies, version, message, change_type)
        except PersistenceSyncFailure as exc:
            logger.warning("[project-sync] Version snapshot for %s failed: %s", project_id, exc)
            return str(exc)
        return None

    # ---- sandbox -> storage ----
    async def save_from_sandbox(self, project_id: str, session: SandboxSession,
                                message: str = "Saved from sandbox") -> Dict[str, Any]:
        files = await session.list_files()
        if not files:
            raise PersistenceSyncFailure(project_id, "No files found in sandbox")

        async with self._write_lock(project_id):
            project = await self.store.get_project(project_id)
            dependencies = dependencies_from_manifest(files.get("package.json"))
            if dependencies is None:
                dependencies = project.dependencies

            version, saved_at = self._next_stamp(project)
            returned = await self.store.replace_files(project_id, files, dependencies, version, saved_at)
            version = self._record(project_id, version, saved_at, returned)
        logger.info("[project-sync] Saved %d files for %s (v%d)", len(files), project_id, version)

        result = {"success": True, "filesCount": len(files), "version": version, "lastSavedAt": saved_at}
        warning = await self._snapshot(project_id, files, dependencies, version, message, "auto")
        if warning:
            result["warnings"] = [warning]
        return result

    # ---- storage -> sandbox ----
    async def sync_to_sandbox(self, project_id: str, session: SandboxSession, force: bool = False) -> Dict[str, Any]:
        project = await self.store.get_project(project_id)
        if not project.files:
            logger.info("[project-sync] Project %s has no files yet, leaving sandbox empty", project_id)
            return {"success": True, "skipped": True, "reason": "new-project", "filesWritten": 0}

        if not session.is_running:
            raise SandboxUnavailable(session.status.value)

        now = int(self._clock() * 1000)
        info = project.sandboxInfo
        if (not force and info is not None and info.sandboxId == session.id
                and info.endTime is not None and info.endTime > now):
            return {"success": True, "alreadyRunning": True, "filesWritten": 0,
                    "sandboxInfo": info.model_dump()}

        files = dict(project.files)
        for path, content in files.items():
            if VITE_CONFIG_RE.search(path):
                files[path] = ensure_allowed_hosts(content)

        written = await session.write_files(files)
        failed = sorted(path for path, res in written.items() if not res.get("ok"))
        warnings: List[str] = [f"Failed to write {path}" for path in failed]

        if "package.json" in files:
            install = await session.run_command(["npm", "install"], appConfig.packages.installTimeoutSeconds)
            if not install.ok:
                warnings.append("npm install reported problems")
                logger.warning("[project-sync] npm install for %s: %s", project_id, install.stderr[-500:])

        restarted = await session.restart(force=True)
        if not restarted.get("success"):
            warnings.append(f"Dev server restart failed: {restarted.get('error')}")

        info = SandboxInfo(sandboxId=session.id, previewUrl=session.preview_url, startTime=now,
                           endTime=session.lease_end)
        try:
            await self.update_metadata(project_id, {"sandboxInfo": info.model_dump()})
        except PersistenceSyncFailure as exc:
            warnings.append(str(exc))

        logger.info("[project-sync] Synced %d files of %s into %s", len(files) - len(failed), project_id, session.id)
        return {
            "success": not failed,
            "filesWritten": len(files) - len(failed),
            "files": sorted(path for path in files if path not in failed),
            "failedFiles": failed,
            "sandboxInfo": info.model_dump(),
            "warnings": warnings,
        }

    # ---- metadata ----
    async def update_metadata(self, project_id: str, fields: Dict[str, Any]) -> int:
        async with self._write_lock(project_id):
            project = await self.store.get_project(project_id)
            version, saved_at = self._next_stamp(project)
            returned = await self.store.update_project(
                project_id, {**fields, "version": version, "lastSavedAt": saved_at}
            )
            return self._record(project_id, version, saved_at, returned)

    async def push_dependencies(self, project_id: str, dependencies: Dict[str, str]) -> int:
        return await self.update_metadata(project_id, {"dependencies": dependencies})

    # ---- auto save ----
    def auto_save(self, project_id: str, changed_files: Dict[str, str]) -> Optional[asyncio.Task]:
        """Debounced save of edited files. A newer call replaces the pending one.

        A batch with no non-blank content is dropped up front and returns
        None; it never displaces a pending save.
        """
        if not has_content(changed_files):
            logger.warning("[project-sync] Ignoring auto-save of %s: every file is empty", project_id)
            return None
        pending = self._auto_save_task
        if pending is not None and not pending.done():
            pending.cancel()
        task = asyncio.get_running_loop().create_task(
            self._auto_save_after_delay(project_id, dict(changed_files))
        )
        self._auto_save_task = task
        return task

    @property
    def auto_save_pending(self) -> bool:
        return self._auto_save_task is not None and not self._auto_save_task.done()

    async def _auto_save_after_delay(self, project_id: str, files: Dict[str, str]) -> Dict[str, Any]:
        await self._sleep(self._auto_save_delay)
        try:
            return await self.save_changed_files(project_id, files)
        except PersistenceSyncFailure as exc:
            logger.warning("[project-sync] Auto-save of %s failed: %s", project_id, exc)
            return {"success": False, "error": str(exc)}

    async def save_changed_files(self, project_id: str, files: Dict[str, str]) -> Dict[str, Any]:
        candidates = {path: content for path, content in files.items() if isinstance(content, str)}
        if not has_content(candidates):
            logger.warning("[project-sync] Refusing to auto-save %s: every file is empty", project_id)
            return {"success": False, "skipped": True, "reason": "empty-content"}

        async with self._write_lock(project_id):
            project = await self.store.get_project(project_id)
            version, saved_at = self._next_stamp(project)
            returned = await self.store.merge_files(project_id, candidates, version, saved_at)
            version = self._record(project_id, version, saved_at, returned)
        logger.info("[project-sync] Auto-saved %d files for %s (v%d)", len(candidates), project_id, version)
        return {"success": True, "filesCount": len(candidates), "version": version, "lastSavedAt": saved_at}

    async def flush_auto_save(self) -> Optional[Dict[str, Any]]:
        task = self._auto_save_task
        if task is None or task.done():
            return None
        return await task

    # ---- versions ----
    async def list_versions(self, project_id: str) -> List[ProjectVersion]:
        versions = await self.store.list_versions(project_id)
        return sorted(versions, key=lambda v: v.version, reverse=True)

    async def create_version(self, project_id: str, message: str, change_type: str = "manual") -> Dict[str, Any]:
        project = await self.store.get_project(project_id)
        await self.store.create_version(project_id, project.files, project.dependencies, project.version,
                                        message, change_type)
        return {"success": True, "version": project.version, "message": message, "changeType": change_type}

    async def compare_versions(self, project_id: str, from_version_id: str, to_version_id: str) -> Dict[str, Any]:
        before = await self.store.get_version(project_id, from_version_id)
        after = await self.store.get_version(project_id, to_version_id)
        comparison = compare_files(before.files, after.files)
        return {
            "fromVersion": {"id": before.id, "version": before.version, "message": before.message},
            "toVersion": {"id": after.id, "version": after.version, "message": after.message},
            **comparison,
        }

    async def restore_version(self, project_id: str, version_id: str) -> Dict[str, Any]:
        snapshot = await self.store.get_version(project_id, version_id)
        async with self._write_lock(project_id):
            project = await self.store.get_project(project_id)
            version, saved_at = self._next_stamp(project)
            returned = await self.store.replace_files(project_id, snapshot.files, snapshot.dependencies,
                                                      version, saved_at)
            version = self._record(project_id, version, saved_at, returned)
        await self._snapshot(project_id, snapshot.files, snapshot.dependencies, version,
                             f"Restored to version {snapshot.version}", "manual")
        return {"success": True, "version": version, "restoredFrom": snapshot.version, "lastSavedAt": saved_at}

    async def cleanup_versions(self, project_id: str, keep_count: int = 10) -> Dict[str, Any]:
        """Delete all but the newest ``keep_count`` snapshots (at least one is kept)."""
        keep_count = max(int(keep_count), 1)
        versions = await self.list_versions(project_id)
        stale = versions[keep_count:]
        for entry in stale:
            await self.store.delete_version(project_id, entry.id)
        logger.info("[project-sync] Cleaned up %d versions for %s, kept %d", len(stale), project_id,
                    len(versions) - len(stale))
        return {"deletedCount": len(stale), "keptCount": len(versions) - len(stale)}

    # ---- export ----
    async def export_zip(self, project_id: str, session: Optional[SandboxSession] = None) -> Tuple[str, bytes]:
        """Archive the project, reading the live sandbox when one is given."""
        project = await self.store.get_project(project_id)
        files = project.files
        if session is not None and session.is_running:
            files = await session.list_files() or files
        if not files:
            raise PersistenceSyncFailure(project_id, "Project has no files to download", status_code=404)
        return archive_name(project.name or project_id), build_zip(files)
