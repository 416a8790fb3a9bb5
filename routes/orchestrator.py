# orchestrator.py - owns the one live SandboxSession for the open project

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set

from routes import database
from routes.errors import PersistenceSyncFailure, ReconnectFailure, SandboxUnavailable
from routes.project_sync import ProjectSync
from routes.sandbox_session import SandboxSession

logger = logging.getLogger(__name__)


class ProjectOrchestrator:
    """Lifecycle of the sandbox behind one project.

    ``open()`` reconnects to the sandbox recorded for the project when it is
    still alive, otherwise creates a fresh one and fills it from storage
    (or with the starter app for a brand-new project). ``close()`` destroys it.
    """

    def __init__(
        self,
        project_id: Optional[str],
        sync: Optional[ProjectSync],
        session_factory: Callable[[], SandboxSession] = SandboxSession,
        scaffold_new: bool = True,
        session: Optional[SandboxSession] = None,
    ) -> None:
        self.project_id = project_id
        self.sync = sync
        self.session = session if session is not None else session_factory()
        self.scaffold_new = scaffold_new
        self.known_files: Set[str] = set()

    async def open(self) -> Dict[str, Any]:
        reconnected = await self._reconnect()
        populated: Optional[Dict[str, Any]] = None
        if not reconnected:
            await self.session.create()
            if not self.session.is_running:
                return {"success": False, "error": self.session.last_error or "Failed to create sandbox"}
            populated = await self._populate()

        self.attach()
        return {
            "success": True,
            "reconnected": reconnected,
            "sandbox": self.session.to_dict(),
            "sync": populated,
        }

    def attach(self) -> None:
        """Take over a running session: restore hook, health loop, state record."""
        if self.project_id and self.sync is not None:
            self.session.set_restore_callback(self._restore)
        self.session.start_health_checks()
        self._persist()

    async def _reconnect(self) -> bool:
        if not self.project_id:
            return False
        record = database.get_sandbox_state(self.project_id)
        if not record:
            return False
        try:
            await self.session.connect(record["sandboxId"], lease_end=record.get("leaseEnd"))
        except ReconnectFailure as exc:
            logger.info("[orchestrator] %s", exc)
            database.set_sandbox_state(self.project_id, None, reason="expired")
            return False
        return True

    async def _populate(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"skipped": True, "reason": "no-project"}
        if self.project_id and self.sync is not None:
            try:
                result = await self.sync.sync_to_sandbox(self.project_id, self.session, force=True)
            except PersistenceSyncFailure as exc:
                logger.warning("[orchestrator] Could not load project %s: %s", self.project_id, exc)
                return {"success": False, "error": str(exc)}
            self.known_files.update(result.get("files", []))
        if result.get("skipped") and self.scaffold_new:
            result["scaffold"] = await self.session.scaffold()
        return result

    async def _restore(self, session: SandboxSession) -> Dict[str, Any]:
        result = await self.sync.sync_to_sandbox(self.project_id, session, force=True)
        self._persist()
        return result

    def _persist(self) -> None:
        if not self.project_id:
            return
        database.set_sandbox_state(self.project_id, {
            "sandboxId": self.session.id,
            "previewUrl": self.session.preview_url,
            "status": self.session.status.value,
            "leaseEnd": self.session.lease_end,
            "createdAt": self.session.created_at,
        })

    async def save(self) -> Dict[str, Any]:
        if not self.project_id or self.sync is None:
            raise PersistenceSyncFailure(str(self.project_id), "no project is attached to this sandbox")
        return await self.sync.save_from_sandbox(self.project_id, self.session)

    async def close(self, reason: str = "project-closed") -> None:
        await self.session.destroy()
        if self.project_id:
            database.set_sandbox_state(self.project_id, None, reason=reason)


class OrchestratorRegistry:
    """Holds the single active orchestrator; opening another project replaces it."""

    def __init__(
        self,
        sync: Optional[ProjectSync],
        session_factory: Callable[[], SandboxSession] = SandboxSession,
    ) -> None:
        self.sync = sync
        self._session_factory = session_factory
        self.current: Optional[ProjectOrchestrator] = None
        self._lock = asyncio.Lock()

    async def open_project(self, project_id: Optional[str], scaffold_new: bool = True) -> Dict[str, Any]:
        async with self._lock:
            current = self.current
            if current is not None and current.project_id == project_id and current.session.is_running:
                return {"success": True, "alreadyOpen": True, "sandbox": current.session.to_dict()}
            if current is not None:
                logger.info("[orchestrator] Switching from project %s to %s", current.project_id, project_id)
                await current.close(reason="project-switch")
                self.current = None

            orchestrator = ProjectOrchestrator(project_id, self.sync, self._session_factory, scaffold_new)
            result = await orchestrator.open()
            if result.get("success"):
                self.current = orchestrator
            else:
                await orchestrator.session.destroy()
            return result

    async def adopt(self, project_id: Optional[str], session: SandboxSession) -> bool:
        """Make a session reconnected outside ``open_project`` the owned one.

        Does nothing when another orchestrator is already current.
        """
        async with self._lock:
            if self.current is not None:
                return self.current.session is session
            if not session.is_running:
                return False
            orchestrator = ProjectOrchestrator(project_id, self.sync, session=session)
            orchestrator.attach()
            self.current = orchestrator
            logger.info("[orchestrator] Adopted sandbox %s for project %s", session.id, project_id)
            return True

    def require(self) -> ProjectOrchestrator:
        if self.current is None:
            raise SandboxUnavailable("Absent", "No sandbox is open")
        return self.current

    @property
    def session(self) -> Optional[SandboxSession]:
        return self.current.session if self.current else None

    async def close(self, reason: str = "shutdown") -> None:
        async with self._lock:
            if self.current is not None:
                await self.current.close(reason=reason)
                self.current = None

    async def shutdown(self) -> None:
        """Stop background work but leave the sandbox alive for the next process to reconnect."""
        async with self._lock:
            if self.current is not None:
                self.current.session.stop_health_checks()
