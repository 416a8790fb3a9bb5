# main.py - FastAPI app for applying model output to live sandboxes

from __future__ import annotations

import codecs
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse

from config.app_config import appConfig
from routes import apply_ai_code_stream, conversation_state, database, package_resolver
from routes.apply_ai_code_stream import ApplyPipeline, ApplyResult
from routes.create_zip import data_url
from routes.errors import (
    PersistenceSyncFailure,
    ReconnectFailure,
    SandboxSyncError,
    SandboxUnavailable,
)
from routes.orchestrator import OrchestratorRegistry
from routes.package_resolver import PackageResolver
from routes.progress import NDJSON_HEADERS, encode_event
from routes.project_store import ProjectStoreClient
from routes.project_sync import ProjectSync
from routes.sandbox_session import SandboxSession
from routes.stream_parser import ParsedResponse, parse_stream

logger = logging.getLogger("main")


class Services:
    """Long-lived collaborators shared by every request."""

    def __init__(self, store: ProjectStoreClient, session_factory=SandboxSession,
                 save_delay: Optional[float] = None) -> None:
        self.store = store
        self.session_factory = session_factory
        self.sync = ProjectSync(store)
        self.registry = OrchestratorRegistry(self.sync, session_factory)
        self.resolver = PackageResolver(on_installed=self._push_dependencies)
        self.pipeline = ApplyPipeline(
            resolver=self.resolver,
            save=lambda project_id, session: self.sync.save_from_sandbox(project_id, session, "Applied AI changes"),
            record_edit=_record_edit,
            on_connected=self.registry.adopt,
            save_delay=save_delay,
        )

    async def _push_dependencies(self, dependencies: Dict[str, str]) -> None:
        current = self.registry.current
        if current is None or not current.project_id:
            return
        await self.sync.push_dependencies(current.project_id, dependencies)

    async def aclose(self) -> None:
        await self.pipeline.flush_saves()
        await self.sync.flush_auto_save()
        await self.registry.shutdown()
        await self.store.aclose()


def _record_edit(results: ApplyResult, parsed: ParsedResponse) -> None:
    conversation_state.record_edit(
        results.filesCreated,
        results.filesUpdated,
        results.packagesInstalled,
        summary=parsed.explanation,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logger.info("Backend starting...")
    with database.get_connection():
        logger.info("State database at %s", database.DB_PATH)
    if not hasattr(app.state, "services"):
        app.state.services = Services(ProjectStoreClient())
    yield
    logger.info("Backend shutting down...")
    await app.state.services.aclose()
    database.close_connection()


app = FastAPI(lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Utility Functions ---
def create_error_response(message: str, status: int = 500) -> JSONResponse:
    logger.warning("Error Response (%d): %s", status, message)
    return JSONResponse(content={"success": False, "error": message}, status_code=status)


class CustomJSONEncoder(json.JSONEncoder):
    def default(self, obj):
        if isinstance(obj, bytes):
            return obj.decode("utf-8", errors="replace")
        if hasattr(obj, "model_dump"):
            return obj.model_dump()
        return super().default(obj)


class CustomJSONResponse(JSONResponse):
    def render(self, content: Any) -> bytes:
        return json.dumps(
            content, ensure_ascii=False, allow_nan=False, indent=None,
            separators=(",", ":"), cls=CustomJSONEncoder
        ).encode("utf-8")


def _services(request: Request) -> Services:
    return request.app.state.services


async def _json_body(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    body = json.loads(raw)
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


def _orchestrator_for(services: Services, project_id: str):
    orchestrator = services.registry.require()
    if orchestrator.project_id != project_id:
        raise SandboxUnavailable(
            orchestrator.session.status.value,
            f"Project {project_id} is not open (open project: {orchestrator.project_id})",
        )
    return orchestrator


@app.exception_handler(SandboxSyncError)
async def sandbox_sync_error_handler(request: Request, exc: SandboxSyncError):
    if isinstance(exc, PersistenceSyncFailure):
        status = exc.status_code if exc.status_code in (404, 409) else 502
    elif isinstance(exc, ReconnectFailure):
        status = 410
    elif isinstance(exc, SandboxUnavailable):
        status = 409
    else:
        status = 500
    return create_error_response(str(exc), status)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return create_error_response(f"Invalid request: {exc}", 400)


# --- API Endpoints ---

@app.get("/health")
async def health(request: Request):
    session = _services(request).registry.session
    return {"status": "healthy", "sandbox": session.status.value if session else "Absent"}


# --- Sandbox Management ---
@app.post("/api/projects/{project_id}/open")
async def api_open_project(project_id: str, request: Request):
    body = await _json_body(request)
    result = await _services(request).registry.open_project(project_id, scaffold_new=body.get("scaffold", True))
    return CustomJSONResponse(result, status_code=200 if result.get("success") else 502)


@app.post("/api/sandbox/create")
async def api_create_sandbox(request: Request):
    body = await _json_body(request)
    result = await _services(request).registry.open_project(body.get("projectId"), scaffold_new=True)
    return CustomJSONResponse(result, status_code=200 if result.get("success") else 502)


@app.post("/api/sandbox/kill")
async def api_kill_sandbox(request: Request):
    registry = _services(request).registry
    if registry.current is None:
        return CustomJSONResponse({"success": True, "message": "No active sandbox"})
    sandbox_id = registry.current.session.id
    await registry.close(reason="killed")
    return CustomJSONResponse({"success": True, "sandboxId": sandbox_id, "message": "Sandbox killed"})


@app.get("/api/sandbox/status")
async def api_sandbox_status(request: Request):
    registry = _services(request).registry
    current = registry.current
    if current is None:
        return CustomJSONResponse({
            "success": True,
            "active": False,
            "healthy": False,
            "sandboxData": None,
            "message": "No active sandbox.",
        })
    session = current.session
    remote = await session.remote_status() if session.is_running else None
    return CustomJSONResponse({
        "success": True,
        "active": session.is_running,
        "healthy": remote == "active",
        "projectId": current.project_id,
        "sandboxData": session.to_dict(),
        "remainingMinutes": session.remaining_minutes(),
    })


@app.post("/api/sandbox/restart")
async def api_restart_sandbox(request: Request):
    body = await _json_body(request)
    session = _services(request).registry.require().session
    result = await session.restart(force=bool(body.get("force")))
    return CustomJSONResponse(result, status_code=200 if result.get("success") else 500)


# --- Code Application ---
@app.post("/api/apply-ai-code-stream")
async def api_apply_ai_code_stream(request: Request):
    services = _services(request)
    body = await _json_body(request)
    current = services.registry.current
    if current is not None:
        session = current.session
        known = current.known_files
        known.update(conversation_state.known_files())
    else:
        # Absent session; the pipeline reconnects when the body names a sandboxId
        # and hands the session to the registry
        session = services.session_factory()
        known = conversation_state.known_files()
    return await apply_ai_code_stream.POST(
        body,
        session,
        services.pipeline,
        headers=dict(request.headers),
        known_files=known,
    )


@app.post("/api/parse-ai-stream")
async def api_parse_ai_stream(request: Request):
    async def chunks() -> AsyncIterator[str]:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        async for raw in request.stream():
            text = decoder.decode(raw)
            if text:
                yield text
        tail = decoder.decode(b"", final=True)
        if tail:
            yield tail

    async def frames() -> AsyncIterator[bytes]:
        async for event in parse_stream(chunks()):
            yield encode_event(event)

    return StreamingResponse(frames(), media_type="application/x-ndjson", headers=NDJSON_HEADERS)


@app.post("/api/detect-and-install-packages")
async def api_detect_and_install_packages(request: Request):
    services = _services(request)
    body = await _json_body(request)
    session = services.registry.require().session
    return await package_resolver.POST(body, session, services.resolver)


# --- Project Persistence ---
@app.post("/api/projects/{project_id}/save")
async def api_save_project(project_id: str, request: Request):
    orchestrator = _orchestrator_for(_services(request), project_id)
    return CustomJSONResponse(await orchestrator.save())


@app.post("/api/projects/{project_id}/sync")
async def api_sync_project(project_id: str, request: Request):
    services = _services(request)
    body = await _json_body(request)
    orchestrator = _orchestrator_for(services, project_id)
    result = await services.sync.sync_to_sandbox(project_id, orchestrator.session, force=bool(body.get("force")))
    orchestrator.known_files.update(result.get("files", []))
    return CustomJSONResponse(result)


@app.post("/api/projects/{project_id}/autosave")
async def api_autosave_project(project_id: str, request: Request):
    services = _services(request)
    body = await _json_body(request)
    files = body.get("files") or {}
    if not isinstance(files, dict):
        return create_error_response("files must be an object", 400)
    if services.sync.auto_save(project_id, files) is None:
        return CustomJSONResponse({"success": False, "skipped": True, "reason": "empty-content"})
    return CustomJSONResponse({
        "success": True,
        "scheduled": True,
        "filesCount": len(files),
        "delaySeconds": appConfig.projectStore.autoSaveDelaySeconds,
    })


@app.get("/api/projects/{project_id}/versions")
async def api_list_versions(project_id: str, request: Request):
    versions = await _services(request).sync.list_versions(project_id)
    return CustomJSONResponse({
        "success": True,
        "versions": [v.model_dump(exclude={"files"}) for v in versions],
    })


@app.post("/api/projects/{project_id}/versions")
async def api_create_version(project_id: str, request: Request):
    body = await _json_body(request)
    message = body.get("message") or "Manual snapshot"
    return CustomJSONResponse(await _services(request).sync.create_version(project_id, message, "manual"))


@app.post("/api/projects/{project_id}/versions/compare")
async def api_compare_versions(project_id: str, request: Request):
    body = await _json_body(request)
    from_id: Optional[str] = body.get("fromVersionId")
    to_id: Optional[str] = body.get("toVersionId")
    if not from_id or not to_id:
        return create_error_response("fromVersionId and toVersionId are required", 400)
    result = await _services(request).sync.compare_versions(project_id, from_id, to_id)
    return CustomJSONResponse({"success": True, **result})


@app.post("/api/projects/{project_id}/versions/cleanup")
async def api_cleanup_versions(project_id: str, request: Request):
    body = await _json_body(request)
    keep_count = int(body.get("keepCount") or 10)
    result = await _services(request).sync.cleanup_versions(project_id, keep_count)
    return CustomJSONResponse({
        "success": True,
        "data": result,
        "message": f"Cleaned up {result['deletedCount']} old versions, kept {result['keptCount']} most recent",
    })


@app.post("/api/projects/{project_id}/versions/{version_id}/restore")
async def api_restore_version(project_id: str, version_id: str, request: Request):
    services = _services(request)
    result = await services.sync.restore_version(project_id, version_id)
    current = services.registry.current
    if current is not None and current.project_id == project_id and current.session.is_running:
        result["sync"] = await services.sync.sync_to_sandbox(project_id, current.session, force=True)
    return CustomJSONResponse(result)


def _live_session(services: Services, project_id: str) -> Optional[SandboxSession]:
    current = services.registry.current
    if current is not None and current.project_id == project_id:
        return current.session
    return None


@app.get("/api/projects/{project_id}/download")
async def api_download_project(project_id: str, request: Request):
    services = _services(request)
    file_name, content = await services.sync.export_zip(project_id, _live_session(services, project_id))
    return Response(
        content=content,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )


@app.post("/api/projects/{project_id}/download")
async def api_download_project_data_url(project_id: str, request: Request):
    services = _services(request)
    file_name, content = await services.sync.export_zip(project_id, _live_session(services, project_id))
    return CustomJSONResponse({
        "success": True,
        "dataUrl": data_url(content),
        "fileName": file_name,
        "message": "Project ZIP created successfully",
    })


# --- Dev Server Logs ---
@app.get("/api/sandbox/logs")
async def api_sandbox_logs(request: Request):
    session = _services(request).registry.require().session
    logs = await session.get_logs()
    return CustomJSONResponse({"success": True, **logs.sandbox_view()})


@app.get("/api/projects/{project_id}/logs")
async def api_project_logs(project_id: str, request: Request):
    orchestrator = _orchestrator_for(_services(request), project_id)
    logs = await orchestrator.session.get_logs()
    return CustomJSONResponse({"success": True, **logs.project_view()})


# --- Conversation Management ---
@app.api_route("/api/conversation-state", methods=["GET", "POST", "DELETE"])
async def api_conversation_state(request: Request):
    if request.method == "GET":
        result = conversation_state.GET()
    elif request.method == "DELETE":
        result = conversation_state.DELETE()
    else:
        result = conversation_state.POST(await _json_body(request))
    return CustomJSONResponse(content=result, status_code=200 if result.get("success") else 400)


@app.get("/api/debug/cleanup-stats")
async def debug_cleanup_stats(project_id: Optional[str] = None):
    return CustomJSONResponse({"success": True, **database.get_cleanup_stats(project_id)})


# --- Main Entrypoint ---
if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("main:app", host="0.0.0.0", port=port, reload=False)
