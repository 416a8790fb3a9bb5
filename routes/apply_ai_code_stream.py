# apply_ai_code_stream.py - apply a parsed model response to the live sandbox
"""
ApplyPipeline takes a complete model response, parses it and applies it to
a SandboxSession:

    1. make sure a running session exists (reconnecting by id if needed)
    2. resolve and install packages
    3. write files
    4. run commands
    5. schedule a delayed save of the sandbox back to project storage

Only step 1 can abort the run. Every later failure is collected into the
ApplyResult and the run carries on.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
import re
import shlex
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set

from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from config.app_config import appConfig
from routes.errors import (
    MalformedPackageName,
    PerCommandError,
    PerFileWriteError,
    SandboxSyncError,
    SandboxUnavailable,
)
from routes.package_names import is_script_file
from routes.package_resolver import PackageResolver
from routes.progress import ProgressChannel, emit, start_background
from routes.sandbox_session import SandboxSession
from routes.stream_parser import FileDirective, ParsedResponse, parse_ai_response

logger = logging.getLogger(__name__)

FENCE_OPEN_RE = re.compile(r"^```\w*\n?")
FENCE_CLOSE_RE = re.compile(r"\n?```$")
CSS_IMPORT_RE = re.compile(r"""import\s+['"]\./[^'"]+\.css['"];?\s*\n?""")
PROJECT_PATH_RE = re.compile(r"/projects/([^/?#]+)")

SaveCallback = Callable[[str, SandboxSession], Awaitable[Any]]
EditRecorder = Callable[["ApplyResult", ParsedResponse], Any]
ConnectedCallback = Callable[[Optional[str], SandboxSession], Awaitable[Any]]


class ApplyResult(BaseModel):
    filesCreated: List[str] = Field(default_factory=list)
    filesUpdated: List[str] = Field(default_factory=list)
    packagesInstalled: List[str] = Field(default_factory=list)
    packagesAlreadyInstalled: List[str] = Field(default_factory=list)
    packagesFailed: List[str] = Field(default_factory=list)
    commandsExecuted: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class ApplyOutcome(BaseModel):
    success: bool
    results: ApplyResult
    parsedFiles: List[FileDirective] = Field(default_factory=list)
    explanation: str = ""
    structure: Optional[str] = None
    error: Optional[str] = None
    errorKind: Optional[str] = None


def normalize_file_path(path: str) -> str:
    """Strip leading slashes and root the path under src/ unless it is already placed."""
    path = path.strip().lstrip("/")
    if path.startswith(("src/", "public/")):
        return path
    if path in appConfig.apply.topLevelFiles or path in appConfig.apply.skippedFiles:
        return path
    return f"src/{path}"


def strip_code_fences(content: str) -> str:
    content = FENCE_OPEN_RE.sub("", content.strip())
    return FENCE_CLOSE_RE.sub("", content)


def strip_css_imports(content: str) -> str:
    return CSS_IMPORT_RE.sub("", content)


def is_skipped_file(path: str) -> bool:
    return posixpath.basename(path) in appConfig.apply.skippedFiles


def derive_project_id(body: Mapping[str, Any], headers: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Project id from the request body, else from a /projects/<id>/ referer."""
    project_id = body.get("projectId")
    if project_id:
        return str(project_id)
    referer = (headers or {}).get("referer") or (headers or {}).get("Referer") or ""
    match = PROJECT_PATH_RE.search(referer)
    return match.group(1) if match else None


class ApplyPipeline:
    def __init__(
        self,
        resolver: Optional[PackageResolver] = None,
        save: Optional[SaveCallback] = None,
        record_edit: Optional[EditRecorder] = None,
        save_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_connected: Optional[ConnectedCallback] = None,
    ) -> None:
        self._resolver = resolver or PackageResolver()
        self._save = save
        self._record_edit = record_edit
        self._on_connected = on_connected
        self._save_delay = appConfig.apply.saveDelaySeconds if save_delay is None else save_delay
        self._sleep = sleep
        self.pending_saves: Set[asyncio.Task] = set()

    async def apply(
        self,
        response_text: str,
        *,
        session: SandboxSession,
        sandbox_id: Optional[str] = None,
        explicit_packages: Iterable[str] = (),
        project_id: Optional[str] = None,
        known_files: Optional[Set[str]] = None,
        channel: Optional[ProgressChannel] = None,
    ) -> ApplyOutcome:
        parsed = parse_ai_response(response_text)
        results = ApplyResult()
        known = known_files if known_files is not None else set()

        await emit(channel, "start", message="Starting code application...", totalSteps=3)

        # 1. sandbox
        if not session.is_running:
            try:
                if not sandbox_id:
                    raise SandboxUnavailable(session.status.value, "No active sandbox and no sandbox id to reconnect to")
                logger.info("[apply-ai-code-stream] Reconnecting to sandbox %s", sandbox_id)
                await session.connect(sandbox_id)
            except SandboxSyncError as exc:
                return await self._abort(exc, parsed, results, channel)
            if self._on_connected is not None:
                try:
                    await self._on_connected(project_id, session)
                except Exception as exc:
                    logger.warning("[apply-ai-code-stream] Could not take ownership of %s: %s", sandbox_id, exc)
                    results.warnings.append(f"Reconnected sandbox is not tracked: {exc}")

        # 2. packages
        await emit(channel, "step", step=1, message="Checking packages...")
        await self._install_packages(session, parsed, explicit_packages, results, channel)

        # 3. files
        await emit(channel, "step", step=2, message=f"Creating {len(parsed.files)} files...")
        await self._write_files(session, parsed.files, known, results, channel)

        # 4. commands
        if parsed.commands:
            await emit(channel, "step", step=3, message=f"Executing {len(parsed.commands)} commands...")
            await self._run_commands(session, parsed.commands, results, channel)

        # 5. delayed save
        if project_id and self._save is not None:
            self._schedule_save(project_id, session)
            await emit(channel, "status", message=f"Project will be saved in {self._save_delay:g}s")

        if self._record_edit is not None:
            try:
                self._record_edit(results, parsed)
            except Exception as exc:
                logger.warning("[apply-ai-code-stream] Could not record edit history: %s", exc)
                results.warnings.append(f"Edit history not updated: {exc}")

        await emit(
            channel,
            "complete",
            success=True,
            results=results.model_dump(),
            explanation=parsed.explanation,
            structure=parsed.structure,
            message=f"Applied {len(results.filesCreated) + len(results.filesUpdated)} files",
        )
        return ApplyOutcome(
            success=True,
            results=results,
            parsedFiles=parsed.files,
            explanation=parsed.explanation,
            structure=parsed.structure,
        )

    async def _abort(self, exc: SandboxSyncError, parsed: ParsedResponse, results: ApplyResult,
                     channel: Optional[ProgressChannel]) -> ApplyOutcome:
        message = str(exc)
        logger.error("[apply-ai-code-stream] Aborting: %s", message)
        results.errors.append(message)
        outcome = ApplyOutcome(
            success=False,
            results=results,
            parsedFiles=parsed.files,
            explanation=parsed.explanation,
            structure=parsed.structure,
            error=message,
            errorKind=type(exc).__name__,
        )
        await emit(channel, "error", **outcome.model_dump())
        return outcome

    async def _install_packages(self, session: SandboxSession, parsed: ParsedResponse,
                                explicit_packages: Iterable[str], results: ApplyResult,
                                channel: Optional[ProgressChannel]) -> None:
        packages = list(explicit_packages) + parsed.packages
        try:
            resolution = await self._resolver.resolve(session, parsed.file_map(), packages, channel)
        except MalformedPackageName as exc:
            results.packagesFailed.extend(exc.batch)
            results.errors.append(str(exc))
            await emit(channel, "warning", message=f"Package installation rejected: {exc}")
            return
        except Exception as exc:
            logger.error("[apply-ai-code-stream] Package resolution failed: %s", exc)
            results.errors.append(f"Package installation failed: {exc}")
            await emit(channel, "warning", message=f"Package installation failed: {exc}")
            return

        results.packagesInstalled.extend(resolution.installed)
        results.packagesAlreadyInstalled.extend(resolution.alreadyInstalled)
        results.packagesFailed.extend(resolution.failed)
        results.warnings.extend(resolution.warnings)
        if resolution.failed:
            results.errors.append(f"Failed to install packages: {', '.join(resolution.failed)}")

    async def _write_files(self, session: SandboxSession, files: List[FileDirective], known: Set[str],
                           results: ApplyResult, channel: Optional[ProgressChannel]) -> None:
        total = len(files)
        for index, directive in enumerate(files, start=1):
            if is_skipped_file(directive.path):
                logger.info("[apply-ai-code-stream] Skipping config file %s", directive.path)
                await emit(channel, "status", message=f"Skipped protected file {directive.path}")
                continue

            path = normalize_file_path(directive.path)
            content = strip_code_fences(directive.content)
            if is_script_file(path):
                content = strip_css_imports(content)

            is_update = path in known
            await emit(channel, "file-progress", current=index, total=total, fileName=path,
                       action="updating" if is_update else "creating")
            try:
                written = await session.write_files({path: content})
                outcome = next(iter(written.values()), {"ok": False, "error": "no result"})
                if not outcome.get("ok"):
                    raise PerFileWriteError(path, outcome.get("error") or "unknown error")
            except Exception as exc:
                message = str(exc) if isinstance(exc, PerFileWriteError) else str(PerFileWriteError(path, str(exc)))
                logger.warning("[apply-ai-code-stream] %s", message)
                results.errors.append(message)
                await emit(channel, "file-error", fileName=path, error=message)
                continue

            (results.filesUpdated if is_update else results.filesCreated).append(path)
            known.add(path)
            if directive.suspectedTruncated or not directive.isComplete:
                results.warnings.append(f"{path} may be truncated")
            await emit(channel, "file-complete", fileName=path, action="updated" if is_update else "created")

    async def _run_commands(self, session: SandboxSession, commands: List[str], results: ApplyResult,
                            channel: Optional[ProgressChannel]) -> None:
        timeout = appConfig.apply.commandTimeoutSeconds
        for index, command in enumerate(commands, start=1):
            await emit(channel, "command-progress", current=index, total=len(commands), command=command,
                       action="executing")
            try:
                argv = shlex.split(command)
                if not argv:
                    raise PerCommandError(command, "empty command")
                result = await session.run_command(argv, timeout)
                if not result.ok:
                    reason = "timed out" if result.timedOut else f"exit code {result.exitCode}: {result.stderr.strip()[-300:]}"
                    raise PerCommandError(command, reason)
            except Exception as exc:
                message = str(exc) if isinstance(exc, PerCommandError) else str(PerCommandError(command, str(exc)))
                logger.warning("[apply-ai-code-stream] %s", message)
                results.errors.append(message)
                await emit(channel, "command-error", command=command, error=message)
                continue

            results.commandsExecuted.append(command)
            await emit(channel, "command-complete", command=command, exitCode=result.exitCode,
                       output=result.stdout[-2000:], success=True)

    async def flush_saves(self) -> None:
        """Wait for every scheduled delayed save to finish."""
        if self.pending_saves:
            await asyncio.gather(*list(self.pending_saves))

    def _schedule_save(self, project_id: str, session: SandboxSession) -> None:
        task = start_background(self._delayed_save(project_id, session))
        self.pending_saves.add(task)
        task.add_done_callback(self.pending_saves.discard)

    async def _delayed_save(self, project_id: str, session: SandboxSession) -> None:
        await self._sleep(self._save_delay)
        try:
            await self._save(project_id, session)
            logger.info("[apply-ai-code-stream] Saved project %s after apply", project_id)
        except Exception as exc:
            logger.warning("[apply-ai-code-stream] Delayed save of project %s failed: %s", project_id, exc)


async def POST(
    body: Dict[str, Any],
    session: SandboxSession,
    pipeline: ApplyPipeline,
    *,
    headers: Optional[Mapping[str, str]] = None,
    known_files: Optional[Set[str]] = None,
):
    """Apply handler; streams progress events as NDJSON."""
    response_text = body.get("response") or ""
    if not response_text:
        return JSONResponse({"success": False, "error": "response is required"}, status_code=400)
    packages = body.get("packages") or []
    if not isinstance(packages, list):
        return JSONResponse({"success": False, "error": "packages must be a list"}, status_code=400)

    channel = ProgressChannel()

    async def _worker() -> None:
        try:
            await pipeline.apply(
                response_text,
                session=session,
                sandbox_id=body.get("sandboxId"),
                explicit_packages=[p for p in packages if isinstance(p, str)],
                project_id=derive_project_id(body, headers),
                known_files=known_files,
                channel=channel,
            )
        except Exception as exc:
            logger.exception("[apply-ai-code-stream] Unexpected failure")
            await channel.send("error", error=str(exc))
        finally:
            await channel.close()

    start_background(_worker())
    return StreamingResponse(channel, media_type=channel.media_type, headers=channel.headers)
