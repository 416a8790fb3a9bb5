# sandbox_session.py - lifecycle of one ephemeral E2B sandbox
"""
SandboxSession wraps one remote E2B sandbox and tracks its lifecycle:

    Absent -> Creating -> Running -> {Stopped, Error} -> Destroyed

``restart()`` is an in-place operation (Running -> Running). File writes,
manifest reads and command execution are only allowed while Running and
raise ``SandboxUnavailable`` otherwise.

All remote code execution goes through a LangChain runnable dispatched by a
one-node LangGraph (START -> exec -> END). Scripts run inside the sandbox
and report back through marker lines on stdout.
"""

from __future__ import annotations

import asyncio
import json
import logging
import posixpath
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypedDict

from e2b_code_interpreter import AsyncSandbox
from langchain_core.runnables import RunnableLambda
from langgraph.graph import END, START, StateGraph
from pydantic import BaseModel, Field

from config.app_config import appConfig
from routes.errors import PerFileWriteError, ReconnectFailure, SandboxUnavailable

logger = logging.getLogger(__name__)


class SandboxStatus(str, Enum):
    ABSENT = "Absent"
    CREATING = "Creating"
    RUNNING = "Running"
    STOPPED = "Stopped"
    ERROR = "Error"
    DESTROYED = "Destroyed"


_TRANSITIONS = {
    SandboxStatus.ABSENT: {SandboxStatus.CREATING, SandboxStatus.RUNNING},
    SandboxStatus.CREATING: {SandboxStatus.RUNNING, SandboxStatus.ERROR},
    SandboxStatus.RUNNING: {SandboxStatus.RUNNING, SandboxStatus.STOPPED, SandboxStatus.ERROR, SandboxStatus.DESTROYED},
    SandboxStatus.STOPPED: {SandboxStatus.DESTROYED},
    SandboxStatus.ERROR: {SandboxStatus.CREATING, SandboxStatus.RUNNING, SandboxStatus.DESTROYED},
    SandboxStatus.DESTROYED: set(),
}

# Remote states reported by remote_status()
REMOTE_ACTIVE = "active"
REMOTE_NO_SANDBOX = "no_sandbox"
REMOTE_EXPIRED = "expired"
REMOTE_UNHEALTHY = "unhealthy"


class PackageManifestSnapshot(BaseModel):
    dependencies: Dict[str, str] = Field(default_factory=dict)
    devDependencies: Dict[str, str] = Field(default_factory=dict)

    def installed_names(self) -> set:
        return set(self.dependencies) | set(self.devDependencies)


class CommandResult(BaseModel):
    stdout: str = ""
    stderr: str = ""
    exitCode: Optional[int] = None
    timedOut: bool = False

    @property
    def ok(self) -> bool:
        return self.exitCode == 0 and not self.timedOut


class ScriptOutput(BaseModel):
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None


class DevServerLogs(BaseModel):
    status: str = "unknown"
    lines: List[str] = Field(default_factory=list)
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    warnings: List[Dict[str, Any]] = Field(default_factory=list)

    def sandbox_view(self) -> Dict[str, Any]:
        return {
            "hasErrors": self.status != "running",
            "status": self.status,
            "logs": self.lines,
        }

    def project_view(self) -> Dict[str, Any]:
        return {
            "hasErrors": bool(self.errors),
            "hasWarnings": bool(self.warnings),
            "errors": self.errors,
            "warnings": self.warnings,
            "errorCount": len(self.errors),
            "warningCount": len(self.warnings),
        }


# ---- LangChain / LangGraph execution path ----
class ExecState(TypedDict, total=False):
    sandbox: Any
    code: str
    timeout: Optional[float]
    execution: Any


async def _call_runner(payload: Dict[str, Any]) -> Any:
    sandbox = payload["sandbox"]
    return await sandbox.run_code(payload.get("code", ""), timeout=payload.get("timeout"))


def _execution_graph():
    if not hasattr(_execution_graph, "_compiled"):
        chain = RunnableLambda(_call_runner)

        async def exec_node(state: ExecState) -> ExecState:
            return {"execution": await chain.ainvoke(state)}

        graph = StateGraph(ExecState)
        graph.add_node("exec", exec_node)
        graph.add_edge(START, "exec")
        graph.add_edge("exec", END)
        _execution_graph._compiled = graph.compile()
    return _execution_graph._compiled


def _join_logs(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        return "".join(str(x) for x in value)
    return str(value)


def _extract_output(execution: Any) -> ScriptOutput:
    """Normalize an E2B Execution (or a dict of the same shape) into text."""
    if isinstance(execution, dict):
        logs = execution.get("logs") or {}
        error = execution.get("error")
        stdout = execution.get("output") if isinstance(execution.get("output"), str) else _join_logs(logs.get("stdout"))
        return ScriptOutput(stdout=stdout, stderr=_join_logs(logs.get("stderr")), error=str(error) if error else None)

    logs = getattr(execution, "logs", None)
    stdout = _join_logs(getattr(logs, "stdout", None)) if logs is not None else ""
    stderr = _join_logs(getattr(logs, "stderr", None)) if logs is not None else ""
    error = getattr(execution, "error", None)
    if error is not None:
        name = getattr(error, "name", "Error")
        value = getattr(error, "value", "")
        error = f"{name}: {value}" if value else str(name)
    return ScriptOutput(stdout=stdout, stderr=stderr, error=error)


def _between(text: str, start: str, end: str) -> Optional[str]:
    i = text.find(start)
    if i == -1:
        return None
    j = text.find(end, i + len(start))
    if j == -1:
        return None
    return text[i + len(start):j].strip()


def _marker_json(text: str, marker: str) -> Any:
    for line in text.splitlines():
        if line.startswith(marker):
            return json.loads(line[len(marker):])
    return None


def safe_relative_path(path: str) -> str:
    """Reject paths that would escape the application root."""
    cleaned = posixpath.normpath(path.lstrip("/"))
    if cleaned in ("", ".") or cleaned.startswith("../") or cleaned == "..":
        raise PerFileWriteError(path, "path escapes the application root")
    return cleaned


# ---- Sandbox-side scripts ----
_WRITE_SCRIPT = """
import json, os
root = {root!r}
files = json.loads({payload!r})
results = {{}}
for rel, content in files.items():
    full = os.path.join(root, rel)
    try:
        existed = os.path.exists(full)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, 'w', encoding='utf-8') as fh:
            fh.write(content)
        results[rel] = {{'ok': True, 'existed': existed}}
    except Exception as exc:
        results[rel] = {{'ok': False, 'error': str(exc)}}
print('WRITE_RESULT:' + json.dumps(results))
"""

_MANIFEST_SCRIPT = """
import json, os
path = os.path.join({root!r}, 'package.json')
data = {{}}
if os.path.exists(path):
    with open(path, 'r', encoding='utf-8') as fh:
        data = json.load(fh)
print('PACKAGE_JSON_START')
print(json.dumps({{'dependencies': data.get('dependencies') or {{}}, 'devDependencies': data.get('devDependencies') or {{}}}}))
print('PACKAGE_JSON_END')
"""

_COMMAND_SCRIPT = """
import json, subprocess
argv = json.loads({argv!r})

def _text(value):
    if value is None:
        return ''
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return value

try:
    proc = subprocess.run(argv, cwd={root!r}, capture_output=True, text=True, timeout={timeout!r})
    out = {{'stdout': proc.stdout, 'stderr': proc.stderr, 'exitCode': proc.returncode, 'timedOut': False}}
except subprocess.TimeoutExpired as exc:
    out = {{'stdout': _text(exc.stdout), 'stderr': _text(exc.stderr), 'exitCode': None, 'timedOut': True}}
except FileNotFoundError as exc:
    out = {{'stdout': '', 'stderr': str(exc), 'exitCode': 127, 'timedOut': False}}
print('COMMAND_RESULT:' + json.dumps(out))
"""

_LIST_FILES_SCRIPT = """
import json, os
root = {root!r}
skip_dirs = set({ignored_dirs!r})
skip_files = set({ignored_files!r})
files = {{}}
for dirpath, dirnames, filenames in os.walk(root):
    dirnames[:] = [d for d in dirnames if d not in skip_dirs]
    for name in filenames:
        if name in skip_files:
            continue
        full = os.path.join(dirpath, name)
        try:
            with open(full, 'r', encoding='utf-8') as fh:
                files[os.path.relpath(full, root)] = fh.read()
        except (UnicodeDecodeError, OSError):
            continue
print('FILES_JSON_START')
print(json.dumps(files))
print('FILES_JSON_END')
"""

_RESTART_SCRIPT = """
import os, shutil, subprocess, time
root = {root!r}
subprocess.run(['pkill', '-f', 'vite'], capture_output=True)
time.sleep(1)
shutil.rmtree(os.path.join(root, 'node_modules', '.vite'), ignore_errors=True)
env = os.environ.copy()
env['FORCE_COLOR'] = '0'
log = open({log_path!r}, 'w')
process = subprocess.Popen(['npm', 'run', 'dev'], cwd=root, stdout=log,
                           stderr=subprocess.STDOUT, env=env, start_new_session=True)
with open({pid_path!r}, 'w') as fh:
    fh.write(str(process.pid))
print('DEV_SERVER_PID:' + str(process.pid))
"""

# Reads the dev server log and pulls out missing imports, build errors and warnings.
_LOGS_SCRIPT = r"""
import json, os, re
root = {root!r}
running = False
try:
    with open({pid_path!r}, 'r') as fh:
        os.kill(int(fh.read().strip()), 0)
    running = True
except (OSError, ValueError):
    running = False

lines = []
if os.path.exists({log_path!r}):
    with open({log_path!r}, 'r', encoding='utf-8', errors='replace') as fh:
        lines = fh.read().splitlines()

errors = []
warnings = []

def add(bucket, entry, limit):
    if entry not in bucket and sum(1 for e in bucket if e['type'] == entry['type']) < limit:
        bucket.append(entry)

for line in lines:
    missing = (re.search(r"Failed to resolve import [\"']([^\"']+)[\"']", line)
               or re.search(r"Module not found: Can't resolve '([^']+)'", line))
    if missing:
        spec = missing.group(1)
        if not spec.startswith(('.', '/')):
            parts = spec.split('/')
            name = '/'.join(parts[:2]) if spec.startswith('@') else parts[0]
            add(errors, {{'type': 'npm-missing', 'package': name, 'message': line.strip()}}, 20)
        continue
    build = re.search(r"(?:Error|error): (.+)", line)
    if build:
        add(errors, {{'type': 'build', 'message': build.group(1).strip()}}, 3)
        continue
    warning = re.search(r"(?:Warning|warning): (.+)", line)
    if warning:
        add(warnings, {{'type': 'warning', 'message': warning.group(1).strip()}}, 3)

if os.path.exists(os.path.join(root, 'package.json')) and not os.path.isdir(os.path.join(root, 'node_modules')):
    errors.append({{'type': 'dependency', 'message': 'node_modules directory not found - run npm install'}})

print('LOGS_JSON:' + json.dumps({{
    'status': 'running' if running else 'stopped',
    'lines': lines[-{tail!r}:],
    'errors': errors,
    'warnings': warnings,
}}))
"""

SCAFFOLD_FILES: Dict[str, str] = {
    "package.json": json.dumps({
        "name": "sandbox-app",
        "version": "1.0.0",
        "type": "module",
        "scripts": {"dev": "vite --host", "build": "vite build", "preview": "vite preview"},
        "dependencies": {"react": "^18.2.0", "react-dom": "^18.2.0"},
        "devDependencies": {
            "@vitejs/plugin-react": "^4.0.0",
            "vite": "^4.3.9",
            "tailwindcss": "^3.3.0",
            "postcss": "^8.4.31",
            "autoprefixer": "^10.4.16",
        },
    }, indent=2),
    "vite.config.js": """import { defineConfig } from 'vite'
import react from '@vitejs/plugin-react'

export default defineConfig({
  plugins: [react()],
  server: {
    host: '0.0.0.0',
    port: 5173,
    strictPort: true,
    hmr: false,
    allowedHosts: ['.e2b.app', 'localhost', '127.0.0.1']
  }
})
""",
    "tailwind.config.js": """/** @type {import('tailwindcss').Config} */
export default {
  content: ["./index.html", "./src/**/*.{js,ts,jsx,tsx}"],
  theme: { extend: {} },
  plugins: [],
}
""",
    "postcss.config.js": """export default {
  plugins: {
    tailwindcss: {},
    autoprefixer: {},
  },
}
""",
    "index.html": """<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>Sandbox App</title>
  </head>
  <body>
    <div id="root"></div>
    <script type="module" src="/src/main.jsx"></script>
  </body>
</html>
""",
    "src/main.jsx": """import React from 'react'
import ReactDOM from 'react-dom/client'
import App from './App.jsx'
import './index.css'

ReactDOM.createRoot(document.getElementById('root')).render(
  <React.StrictMode>
    <App />
  </React.StrictMode>,
)
""",
    "src/App.jsx": """function App() {
  return (
    <div className="min-h-screen bg-gray-900 text-white flex items-center justify-center p-4">
      <h1 className="text-4xl font-bold text-blue-400">Sandbox Ready</h1>
    </div>
  )
}

export default App
""",
    "src/index.css": "@tailwind base;\n@tailwind components;\n@tailwind utilities;\n",
}


RestoreCallback = Callable[["SandboxSession"], Awaitable[Any]]


def _now_ms(clock: Callable[[], float]) -> int:
    return int(clock() * 1000)


class SandboxSession:
    """One remote sandbox and its lifecycle state."""

    def __init__(
        self,
        *,
        sandbox_cls: Any = AsyncSandbox,
        api_key: Optional[str] = None,
        timeout_minutes: Optional[int] = None,
        health_check_interval: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._sandbox_cls = sandbox_cls
        self._api_key = api_key or appConfig.e2b.apiKey
        self._timeout_minutes = timeout_minutes or appConfig.e2b.timeoutMinutes
        self._interval = (
            health_check_interval
            if health_check_interval is not None
            else appConfig.sandbox.healthCheckIntervalSeconds
        )
        self._clock = clock
        self._sleep = sleep
        self._root = appConfig.sandbox.appRoot

        self._sandbox: Any = None
        self._health_task: Optional[asyncio.Task] = None
        self._restore: Optional[RestoreCallback] = None
        self._restart_lock = asyncio.Lock()
        self._last_restart = 0.0

        self.status = SandboxStatus.ABSENT
        self.id: Optional[str] = None
        self.host: Optional[str] = None
        self.preview_url: Optional[str] = None
        self.created_at: Optional[int] = None
        self.updated_at: Optional[int] = None
        self.lease_end: Optional[int] = None
        self.last_error: Optional[str] = None
        self.consecutive_errors = 0

    # ---- state ----
    def _transition(self, target: SandboxStatus) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise SandboxUnavailable(
                self.status.value,
                f"Cannot move sandbox from {self.status.value} to {target.value}",
            )
        if target != self.status:
            logger.info("[sandbox] %s: %s -> %s", self.id or "-", self.status.value, target.value)
        self.status = target
        self.updated_at = _now_ms(self._clock)

    def _fail(self, message: str) -> None:
        self.last_error = message
        self._transition(SandboxStatus.ERROR)

    def _require_running(self) -> None:
        if self.status != SandboxStatus.RUNNING or self._sandbox is None:
            raise SandboxUnavailable(self.status.value)

    @property
    def is_running(self) -> bool:
        return self.status == SandboxStatus.RUNNING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sandboxId": self.id,
            "status": self.status.value,
            "previewUrl": self.preview_url,
            "host": self.host,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "leaseEnd": self.lease_end,
            "lastError": self.last_error,
        }

    def remaining_minutes(self) -> int:
        if not self.lease_end:
            return 0
        return max(0, (self.lease_end - _now_ms(self._clock)) // 60000)

    def _attach(self, sandbox: Any, lease_end: Optional[int] = None) -> None:
        now = _now_ms(self._clock)
        self._sandbox = sandbox
        self.id = getattr(sandbox, "sandbox_id", None) or getattr(sandbox, "id", None) or str(now)
        self.host = sandbox.get_host(appConfig.e2b.vitePort)
        self.preview_url = f"https://{self.host}"
        self.created_at = self.created_at or now
        self.lease_end = lease_end or now + self._timeout_minutes * 60 * 1000
        self.last_error = None
        self.consecutive_errors = 0

    # ---- lifecycle ----
    async def create(self) -> "SandboxSession":
        """Provision a fresh sandbox. Allowed from Absent and Error."""
        self._transition(SandboxStatus.CREATING)
        await self._discard_remote()
        self.created_at = None
        try:
            sandbox = await self._sandbox_cls.create(
                api_key=self._api_key,
                timeout=self._timeout_minutes * 60,
            )
        except Exception as exc:
            logger.error("[sandbox] Creation failed: %s", exc)
            self._fail(f"Failed to create sandbox: {exc}")
            return self
        self._attach(sandbox)
        self._transition(SandboxStatus.RUNNING)
        logger.info("[sandbox] Sandbox %s ready at %s", self.id, self.preview_url)
        return self

    async def connect(self, sandbox_id: str, lease_end: Optional[int] = None) -> "SandboxSession":
        """Reattach to a sandbox created by an earlier request or process."""
        if self.status not in (SandboxStatus.ABSENT, SandboxStatus.ERROR):
            raise SandboxUnavailable(self.status.value, f"Cannot connect while {self.status.value}")
        try:
            sandbox = await self._sandbox_cls.connect(sandbox_id, api_key=self._api_key)
        except Exception as exc:
            logger.warning("[sandbox] Reconnect to %s failed: %s", sandbox_id, exc)
            self.last_error = str(exc)
            raise ReconnectFailure(sandbox_id, exc) from exc
        self._attach(sandbox, lease_end=lease_end)
        self._transition(SandboxStatus.RUNNING)
        logger.info("[sandbox] Reconnected to %s", self.id)
        return self

    async def _discard_remote(self) -> None:
        sandbox, self._sandbox = self._sandbox, None
        if sandbox is None:
            return
        try:
            await sandbox.kill()
        except Exception as exc:
            logger.warning("[sandbox] Could not kill previous sandbox %s: %s", self.id, exc)

    async def stop(self) -> None:
        """Release the remote lease but keep the record (Running -> Stopped)."""
        self._transition(SandboxStatus.STOPPED)
        self.stop_health_checks()
        await self._discard_remote()

    async def destroy(self) -> None:
        if self.status == SandboxStatus.DESTROYED:
            return
        if self.status in (SandboxStatus.ABSENT, SandboxStatus.CREATING):
            self.status = SandboxStatus.DESTROYED
            self.updated_at = _now_ms(self._clock)
        else:
            self._transition(SandboxStatus.DESTROYED)
        self.stop_health_checks()
        self._restore = None
        await self._discard_remote()
        logger.info("[sandbox] Session %s destroyed", self.id or "-")

    # ---- health ----
    def set_restore_callback(self, callback: Optional[RestoreCallback]) -> None:
        """Project context used to resync files after an automatic recreate."""
        self._restore = callback

    async def remote_status(self) -> str:
        if self._sandbox is None:
            return REMOTE_NO_SANDBOX
        if self.lease_end and _now_ms(self._clock) >= self.lease_end:
            return REMOTE_EXPIRED
        try:
            alive = await self._sandbox.is_running()
        except Exception as exc:
            logger.warning("[sandbox] Health check for %s failed: %s", self.id, exc)
            return REMOTE_UNHEALTHY
        return REMOTE_ACTIVE if alive else REMOTE_EXPIRED

    async def health_check(self) -> str:
        if self.status == SandboxStatus.DESTROYED:
            raise SandboxUnavailable(self.status.value, "Destroyed sessions are not health checked")
        if self.status != SandboxStatus.RUNNING:
            return self.status.value

        remote = await self.remote_status()
        if remote == REMOTE_ACTIVE:
            self.consecutive_errors = 0
            self._transition(SandboxStatus.RUNNING)
            return remote

        self.consecutive_errors += 1
        self._fail(f"Sandbox {remote}")
        if self._restore is not None:
            await self._auto_restore(remote)
        return remote

    async def _auto_restore(self, reason: str) -> None:
        logger.info("[sandbox] Sandbox %s is %s, recreating and restoring files", self.id, reason)
        await self.create()
        if self.status != SandboxStatus.RUNNING or self._restore is None:
            return
        try:
            await self._restore(self)
        except Exception as exc:
            logger.error("[sandbox] Restoring files into %s failed: %s", self.id, exc)

    async def _health_loop(self) -> None:
        while self.status != SandboxStatus.DESTROYED:
            await self._sleep(self._interval)
            if self.status != SandboxStatus.RUNNING:
                continue
            try:
                await self.health_check()
            except SandboxUnavailable:
                break
            except Exception as exc:
                self.consecutive_errors += 1
                logger.error("[sandbox] Health check error (%d in a row): %s", self.consecutive_errors, exc)

    def start_health_checks(self) -> None:
        if self._health_task is not None and not self._health_task.done():
            return
        self._health_task = asyncio.get_running_loop().create_task(self._health_loop())

    @property
    def health_checks_active(self) -> bool:
        return self._health_task is not None and not self._health_task.done()

    def stop_health_checks(self) -> None:
        task, self._health_task = self._health_task, None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    # ---- remote operations ----
    async def run_script(self, code: str, timeout: Optional[float] = None) -> ScriptOutput:
        self._require_running()
        result = await _execution_graph().ainvoke({"sandbox": self._sandbox, "code": code, "timeout": timeout})
        output = _extract_output(result.get("execution"))
        if output.error:
            logger.warning("[sandbox] Script error in %s: %s", self.id, output.error)
        return output

    async def write_files(self, files: Dict[str, str]) -> Dict[str, Dict[str, Any]]:
        """Write files relative to the app root.

        Returns one entry per path: ``{"ok": bool, "existed": bool, "error": str}``.
        """
        self._require_running()
        payload = {safe_relative_path(path): content for path, content in files.items()}
        output = await self.run_script(_WRITE_SCRIPT.format(root=self._root, payload=json.dumps(payload)))
        results = _marker_json(output.stdout, "WRITE_RESULT:")
        if results is None:
            message = output.error or output.stderr.strip() or "no write result reported"
            return {path: {"ok": False, "error": message} for path in payload}
        return results

    async def read_manifest(self) -> PackageManifestSnapshot:
        self._require_running()
        output = await self.run_script(_MANIFEST_SCRIPT.format(root=self._root))
        raw = _between(output.stdout, "PACKAGE_JSON_START", "PACKAGE_JSON_END")
        if not raw:
            return PackageManifestSnapshot()
        return PackageManifestSnapshot.model_validate(json.loads(raw))

    async def run_command(self, argv: List[str], timeout_seconds: float) -> CommandResult:
        self._require_running()
        code = _COMMAND_SCRIPT.format(argv=json.dumps(list(argv)), root=self._root, timeout=timeout_seconds)
        output = await self.run_script(code, timeout=timeout_seconds + 30)
        data = _marker_json(output.stdout, "COMMAND_RESULT:")
        if data is None:
            return CommandResult(stderr=output.error or output.stderr, exitCode=None)
        return CommandResult.model_validate(data)

    async def list_files(self) -> Dict[str, str]:
        self._require_running()
        code = _LIST_FILES_SCRIPT.format(
            root=self._root,
            ignored_dirs=list(appConfig.projectStore.ignoredDirs),
            ignored_files=list(appConfig.projectStore.ignoredFiles),
        )
        output = await self.run_script(code, timeout=120)
        raw = _between(output.stdout, "FILES_JSON_START", "FILES_JSON_END")
        if raw is None:
            return {}
        files = json.loads(raw)
        prefix = self._root.rstrip("/") + "/"
        return {path[len(prefix):] if path.startswith(prefix) else path: content for path, content in files.items()}

    async def get_logs(self) -> DevServerLogs:
        """Tail of the dev server output plus the errors and warnings found in it."""
        self._require_running()
        code = _LOGS_SCRIPT.format(
            root=self._root,
            log_path=appConfig.sandbox.devServerLog,
            pid_path=appConfig.sandbox.devServerPidFile,
            tail=appConfig.sandbox.logTailLines,
        )
        output = await self.run_script(code, timeout=30)
        data = _marker_json(output.stdout, "LOGS_JSON:")
        if data is None:
            return DevServerLogs(status="error", lines=[output.error or output.stderr.strip() or output.stdout])
        return DevServerLogs.model_validate(data)

    async def restart(self, force: bool = False) -> Dict[str, Any]:
        """Relaunch the dev server inside the same sandbox."""
        self._require_running()
        if self._restart_lock.locked():
            return {"success": True, "skipped": True, "message": "Restart already in progress"}
        elapsed = self._clock() - self._last_restart
        if not force and elapsed < appConfig.sandbox.restartCooldownSeconds:
            return {"success": True, "skipped": True, "message": "Restart requested too soon, skipped"}

        async with self._restart_lock:
            self._last_restart = self._clock()
            output = await self.run_script(_RESTART_SCRIPT.format(
                root=self._root,
                log_path=appConfig.sandbox.devServerLog,
                pid_path=appConfig.sandbox.devServerPidFile,
            ))
            if "DEV_SERVER_PID:" not in output.stdout:
                return {"success": False, "error": output.error or "Dev server did not start"}
            await self._sleep(appConfig.sandbox.restartSettleSeconds)
            if not self.is_running:
                # stopped or destroyed while the dev server was settling
                logger.info("[sandbox] %s left Running during restart (%s)", self.id, self.status.value)
                return {"success": False, "error": f"Sandbox is {self.status.value}", "status": self.status.value}
            self._transition(SandboxStatus.RUNNING)
            logger.info("[sandbox] Dev server restarted in %s", self.id)
            return {"success": True, "message": "Dev server restarted"}

    async def scaffold(self) -> Dict[str, Any]:
        """Lay down the default Vite + React + Tailwind app and start it."""
        results = await self.write_files(SCAFFOLD_FILES)
        failed = [path for path, res in results.items() if not res.get("ok")]
        if failed:
            return {"success": False, "error": f"Failed to write scaffold files: {', '.join(failed)}"}
        install = await self.run_command(["npm", "install"], appConfig.packages.installTimeoutSeconds)
        if not install.ok:
            logger.warning("[sandbox] npm install during scaffold had issues: %s", install.stderr[-500:])
        restarted = await self.restart(force=True)
        return {"success": bool(restarted.get("success")), "files": sorted(SCAFFOLD_FILES)}
