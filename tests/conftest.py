"""
Shared fixtures for the backend test suite.

- ``FakeSession`` stands in for a running SandboxSession (duck typed)
- ``RemoteSandboxApi`` stands in for the E2B SDK and actually runs the
  sandbox-side scripts against a temporary directory
- ``InMemoryProjectStore`` serves the project storage API through
  ``httpx.MockTransport``
"""

import ast
import contextlib
import io
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest

_project_root = Path(__file__).parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

from config.app_config import appConfig  # noqa: E402
from routes import database  # noqa: E402
from routes.errors import ReconnectFailure  # noqa: E402
from routes.project_store import ProjectStoreClient  # noqa: E402
from routes.sandbox_session import (  # noqa: E402
    CommandResult,
    PackageManifestSnapshot,
    SandboxStatus,
    ScriptOutput,
)


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture(autouse=True)
def isolated_database(tmp_path):
    database.set_database_path(tmp_path / "state.db")
    yield
    database.close_connection()


# ---------------------------------------------------------------------------
# Sandbox doubles
# ---------------------------------------------------------------------------

class FakeSession:
    """In-memory sandbox session with the same surface the pipeline uses."""

    def __init__(self, files: Optional[Dict[str, str]] = None, dependencies: Optional[Dict[str, str]] = None,
                 running: bool = True, sandbox_id: str = "sbx-test"):
        self.status = SandboxStatus.RUNNING if running else SandboxStatus.ABSENT
        self.id = sandbox_id if running else None
        self.preview_url = f"https://5173-{sandbox_id}.e2b.app" if running else None
        self.lease_end: Optional[int] = None
        self.files: Dict[str, str] = dict(files or {})
        self.manifest = PackageManifestSnapshot(dependencies=dict(dependencies or {}))
        self.reconnectable: set = set()
        self.install_succeeds = True
        self.failing_writes: set = set()
        self.command_results: Dict[str, CommandResult] = {}
        self.scripts: List[str] = []
        self.installs: List[List[str]] = []
        self.commands: List[str] = []
        self.write_calls: List[Dict[str, str]] = []
        self.restarts: List[bool] = []

    @property
    def is_running(self) -> bool:
        return self.status == SandboxStatus.RUNNING

    async def connect(self, sandbox_id: str, lease_end: Optional[int] = None):
        if sandbox_id not in self.reconnectable:
            raise ReconnectFailure(sandbox_id, RuntimeError("sandbox not found"))
        self.id = sandbox_id
        self.status = SandboxStatus.RUNNING
        return self

    async def write_files(self, files: Dict[str, str]) -> Dict[str, Dict[str, Any]]:
        self.write_calls.append(dict(files))
        results = {}
        for path, content in files.items():
            if path in self.failing_writes:
                results[path] = {"ok": False, "error": "disk full"}
                continue
            results[path] = {"ok": True, "existed": path in self.files}
            self.files[path] = content
        return results

    async def read_manifest(self) -> PackageManifestSnapshot:
        return self.manifest

    async def run_script(self, code: str, timeout: Optional[float] = None) -> ScriptOutput:
        self.scripts.append(code)
        if "npm" in code and "names = json.loads" in code:
            names = json.loads(ast.literal_eval(code.split("names = json.loads(", 1)[1].split(")\n", 1)[0]))
            self.installs.append(names)
            if not self.install_succeeds:
                return ScriptOutput(stdout="npm install failed with code 1\nERR! 404")
            for name in names:
                self.manifest.dependencies[name] = "^1.0.0"
            return ScriptOutput(stdout=f"added {len(names)} packages\n{appConfig.packages.successSentinel}\n")
        return ScriptOutput()

    async def run_command(self, argv: List[str], timeout_seconds: float) -> CommandResult:
        command = " ".join(argv)
        self.commands.append(command)
        return self.command_results.get(command, CommandResult(stdout="ok", exitCode=0))

    async def restart(self, force: bool = False) -> Dict[str, Any]:
        self.restarts.append(force)
        return {"success": True, "message": "Dev server restarted"}

    async def list_files(self) -> Dict[str, str]:
        return dict(self.files)


@pytest.fixture
def fake_session():
    return FakeSession()


class RemoteSandbox:
    """Looks like an e2b AsyncSandbox; runs scripts locally under ``root``."""

    def __init__(self, sandbox_id: str, root: Path):
        self.sandbox_id = sandbox_id
        self.root = root
        self.alive = True
        self.killed = False
        self.codes: List[str] = []

    def get_host(self, port: int) -> str:
        return f"{port}-{self.sandbox_id}.e2b.app"

    async def is_running(self) -> bool:
        return self.alive

    async def kill(self) -> None:
        self.killed = True
        self.alive = False

    async def run_code(self, code: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        self.codes.append(code)
        if "DEV_SERVER_PID" in code:
            return {"logs": {"stdout": ["DEV_SERVER_PID:4242\n"], "stderr": []}, "error": None}
        local = code.replace(repr(appConfig.sandbox.appRoot), repr(str(self.root)))
        buffer = io.StringIO()
        with contextlib.redirect_stdout(buffer):
            exec(local, {})
        return {"logs": {"stdout": [buffer.getvalue()], "stderr": []}, "error": None}


class RemoteSandboxApi:
    """Stand-in for the ``AsyncSandbox`` class (create / connect)."""

    def __init__(self, root: Path):
        self.root = root
        self.sandboxes: Dict[str, RemoteSandbox] = {}
        self.fail_create = False
        self.create_calls: List[Dict[str, Any]] = []

    async def create(self, api_key=None, timeout=None) -> RemoteSandbox:
        self.create_calls.append({"api_key": api_key, "timeout": timeout})
        if self.fail_create:
            raise RuntimeError("quota exceeded")
        sandbox_id = f"sbx-{len(self.create_calls)}"
        root = self.root / sandbox_id
        root.mkdir(parents=True, exist_ok=True)
        sandbox = RemoteSandbox(sandbox_id, root)
        self.sandboxes[sandbox_id] = sandbox
        return sandbox

    async def connect(self, sandbox_id: str, api_key=None) -> RemoteSandbox:
        sandbox = self.sandboxes.get(sandbox_id)
        if sandbox is None or not sandbox.alive:
            raise RuntimeError(f"Sandbox {sandbox_id} not found")
        return sandbox


@pytest.fixture
def remote_api(tmp_path):
    return RemoteSandboxApi(tmp_path / "remote")


# ---------------------------------------------------------------------------
# Project storage double
# ---------------------------------------------------------------------------

class InMemoryProjectStore:
    """Serves the storage API; every response is wrapped as ``{success, data}``."""

    def __init__(self):
        self.projects: Dict[str, Dict[str, Any]] = {}
        self.versions: Dict[str, List[Dict[str, Any]]] = {}
        self.requests: List[tuple] = []
        self.fail_version_posts = False

    def add_project(self, project_id: str, files: Optional[Dict[str, str]] = None, version: int = 0,
                    **fields) -> Dict[str, Any]:
        project = {"id": project_id, "files": dict(files or {}), "dependencies": {}, "version": version, **fields}
        self.projects[project_id] = project
        self.versions.setdefault(project_id, [])
        return project

    def add_version(self, project_id: str, version: int, files: Dict[str, str], message: str = "") -> str:
        entries = self.versions.setdefault(project_id, [])
        version_id = f"ver-{len(entries) + 1}"
        entries.append({"id": version_id, "version": version, "files": dict(files), "dependencies": {},
                        "message": message, "changeType": "manual"})
        return version_id

    def writes(self, method: Optional[str] = None) -> List[tuple]:
        return [r for r in self.requests if r[0] != "GET" and (method is None or r[0] == method)]

    @staticmethod
    def _ok(data: Any) -> httpx.Response:
        return httpx.Response(200, json={"success": True, "data": data})

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        parts = request.url.path.strip("/").split("/")
        self.requests.append((request.method, request.url.path, body))
        if len(parts) < 2 or parts[0] != "projects":
            return httpx.Response(404, json={"success": False, "error": "not found"})

        project = self.projects.get(parts[1])
        if project is None:
            return httpx.Response(404, json={"success": False, "error": "project not found"})

        if len(parts) == 2:
            if request.method == "PATCH":
                project.update(body)
            return self._ok({"project": project})

        if parts[2] == "files":
            if request.method == "PUT":
                project["files"] = dict(body["files"])
                project["dependencies"] = dict(body.get("dependencies") or {})
            else:
                project["files"].update(body["files"])
            project["version"] = body["version"]
            project["lastSavedAt"] = body["lastSavedAt"]
            return self._ok({"project": project})

        entries = self.versions.setdefault(parts[1], [])
        if len(parts) == 3:
            if request.method == "POST":
                if self.fail_version_posts:
                    return httpx.Response(500, json={"success": False, "error": "snapshot store unavailable"})
                entry = {"id": f"ver-{len(entries) + 1}", **body}
                entries.append(entry)
                return self._ok({"version": entry})
            return self._ok({"versions": entries})
        for entry in entries:
            if entry["id"] == parts[3]:
                if request.method == "DELETE":
                    entries.remove(entry)
                    return self._ok({"deleted": entry["id"]})
                return self._ok({"version": entry})
        return httpx.Response(404, json={"success": False, "error": "version not found"})


@pytest.fixture
def store_server():
    return InMemoryProjectStore()


@pytest.fixture
async def store_client(store_server):
    client = httpx.AsyncClient(transport=httpx.MockTransport(store_server.handler), base_url="http://store.test")
    store = ProjectStoreClient(client=client)
    yield store
    await store.aclose()
