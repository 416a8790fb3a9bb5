"""HTTP-level tests for the FastAPI app."""

import io
import json
import zipfile

import httpx
import pytest
from fastapi.testclient import TestClient

import main
from routes.project_store import ProjectStoreClient
from routes.sandbox_session import SandboxSession
from tests.conftest import RemoteSandbox


@pytest.fixture
def client(store_server):
    store = ProjectStoreClient(client=httpx.AsyncClient(
        transport=httpx.MockTransport(store_server.handler), base_url="http://store.test"
    ))
    main.app.state.services = main.Services(store)
    with TestClient(main.app) as test_client:
        yield test_client
    del main.app.state.services


def ndjson(response):
    return [json.loads(line) for line in response.text.splitlines() if line.strip()]


class TestHealthAndStatus:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "sandbox": "Absent"}

    def test_status_without_sandbox(self, client):
        body = client.get("/api/sandbox/status").json()

        assert body["active"] is False
        assert body["sandboxData"] is None

    def test_kill_without_sandbox(self, client):
        assert client.post("/api/sandbox/kill").json()["message"] == "No active sandbox"


class TestSandboxRequired:
    """Endpoints that need an open project answer 409 without one."""

    def test_restart(self, client):
        response = client.post("/api/sandbox/restart")

        assert response.status_code == 409
        assert response.json()["success"] is False

    def test_detect_and_install(self, client):
        assert client.post("/api/detect-and-install-packages", json={"packages": ["clsx"]}).status_code == 409

    def test_save(self, client):
        assert client.post("/api/projects/p1/save").status_code == 409


class TestApplyAndParse:
    def test_apply_without_sandbox_streams_error(self, client):
        response = client.post("/api/apply-ai-code-stream", json={"response": '<file path="src/a.js">a</file>'})

        frames = ndjson(response)
        assert response.status_code == 200
        assert frames[0]["type"] == "start"
        assert frames[-1]["type"] == "error"
        assert frames[-1]["errorKind"] == "SandboxUnavailable"
        assert frames[-1]["parsedFiles"][0]["path"] == "src/a.js"

    def test_apply_requires_response(self, client):
        assert client.post("/api/apply-ai-code-stream", json={}).status_code == 400

    def test_parse_stream(self, client):
        body = 'Intro\n<file path="src/a.js">const a = 1</file>\nOutro'

        frames = ndjson(client.post("/api/parse-ai-stream", content=body.encode("utf-8")))

        types = [f["type"] for f in frames]
        assert types == ["text", "file-open", "file-chunk", "file-close", "text"]
        assert frames[3]["complete"] is True

    def test_malformed_json_is_400(self, client):
        response = client.post("/api/conversation-state", content=b"{not json")

        assert response.status_code == 400


class TestApplyReconnect:
    """An apply that reconnects by sandboxId leaves the session owned by the registry."""

    @pytest.fixture
    def live_services(self, store_server, remote_api):
        store = ProjectStoreClient(client=httpx.AsyncClient(
            transport=httpx.MockTransport(store_server.handler), base_url="http://store.test"
        ))

        def factory():
            return SandboxSession(sandbox_cls=remote_api, api_key="k", health_check_interval=3600)

        services = main.Services(store, session_factory=factory, save_delay=0)
        main.app.state.services = services
        store_server.add_project("p1", {"src/a.js": "old"}, version=1)
        root = remote_api.root / "sbx-live"
        root.mkdir(parents=True)
        remote_api.sandboxes["sbx-live"] = RemoteSandbox("sbx-live", root)
        yield services
        del main.app.state.services

    def test_reconnected_sandbox_is_adopted(self, live_services, remote_api):
        with TestClient(main.app) as client:
            first = ndjson(client.post("/api/apply-ai-code-stream", json={
                "response": '<file path="src/a.js">const a = 1</file>',
                "sandboxId": "sbx-live",
                "projectId": "p1",
            }))
            adopted = live_services.registry.session
            second = ndjson(client.post("/api/apply-ai-code-stream", json={
                "response": '<file path="src/b.js">const b = 2</file>',
                "projectId": "p1",
            }))
            health = client.get("/health").json()
            owner = live_services.registry.current.project_id

        assert first[-1]["type"] == "complete"
        assert second[-1]["type"] == "complete"
        assert adopted is not None and adopted.id == "sbx-live"
        assert owner == "p1"
        assert (remote_api.root / "sbx-live" / "src" / "b.js").read_text() == "const b = 2"
        assert health["sandbox"] == "Running"

    def test_saves_are_flushed_on_shutdown(self, live_services, store_server):
        with TestClient(main.app) as client:
            client.post("/api/apply-ai-code-stream", json={
                "response": '<file path="src/a.js">const a = 1</file>',
                "sandboxId": "sbx-live",
                "projectId": "p1",
            })

        assert store_server.projects["p1"]["files"]["src/a.js"] == "const a = 1"
        assert store_server.projects["p1"]["version"] >= 2


class TestProjects:
    def test_autosave_of_blank_files_is_skipped(self, client, store_server):
        store_server.add_project("p1", {"src/a.js": "a"}, version=2)

        body = client.post("/api/projects/p1/autosave", json={"files": {"src/a.js": "  "}}).json()

        assert body["skipped"] is True
        assert store_server.projects["p1"]["version"] == 2

    def test_versions_and_compare(self, client, store_server):
        store_server.add_project("p1")
        v1 = store_server.add_version("p1", 1, {"a.js": "1"})
        v2 = store_server.add_version("p1", 2, {"a.js": "2"})

        listed = client.get("/api/projects/p1/versions").json()
        compared = client.post("/api/projects/p1/versions/compare",
                               json={"fromVersionId": v1, "toVersionId": v2}).json()

        assert [v["version"] for v in listed["versions"]] == [2, 1]
        assert "files" not in listed["versions"][0]
        assert compared["stats"]["modified"] == 1

    def test_unknown_project_is_404(self, client):
        assert client.get("/api/projects/missing/versions").status_code == 404

    def test_compare_requires_ids(self, client):
        assert client.post("/api/projects/p1/versions/compare", json={}).status_code == 400

    def test_version_cleanup(self, client, store_server):
        store_server.add_project("p1")
        for version in (1, 2, 3):
            store_server.add_version("p1", version, {"a.js": str(version)})

        body = client.post("/api/projects/p1/versions/cleanup", json={"keepCount": 1}).json()

        assert body["data"] == {"deletedCount": 2, "keptCount": 1}
        assert [v["version"] for v in store_server.versions["p1"]] == [3]

    def test_download_zip(self, client, store_server):
        store_server.add_project("p1", {"src/App.jsx": "app"}, name="demo")

        response = client.get("/api/projects/p1/download")

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/zip"
        assert 'filename="demo-project.zip"' in response.headers["content-disposition"]
        with zipfile.ZipFile(io.BytesIO(response.content)) as archive:
            assert archive.read("src/App.jsx") == b"app"

    def test_download_as_data_url(self, client, store_server):
        store_server.add_project("p1", {"src/App.jsx": "app"})

        body = client.post("/api/projects/p1/download").json()

        assert body["dataUrl"].startswith("data:application/zip;base64,")
        assert body["fileName"] == "p1-project.zip"

    def test_download_of_empty_project_is_404(self, client, store_server):
        store_server.add_project("p1")

        assert client.get("/api/projects/p1/download").status_code == 404

    def test_logs_need_an_open_sandbox(self, client):
        assert client.get("/api/sandbox/logs").status_code == 409
        assert client.get("/api/projects/p1/logs").status_code == 409


class TestConversationStateEndpoint:
    def test_round_trip(self, client):
        assert client.get("/api/conversation-state").json()["state"] is None

        reset = client.post("/api/conversation-state", json={"action": "reset"}).json()
        cleared = client.delete("/api/conversation-state").json()

        assert reset["state"]["conversationId"].startswith("conv-")
        assert cleared["success"] is True

    def test_invalid_action_is_400(self, client):
        assert client.post("/api/conversation-state", json={"action": "nope"}).status_code == 400
