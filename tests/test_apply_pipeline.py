"""Tests for applying a parsed model response to a sandbox."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from routes import apply_ai_code_stream
from routes.apply_ai_code_stream import (
    ApplyPipeline,
    derive_project_id,
    normalize_file_path,
    strip_code_fences,
    strip_css_imports,
)
from routes.progress import ProgressChannel
from routes.sandbox_session import CommandResult
from tests.conftest import FakeSession, no_sleep

APP_JSX = "import axios from 'axios'\nexport default function App() { return <div>Hi</div> }"


def make_pipeline(**kwargs):
    kwargs.setdefault("sleep", no_sleep)
    return ApplyPipeline(**kwargs)


class TestScenarios:
    """End to end runs of the apply pipeline."""

    @pytest.mark.asyncio
    async def test_new_file_and_missing_package(self):
        session = FakeSession()
        channel = ProgressChannel()
        response = f'<file path="src/App.jsx">{APP_JSX}</file><package>axios</package>'

        outcome = await make_pipeline().apply(response, session=session, channel=channel)

        terminal = channel.history[-1]
        assert terminal["type"] == "complete"
        assert terminal["results"]["filesCreated"] == ["src/App.jsx"]
        assert terminal["results"]["packagesInstalled"] == ["axios"]
        assert outcome.success is True
        assert session.files["src/App.jsx"] == APP_JSX

    @pytest.mark.asyncio
    async def test_complete_longer_block_wins(self):
        session = FakeSession()
        short = "const a = 1; //"
        full = "export const answer = 42; // done here!!"
        assert len(short) == 15 and len(full) == 40
        response = f'<file path="src/a.js">{short}\n<file path="src/a.js">{full}</file>'

        await make_pipeline().apply(response, session=session)

        assert session.files["src/a.js"] == full

    @pytest.mark.asyncio
    async def test_failed_reconnect_aborts_before_writing(self):
        session = FakeSession(running=False)
        channel = ProgressChannel()

        outcome = await make_pipeline().apply(
            f'<file path="src/App.jsx">{APP_JSX}</file>',
            session=session,
            sandbox_id="sbx-expired",
            channel=channel,
        )

        assert outcome.success is False
        assert outcome.errorKind == "ReconnectFailure"
        assert "may have expired" in outcome.error
        assert session.write_calls == []
        assert [f.path for f in outcome.parsedFiles] == ["src/App.jsx"]
        assert channel.history[-1]["type"] == "error"
        assert channel.history[-1]["parsedFiles"][0]["path"] == "src/App.jsx"

    @pytest.mark.asyncio
    async def test_no_session_and_no_id_is_unavailable(self):
        outcome = await make_pipeline().apply("<file path=\"a.js\">x</file>", session=FakeSession(running=False))

        assert outcome.errorKind == "SandboxUnavailable"

    @pytest.mark.asyncio
    async def test_reconnects_when_id_is_live(self):
        session = FakeSession(running=False)
        session.reconnectable.add("sbx-live")

        outcome = await make_pipeline().apply('<file path="src/b.js">b</file>', session=session,
                                              sandbox_id="sbx-live")

        assert outcome.success is True
        assert outcome.results.filesCreated == ["src/b.js"]

    @pytest.mark.asyncio
    async def test_reconnected_session_is_handed_over(self):
        session = FakeSession(running=False)
        session.reconnectable.add("sbx-live")
        adopt = AsyncMock(return_value=True)

        await make_pipeline(on_connected=adopt).apply('<file path="src/b.js">b</file>', session=session,
                                                      sandbox_id="sbx-live", project_id="p1")

        adopt.assert_awaited_once_with("p1", session)

    @pytest.mark.asyncio
    async def test_running_session_is_not_handed_over(self):
        adopt = AsyncMock()

        await make_pipeline(on_connected=adopt).apply('<file path="src/b.js">b</file>', session=FakeSession())

        adopt.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_handover_failure_is_a_warning(self):
        session = FakeSession(running=False)
        session.reconnectable.add("sbx-live")
        adopt = AsyncMock(side_effect=RuntimeError("registry closed"))

        outcome = await make_pipeline(on_connected=adopt).apply('<file path="src/b.js">b</file>',
                                                                session=session, sandbox_id="sbx-live")

        assert outcome.success is True
        assert any("registry closed" in w for w in outcome.results.warnings)


class TestFiles:
    """Per-file handling."""

    @pytest.mark.asyncio
    async def test_known_paths_are_updates(self):
        session = FakeSession()
        known = {"src/App.jsx"}

        outcome = await make_pipeline().apply(
            '<file path="App.jsx">a</file><file path="src/New.jsx">b</file>',
            session=session,
            known_files=known,
        )

        assert outcome.results.filesUpdated == ["src/App.jsx"]
        assert outcome.results.filesCreated == ["src/New.jsx"]
        assert known == {"src/App.jsx", "src/New.jsx"}

    @pytest.mark.asyncio
    async def test_protected_config_files_are_skipped(self):
        session = FakeSession()

        outcome = await make_pipeline().apply(
            '<file path="vite.config.js">export default {}</file><file path="src/x.js">x</file>',
            session=session,
        )

        assert "vite.config.js" not in session.files
        assert outcome.results.filesCreated == ["src/x.js"]

    @pytest.mark.asyncio
    async def test_write_failure_is_collected(self):
        session = FakeSession()
        session.failing_writes.add("src/bad.js")
        channel = ProgressChannel()

        outcome = await make_pipeline().apply(
            '<file path="src/bad.js">x</file><file path="src/good.js">y</file>',
            session=session,
            channel=channel,
        )

        assert outcome.success is True
        assert outcome.results.filesCreated == ["src/good.js"]
        assert any("src/bad.js" in e and "disk full" in e for e in outcome.results.errors)
        assert [e["fileName"] for e in channel.history if e["type"] == "file-error"] == ["src/bad.js"]

    @pytest.mark.asyncio
    async def test_css_imports_and_fences_are_stripped(self):
        session = FakeSession()
        body = "```jsx\nimport './App.css'\nexport default 1\n```"

        await make_pipeline().apply(f'<file path="src/App.jsx">{body}</file>', session=session)

        assert session.files["src/App.jsx"] == "export default 1"

    @pytest.mark.asyncio
    async def test_truncated_file_gets_warning(self):
        session = FakeSession()

        outcome = await make_pipeline().apply('<file path="src/t.js">a\n// ... more</file>', session=session)

        assert outcome.results.warnings == ["src/t.js may be truncated"]


class TestCommandsAndPackages:
    @pytest.mark.asyncio
    async def test_failed_command_does_not_stop_the_rest(self):
        session = FakeSession()
        session.command_results["npm run lint"] = CommandResult(stderr="lint error", exitCode=1)
        channel = ProgressChannel()

        outcome = await make_pipeline().apply(
            "<command>npm run lint</command><command>npm test</command>", session=session, channel=channel
        )

        assert outcome.results.commandsExecuted == ["npm test"]
        assert any("npm run lint" in e and "exit code 1" in e for e in outcome.results.errors)
        types = [e["type"] for e in channel.history]
        assert types.index("command-error") < types.index("command-complete")

    @pytest.mark.asyncio
    async def test_malformed_package_fails_batch_but_files_still_written(self):
        session = FakeSession()

        outcome = await make_pipeline().apply(
            '<package>axios`whoami`</package><file path="src/ok.js">ok</file>', session=session
        )

        assert outcome.results.packagesFailed == ["axios`whoami`"]
        assert session.installs == []
        assert outcome.results.filesCreated == ["src/ok.js"]

    @pytest.mark.asyncio
    async def test_explicit_packages_merge_with_detected(self):
        session = FakeSession(dependencies={"axios": "^1"})

        outcome = await make_pipeline().apply(
            f'<file path="src/App.jsx">{APP_JSX}</file>', session=session, explicit_packages=["clsx"]
        )

        assert outcome.results.packagesInstalled == ["clsx"]
        assert outcome.results.packagesAlreadyInstalled == ["axios"]


class TestSideEffects:
    """Delayed save and edit history never fail the apply."""

    @pytest.mark.asyncio
    async def test_delayed_save_is_scheduled(self):
        session = FakeSession()
        save = AsyncMock()
        pipeline = make_pipeline(save=save, save_delay=0)

        await pipeline.apply('<file path="src/a.js">a</file>', session=session, project_id="proj-1")
        for task in list(pipeline.pending_saves):
            await task

        save.assert_awaited_once_with("proj-1", session)

    @pytest.mark.asyncio
    async def test_delayed_save_failure_is_swallowed_into_log(self):
        session = FakeSession()
        pipeline = make_pipeline(save=AsyncMock(side_effect=RuntimeError("store down")), save_delay=0)

        outcome = await pipeline.apply('<file path="src/a.js">a</file>', session=session, project_id="p")
        for task in list(pipeline.pending_saves):
            await task

        assert outcome.success is True

    @pytest.mark.asyncio
    async def test_record_edit_failure_becomes_warning(self):
        recorder = MagicMock(side_effect=RuntimeError("db locked"))

        outcome = await make_pipeline(record_edit=recorder).apply('<file path="src/a.js">a</file>',
                                                                 session=FakeSession())

        recorder.assert_called_once()
        assert any("db locked" in w for w in outcome.results.warnings)


class TestHelpers:
    def test_normalize_file_path(self):
        assert normalize_file_path("/components/Hero.jsx") == "src/components/Hero.jsx"
        assert normalize_file_path("src/App.jsx") == "src/App.jsx"
        assert normalize_file_path("public/logo.svg") == "public/logo.svg"
        assert normalize_file_path("index.html") == "index.html"

    def test_strip_code_fences(self):
        assert strip_code_fences("```tsx\nconst a = 1\n```") == "const a = 1"
        assert strip_code_fences("const a = 1") == "const a = 1"

    def test_strip_css_imports_keeps_other_imports(self):
        content = "import './index.css';\nimport React from 'react'\n"
        assert strip_css_imports(content) == "import React from 'react'\n"

    def test_derive_project_id(self):
        assert derive_project_id({"projectId": "abc"}) == "abc"
        assert derive_project_id({}, {"referer": "https://app.test/projects/xyz/edit"}) == "xyz"
        assert derive_project_id({}, {}) is None


class TestApplyHandler:
    @pytest.mark.asyncio
    async def test_streams_ndjson(self):
        response = await apply_ai_code_stream.POST(
            {"response": '<file path="src/a.js">a</file>'}, FakeSession(), make_pipeline()
        )

        frames = [json.loads(chunk) async for chunk in response.body_iterator]

        assert response.media_type == "application/x-ndjson"
        assert frames[0]["type"] == "start"
        assert frames[-1]["type"] == "complete"

    @pytest.mark.asyncio
    async def test_missing_response_is_rejected(self):
        response = await apply_ai_code_stream.POST({}, FakeSession(), make_pipeline())

        assert response.status_code == 400
