# package_resolver.py - detect, dedupe and install missing npm packages
"""
Works out which packages a set of files needs, checks them against the
sandbox's package.json and installs whatever is missing.

Stage progress goes out as ``package-progress`` events
(detecting -> installing -> restarting) followed by ``package-success``.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from config.app_config import appConfig
from routes.errors import MalformedPackageName, PackageInstallFailure
from routes.package_names import (
    dedupe,
    normalize_specifier,
    packages_from_files,
    script_specifiers,
    strip_version,
)
from routes.progress import ProgressChannel, emit, start_background
from routes.sandbox_session import PackageManifestSnapshot, SandboxSession

logger = logging.getLogger(__name__)

UNSAFE_CHARS_RE = re.compile(r"[^a-zA-Z0-9@\-_./ ]")

_INSTALL_SCRIPT = """
import json, subprocess
names = json.loads({names!r})
flags = json.loads({flags!r})
print('Installing packages: ' + ' '.join(names))
try:
    result = subprocess.run(['npm', 'install'] + flags + names, cwd={root!r},
                            capture_output=True, text=True, timeout={timeout!r})
    print(result.stdout)
    if result.returncode == 0:
        print({sentinel!r})
    else:
        print('npm install failed with code ' + str(result.returncode))
        print(result.stderr)
except subprocess.TimeoutExpired:
    print('npm install timed out')
"""

ManifestPush = Callable[[Dict[str, str]], Awaitable[Any]]


class PackageResolution(BaseModel):
    detected: List[str] = Field(default_factory=list)
    installed: List[str] = Field(default_factory=list)
    alreadyInstalled: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    output: str = ""

    @property
    def success(self) -> bool:
        return not self.failed


def sanitize_package_names(names: Iterable[str]) -> List[str]:
    """Return the names unchanged, or raise if any needed cleaning."""
    names = list(names)
    bad = [name for name in names if UNSAFE_CHARS_RE.sub("", name) != name]
    if bad:
        logger.error("[package-resolver] Rejected install batch, unsafe names: %s", bad)
        raise MalformedPackageName(bad, batch=names)
    return names


def partition_installed(packages: List[str], manifest: PackageManifestSnapshot):
    installed_names = manifest.installed_names()
    already, missing = [], []
    for pkg in packages:
        (already if strip_version(pkg) in installed_names else missing).append(pkg)
    return already, missing


class PackageResolver:
    def __init__(self, on_installed: Optional[ManifestPush] = None) -> None:
        self._on_installed = on_installed

    def collect(self, files: Dict[str, str], explicit_packages: Iterable[str] = ()) -> List[str]:
        """Package names to check, or MalformedPackageName if any raw request is unsafe.

        Raw names are checked before normalization, so ``lodash/get;rm -rf ~``
        rejects the batch instead of becoming ``lodash``.
        """
        requested = [p for p in explicit_packages if p]
        raw = requested + [spec for spec in script_specifiers(files) if normalize_specifier(spec)]
        sanitize_package_names(raw)
        detected = packages_from_files(files)
        explicit = [normalize_specifier(p) for p in requested]
        return dedupe(detected + explicit)

    async def resolve(
        self,
        session: SandboxSession,
        files: Dict[str, str],
        explicit_packages: Iterable[str] = (),
        channel: Optional[ProgressChannel] = None,
    ) -> PackageResolution:
        resolution = PackageResolution()

        await emit(channel, "package-progress", stage="detecting", message="Detecting required packages...")
        packages = self.collect(files, explicit_packages)
        resolution.detected = packages
        logger.info("[package-resolver] Packages referenced: %s", packages)

        if not packages:
            await emit(channel, "package-success", installed=[], alreadyInstalled=[], message="No packages needed")
            return resolution

        manifest = await session.read_manifest()
        already, missing = partition_installed(packages, manifest)
        resolution.alreadyInstalled = already

        if not missing:
            await emit(channel, "package-success", installed=[], alreadyInstalled=already,
                       message="All packages already installed")
            return resolution

        # Raises before anything reaches the sandbox
        sanitize_package_names(missing)

        await emit(channel, "package-progress", stage="installing", packages=missing,
                   message=f"Installing {len(missing)} package(s): {', '.join(missing)}")
        try:
            output = await self._install(session, missing)
        except PackageInstallFailure as exc:
            resolution.failed = missing
            resolution.output = exc.output
            await emit(channel, "package-progress", stage="failed", packages=missing, message=str(exc))
            return resolution

        resolution.installed = missing
        resolution.output = output

        await emit(channel, "package-progress", stage="restarting", message="Restarting dev server...")
        resolution.warnings.extend(await self._after_install(session))
        for warning in resolution.warnings:
            await emit(channel, "warning", message=warning)

        await emit(channel, "package-success", installed=missing, alreadyInstalled=already,
                   message=f"Successfully installed: {', '.join(missing)}")
        return resolution

    async def _install(self, session: SandboxSession, names: List[str]) -> str:
        code = _INSTALL_SCRIPT.format(
            names=json.dumps(names),
            flags=json.dumps(appConfig.packages.installFlags),
            root=appConfig.sandbox.appRoot,
            timeout=appConfig.packages.installTimeoutSeconds,
            sentinel=appConfig.packages.successSentinel,
        )
        output = await session.run_script(code, timeout=appConfig.packages.installTimeoutSeconds + 30)
        text = output.stdout
        if appConfig.packages.successSentinel not in text:
            logger.warning("[package-resolver] Install failed for %s", names)
            raise PackageInstallFailure(names, text + output.stderr)
        logger.info("[package-resolver] Installed %s", names)
        return text

    async def _after_install(self, session: SandboxSession) -> List[str]:
        """Manifest push and dev server restart. Each may fail on its own."""
        warnings: List[str] = []
        if self._on_installed is not None:
            try:
                manifest = await session.read_manifest()
                await self._on_installed({**manifest.devDependencies, **manifest.dependencies})
            except Exception as exc:
                logger.warning("[package-resolver] Could not save dependencies: %s", exc)
                warnings.append(f"Packages installed but dependencies were not saved: {exc}")
        try:
            restarted = await session.restart()
            if not restarted.get("success"):
                warnings.append(f"Dev server restart failed: {restarted.get('error')}")
        except Exception as exc:
            logger.warning("[package-resolver] Restart after install failed: %s", exc)
            warnings.append(f"Dev server restart failed: {exc}")
        return warnings


async def POST(body: Dict[str, Any], session: SandboxSession, resolver: Optional[PackageResolver] = None):
    """Detect-and-install handler; streams progress as NDJSON."""
    files = body.get("files") or {}
    packages = body.get("packages") or []
    if not isinstance(files, dict) or not isinstance(packages, list):
        return JSONResponse({"success": False, "error": "files must be an object and packages a list"}, status_code=400)

    resolver = resolver or PackageResolver()
    channel = ProgressChannel()

    async def _worker() -> None:
        try:
            resolution = await resolver.resolve(session, files, packages, channel)
            await channel.send(
                "complete",
                success=resolution.success,
                packagesInstalled=resolution.installed,
                packagesAlreadyInstalled=resolution.alreadyInstalled,
                packagesFailed=resolution.failed,
                warnings=resolution.warnings,
            )
        except MalformedPackageName as exc:
            await channel.send("error", error=str(exc), packages=exc.names)
        except Exception as exc:
            logger.exception("[package-resolver] Unexpected failure")
            await channel.send("error", error=str(exc))
        finally:
            await channel.close()

    start_background(_worker())
    return StreamingResponse(channel, media_type=channel.media_type, headers=channel.headers)
