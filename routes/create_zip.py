# create_zip.py - project archive for download

import base64
import io
import posixpath
import re
import zipfile
from typing import Dict, Iterable

from config.app_config import appConfig


def _excluded(path: str, ignored_dirs: Iterable[str], ignored_files: Iterable[str]) -> bool:
    parts = path.split("/")
    if any(part in ignored_dirs for part in parts[:-1]):
        return True
    name = parts[-1]
    return name in ignored_files or name.endswith((".log", ".pyc"))


def build_zip(files: Dict[str, str]) -> bytes:
    """Deflate ``files`` into an in-memory zip, skipping build output and caches."""
    ignored_dirs = set(appConfig.projectStore.ignoredDirs)
    ignored_files = set(appConfig.projectStore.ignoredFiles)
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED, compresslevel=6) as zipf:
        for path in sorted(files):
            arc_name = posixpath.normpath(path.lstrip("/"))
            if arc_name.startswith("..") or _excluded(arc_name, ignored_dirs, ignored_files):
                continue
            zipf.writestr(arc_name, files[path])
    return buffer.getvalue()


def archive_name(project_name: str) -> str:
    sanitized = re.sub(r"[^a-zA-Z0-9]", "-", project_name or "project")
    return f"{sanitized}-project.zip"


def data_url(content: bytes) -> str:
    return "data:application/zip;base64," + base64.b64encode(content).decode("ascii")
