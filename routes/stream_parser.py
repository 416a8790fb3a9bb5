# stream_parser.py - tolerant parser for streamed model output
"""
Turns semi-structured model output into directives.

Two passes are offered:

* ``StreamParser.feed`` / ``parse_stream`` - an incremental pass that yields
  ``text``, ``file-open``, ``file-chunk`` and ``file-close`` events while the
  response is still arriving. Only used for live feedback.
* ``parse_ai_response`` - the authoritative pass over the complete text that
  produces a ``ParsedResponse``.

Neither pass raises on malformed input; the worst case is that a region is
reported as conversational text.
"""

from __future__ import annotations

import logging
import re
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field

from routes.package_names import dedupe, packages_from_files

logger = logging.getLogger(__name__)

TAG_NAMES = ("file", "package", "packages", "explanation", "command", "structure", "template")

FILE_OPEN_RE = re.compile(r'<file\s+path="([^"]+)"\s*>')
FILE_CLOSE = "</file>"
TAG_OPEN_RE = re.compile(r"<(" + "|".join(TAG_NAMES) + r")\b")
FENCED_FILE_RE = re.compile(r'```(?:[\w+-]+\s+)?(?:file\s+)?path="([^"]+)"[^\n]*\n([\s\S]*?)```')

PACKAGE_RE = re.compile(r"<package>([\s\S]*?)</package>")
PACKAGES_RE = re.compile(r"<packages>([\s\S]*?)</packages>")
COMMAND_RE = re.compile(r"<command>([\s\S]*?)</command>")
STRUCTURE_RE = re.compile(r"<structure>([\s\S]*?)</structure>")
EXPLANATION_RE = re.compile(r"<explanation>([\s\S]*?)</explanation>")
TEMPLATE_RE = re.compile(r"<template>([\s\S]*?)</template>")

# `...` that is not the start of a `...props` / `...rest` spread
TRUNCATION_RE = re.compile(r"\.\.\.(?!props\b|rest\b)")

# Longest partial tag we hold back at a chunk boundary
_MAX_PARTIAL_TAG = 64


class FileDirective(BaseModel):
    kind: Literal["file"] = "file"
    path: str
    content: str
    isComplete: bool = True
    suspectedTruncated: bool = False


class PackageDirective(BaseModel):
    kind: Literal["package"] = "package"
    name: str


class CommandDirective(BaseModel):
    kind: Literal["command"] = "command"
    cmd: str


class ExplanationDirective(BaseModel):
    kind: Literal["explanation"] = "explanation"
    text: str


class StructureDirective(BaseModel):
    kind: Literal["structure"] = "structure"
    text: str


Directive = Union[FileDirective, PackageDirective, CommandDirective, ExplanationDirective, StructureDirective]


class ParsedResponse(BaseModel):
    files: List[FileDirective] = Field(default_factory=list)
    packages: List[str] = Field(default_factory=list)
    commands: List[str] = Field(default_factory=list)
    structure: Optional[str] = None
    explanation: str = ""
    template: str = ""

    def file_map(self) -> Dict[str, str]:
        return {f.path: f.content for f in self.files}

    def directives(self) -> List[Directive]:
        """All directives, grouped by kind: files, packages, commands, structure, explanation."""
        items: List[Directive] = list(self.files)
        items.extend(PackageDirective(name=name) for name in self.packages)
        items.extend(CommandDirective(cmd=cmd) for cmd in self.commands)
        if self.structure:
            items.append(StructureDirective(text=self.structure))
        if self.explanation:
            items.append(ExplanationDirective(text=self.explanation))
        return items


def looks_truncated(content: str) -> bool:
    return bool(TRUNCATION_RE.search(content))


def _should_replace(existing: Optional[FileDirective], candidate: FileDirective) -> bool:
    if existing is None:
        return True
    if candidate.suspectedTruncated:
        return False
    if existing.isComplete != candidate.isComplete:
        return candidate.isComplete
    return len(candidate.content) > len(existing.content)


def _file_candidates(response: str) -> List[Tuple[int, FileDirective]]:
    """Every file block in the text with its offset, complete or not."""
    candidates: List[Tuple[int, FileDirective]] = []

    opens = list(FILE_OPEN_RE.finditer(response))
    for i, match in enumerate(opens):
        region_end = opens[i + 1].start() if i + 1 < len(opens) else len(response)
        region = response[match.end():region_end]
        close = region.find(FILE_CLOSE)
        complete = close != -1
        content = (region[:close] if complete else region).strip()
        candidates.append((match.start(), FileDirective(
            path=match.group(1).strip(),
            content=content,
            isComplete=complete,
            suspectedTruncated=looks_truncated(content),
        )))

    for match in FENCED_FILE_RE.finditer(response):
        content = match.group(2).strip()
        candidates.append((match.start(), FileDirective(
            path=match.group(1).strip(),
            content=content,
            isComplete=True,
            suspectedTruncated=looks_truncated(content),
        )))

    candidates.sort(key=lambda item: item[0])
    return candidates


def _first(pattern: re.Pattern, text: str) -> Optional[str]:
    match = pattern.search(text)
    return match.group(1).strip() if match else None


def parse_ai_response(response: str) -> ParsedResponse:
    """Final structural pass over a complete model response."""
    file_map: Dict[str, FileDirective] = {}
    for _, candidate in _file_candidates(response):
        existing = file_map.get(candidate.path)
        if _should_replace(existing, candidate):
            file_map[candidate.path] = candidate

    for directive in file_map.values():
        if not directive.isComplete:
            logger.warning("[parse_ai_response] File %s appears to be cut off", directive.path)
        elif directive.suspectedTruncated:
            logger.warning("[parse_ai_response] File %s contains '...' and may be truncated", directive.path)

    declared: List[str] = [m.group(1).strip() for m in PACKAGE_RE.finditer(response)]
    for block in PACKAGES_RE.finditer(response):
        declared.extend(p.strip() for p in re.split(r"[\n,]+", block.group(1)))

    files = list(file_map.values())
    imported = packages_from_files({f.path: f.content for f in files})

    parsed = ParsedResponse(
        files=files,
        packages=dedupe(declared + imported),
        commands=[c for c in (m.group(1).strip() for m in COMMAND_RE.finditer(response)) if c],
        structure=_first(STRUCTURE_RE, response),
        explanation=_first(EXPLANATION_RE, response) or "",
        template=_first(TEMPLATE_RE, response) or "",
    )
    logger.info(
        "[parse_ai_response] Parsed %d files, %d packages, %d commands",
        len(parsed.files), len(parsed.packages), len(parsed.commands),
    )
    return parsed


def _hold_back(text: str, start: int) -> int:
    """Offset up to which ``text`` can be consumed without splitting a tag."""
    lt = text.rfind("<", start)
    if lt != -1 and ">" not in text[lt:] and len(text) - lt < _MAX_PARTIAL_TAG:
        return lt
    return len(text)


class StreamParser:
    """Incremental pass over a streamed response.

    Feed chunks as they arrive; each call returns the events that became
    certain with that chunk. ``finish`` flushes what is left and runs the
    authoritative pass over the accumulated text.
    """

    def __init__(self) -> None:
        self._text = ""
        self._cursor = 0
        self._pending = ""
        self._open_file: Optional[str] = None
        self._open_tag: Optional[str] = None
        self.result: Optional[ParsedResponse] = None

    @property
    def text(self) -> str:
        return self._text

    @property
    def in_tag(self) -> bool:
        return self._open_file is not None or self._open_tag is not None

    def _flush_text(self, events: List[Dict[str, Any]]) -> None:
        if self._pending.strip():
            events.append({"type": "text", "text": self._pending})
        self._pending = ""

    def _step_in_file(self, events: List[Dict[str, Any]]) -> bool:
        text = self._text
        close = text.find(FILE_CLOSE, self._cursor)
        reopen = FILE_OPEN_RE.search(text, self._cursor)
        if reopen and (close == -1 or reopen.start() < close):
            # previous block was never closed
            if reopen.start() > self._cursor:
                events.append({"type": "file-chunk", "path": self._open_file, "text": text[self._cursor:reopen.start()]})
            events.append({"type": "file-close", "path": self._open_file, "complete": False})
            self._open_file = None
            self._cursor = reopen.start()
            return True
        if close != -1:
            if close > self._cursor:
                events.append({"type": "file-chunk", "path": self._open_file, "text": text[self._cursor:close]})
            events.append({"type": "file-close", "path": self._open_file, "complete": True})
            self._open_file = None
            self._cursor = close + len(FILE_CLOSE)
            return True
        end = _hold_back(text, self._cursor)
        if end > self._cursor:
            events.append({"type": "file-chunk", "path": self._open_file, "text": text[self._cursor:end]})
            self._cursor = end
        return False

    def _step_in_tag(self) -> bool:
        closing = f"</{self._open_tag}>"
        close = self._text.find(closing, self._cursor)
        if close == -1:
            self._cursor = max(self._cursor, _hold_back(self._text, self._cursor))
            return False
        self._cursor = close + len(closing)
        self._open_tag = None
        return True

    def _step_outside(self, events: List[Dict[str, Any]]) -> bool:
        text = self._text
        match = TAG_OPEN_RE.search(text, self._cursor)
        if match is None:
            end = _hold_back(text, self._cursor)
            self._pending += text[self._cursor:end]
            self._cursor = end
            return False

        self._pending += text[self._cursor:match.start()]
        self._cursor = match.start()
        if match.group(1) == "file":
            opened = FILE_OPEN_RE.match(text, match.start())
            if opened is None:
                if ">" in text[match.start():]:
                    # not a well formed file tag, treat it as text
                    self._pending += text[match.start():match.end()]
                    self._cursor = match.end()
                    return True
                return False
            self._flush_text(events)
            self._open_file = opened.group(1).strip()
            events.append({"type": "file-open", "path": self._open_file})
            self._cursor = opened.end()
            return True

        gt = text.find(">", match.end())
        if gt == -1:
            return False
        self._flush_text(events)
        self._open_tag = match.group(1)
        self._cursor = gt + 1
        return True

    def feed(self, chunk: str) -> List[Dict[str, Any]]:
        events: List[Dict[str, Any]] = []
        if not chunk:
            return events
        self._text += chunk
        progressed = True
        while progressed:
            if self._open_file is not None:
                progressed = self._step_in_file(events)
            elif self._open_tag is not None:
                progressed = self._step_in_tag()
            else:
                progressed = self._step_outside(events)
        return events

    def finish(self) -> Tuple[List[Dict[str, Any]], ParsedResponse]:
        events: List[Dict[str, Any]] = []
        tail = self._text[self._cursor:]
        if self._open_file is not None:
            if tail:
                events.append({"type": "file-chunk", "path": self._open_file, "text": tail})
            events.append({"type": "file-close", "path": self._open_file, "complete": False})
            self._open_file = None
        elif self._open_tag is None:
            self._pending += tail
        self._open_tag = None
        self._cursor = len(self._text)
        self._flush_text(events)
        self.result = parse_ai_response(self._text)
        return events, self.result


async def parse_stream(chunks: AsyncIterable[str], parser: Optional[StreamParser] = None) -> AsyncIterator[Dict[str, Any]]:
    """Yield parse events for an async stream of chunks.

    After the iterator is exhausted ``parser.result`` holds the final parse.
    """
    parser = parser or StreamParser()
    async for chunk in chunks:
        for event in parser.feed(chunk):
            yield event
    events, _ = parser.finish()
    for event in events:
        yield event
