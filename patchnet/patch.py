"""
Patch codec — parse mbox-style patches (``git format-patch`` output).

Layout of the input:
    From <sha> Mon Sep 17 00:00:00 2001
    From: Author <author@example.com>
    Date: ...
    Subject: [PATCH] <parent revision> <subject>
    <blank + commit message>
    ---
     <diffstat summary>
    diff --git a/<path> b/<path>
    ...

Parsing is a single linear pass. Header mode collects From/Date/Subject
(with folded continuation lines); a bare ``---`` ends header mode unless
the next line already starts the diff; everything up to the first
``diff --git`` is the summary; the rest is the body, verbatim.

Serialization is the identity on ``src``: publication always ships the
tool-produced text unchanged.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field, replace

DIFF_MARKER = "diff --git"
HEADER_END = "---"
SIGNATURE_SEPARATOR = "-- "  # mbox trailer before the git version line

_HEADER_RE = re.compile(r"^(From|Date|Subject):(.*)$")
_SUBJECT_PREFIX_RE = re.compile(r"^\[[^\]]*\]\s*")
_HUNK_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


class MalformedPatch(ValueError):
    """Patch text cannot be parsed (no diff section, bad encoding)."""


@dataclass(frozen=True)
class PatchHeaders:
    author: str = ""
    date: str = ""
    subject: str = ""
    parent: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "from": self.author,
            "date": self.date,
            "subject": self.subject,
            "parent": self.parent,
        }

    @classmethod
    def from_dict(cls, d: dict) -> PatchHeaders:
        return cls(
            author=d.get("from", ""),
            date=d.get("date", ""),
            subject=d.get("subject", ""),
            parent=d.get("parent", ""),
        )


@dataclass(frozen=True)
class Hunk:
    header: str
    change_lines: tuple[str, ...] = ()


@dataclass(frozen=True)
class Patch:
    """An immutable parsed patch."""

    patch_id: str
    headers: PatchHeaders
    summary: str
    body: str
    src: str = field(repr=False)
    public_key: bytes | None = None

    @property
    def files(self) -> list[str]:
        """Paths touched by the patch, in body order."""
        paths = []
        for line in self.body.split("\n"):
            path = _diff_path(line)
            if path is not None:
                paths.append(path)
        return paths

    def with_public_key(self, public_key: bytes | None) -> Patch:
        return replace(self, public_key=public_key)

    def to_dict(self) -> dict:
        return {
            "patch_id": self.patch_id,
            "headers": self.headers.to_dict(),
            "summary": self.summary,
            "body": self.body,
            "src": self.src,
            "public_key": self.public_key.hex() if self.public_key else None,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Patch:
        public_key = d.get("public_key")
        return cls(
            patch_id=d["patch_id"],
            headers=PatchHeaders.from_dict(d.get("headers", {})),
            summary=d.get("summary", ""),
            body=d.get("body", ""),
            src=d.get("src", ""),
            public_key=bytes.fromhex(public_key) if public_key else None,
        )


def compute_patch_id(src: str) -> str:
    """Content-derived patch id: SHA-256 of the raw text."""
    return hashlib.sha256(src.encode("utf-8")).hexdigest()


def _split_subject(raw_subject: str) -> tuple[str, str]:
    """Split a raw Subject value into (parent, subject).

    The ``[PATCH ...]`` numbering prefix is dropped, the next token is the
    parent revision, and the subject is everything after it.
    """
    rest = _SUBJECT_PREFIX_RE.sub("", raw_subject.strip(), count=1)
    tokens = rest.split(None, 1)
    if not tokens:
        return "", ""
    parent = tokens[0]
    subject = tokens[1].strip() if len(tokens) > 1 else ""
    return parent, subject


def parse_patch(src: str | bytes) -> Patch:
    """Parse raw patch text. Raises MalformedPatch if there is no diff."""
    if isinstance(src, bytes):
        try:
            src = src.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedPatch(f"Patch is not valid UTF-8: {e}") from e

    lines = src.split("\n")
    headers: dict[str, str] = {"from": "", "date": "", "subject": ""}
    parsing_headers = True
    current: str | None = None
    buffer: list[str] = []
    summary_lines: list[str] = []
    summary = ""
    body = ""
    found_diff = False

    def flush() -> None:
        if current and buffer:
            headers[current] = " ".join(buffer)

    for i, line in enumerate(lines):
        bare = line.rstrip("\r")

        if bare.startswith(DIFF_MARKER):
            summary = "\n".join(summary_lines)
            body = "\n".join(lines[i:])
            found_diff = True
            break

        if parsing_headers:
            nxt = lines[i + 1] if i + 1 < len(lines) else None
            if bare == HEADER_END and nxt is not None and not nxt.startswith(DIFF_MARKER):
                flush()
                current, buffer = None, []
                parsing_headers = False
                continue

            match = _HEADER_RE.match(bare)
            if match:
                flush()
                current = match.group(1).lower()
                buffer = [match.group(2).strip()]
            elif current and bare[:1] in (" ", "\t") and bare.strip():
                buffer.append(bare.strip())
            else:
                # Anything else (blank line, message body) closes the header
                flush()
                current, buffer = None, []
        else:
            summary_lines.append(bare)

    if not found_diff:
        raise MalformedPatch("Patch has no 'diff --git' section")

    if parsing_headers:
        flush()

    parent, subject = _split_subject(headers["subject"])
    return Patch(
        patch_id=compute_patch_id(src),
        headers=PatchHeaders(
            author=headers["from"],
            date=headers["date"],
            subject=subject,
            parent=parent,
        ),
        summary=summary,
        body=body,
        src=src,
    )


def serialize(patch: Patch) -> str:
    """Outbound form of a patch: the original text, verbatim."""
    return patch.src


def _diff_path(line: str) -> str | None:
    """Return the b-side path of a ``diff --git a/x b/x`` line, else None."""
    if not line.startswith(DIFF_MARKER + " "):
        return None
    rest = line[len(DIFF_MARKER) + 1:].rstrip("\r")
    # a/<path> b/<path>: the two halves are equal for non-renames
    if rest.startswith("a/") and " b/" in rest:
        half = (len(rest) - 1) // 2
        a_side, b_side = rest[:half], rest[half + 1:]
        if a_side[2:] == b_side[2:]:
            return b_side[2:]
        return rest.rsplit(" b/", 1)[1]
    return None


def extract_hunks(patch: Patch, file_path: str) -> list[Hunk]:
    """Collect the hunks for one file, in file order.

    The file section is the one whose header is exactly
    ``diff --git a/<path> b/<path>``; it ends at the next file section.
    """
    section_header = f"{DIFF_MARKER} a/{file_path} b/{file_path}"
    lines = [line.rstrip("\r") for line in patch.body.split("\n")]

    hunks: list[Hunk] = []
    in_section = False
    i = 0
    while i < len(lines):
        line = lines[i]
        if line.startswith(DIFF_MARKER):
            if in_section:
                break
            in_section = line == section_header
            i += 1
            continue

        if in_section and line == SIGNATURE_SEPARATOR:
            break

        match = _HUNK_RE.match(line) if in_section else None
        if not match:
            i += 1
            continue

        old_left = int(match.group(2)) if match.group(2) is not None else 1
        new_left = int(match.group(4)) if match.group(4) is not None else 1
        changes: list[str] = []
        i += 1
        while i < len(lines) and (old_left > 0 or new_left > 0):
            change = lines[i]
            marker = change[:1]
            if marker == " " or change == "":
                old_left -= 1
                new_left -= 1
            elif marker == "-":
                old_left -= 1
            elif marker == "+":
                new_left -= 1
            elif marker != "\\":
                break
            changes.append(change)
            i += 1
        # "\ No newline at end of file" may trail the last counted line
        while i < len(lines) and lines[i].startswith("\\"):
            changes.append(lines[i])
            i += 1
        hunks.append(Hunk(header=line, change_lines=tuple(changes)))

    return hunks
