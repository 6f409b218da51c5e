"""Utility helpers for filesystem access, filenames, and path handling."""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Callable, Mapping

_MAX_SEGMENT_LENGTH = 150


def resolve_directory(path: Path | str) -> Path:
    """Resolve and validate a user supplied directory path."""
    dir_path = Path(path).expanduser().resolve()
    if not dir_path.exists():
        raise FileNotFoundError(f"Directory does not exist: {dir_path}")
    if not dir_path.is_dir():
        raise NotADirectoryError(f"Path is not a directory: {dir_path}")
    return dir_path


def format_path(path: Path, base: Path | None = None) -> str:
    """Return a user friendly representation of *path* relative to *base* when possible."""
    if base:
        try:
            relative = path.relative_to(base)
            return f"./{relative.as_posix()}"
        except ValueError:
            return str(path)
    return str(path)


def ensure_positive(value: int, name: str) -> int:
    """Validate that *value* is positive."""
    if value <= 0:
        raise ValueError(f"{name} must be greater than 0")
    return value


def file_exists(path: Path | str | None) -> bool:
    """Return True when *path* names an existing non-directory file."""
    if not path:
        return False
    try:
        return not Path(path).is_dir() and Path(path).exists()
    except OSError:
        return False


def is_within(path: Path | str, directory: Path | str) -> bool:
    """Return True if *path* equals *directory* or lives underneath it."""
    candidate = Path(os.path.abspath(path))
    parent = Path(os.path.abspath(directory))
    return candidate == parent or parent in candidate.parents


def sanitize_segment(value: str | None) -> str:
    """Reduce *value* to a filename-safe token of letters, digits, '-' and '.'."""

    text = (value or "").strip()
    if not text:
        return ""
    pieces: list[str] = []
    last_underscore = False
    for char in text:
        if char.isascii() and (char.isalnum() or char in "-."):
            pieces.append(char)
            last_underscore = False
        elif not last_underscore:
            pieces.append("_")
            last_underscore = True
    result = "".join(pieces).strip(".-")
    return result[:_MAX_SEGMENT_LENGTH]


def cleanup_filename(value: str) -> str:
    """Remove path separators and collapse repeated underscores."""

    text = value.strip()
    if not text:
        return ""
    for separator in ("/", "\\", ":"):
        text = text.replace(separator, "_")
    while "__" in text:
        text = text.replace("__", "_")
    return text.strip(" .-")


def _is_token_char(char: str) -> bool:
    return char.isascii() and char.isalnum()


def apply_filename_template(template: str, values: Mapping[str, str]) -> str:
    """Expand ``$TOKEN`` placeholders in *template*.

    ``$$`` renders a literal dollar sign. An underscore only continues a token
    when it is followed by another token character, so ``$INDEX_$TITLE``
    expands both tokens. Unknown tokens expand to nothing.
    """

    out: list[str] = []
    idx = 0
    length = len(template)
    while idx < length:
        char = template[idx]
        if char != "$":
            out.append(char)
            idx += 1
            continue
        if idx + 1 < length and template[idx + 1] == "$":
            out.append("$")
            idx += 2
            continue
        end = idx + 1
        while end < length:
            current = template[end]
            if _is_token_char(current):
                end += 1
                continue
            if current == "_" and end + 1 < length and _is_token_char(template[end + 1]):
                end += 1
                continue
            break
        if end == idx + 1:
            out.append("$")
            idx += 1
            continue
        out.append(values.get(template[idx + 1 : end], ""))
        idx = end
    return "".join(out)


def deduplicate_filename(
    directory: Path,
    name: str,
    exists: Callable[[Path], bool] | None = None,
) -> Path:
    """Return the first free ``stem_N.ext`` path inside *directory*.

    *exists* replaces the on-disk existence check, e.g. for planned moves.
    """

    check = exists or (lambda candidate: candidate.exists())
    base = Path(name)
    stem, suffix = base.stem, base.suffix
    counter = 1
    while True:
        candidate = directory / f"{stem}_{counter}{suffix}"
        if not check(candidate):
            return candidate
        counter += 1


def copy_file_atomic(src: Path, dest: Path) -> None:
    """Copy *src* to *dest* through a temporary sibling file and a rename."""

    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f"{dest.name}.tmp-", dir=dest.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle, src.open("rb") as source:
            shutil.copyfileobj(source, handle)
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, dest)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def link_or_copy(src: Path, dest: Path) -> bool:
    """Hardlink *src* to *dest*, falling back to a copy. Returns True when linked."""

    try:
        os.link(src, dest)
        return True
    except OSError:
        copy_file_atomic(src, dest)
        return False


def move_file(src: Path, dest: Path) -> None:
    """Move *src* to *dest*, copying then deleting across filesystem boundaries."""

    dest.parent.mkdir(parents=True, exist_ok=True)
    try:
        os.rename(src, dest)
        return
    except OSError:
        pass
    copy_file_atomic(src, dest)
    src.unlink()


def write_json_atomic(path: Path, payload: Any) -> None:
    """Serialize *payload* to *path* via a temp file and an atomic rename."""

    path.parent.mkdir(parents=True, exist_ok=True)
    data = json.dumps(payload, ensure_ascii=False, indent=2)
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        tmp_path.write_text(data + "\n", encoding="utf-8")
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
