from __future__ import annotations

import json
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import yaml

from foreman.errors import GitCommandError
from foreman.git import GitRunner

logger = logging.getLogger(__name__)

ConflictCategory = Literal["docs", "tests", "config", "source", "unknown"]
ResolutionName = Literal["accept_both", "merge_keys", "theirs", "manual"]

CATEGORY_POLICY: dict[str, str] = {
    "docs": "accept_both",
    "tests": "accept_both",
    "config": "merge_keys",
    "source": "theirs",
    "unknown": "manual",
}

_CONFIG_SUFFIXES = (
    ".json",
    ".yaml",
    ".yml",
    ".toml",
    ".ini",
    ".cfg",
    ".conf",
    ".env",
    ".properties",
)
_CONFIG_NAMES = {
    "dockerfile",
    "makefile",
    "procfile",
    "requirements.txt",
    ".gitignore",
    ".gitattributes",
    ".editorconfig",
}
_SOURCE_SUFFIXES = (
    ".py",
    ".pyi",
    ".js",
    ".jsx",
    ".mjs",
    ".cjs",
    ".ts",
    ".tsx",
    ".vue",
    ".svelte",
    ".go",
    ".rs",
    ".java",
    ".kt",
    ".scala",
    ".rb",
    ".php",
    ".c",
    ".h",
    ".cc",
    ".cpp",
    ".hpp",
    ".cs",
    ".swift",
    ".sh",
    ".sql",
    ".css",
    ".scss",
    ".html",
)


def is_test_path(path: str) -> bool:
    normalized = path.replace("\\", "/").lower()
    name = normalized.rsplit("/", maxsplit=1)[-1]
    segments = set(normalized.split("/"))
    if {"tests", "test", "__tests__", "spec", "specs"} & segments:
        return True
    if name.startswith("test_") or name.endswith("_test.py") or name.endswith("_test.go"):
        return True
    return any(
        name.endswith(suffix)
        for suffix in (".test.js", ".test.jsx", ".test.ts", ".test.tsx", ".spec.js", ".spec.ts")
    )


def is_documentation_path(path: str) -> bool:
    normalized = path.replace("\\", "/").lower()
    name = normalized.rsplit("/", maxsplit=1)[-1]
    if name.startswith("readme") or "changelog" in name:
        return True
    if any(token in normalized.split("/")[:-1] for token in ("docs", "doc", "documentation")):
        return True
    return name.endswith((".md", ".mdx", ".rst", ".adoc", ".txt"))


def is_config_path(path: str) -> bool:
    name = path.replace("\\", "/").lower().rsplit("/", maxsplit=1)[-1]
    if name in _CONFIG_NAMES or name.startswith(".env"):
        return True
    if name.startswith(".") and name.endswith("rc"):
        return True
    if name.endswith(_CONFIG_SUFFIXES):
        return True
    stem = name.rsplit(".", maxsplit=1)[0]
    return stem.endswith(("config", ".config", "settings"))


def categorize_file(path: str) -> ConflictCategory:
    if is_test_path(path):
        return "tests"
    if path.replace("\\", "/").lower().rsplit("/", maxsplit=1)[-1] in _CONFIG_NAMES:
        return "config"
    if is_documentation_path(path):
        return "docs"
    if is_config_path(path):
        return "config"
    if path.lower().endswith(_SOURCE_SUFFIXES):
        return "source"
    return "unknown"


@dataclass(slots=True)
class ConflictResolution:
    path: str
    category: ConflictCategory
    resolution: ResolutionName
    resolved: bool
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "category": self.category,
            "resolution": self.resolution,
            "resolved": self.resolved,
            "detail": self.detail,
        }


class UnresolvableConflict(Exception):
    """Raised inside a policy when a file has to be left for a human."""


class KeyConflict(UnresolvableConflict):
    def __init__(self, key_path: tuple[str, ...]) -> None:
        super().__init__(f"both sides changed key '{'.'.join(key_path) or '<root>'}'")
        self.key_path = key_path


_MISSING = object()


def merge_keys(base: Any, ours: Any, theirs: Any, key_path: tuple[str, ...] = ()) -> Any:
    """Three-way merge of parsed documents, key by key.

    A key changed on one side only takes that side's value; nested mappings
    recurse. Different values on both sides raise ``KeyConflict``.
    """
    if not (isinstance(ours, dict) and isinstance(theirs, dict)):
        if ours == theirs:
            return ours
        if ours == base:
            return theirs
        if theirs == base:
            return ours
        raise KeyConflict(key_path)

    base_map = base if isinstance(base, dict) else {}
    merged: dict[str, Any] = {}
    keys = list(ours) + [key for key in theirs if key not in ours]
    for key in keys:
        b = base_map.get(key, _MISSING)
        o = ours.get(key, _MISSING)
        t = theirs.get(key, _MISSING)
        if o == t:
            value = o
        elif o == b:
            value = t
        elif t == b:
            value = o
        elif isinstance(o, dict) and isinstance(t, dict):
            value = merge_keys(b if isinstance(b, dict) else {}, o, t, (*key_path, str(key)))
        else:
            raise KeyConflict((*key_path, str(key)))
        if value is not _MISSING:
            merged[key] = value
    return merged


def _json_indent(text: str) -> int:
    for line in text.splitlines()[1:]:
        stripped = line.lstrip(" ")
        if stripped and len(stripped) != len(line):
            return len(line) - len(stripped)
    return 2


class ConflictResolver:
    """Applies the per-category policy to unmerged index entries of a checkout."""

    def __init__(self, checkout: Path, git: GitRunner | None = None) -> None:
        self.checkout = checkout
        self.git = git or GitRunner()

    def unmerged_paths(self) -> list[str]:
        proc = self.git.run(["diff", "--name-only", "--diff-filter=U"], self.checkout, check=False)
        return sorted({line.strip() for line in proc.stdout.splitlines() if line.strip()})

    def _stage(self, path: str, stage: int) -> str | None:
        try:
            proc = self.git.run(["show", f":{stage}:{path}"], self.checkout, check=False)
        except UnicodeDecodeError as exc:
            raise UnresolvableConflict("binary content") from exc
        if proc.returncode != 0:
            return None
        if "\x00" in proc.stdout:
            raise UnresolvableConflict("binary content")
        return proc.stdout

    def _merge_file(self, ours: str, base: str, theirs: str, *, union: bool = False) -> tuple[str, int]:
        with tempfile.TemporaryDirectory(prefix="foreman-merge-") as tmp:
            files = []
            for label, content in (("ours", ours), ("base", base), ("theirs", theirs)):
                file_path = Path(tmp) / label
                file_path.write_text(content, encoding="utf-8")
                files.append(str(file_path))
            args = ["merge-file", "-p", "-L", "ours", "-L", "base", "-L", "theirs"]
            if union:
                args.append("--union")
            proc = self.git.run([*args, *files], self.checkout, check=False)
        if proc.returncode < 0 or proc.returncode > 127:
            raise GitCommandError(
                proc.stderr.strip() or "git merge-file failed",
                args=args,
                exit_code=proc.returncode,
                cwd=str(self.checkout),
            )
        return proc.stdout, proc.returncode

    def _accept_both(self, base: str | None, ours: str | None, theirs: str | None) -> str:
        if ours is None or theirs is None:
            surviving = ours if ours is not None else theirs
            return surviving or ""
        merged, _ = self._merge_file(ours, base or "", theirs, union=True)
        return merged

    def _merge_config(
        self, path: str, base: str | None, ours: str | None, theirs: str | None
    ) -> tuple[str, str]:
        if ours is None or theirs is None:
            raise UnresolvableConflict("config file deleted on one side")
        suffix = Path(path).suffix.lower()
        if suffix == ".json":
            try:
                merged = merge_keys(
                    json.loads(base) if base else {},
                    json.loads(ours),
                    json.loads(theirs),
                )
            except json.JSONDecodeError as exc:
                raise UnresolvableConflict(f"invalid JSON: {exc}") from exc
            text = json.dumps(merged, indent=_json_indent(ours), ensure_ascii=False)
            return text + "\n", "merge_keys"
        if suffix in {".yaml", ".yml"}:
            try:
                merged = merge_keys(
                    yaml.safe_load(base) if base else {},
                    yaml.safe_load(ours),
                    yaml.safe_load(theirs),
                )
            except yaml.YAMLError as exc:
                raise UnresolvableConflict(f"invalid YAML: {exc}") from exc
            return yaml.safe_dump(merged, sort_keys=False, default_flow_style=False), "merge_keys"

        text, conflicts = self._merge_file(ours, base or "", theirs)
        if conflicts:
            raise UnresolvableConflict(f"{conflicts} overlapping change(s) in unstructured config")
        return text, "merge_keys"

    def _merge_source(
        self, base: str | None, ours: str | None, theirs: str | None
    ) -> tuple[str | None, str]:
        if ours is None or theirs is None:
            return theirs, "theirs"
        text, conflicts = self._merge_file(ours, base or "", theirs)
        if conflicts:
            return theirs, "theirs"
        return text, "accept_both"

    def _write(self, path: str, content: str | None) -> None:
        if content is None:
            self.git.run(["rm", "-q", "-f", "--", path], self.checkout)
            return
        target = self.checkout / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        self.git.run(["add", "--", path], self.checkout)

    def resolve(self, path: str) -> ConflictResolution:
        category = categorize_file(path)
        if category == "unknown":
            return ConflictResolution(
                path, category, "manual", False, "no automatic policy for this file type"
            )
        try:
            base = self._stage(path, 1)
            ours = self._stage(path, 2)
            theirs = self._stage(path, 3)
            if category in {"docs", "tests"}:
                content: str | None = self._accept_both(base, ours, theirs)
                resolution = "accept_both"
                detail = "kept both sides"
            elif category == "config":
                content, resolution = self._merge_config(path, base, ours, theirs)
                detail = "merged key by key" if resolution == "merge_keys" else ""
            else:
                content, resolution = self._merge_source(base, ours, theirs)
                detail = "clean line merge" if resolution == "accept_both" else "took session version"
        except UnresolvableConflict as exc:
            return ConflictResolution(path, category, "manual", False, str(exc))
        except GitCommandError as exc:
            return ConflictResolution(path, category, "manual", False, exc.message)

        self._write(path, content)
        logger.info("resolved %s (%s) via %s", path, category, resolution)
        return ConflictResolution(path, category, resolution, True, detail)  # type: ignore[arg-type]

    def resolve_all(self, paths: list[str]) -> list[ConflictResolution]:
        return [self.resolve(path) for path in paths]
