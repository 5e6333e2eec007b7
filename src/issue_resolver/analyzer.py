"""Codebase analysis: walk a repository tree through the source host.

The walk is bounded: only allow-listed directories are descended into and
only allow-listed files have their content fetched, which keeps the number of
API calls proportional to the interesting part of the repository. Fetch
failures for individual paths are logged and skipped so a partial analysis is
still produced.
"""

from __future__ import annotations

import json
from typing import Any, Optional

from loguru import logger

from .errors import SourceHostError
from .github import SourceHost
from .language import detect_build_system, language_for_filename
from .models import CodebaseAnalysis, DirNode, FileEntry, FileNode, iter_nodes

IMPORTANT_DIRECTORIES = frozenset(
    {"src", "lib", "app", "config", "test", "tests", "spec", "scripts", ".github"}
)

IMPORTANT_FILES = frozenset(
    {
        "package.json",
        "package-lock.json",
        "yarn.lock",
        "tsconfig.json",
        "tslint.json",
        "eslintrc.json",
        ".eslintrc.js",
        "Gemfile",
        "Gemfile.lock",
        "requirements.txt",
        "setup.py",
        "build.gradle",
        "pom.xml",
        "Cargo.toml",
        "Dockerfile",
        "docker-compose.yml",
        "README.md",
        "LICENSE",
    }
)

IMPORTANT_EXTENSIONS = (".ts", ".js", ".jsx", ".tsx", ".py", ".java", ".rb", ".go", ".rs")

DEFAULT_MAX_DEPTH = 6


def is_important_directory(name: str) -> bool:
    lowered = (name or "").lower()
    return lowered in IMPORTANT_DIRECTORIES or "src" in lowered or "lib" in lowered


def is_important_file(name: str) -> bool:
    return name in IMPORTANT_FILES or any(name.endswith(ext) for ext in IMPORTANT_EXTENSIONS)


def detect_main_language(nodes: list[FileNode]) -> str:
    """Return the most common language by file extension.

    Ties go to the language encountered first in pre-order traversal.
    """
    counts: dict[str, int] = {}
    for node in iter_nodes(nodes):
        if not isinstance(node, FileEntry):
            continue
        language = language_for_filename(node.name)
        if language:
            counts[language] = counts.get(language, 0) + 1

    main_language = "Unknown"
    best = 0
    # dicts keep insertion order, i.e. first-encountered order
    for language, count in counts.items():
        if count > best:
            best = count
            main_language = language
    return main_language


def extract_dependencies(analysis: CodebaseAnalysis) -> dict[str, Any]:
    """Extract dependency manifests per ecosystem from captured file content."""
    dependencies: dict[str, Any] = {}

    package_json = analysis.find_file("package.json")
    if package_json and package_json.content:
        try:
            content = json.loads(package_json.content)
            if not isinstance(content, dict):
                raise ValueError("package.json is not an object")
            dependencies["npm"] = {
                "dependencies": dict(content.get("dependencies") or {}),
                "devDependencies": dict(content.get("devDependencies") or {}),
            }
        except ValueError as exc:
            logger.warning("Failed to parse {}: {}", package_json.path, exc)

    requirements = analysis.find_file("requirements.txt")
    if requirements and requirements.content:
        dependencies["python"] = [
            line.strip()
            for line in requirements.content.splitlines()
            if line.strip() and not line.strip().startswith("#")
        ]

    return dependencies


class CodebaseAnalyzer:
    """Build a `CodebaseAnalysis` for a repository."""

    def __init__(self, source_host: SourceHost, *, max_depth: int = DEFAULT_MAX_DEPTH):
        self.source_host = source_host
        self.max_depth = max_depth
        self.warnings: list[str] = []

    def _warn(self, message: str, *args: Any) -> None:
        text = message.format(*args)
        self.warnings.append(text)
        logger.warning(text)

    def analyze(self, owner: str, repo: str) -> CodebaseAnalysis:
        """Analyze the repository tree.

        Never raises for listing or content failures; a failed root listing
        produces an empty analysis with an unknown build system.
        """
        logger.info("Analyzing codebase structure: {}/{}", owner, repo)
        self.warnings = []
        try:
            root_items = self.source_host.list_directory(owner, repo, "")
        except (SourceHostError, ValueError) as exc:
            self._warn("Failed to list repository root for {}/{}: {}", owner, repo, exc)
            return CodebaseAnalysis()

        structure = self._build(owner, repo, root_items, depth=0)
        analysis = CodebaseAnalysis(
            file_structure=structure,
            build_system=detect_build_system(node.name for node in structure if isinstance(node, FileEntry)),
            main_language=detect_main_language(structure),
        )
        analysis.dependencies = extract_dependencies(analysis)
        logger.info(
            "Codebase analysis complete: build_system={} main_language={} warnings={}",
            analysis.build_system.value,
            analysis.main_language,
            len(self.warnings),
        )
        return analysis

    def _build(self, owner: str, repo: str, items: list[dict[str, Any]], depth: int) -> list[FileNode]:
        structure: list[FileNode] = []
        for item in items:
            kind = str(item.get("type") or "")
            path = str(item.get("path") or "")
            name = str(item.get("name") or path.rsplit("/", 1)[-1])

            if kind == "dir":
                node = DirNode(path=path, name=name)
                if is_important_directory(name) and depth < self.max_depth:
                    children = self._list(owner, repo, path)
                    if children is not None:
                        node.children = self._build(owner, repo, children, depth + 1)
                        node.expanded = True
                structure.append(node)
            elif kind == "file":
                entry = FileEntry(path=path, name=name)
                if is_important_file(name):
                    entry.content = self._content(owner, repo, path)
                structure.append(entry)
        return structure

    def _list(self, owner: str, repo: str, path: str) -> Optional[list[dict[str, Any]]]:
        try:
            return self.source_host.list_directory(owner, repo, path)
        except (SourceHostError, ValueError) as exc:
            self._warn("Failed to get contents of directory {}: {}", path, exc)
            return None

    def _content(self, owner: str, repo: str, path: str) -> Optional[str]:
        try:
            return self.source_host.get_file_content(owner, repo, path)
        except (SourceHostError, ValueError) as exc:
            self._warn("Failed to get content of file {}: {}", path, exc)
            return None
