"""Build-system and language tables for development environments.

This module maps the detected build system of a repository to the commands
used to install dependencies and run tests, and maps the primary language to
the base container image. Both lookups are closed enumerations with an
explicit fallback member, so unrecognized values end up in a visible
``UNKNOWN``/generic case rather than a silent default.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional


class BuildSystem(str, Enum):
    """Recognized dependency/build ecosystems."""

    NPM = "npm"
    YARN = "yarn"
    MAVEN = "maven"
    GRADLE = "gradle"
    PIP = "pip"
    CARGO = "cargo"
    BUNDLER = "bundler"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: object) -> "BuildSystem":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


class Language(str, Enum):
    """Languages with a dedicated base image."""

    JAVASCRIPT = "JavaScript"
    TYPESCRIPT = "TypeScript"
    PYTHON = "Python"
    JAVA = "Java"
    GO = "Go"
    RUST = "Rust"
    PHP = "PHP"
    RUBY = "Ruby"
    OTHER = "Other"

    @classmethod
    def parse(cls, value: object) -> "Language":
        if isinstance(value, cls):
            return value
        raw = str(value or "").strip().lower()
        for member in cls:
            if member.value.lower() == raw:
                return member
        return cls.OTHER


# Detection order (first match wins). Order matters: a repo with both
# package.json and yarn.lock is reported as npm.
BUILD_SYSTEM_RULES: tuple[tuple[tuple[str, ...], BuildSystem], ...] = (
    (("package.json",), BuildSystem.NPM),
    (("yarn.lock",), BuildSystem.YARN),
    (("pom.xml",), BuildSystem.MAVEN),
    (("build.gradle",), BuildSystem.GRADLE),
    (("requirements.txt", "setup.py"), BuildSystem.PIP),
    (("cargo.toml",), BuildSystem.CARGO),
    (("gemfile",), BuildSystem.BUNDLER),
)

EXTENSION_LANGUAGES: dict[str, str] = {
    ".ts": "TypeScript",
    ".js": "JavaScript",
    ".jsx": "JavaScript",
    ".tsx": "TypeScript",
    ".py": "Python",
    ".rb": "Ruby",
    ".java": "Java",
    ".go": "Go",
    ".rs": "Rust",
    ".php": "PHP",
    ".c": "C",
    ".cpp": "C++",
    ".cs": "C#",
    ".swift": "Swift",
    ".kt": "Kotlin",
}

_INSTALL_COMMANDS: dict[BuildSystem, Optional[list[str]]] = {
    BuildSystem.NPM: ["npm", "install"],
    BuildSystem.YARN: ["yarn", "install"],
    BuildSystem.PIP: ["pip", "install", "-r", "requirements.txt"],
    BuildSystem.BUNDLER: ["bundle", "install"],
    BuildSystem.MAVEN: ["mvn", "install", "-DskipTests"],
    BuildSystem.GRADLE: ["./gradlew", "build", "-x", "test"],
    BuildSystem.CARGO: ["cargo", "build"],
    BuildSystem.UNKNOWN: None,
}

_TEST_COMMANDS: dict[BuildSystem, Optional[list[str]]] = {
    BuildSystem.NPM: ["npm", "test"],
    BuildSystem.YARN: ["yarn", "test"],
    BuildSystem.PIP: ["python", "-m", "pytest"],
    BuildSystem.BUNDLER: ["bundle", "exec", "rake", "test"],
    BuildSystem.MAVEN: ["mvn", "test"],
    BuildSystem.GRADLE: ["./gradlew", "test"],
    BuildSystem.CARGO: ["cargo", "test"],
    BuildSystem.UNKNOWN: None,
}

_LANGUAGE_IMAGES: dict[Language, str] = {
    Language.JAVASCRIPT: "node:18",
    Language.TYPESCRIPT: "node:18",
    Language.PYTHON: "python:3.11",
    Language.JAVA: "openjdk:17",
    Language.GO: "golang:1.20",
    Language.RUST: "rust:1.68",
    Language.PHP: "php:8.2",
    Language.RUBY: "ruby:3.2",
    Language.OTHER: "ubuntu:22.04",
}

DEFAULT_IMAGE = _LANGUAGE_IMAGES[Language.OTHER]


def detect_build_system(file_names: Iterable[str]) -> BuildSystem:
    """Detect the build system from a set of file names.

    This is a pure function of the (case-insensitive) name set: the first
    rule in `BUILD_SYSTEM_RULES` with a matching name wins.

    Args:
        file_names: File names found at the repository root.

    Returns:
        The detected build system, or `BuildSystem.UNKNOWN`.
    """
    names = {str(name).lower() for name in file_names}
    for candidates, build_system in BUILD_SYSTEM_RULES:
        if any(candidate in names for candidate in candidates):
            return build_system
    return BuildSystem.UNKNOWN


def language_for_filename(name: str) -> Optional[str]:
    """Return the language for a file name based on its extension, if known."""
    parts = str(name or "").split(".")
    if len(parts) < 2:
        return None
    return EXTENSION_LANGUAGES.get(f".{parts[-1].lower()}")


def get_install_command(build_system: BuildSystem | str) -> Optional[list[str]]:
    """Return the dependency install command, or None when installation is skipped."""
    command = _INSTALL_COMMANDS[BuildSystem.parse(build_system)]
    return list(command) if command else None


def get_test_command(build_system: BuildSystem | str) -> Optional[list[str]]:
    """Return the test command, or None when tests cannot be run."""
    command = _TEST_COMMANDS[BuildSystem.parse(build_system)]
    return list(command) if command else None


def get_container_image(language: Language | str) -> str:
    """Return the base container image for a repository language."""
    return _LANGUAGE_IMAGES[Language.parse(language)]
