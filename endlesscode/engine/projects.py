"""Project lookup collaborator.

The CLI stores each project's session logs under
``<base>/projects/<encoded-path>/``, where the encoded name is the
absolute project path with ``/`` replaced by ``-``.
"""
from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProjectInfo:
    id: str
    path: str
    validated: bool = False

    @property
    def name(self) -> str:
        return Path(self.path).name or self.path


def decode_project_path(encoded_name: str) -> str:
    """``-Users-foo-project`` -> ``/Users/foo/project``."""
    path = encoded_name[1:] if encoded_name.startswith("-") else encoded_name
    return "/" + path.replace("-", "/")


def is_accessible_directory(path: str) -> bool:
    return os.path.isdir(path) and os.access(path, os.R_OK)


class ProjectLookup(ABC):
    """Resolves project ids to filesystem paths."""

    @abstractmethod
    async def project_info(self, project_id: str) -> ProjectInfo | None:
        """Return the project, or None if unknown."""

    async def list_projects(self) -> list[ProjectInfo]:
        return []

    async def validate_project(self, path: str) -> bool:
        return is_accessible_directory(path)


class ClaudeProjectLookup(ProjectLookup):
    """Reads projects from the CLI's data directory."""

    def __init__(self, claude_base_path: str | Path) -> None:
        self.projects_dir = Path(claude_base_path).expanduser() / "projects"

    async def project_info(self, project_id: str) -> ProjectInfo | None:
        if not project_id or "/" in project_id or project_id in {".", ".."}:
            return None
        if not (self.projects_dir / project_id).is_dir():
            return None
        path = decode_project_path(project_id)
        return ProjectInfo(
            id=project_id, path=path, validated=is_accessible_directory(path)
        )

    async def list_projects(self) -> list[ProjectInfo]:
        if not self.projects_dir.is_dir():
            logger.debug("No projects directory at %s", self.projects_dir)
            return []
        projects = []
        for entry in sorted(self.projects_dir.iterdir()):
            if entry.is_dir() and not entry.name.startswith("."):
                path = decode_project_path(entry.name)
                projects.append(ProjectInfo(
                    id=entry.name, path=path, validated=is_accessible_directory(path)
                ))
        return projects
