"""Data classes for LabGrep."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class FileRecord:
    id: str
    name: str
    path: str
    content: str = ""  # base64, empty when filtered or not fetched
    project_id: int = 0

    @classmethod
    def from_json(cls, item: dict, project_id: int = 0) -> FileRecord:
        return cls(
            id=str(item["id"]),
            name=item.get("name") or "",
            path=item.get("path") or "",
            project_id=project_id,
        )


@dataclass
class ProjectRecord:
    id: int
    name: str
    description: str = ""
    default_branch: str = ""
    files: list[FileRecord] = field(default_factory=list)

    @classmethod
    def from_json(cls, item: dict) -> ProjectRecord:
        return cls(
            id=int(item["id"]),
            name=item.get("name") or "",
            description=item.get("description") or "",
            default_branch=item.get("default_branch") or "",
        )


@dataclass
class PageBatch:
    """One listing response page, discarded once all pages are merged."""

    page: int
    body: bytes
    total_pages: int | None = None
    status_code: int = 200


@dataclass
class FetchError:
    description: str
    page: int | None = None
    path: str | None = None

    def __str__(self) -> str:
        if self.path is not None:
            return f"[path={self.path}] {self.description}"
        if self.page is not None:
            return f"[page={self.page}] {self.description}"
        return self.description


@dataclass
class MirrorProgress:
    total_projects: int = 0
    mirrored_projects: int = 0
    current_project: str = ""
    errors: list[str] = field(default_factory=list)
