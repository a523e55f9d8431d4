"""Walk a GitLab group and mirror every project's files into memory.

The walk runs in three strictly sequential stages:

1. list the group's projects (first page synchronously, the rest through
   :func:`~LabGrep.pagination.fetch_remaining_pages`);
2. for each project, on a bounded pool, list its recursive tree the same way;
3. nested inside stage 2, fetch the content of every tree entry the
   content filter allows, on a second bounded pool.

Every stage funnels its results through its own :class:`FanInCollector`
and is fully collected before its parent continues. Pools are sized
independently, so the number of requests in flight is bounded by
``project_workers * max(file_workers, page_workers) + page_workers``
rather than by a single global limit.
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace

from LabGrep.fan_in import FanInCollector
from LabGrep.file_filter import avoid_file
from LabGrep.gitlab import (
    AggregateError,
    DecodeError,
    GitLabClient,
    GitLabError,
    HTTPStatusError,
    snippet,
)
from LabGrep.models import FetchError, FileRecord, MirrorProgress, ProjectRecord
from LabGrep.pagination import fetch_remaining_pages

logger = logging.getLogger(__name__)


@dataclass
class MirrorResult:
    projects: list[ProjectRecord] = field(default_factory=list)
    errors: list[FetchError] = field(default_factory=list)
    cancelled: bool = False

    @property
    def error(self) -> AggregateError | None:
        if not self.errors:
            return None
        return AggregateError(self.errors)


@dataclass
class ProjectOutcome:
    project: ProjectRecord | None
    errors: list[FetchError]


def _decode_list(body: bytes, what: str) -> list:
    try:
        data = json.loads(body)
    except ValueError as exc:
        raise DecodeError(
            f"failed to decode {what} [error={exc}] [data={snippet(body)}]"
        ) from exc
    if not isinstance(data, list):
        raise DecodeError(f"expected a list of {what} [data={snippet(body)}]")
    return data


def decode_projects(body: bytes) -> list[ProjectRecord]:
    try:
        return [ProjectRecord.from_json(item) for item in _decode_list(body, "projects")]
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise DecodeError(
            f"malformed project entry [error={exc!r}] [data={snippet(body)}]"
        ) from exc


def decode_tree(body: bytes, project_id: int) -> list[FileRecord]:
    try:
        return [
            FileRecord.from_json(item, project_id=project_id)
            for item in _decode_list(body, "tree entries")
        ]
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise DecodeError(
            f"malformed tree entry [error={exc!r}] [data={snippet(body)}]"
        ) from exc


def _label(record: ProjectRecord | FileRecord) -> str:
    return getattr(record, "path", "") or record.name


def _unique_by_id(records: list, kind: str) -> list:
    """Keep the first record of every ID.

    Tree entries are keyed by blob ID, so identical files at different paths
    collapse into one; the dropped path is logged.
    """
    kept: dict = {}
    for record in records:
        first = kept.get(record.id)
        if first is None:
            kept[record.id] = record
        elif _label(first) != _label(record):
            logger.warning(
                "dropping %s %s, same id as %s [id=%s]",
                kind,
                _label(record),
                _label(first),
                record.id,
            )
        else:
            logger.debug("dropping duplicate %s %s [id=%s]", kind, _label(record), record.id)
    return list(kept.values())


class MirrorWalker:
    """Mirror all projects of the client's group."""

    def __init__(
        self,
        client: GitLabClient,
        project_workers: int = 3,
        file_workers: int = 3,
        page_workers: int = 3,
    ):
        self.client = client
        self.project_workers = project_workers
        self.file_workers = file_workers
        self.page_workers = page_workers

    @property
    def max_concurrency(self) -> int:
        """Upper bound on requests in flight during a walk."""
        return (
            self.project_workers * max(self.file_workers, self.page_workers)
            + self.page_workers
        )

    def walk(
        self,
        cancel: threading.Event | None = None,
        progress: MirrorProgress | None = None,
    ) -> MirrorResult:
        """Run all three stages and return the mirrored projects.

        Raises :class:`GitLabError` only when the first page of the group
        listing cannot be fetched or decoded. Every other failure is
        recorded in :attr:`MirrorResult.errors`.
        """
        cancel = cancel or threading.Event()
        progress = progress or MirrorProgress()
        result = MirrorResult()

        projects, errors = self.list_projects(cancel)
        result.errors.extend(errors)
        progress.total_projects = len(projects)
        progress.errors.extend(str(e) for e in errors)
        logger.info("found %d projects in group %s", len(projects), self.client.group)

        def _on_project(outcome: ProjectOutcome) -> None:
            progress.mirrored_projects += 1
            if outcome.project is not None:
                progress.current_project = outcome.project.name
            progress.errors.extend(str(e) for e in outcome.errors)

        collector: FanInCollector[ProjectOutcome] = FanInCollector(
            maxsize=12, name="project-fan-in", on_item=_on_project
        )
        with ThreadPoolExecutor(
            max_workers=self.project_workers, thread_name_prefix="project"
        ) as pool:
            for project in projects:
                if cancel.is_set():
                    break
                pool.submit(self._mirror_project_task, replace(project), collector, cancel)
        collector.close()

        for outcome in collector.result():
            result.errors.extend(outcome.errors)
            if outcome.project is not None:
                result.projects.append(outcome.project)
        result.projects = _unique_by_id(result.projects, "project")

        if cancel.is_set():
            result.cancelled = True
            logger.warning(
                "mirror cancelled after %d of %d projects",
                len(result.projects),
                len(projects),
            )
        logger.info(
            "mirrored %d projects with %d errors", len(result.projects), len(result.errors)
        )
        return result

    # --- Stage A ------------------------------------------------------------

    def list_projects(
        self, cancel: threading.Event | None = None
    ) -> tuple[list[ProjectRecord], list[FetchError]]:
        url = self.client.group_projects_url()
        params = self.client.group_projects_params()

        first = self.client.fetch_page(url, params)
        projects = decode_projects(first.body)

        more = fetch_remaining_pages(
            self.client.fetch_page, first, url, params, self.page_workers, cancel
        )
        errors = list(more.errors)
        for batch in more.batches:
            try:
                projects.extend(decode_projects(batch.body))
            except DecodeError as exc:
                logger.warning("skipping project page %d: %s", batch.page, exc)
                errors.append(FetchError(description=str(exc), page=batch.page))

        return _unique_by_id(projects, "project"), errors

    # --- Stage B ------------------------------------------------------------

    def _mirror_project_task(
        self,
        project: ProjectRecord,
        collector: FanInCollector[ProjectOutcome],
        cancel: threading.Event,
    ) -> None:
        try:
            outcome = self.mirror_project(project, cancel)
        except Exception as exc:
            logger.exception("unexpected failure mirroring %s", project.name)
            outcome = ProjectOutcome(
                None, [FetchError(description=f"[project={project.name}] {exc!r}")]
            )
        collector.put(outcome)

    def mirror_project(
        self, project: ProjectRecord, cancel: threading.Event | None = None
    ) -> ProjectOutcome:
        """List a project's tree and fetch its contents.

        The returned project is a copy carrying its files, or ``None`` when
        the first tree page could not be fetched or decoded.
        """
        url = self.client.project_tree_url(project.id)
        params = self.client.project_tree_params()

        try:
            first = self.client.fetch_page(url, params)
            entries = decode_tree(first.body, project.id)
        except GitLabError as exc:
            logger.warning("failed to list files of %s: %s", project.name, exc)
            return ProjectOutcome(
                None, [FetchError(description=f"[project={project.name}] {exc}", page=1)]
            )

        more = fetch_remaining_pages(
            self.client.fetch_page, first, url, params, self.page_workers, cancel
        )
        errors = list(more.errors)
        for batch in more.batches:
            try:
                entries.extend(decode_tree(batch.body, project.id))
            except DecodeError as exc:
                logger.warning(
                    "skipping tree page %d of %s: %s", batch.page, project.name, exc
                )
                errors.append(
                    FetchError(description=f"[project={project.name}] {exc}", page=batch.page)
                )

        entries = _unique_by_id(entries, f"file of {project.name}")
        files, file_errors = self.fetch_contents(project, entries, cancel)
        errors.extend(file_errors)
        logger.info("mirrored %s (%d files)", project.name, len(files))
        return ProjectOutcome(replace(project, files=files), errors)

    # --- Stage C ------------------------------------------------------------

    def fetch_contents(
        self,
        project: ProjectRecord,
        entries: list[FileRecord],
        cancel: threading.Event | None = None,
    ) -> tuple[list[FileRecord], list[FetchError]]:
        collector: FanInCollector[FileRecord | FetchError] = FanInCollector(
            maxsize=30, name=f"file-fan-in-{project.id}"
        )
        with ThreadPoolExecutor(
            max_workers=self.file_workers, thread_name_prefix=f"file-{project.id}"
        ) as pool:
            for entry in entries:
                if cancel is not None and cancel.is_set():
                    break
                if avoid_file(entry.path):
                    collector.put(replace(entry, content="", project_id=project.id))
                    continue
                pool.submit(
                    self._fetch_file_task,
                    project.id,
                    project.default_branch,
                    replace(entry),
                    collector,
                )
        collector.close()

        files: list[FileRecord] = []
        errors: list[FetchError] = []
        for item in collector.result():
            if isinstance(item, FetchError):
                errors.append(item)
            else:
                files.append(item)
        return files, errors

    def _fetch_file_task(
        self,
        project_id: int,
        branch: str,
        entry: FileRecord,
        collector: FanInCollector[FileRecord | FetchError],
    ) -> None:
        try:
            record = self.client.fetch_file_content(project_id, branch, entry)
        except HTTPStatusError as exc:
            logger.warning("%s", exc)
            collector.put(replace(entry, content="", project_id=project_id))
            return
        except GitLabError as exc:
            logger.warning("failed to get content of %s: %s", entry.path, exc)
            collector.put(FetchError(description=str(exc), path=entry.path))
            return
        except Exception as exc:
            logger.exception("unexpected failure fetching %s", entry.path)
            collector.put(FetchError(description=repr(exc), path=entry.path))
            return
        collector.put(record)
