"""GitLab REST API client."""

from __future__ import annotations

from dataclasses import replace
from urllib.parse import quote

import requests

from LabGrep.models import FetchError, FileRecord, PageBatch

# Characters of a response body quoted in decode error messages.
SNIPPET_LENGTH = 200


class GitLabError(Exception):
    """Raised for GitLab API errors."""


class TransportError(GitLabError):
    """Raised when a request fails at the connection or timeout level."""


class DecodeError(GitLabError):
    """Raised when a response body or pagination header cannot be decoded."""


class HTTPStatusError(GitLabError):
    """Raised when a file lookup returns a non-2xx status."""

    def __init__(self, path: str, status_code: int):
        self.path = path
        self.status_code = status_code
        super().__init__(f"failed to get [path={path}] [status_code={status_code}]")


class AggregateError(GitLabError):
    """One or more sibling fetches failed."""

    def __init__(self, errors: list[FetchError]):
        self.errors = list(errors)
        lines = "\n".join(f"  {e}" for e in self.errors)
        super().__init__(f"{len(self.errors)} fetch(es) failed:\n{lines}")


def snippet(data: bytes | str) -> str:
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    if len(data) > SNIPPET_LENGTH:
        return data[:SNIPPET_LENGTH] + "..."
    return data


def encode_path(path: str) -> str:
    """Encode a repository path for the files API."""
    return path.replace("/", "%2F").replace(".", "%2E")


class GitLabClient:
    """Thin client for the GitLab v4 endpoints used by the mirror."""

    LISTING_PAGE_SIZE = 100
    TOTAL_PAGES_HEADER = "x-total-pages"

    def __init__(
        self,
        endpoint: str,
        group: str,
        token: str | None = None,
        timeout: float = 30,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.group = group
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers["User-Agent"] = "LabGrep/1.0"
        if token:
            self.session.headers["PRIVATE-TOKEN"] = token

    # --- URLs ---------------------------------------------------------------

    def group_projects_url(self) -> str:
        return f"{self.endpoint}/groups/{quote(self.group, safe='')}/projects"

    def group_projects_params(self) -> dict:
        return {"simple": "true", "per_page": self.LISTING_PAGE_SIZE}

    def project_tree_url(self, project_id: int) -> str:
        return f"{self.endpoint}/projects/{project_id}/repository/tree"

    def project_tree_params(self) -> dict:
        return {"recursive": "true", "per_page": self.LISTING_PAGE_SIZE}

    def file_url(self, project_id: int, path: str) -> str:
        return (
            f"{self.endpoint}/projects/{project_id}"
            f"/repository/files/{encode_path(path)}"
        )

    # --- Requests -----------------------------------------------------------

    def fetch_page(
        self,
        url: str,
        params: dict | None = None,
        page: int = 1,
    ) -> PageBatch:
        """Perform one listing request and return the raw page.

        A missing ``x-total-pages`` header means the listing is a single page.
        """
        params = dict(params or {})
        if page > 1:
            params["page"] = page

        try:
            resp = self.session.get(url, params=params, timeout=self.timeout)
            body = resp.content
        except requests.RequestException as exc:
            raise TransportError(
                f"failed to get response [url={url}] [page={page}] [error={exc}]"
            ) from exc

        total_pages = None
        raw_total = resp.headers.get(self.TOTAL_PAGES_HEADER)
        if raw_total:
            try:
                total_pages = int(raw_total)
            except ValueError as exc:
                raise DecodeError(
                    f"invalid {self.TOTAL_PAGES_HEADER} header "
                    f"[url={url}] [value={raw_total!r}]"
                ) from exc

        return PageBatch(
            page=page,
            body=body,
            total_pages=total_pages,
            status_code=resp.status_code,
        )

    def fetch_file_content(
        self,
        project_id: int,
        branch: str,
        entry: FileRecord,
    ) -> FileRecord:
        """Return a copy of *entry* carrying its base64 content.

        The content is kept exactly as the API returns it.
        """
        url = self.file_url(project_id, entry.path)
        try:
            resp = self.session.get(url, params={"ref": branch}, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TransportError(
                f"failed to get response [path={entry.path}] [error={exc}]"
            ) from exc

        if resp.status_code < 200 or resp.status_code > 299:
            raise HTTPStatusError(entry.path, resp.status_code)

        try:
            data = resp.json()
        except ValueError as exc:
            raise DecodeError(
                f"failed to decode response [path={entry.path}] "
                f"[error={exc}] [data={snippet(resp.content)}]"
            ) from exc
        if not isinstance(data, dict):
            raise DecodeError(
                f"unexpected response [path={entry.path}] "
                f"[data={snippet(resp.content)}]"
            )

        return replace(entry, content=data.get("content") or "", project_id=project_id)
