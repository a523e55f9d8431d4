"""Tests for the hierarchical mirror walker."""

import base64
import json
import logging
import re
import threading
from urllib.parse import parse_qs, unquote, urlparse

import pytest
import requests
import responses

from LabGrep.gitlab import DecodeError, GitLabClient, TransportError
from LabGrep.mirror import MirrorWalker, decode_projects, decode_tree
from LabGrep.models import MirrorProgress, ProjectRecord

ENDPOINT = "https://gitlab.example.com/api/v4"
PROJECTS_URL = f"{ENDPOINT}/groups/mygroup/projects"
TREE_URL = re.compile(rf"{re.escape(ENDPOINT)}/projects/(\d+)/repository/tree.*")
FILES_URL = re.compile(rf"{re.escape(ENDPOINT)}/projects/(\d+)/repository/files/.*")

PROJECTS = [
    {"id": 10, "name": "api", "description": "API server", "default_branch": "main"},
    {"id": 20, "name": "web", "description": None, "default_branch": "develop"},
]


def _tree(project_id: int) -> list[dict]:
    return [
        {"id": f"{project_id}-main", "name": "main.go", "path": "cmd/main.go", "type": "blob"},
        {"id": f"{project_id}-util", "name": "util.go", "path": "util.go", "type": "blob"},
        {"id": f"{project_id}-logo", "name": "logo.png", "path": "logo.png", "type": "blob"},
    ]


def _encoded(text: str) -> str:
    return base64.b64encode(text.encode()).decode()


def _file_path(request) -> str:
    encoded = request.url.split("/repository/files/", 1)[1].split("?", 1)[0]
    return unquote(encoded)


def _project_id(pattern: re.Pattern, request) -> int:
    return int(pattern.match(request.url).group(1))


class FakeGitLab:
    """Serves a small group through ``responses`` callbacks."""

    def __init__(self, projects=None, trees=None):
        self.projects = projects if projects is not None else PROJECTS
        self.trees = trees or {p["id"]: _tree(p["id"]) for p in self.projects}
        self.file_status: dict[str, int] = {}
        self.file_errors: set[str] = set()
        self.tree_errors: set[int] = set()
        self.requested_files: list[tuple[int, str, str]] = []

    def register(self) -> None:
        responses.add_callback(responses.GET, PROJECTS_URL, callback=self._projects)
        responses.add_callback(responses.GET, TREE_URL, callback=self._tree)
        responses.add_callback(responses.GET, FILES_URL, callback=self._file)

    def _projects(self, request):
        return (200, {"x-total-pages": "1"}, json.dumps(self.projects))

    def _tree(self, request):
        project_id = _project_id(TREE_URL, request)
        if project_id in self.tree_errors:
            raise requests.ConnectionError(f"tree of {project_id} unreachable")
        return (200, {"x-total-pages": "1"}, json.dumps(self.trees.get(project_id, [])))

    def _file(self, request):
        project_id = _project_id(FILES_URL, request)
        path = _file_path(request)
        ref = parse_qs(urlparse(request.url).query).get("ref", [""])[0]
        self.requested_files.append((project_id, path, ref))
        if path in self.file_errors:
            raise requests.ConnectionError(f"connection reset for {path}")
        status = self.file_status.get(path, 200)
        if status != 200:
            return (status, {}, json.dumps({"message": f"{status} File Not Found"}))
        body = {"file_path": path, "content": _encoded(f"// {project_id} {path}\n")}
        return (200, {}, json.dumps(body))


def _walker(**kwargs) -> MirrorWalker:
    return MirrorWalker(GitLabClient(ENDPOINT, "mygroup", token="glpat-test"), **kwargs)


def _by_path(project: ProjectRecord) -> dict:
    return {f.path: f for f in project.files}


class TestEndToEnd:
    @responses.activate
    def test_two_projects_three_files_each(self):
        FakeGitLab().register()

        result = _walker().walk()

        assert result.error is None
        assert result.cancelled is False
        assert sorted(p.id for p in result.projects) == [10, 20]
        for project in result.projects:
            files = _by_path(project)
            assert len(project.files) == 3
            assert files["logo.png"].content == ""
            assert files["cmd/main.go"].content == _encoded(f"// {project.id} cmd/main.go\n")
            assert files["util.go"].content != ""
            assert all(f.project_id == project.id for f in project.files)

    @responses.activate
    def test_project_fields_decoded(self):
        FakeGitLab().register()

        result = _walker().walk()

        web = next(p for p in result.projects if p.id == 20)
        assert web.name == "web"
        assert web.description == ""
        assert web.default_branch == "develop"

    @responses.activate
    def test_filtered_files_are_not_requested(self):
        fake = FakeGitLab()
        fake.register()

        _walker().walk()

        paths = {path for _, path, _ in fake.requested_files}
        assert paths == {"cmd/main.go", "util.go"}
        assert len(fake.requested_files) == 4

    @responses.activate
    def test_content_fetched_from_default_branch(self):
        fake = FakeGitLab()
        fake.register()

        _walker().walk()

        refs = {(pid, ref) for pid, _, ref in fake.requested_files}
        assert refs == {(10, "main"), (20, "develop")}

    @responses.activate
    def test_progress_is_updated(self):
        FakeGitLab().register()
        progress = MirrorProgress()

        _walker().walk(progress=progress)

        assert progress.total_projects == 2
        assert progress.mirrored_projects == 2
        assert progress.current_project in {"api", "web"}
        assert progress.errors == []


class TestSoftAndHardFailures:
    @responses.activate
    def test_404_keeps_file_with_empty_content(self):
        fake = FakeGitLab()
        fake.file_status["util.go"] = 404
        fake.register()

        result = _walker().walk()

        assert result.error is None
        for project in result.projects:
            files = _by_path(project)
            assert len(files) == 3
            assert files["util.go"].content == ""
            assert files["util.go"].project_id == project.id
            assert files["cmd/main.go"].content != ""

    @responses.activate
    def test_transport_failure_drops_file_and_reports_it(self):
        fake = FakeGitLab()
        fake.file_errors.add("util.go")
        fake.register()

        result = _walker().walk()

        for project in result.projects:
            assert "util.go" not in _by_path(project)
            assert len(project.files) == 2
        assert result.error is not None
        assert "util.go" in str(result.error)
        assert {e.path for e in result.errors} == {"util.go"}
        assert len(result.errors) == 2

    @responses.activate
    def test_unreachable_tree_drops_only_that_project(self):
        fake = FakeGitLab()
        fake.tree_errors.add(20)
        fake.register()

        result = _walker().walk()

        assert [p.id for p in result.projects] == [10]
        assert len(result.projects[0].files) == 3
        assert len(result.errors) == 1
        assert "web" in str(result.errors[0])

    @responses.activate
    def test_first_group_page_failure_is_fatal(self):
        responses.add(
            responses.GET, PROJECTS_URL, body=requests.ConnectionError("no route to host")
        )
        with pytest.raises(TransportError):
            _walker().walk()

    @responses.activate
    def test_first_group_page_not_a_list_is_fatal(self):
        responses.add(
            responses.GET, PROJECTS_URL, json={"message": "401 Unauthorized"}, status=401
        )
        with pytest.raises(DecodeError, match="Unauthorized"):
            _walker().walk()


class TestPagination:
    @responses.activate
    def test_group_pages_before_last_are_merged(self):
        pages = {
            1: [PROJECTS[0]],
            2: [PROJECTS[1]],
            3: [{"id": 30, "name": "never", "default_branch": "main"}],
        }
        requested = []

        def projects(request):
            page = int(parse_qs(urlparse(request.url).query).get("page", ["1"])[0])
            requested.append(page)
            return (200, {"x-total-pages": "3"}, json.dumps(pages[page]))

        fake = FakeGitLab(projects=PROJECTS)
        responses.add_callback(responses.GET, PROJECTS_URL, callback=projects)
        responses.add_callback(responses.GET, TREE_URL, callback=fake._tree)
        responses.add_callback(responses.GET, FILES_URL, callback=fake._file)

        result = _walker().walk()

        assert sorted(requested) == [1, 2]
        assert sorted(p.id for p in result.projects) == [10, 20]

    @responses.activate
    def test_undecodable_group_page_is_skipped(self):
        def projects(request):
            page = int(parse_qs(urlparse(request.url).query).get("page", ["1"])[0])
            if page == 1:
                return (200, {"x-total-pages": "4"}, json.dumps([PROJECTS[0]]))
            if page == 2:
                return (200, {"x-total-pages": "4"}, "not json")
            return (200, {"x-total-pages": "4"}, json.dumps([PROJECTS[1]]))

        fake = FakeGitLab()
        responses.add_callback(responses.GET, PROJECTS_URL, callback=projects)
        responses.add_callback(responses.GET, TREE_URL, callback=fake._tree)
        responses.add_callback(responses.GET, FILES_URL, callback=fake._file)

        result = _walker().walk()

        assert sorted(p.id for p in result.projects) == [10, 20]
        assert len(result.errors) == 1
        assert "not json" in str(result.errors[0])

    @responses.activate
    def test_undecodable_group_page_records_its_number(self):
        def projects(request):
            page = int(parse_qs(urlparse(request.url).query).get("page", ["1"])[0])
            if page == 3:
                return (500, {"x-total-pages": "5"}, "<html>oops</html>")
            return (200, {"x-total-pages": "5"}, json.dumps([PROJECTS[0]]))

        fake = FakeGitLab()
        responses.add_callback(responses.GET, PROJECTS_URL, callback=projects)
        responses.add_callback(responses.GET, TREE_URL, callback=fake._tree)
        responses.add_callback(responses.GET, FILES_URL, callback=fake._file)

        result = _walker().walk()

        assert [p.id for p in result.projects] == [10]
        assert len(result.errors) == 1
        assert result.errors[0].page == 3
        assert "[page=3]" in str(result.error)

    @responses.activate
    def test_undecodable_tree_page_records_its_number(self):
        def tree(request):
            page = int(parse_qs(urlparse(request.url).query).get("page", ["1"])[0])
            if page == 2:
                return (200, {"x-total-pages": "3"}, "not json")
            return (200, {"x-total-pages": "3"}, json.dumps(_tree(10)))

        fake = FakeGitLab(projects=[PROJECTS[0]])
        responses.add_callback(responses.GET, PROJECTS_URL, callback=fake._projects)
        responses.add_callback(responses.GET, TREE_URL, callback=tree)
        responses.add_callback(responses.GET, FILES_URL, callback=fake._file)

        result = _walker().walk()

        assert len(result.projects[0].files) == 3
        [error] = result.errors
        assert error.page == 2
        assert "[project=api]" in error.description

    @responses.activate
    def test_duplicate_tree_entries_are_emitted_once(self):
        tree = _tree(10) + _tree(10)[:1]
        fake = FakeGitLab(projects=[PROJECTS[0]], trees={10: tree})
        fake.register()

        result = _walker().walk()

        ids = [f.id for f in result.projects[0].files]
        assert sorted(ids) == sorted(set(ids))
        assert len(ids) == 3

    @responses.activate
    def test_identical_blobs_at_two_paths_log_the_dropped_path(self, caplog):
        tree = [
            {"id": "e69de29", "name": "__init__.py", "path": "pkg/__init__.py"},
            {"id": "e69de29", "name": "__init__.py", "path": "pkg/sub/__init__.py"},
        ]
        fake = FakeGitLab(projects=[PROJECTS[0]], trees={10: tree})
        fake.register()

        with caplog.at_level(logging.WARNING, logger="LabGrep.mirror"):
            result = _walker().walk()

        assert [f.path for f in result.projects[0].files] == ["pkg/__init__.py"]
        assert "pkg/sub/__init__.py" in caplog.text
        assert "e69de29" in caplog.text


class TestCancellation:
    @responses.activate
    def test_cancel_before_walk_submits_no_project(self):
        fake = FakeGitLab()
        fake.register()
        cancel = threading.Event()
        cancel.set()

        result = _walker().walk(cancel=cancel)

        assert result.cancelled is True
        assert result.projects == []
        assert fake.requested_files == []


class TestConcurrencyBound:
    def test_max_concurrency(self):
        walker = _walker(project_workers=3, file_workers=3, page_workers=3)
        assert walker.max_concurrency == 12

    def test_max_concurrency_uses_wider_nested_pool(self):
        walker = _walker(project_workers=2, file_workers=5, page_workers=1)
        assert walker.max_concurrency == 11


class TestDecoding:
    def test_decode_projects(self):
        projects = decode_projects(json.dumps(PROJECTS).encode())
        assert [p.id for p in projects] == [10, 20]
        assert projects[0].files == []

    def test_decode_projects_rejects_object(self):
        with pytest.raises(DecodeError):
            decode_projects(b'{"message": "404 Group Not Found"}')

    def test_decode_projects_rejects_missing_id(self):
        with pytest.raises(DecodeError, match="malformed"):
            decode_projects(b'[{"name": "no id"}]')

    def test_decode_tree_sets_project_id_and_empty_content(self):
        files = decode_tree(json.dumps(_tree(10)).encode(), 10)
        assert [f.path for f in files] == ["cmd/main.go", "util.go", "logo.png"]
        assert all(f.project_id == 10 and f.content == "" for f in files)
