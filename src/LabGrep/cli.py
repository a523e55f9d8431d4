"""Command-line entry point: mirror a GitLab group and grep it."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

from LabGrep.config import ConfigError, Settings, load_settings
from LabGrep.gitlab import GitLabClient, GitLabError
from LabGrep.mirror import MirrorResult, MirrorWalker
from LabGrep.models import MirrorProgress, ProjectRecord
from LabGrep.search import ansi_highlight, search_projects, validate_pattern
from LabGrep.store import MirrorStore

logger = logging.getLogger(__name__)

EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="labgrep",
        description="Mirror every repository of a GitLab group and grep across them.",
    )
    parser.add_argument("pattern", nargs="?", help="regular expression to search for")
    parser.add_argument(
        "-c",
        "--cache",
        action="store_true",
        help="only search the projects already in the local cache",
    )
    parser.add_argument(
        "-u",
        "--update",
        action="store_true",
        help="update the projects in the local cache and exit",
    )
    parser.add_argument(
        "-p",
        "--projects",
        action="append",
        default=[],
        metavar="NAME",
        help="only search this project (repeatable)",
    )
    parser.add_argument(
        "-C",
        "--context",
        type=int,
        default=1,
        help="lines shown above and below each match (default: 1)",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="dotenv file to load settings from (default: .env)",
    )
    parser.add_argument(
        "--ui",
        action="store_true",
        help="open the web UI instead of searching from the terminal",
    )
    return parser


def update_cache(
    settings: Settings,
    store: MirrorStore,
    cancel: threading.Event | None = None,
    progress: MirrorProgress | None = None,
) -> MirrorResult:
    """Mirror the configured group and write the result to *store*.

    Raises ConfigError if the remote is not configured and GitLabError if
    the group listing cannot be fetched at all.
    """
    settings.require_remote()
    client = GitLabClient(settings.endpoint, settings.group, token=settings.token)
    walker = MirrorWalker(
        client,
        project_workers=settings.project_workers,
        file_workers=settings.file_workers,
        page_workers=settings.page_workers,
    )
    logger.info(
        "getting projects of group %s (at most %d requests in flight)",
        settings.group,
        walker.max_concurrency,
    )
    result = walker.walk(cancel=cancel, progress=progress)
    store.cache_projects(result.projects)
    if result.error is not None:
        logger.warning("%s", result.error)
    return result


def get_projects(
    settings: Settings,
    store: MirrorStore,
    names: list[str],
    from_cache: bool,
    cancel: threading.Event | None = None,
) -> list[ProjectRecord]:
    if not from_cache:
        projects = update_cache(settings, store, cancel).projects
        if names:
            wanted = set(names)
            projects = [p for p in projects if p.name in wanted]
        return projects

    if names:
        logger.info("selecting projects %s from cache", ", ".join(names))
        return store.select_projects(names)
    logger.info("selecting all cached projects")
    return store.select_all_projects()


def _install_signal_handlers(cancel: threading.Event) -> dict:
    def _handler(signum, frame):
        logger.warning(
            "received %s, finishing in-flight requests", signal.Signals(signum).name
        )
        cancel.set()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _handler)
    return previous


def _restore_signal_handlers(previous: dict) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.env_file)
    except ConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.ui:
        from LabGrep.ui_launcher import launch

        launch()
        return 0

    if not args.update and not args.pattern:
        parser.error("expected a regex")

    if args.pattern:
        problem = validate_pattern(args.pattern)
        if problem:
            print(f"error: invalid regex {problem}", file=sys.stderr)
            return 1

    store = MirrorStore(settings.db_path)
    cancel = threading.Event()
    previous = _install_signal_handlers(cancel)
    try:
        if args.update:
            result = update_cache(settings, store, cancel)
            print("done!")
            return EXIT_CANCELLED if result.cancelled else 0

        projects = get_projects(settings, store, args.projects, args.cache, cancel)
    except (ConfigError, GitLabError) as exc:
        logger.error("%s", exc)
        return 1
    finally:
        _restore_signal_handlers(previous)

    context = args.context if args.context > 0 else 1
    highlight = ansi_highlight if sys.stdout.isatty() else None

    print(f"looking for [pattern={args.pattern}]")
    found = 0
    for hit in search_projects(projects, args.pattern, context, highlight):
        found += 1
        print(
            f"Found in [project={hit.project}] [file={hit.path}] "
            f"[line={hit.match.line_number}]"
        )
        print(hit.match.text)
        print()
    print(f"done! {found} match(es)")
    return EXIT_CANCELLED if cancel.is_set() else 0


if __name__ == "__main__":
    sys.exit(main())
