"""Concurrent fetching of the remaining pages of a paginated listing."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable

from LabGrep.fan_in import FanInCollector
from LabGrep.gitlab import AggregateError, GitLabError
from LabGrep.models import FetchError, PageBatch

logger = logging.getLogger(__name__)

PageFetch = Callable[[str, dict, int], PageBatch]


@dataclass
class PageWalkResult:
    batches: list[PageBatch] = field(default_factory=list)
    errors: list[FetchError] = field(default_factory=list)

    @property
    def payloads(self) -> list[bytes]:
        return [batch.body for batch in self.batches]

    @property
    def error(self) -> AggregateError | None:
        if not self.errors:
            return None
        return AggregateError(self.errors)


def pages_to_fetch(total_pages: int | None) -> range:
    """Page numbers fetched after the first one.

    Mirrors the GitLab listing loop this tool has always used: pages
    2 .. total_pages - 1. The last page is never requested.
    """
    if total_pages is None:
        return range(0)
    return range(2, total_pages)


def fetch_remaining_pages(
    fetch: PageFetch,
    first: PageBatch,
    url: str,
    params: dict | None = None,
    workers: int = 3,
    cancel: threading.Event | None = None,
) -> PageWalkResult:
    """Fetch the pages after *first* concurrently.

    Payload order is arrival order. Failed pages are returned as
    :class:`FetchError` values next to the payloads that succeeded.
    """
    pages = pages_to_fetch(first.total_pages)
    result = PageWalkResult()
    if not pages:
        return result

    params = dict(params or {})
    collector: FanInCollector[PageBatch | FetchError] = FanInCollector(
        maxsize=30, name="page-fan-in"
    )

    def _fetch(page: int) -> None:
        try:
            batch = fetch(url, params, page)
        except GitLabError as exc:
            error = FetchError(description=str(exc), page=page)
        except Exception as exc:
            error = FetchError(description=f"unexpected error: {exc!r}", page=page)
        else:
            collector.put(batch)
            return
        logger.warning("failed to fetch page %d of %s: %s", page, url, error.description)
        collector.put(error)

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="page") as pool:
        for page in pages:
            if cancel is not None and cancel.is_set():
                logger.info("cancelled before page %d of %s", page, url)
                break
            pool.submit(_fetch, page)
    collector.close()

    for item in collector.result():
        if isinstance(item, FetchError):
            result.errors.append(item)
        else:
            result.batches.append(item)

    return result
