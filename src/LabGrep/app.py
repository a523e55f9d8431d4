"""Streamlit UI for LabGrep."""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor

import streamlit as st

from LabGrep import token_store
from LabGrep.cli import update_cache
from LabGrep.config import ConfigError, Settings, load_settings
from LabGrep.gitlab import GitLabError
from LabGrep.models import MirrorProgress
from LabGrep.search import search_projects, validate_pattern
from LabGrep.store import MirrorStore

_MAX_HITS = 500


def main() -> None:
    st.set_page_config(
        page_title="LabGrep",
        page_icon="🔎",
        layout="wide",
    )

    try:
        settings = load_settings()
    except ConfigError as exc:
        st.error(f"Invalid configuration: {exc}")
        return

    # --- Header with settings popover ---
    header_left, header_right = st.columns([8, 1])
    with header_left:
        st.title("LabGrep")
    with header_right:
        st.markdown("<div style='height: 1.5rem'></div>", unsafe_allow_html=True)
        with st.popover("", use_container_width=True):
            st.subheader("Settings")

            saved = token_store.load_token(settings.endpoint) or ""
            token = st.text_input(
                "GitLab Token",
                value=settings.token or saved,
                type="password",
                help="Personal access token with read_api and read_repository scopes.",
            )

            if token_store.is_available():
                remember = st.checkbox(
                    "Save token to OS keychain",
                    value=bool(saved),
                )
                if remember and token:
                    token_store.save_token(token, settings.endpoint)
                elif not remember and saved:
                    token_store.delete_token(settings.endpoint)

    settings.token = token.strip() or None
    st.caption(
        f"Group `{settings.group or '?'}` at `{settings.endpoint or '?'}`, "
        f"cached in `{settings.db_path}`."
    )

    store = MirrorStore(settings.db_path)

    if st.button("Refresh mirror", use_container_width=True):
        _run_refresh(settings, store)

    # --- Search ---
    pattern = st.text_input("Regular expression", placeholder=r"func\s+Main")
    problem = validate_pattern(pattern) if pattern else None
    if problem:
        st.error(f"Invalid regex: {problem}")

    col_projects, col_context = st.columns([4, 1])
    with col_projects:
        names = st.multiselect(
            "Projects",
            store.project_names(),
            help="Leave empty to search every cached project.",
        )
    with col_context:
        context = st.number_input("Context lines", min_value=1, max_value=20, value=1)

    search_clicked = st.button(
        "Search",
        type="primary",
        use_container_width=True,
        disabled=not pattern or bool(problem),
    )
    if search_clicked:
        _run_search(store, pattern, names, int(context))


def _run_refresh(settings: Settings, store: MirrorStore) -> None:
    """Mirror the group on a worker thread while showing progress."""
    progress = MirrorProgress()
    progress_bar = st.progress(0.0, text="Listing projects...")
    status_text = st.empty()

    with ThreadPoolExecutor(max_workers=1) as executor:
        future = executor.submit(update_cache, settings, store, None, progress)
        while not future.done():
            if progress.total_projects:
                pct = progress.mirrored_projects / progress.total_projects
                progress_bar.progress(
                    min(pct, 1.0), text=f"Mirrored: {progress.current_project}"
                )
                status_text.text(
                    f"{progress.mirrored_projects}/{progress.total_projects} projects"
                )
            time.sleep(0.2)

        try:
            result = future.result()
        except ConfigError as exc:
            st.error(f"Missing configuration: {exc}")
            return
        except GitLabError as exc:
            st.error(str(exc))
            return

    progress_bar.progress(1.0, text="Done!")
    st.success(f"Mirrored {len(result.projects)} projects.")
    if result.errors:
        with st.expander(f"⚠ {len(result.errors)} errors", expanded=False):
            for err in result.errors:
                st.text(str(err))


def _run_search(store: MirrorStore, pattern: str, names: list[str], context: int) -> None:
    projects = store.select_projects(names) if names else store.select_all_projects()
    if not projects:
        st.warning("No cached projects. Refresh the mirror first.")
        return

    hits = 0
    for hit in search_projects(projects, pattern, context):
        hits += 1
        if hits > _MAX_HITS:
            st.caption(f"Showing the first {_MAX_HITS:,} matches only.")
            break
        with st.expander(f"{hit.project} / {hit.path}:{hit.match.line_number}", expanded=True):
            st.code(hit.match.text)

    if not hits:
        st.info("No matches.")


if __name__ == "__main__":
    main()
