"""Sudreg registry synchronization.

One run:

1. acquire a bearer token,
2. refresh the NKD taxonomy (best effort; failure is only a warning),
3. load every already-cached MBS into a set,
4. page through ``/subjekti`` until an empty page, and for each record
   - skip it without any network call when its MBS is already known,
   - otherwise fetch the expanded detail document, upsert the company with
     detail-derived fields taking precedence, and replace its NKD
     associations,
   - if the detail fetch fails, still upsert the list-level row and clear its
     associations so the company is thinner but not lost.

Runs are never retried automatically. Re-running is cheap because known
companies are skipped; that set, not in-memory progress, is what makes a run
resumable after a restart.

Usually started in the background through ``api.jobs.manager``; can also be
run in the foreground:

    python jobs/sudreg_sync.py --page-size 500
"""

from __future__ import annotations

import argparse
import sys
import threading
import time
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

# Allow running this file directly by ensuring the project root is importable.
_PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

from sqlalchemy.orm import Session as SASession

from logging_utils import configure_app_logging, get_logger
from settings import SETTINGS
from utils import registry_store
from utils.nkd_extract import extract_classifications, taxonomy_entry
from utils.sudreg_api import SudregApiError, SudregClient
from utils.sudreg_mapping import map_to_canonical, merge_canonical

logger = get_logger(__name__)

MIN_PAGE_SIZE = 1
MAX_PAGE_SIZE = 9999


def clamp_page_size(value: Any) -> int:
    try:
        size = int(value)
    except (TypeError, ValueError):
        size = int(SETTINGS.get("SUDREG_PAGE_SIZE") or 1000)
    return max(MIN_PAGE_SIZE, min(size, MAX_PAGE_SIZE))


@dataclass
class SyncState:
    running: bool = False
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    current_page: int = 0
    processed_companies: int = 0
    imported_companies: int = 0
    skipped_companies: int = 0
    imported_classifications: int = 0
    last_error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


class SyncTracker:
    """Owner of the process-wide ``SyncState``.

    All mutation goes through these methods (called from the sync thread);
    ``snapshot()`` is safe to call from any thread at any rate.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = SyncState()

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return self._state.as_dict()

    def try_begin(self) -> bool:
        """Reset to a fresh running state, unless a run is already active."""
        with self._lock:
            if self._state.running:
                return False
            self._state = SyncState(running=True, started_at=time.time())
            return True

    def set_page(self, page: int) -> None:
        with self._lock:
            self._state.current_page = page

    def bump(
        self,
        *,
        processed: int = 0,
        imported: int = 0,
        skipped: int = 0,
        classifications: int = 0,
    ) -> None:
        with self._lock:
            self._state.processed_companies += processed
            self._state.imported_companies += imported
            self._state.skipped_companies += skipped
            self._state.imported_classifications += classifications

    def record_error(self, message: str) -> None:
        with self._lock:
            self._state.last_error = message

    def finish(self) -> None:
        with self._lock:
            self._state.running = False
            self._state.finished_at = time.time()


def refresh_nkd_taxonomy(session: SASession, api: SudregClient) -> int:
    """Upsert every taxonomy entry the API lists. Returns rows upserted."""

    upserted = 0
    for record in api.list_nkd():
        code, name = taxonomy_entry(record)
        if registry_store.upsert_nkd_code(session, code, name, record):
            upserted += 1
    return upserted


def enrich_company(
    session: SASession,
    api: SudregClient,
    mbs: str,
    *,
    fallback: Optional[Dict[str, Any]] = None,
) -> tuple[Dict[str, Any], int]:
    """Fetch the expanded detail document for ``mbs`` and store it.

    Detail-derived fields win over ``fallback`` (usually the list-level
    mapping or the currently cached row). Returns ``(canonical, nkd_rows)``.
    Upstream errors propagate to the caller.
    """

    detail = api.company_detail(mbs)
    canonical = merge_canonical(map_to_canonical(detail), fallback or {})
    # The detail endpoint is keyed by MBS; never let a mapping gap re-key the row.
    canonical["mbs"] = mbs
    written = registry_store.save_company(
        session, canonical, detail, extract_classifications(detail)
    )
    return canonical, written


def _import_record(
    session: SASession,
    api: SudregClient,
    record: Any,
    known: set[str],
    tracker: SyncTracker,
) -> None:
    listed = map_to_canonical(record)
    mbs = listed["mbs"]

    if not mbs:
        tracker.bump(processed=1)
        return

    if mbs in known:
        tracker.bump(processed=1, skipped=1)
        return

    written = 0
    try:
        _canonical, written = enrich_company(session, api, mbs, fallback=listed)
    except SudregApiError as e:
        logger.warning("Detail fetch failed; storing list-level row | mbs=%s err=%s", mbs, e)
        registry_store.save_company(session, listed, record, [])

    known.add(mbs)
    tracker.bump(processed=1, imported=1, classifications=written)


def run_sync(
    session: SASession,
    *,
    api: SudregClient,
    tracker: SyncTracker,
    page_size: Any = None,
) -> Dict[str, Any]:
    """Run one full pass. Structural failures propagate to the caller."""

    size = clamp_page_size(page_size if page_size is not None else SETTINGS.get("SUDREG_PAGE_SIZE"))

    api.tokens.get_token()

    try:
        taxonomy_rows = refresh_nkd_taxonomy(session, api)
        tracker.bump(classifications=taxonomy_rows)
        logger.info("NKD taxonomy refreshed | rows=%s", taxonomy_rows)
    except Exception as e:
        logger.warning("NKD taxonomy refresh failed; continuing | err=%s", e)
        tracker.record_error(f"NKD taxonomy refresh failed: {e}")

    known = registry_store.load_known_mbs(session)
    logger.info("Sync starting | known_companies=%s page_size=%s", len(known), size)

    page = 0
    offset = 0
    while True:
        page += 1
        tracker.set_page(page)
        records = api.list_companies(offset=offset, limit=size)
        if not records:
            break

        for record in records:
            _import_record(session, api, record, known, tracker)

        state = tracker.snapshot()
        logger.info(
            "Sync page done | page=%s offset=%s records=%s processed=%s imported=%s skipped=%s",
            page,
            offset,
            len(records),
            state["processed_companies"],
            state["imported_companies"],
            state["skipped_companies"],
        )
        offset += size

    # The final, empty page is only the end-of-data probe.
    tracker.set_page(page - 1)
    return tracker.snapshot()


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Synchronize the Sudreg company cache")
    p.add_argument(
        "--page-size",
        type=int,
        default=None,
        help="Listing page size (1-9999). Default: SUDREG_PAGE_SIZE.",
    )
    p.add_argument(
        "--log-level",
        default=None,
        help="Override LOG_LEVEL for this run (e.g. DEBUG, INFO, WARNING)",
    )
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    if args.log_level:
        configure_app_logging(args.log_level)

    import db
    from models import Base

    Base.metadata.create_all(bind=db.engine)

    tracker = SyncTracker()
    tracker.try_begin()
    session = db.SessionLocal()
    failed = False
    try:
        run_sync(session, api=SudregClient(), tracker=tracker, page_size=args.page_size)
    except Exception as e:
        failed = True
        logger.exception("Sudreg sync failed")
        tracker.record_error(f"{type(e).__name__}: {e}")
    finally:
        tracker.finish()
        session.close()

    summary = tracker.snapshot()
    print(
        "processed={processed_companies} imported={imported_companies} "
        "skipped={skipped_companies} classifications={imported_classifications} "
        "pages={current_page} last_error={last_error}".format(**summary)
    )
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
