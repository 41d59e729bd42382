import threading
import traceback
from typing import Any, Callable, Dict, Optional

import db
from jobs.sudreg_sync import SyncTracker, run_sync
from logging_utils import get_logger
from models import Base
from utils import registry_store
from utils.sudreg_api import SudregClient

logger = get_logger(__name__)


class SudregSyncJob:
    """Single-flight background runner for the Sudreg sync.

    ``start()`` never queues: while a run is active it returns None and leaves
    the state untouched. The run itself happens on a daemon thread whose
    handle is not awaited by the caller; its ``finally`` block always clears
    ``running``.
    """

    def __init__(
        self,
        *,
        api_factory: Callable[[], Any] = SudregClient,
        page_size: Any = None,
    ) -> None:
        self._tracker = SyncTracker()
        self._api_factory = api_factory
        self._page_size = page_size
        self._thread: threading.Thread | None = None

    def get_state(self) -> Dict[str, Any]:
        """Current counters merged with live cache row counts."""

        state = self._tracker.snapshot()
        session = db.SessionLocal()
        try:
            state.update(registry_store.count_rows(session))
        except Exception:
            # Tables may not exist yet on a fresh database.
            logger.debug("Cache counts unavailable", exc_info=True)
            state.update(
                {"cached_companies": 0, "cached_nkd_codes": 0, "cached_company_nkd": 0}
            )
        finally:
            session.close()
        return state

    def start(self) -> Optional[Dict[str, Any]]:
        """Begin a background run.

        Returns the freshly reset state snapshot, or None if a run is already
        in progress.
        """
        if not self._tracker.try_begin():
            return None

        snapshot = self._tracker.snapshot()

        def _runner() -> None:
            session = None
            try:
                Base.metadata.create_all(bind=db.engine)
                session = db.SessionLocal()
                summary = run_sync(
                    session,
                    api=self._api_factory(),
                    tracker=self._tracker,
                    page_size=self._page_size,
                )
                logger.info(
                    "Sudreg sync finished | processed=%s imported=%s skipped=%s",
                    summary["processed_companies"],
                    summary["imported_companies"],
                    summary["skipped_companies"],
                )
            except Exception as e:
                logger.error("Sudreg sync failed\n%s", traceback.format_exc())
                self._tracker.record_error(f"{type(e).__name__}: {e}")
            finally:
                if session is not None:
                    session.close()
                self._tracker.finish()

        t = threading.Thread(target=_runner, name="sudreg_sync", daemon=True)
        self._thread = t
        t.start()
        return snapshot

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the current run's thread. Returns True once it has ended."""

        t = self._thread
        if t is None:
            return True
        t.join(timeout)
        return not t.is_alive()


# Module-level singleton shared by the HTTP layer.
sudreg_sync_job = SudregSyncJob()
