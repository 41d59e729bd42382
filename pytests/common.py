"""Shared helpers for tests.

Intended usage:
- spin up a temporary SQLite database and point the app at it
- build realistic Sudreg listing/detail documents
- stand in for the Sudreg API (no network in tests)
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Iterable

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

import db as db_module
from models import Base
from utils.sudreg_api import UpstreamRequestError

__all__ = [
    "make_sqlite_engine",
    "create_empty_sqlite_db",
    "patch_app_db",
    "list_record",
    "detail_document",
    "FakeResponse",
    "FakeHttpSession",
    "FakeSudregApi",
]


def make_sqlite_engine(db_path: Path | str) -> Engine:
    """Create a SQLite engine suitable for tests (usable from the sync thread)."""

    if isinstance(db_path, Path):
        db_path = str(db_path)
    return create_engine(
        f"sqlite:///{db_path}", connect_args={"check_same_thread": False}
    )


def create_empty_sqlite_db(db_path: Path) -> tuple[Session, Engine]:
    """Create an empty SQLite DB file and initialize all models.

    Returns (session, engine).
    """

    engine = make_sqlite_engine(db_path)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    return SessionLocal(), engine


def patch_app_db(monkeypatch, engine: Engine) -> None:
    """Point `db.engine` / `db.SessionLocal` (used by the app and jobs) at `engine`."""

    monkeypatch.setattr(db_module, "engine", engine)
    monkeypatch.setattr(
        db_module,
        "SessionLocal",
        sessionmaker(autocommit=False, autoflush=False, bind=engine),
    )


def list_record(mbs: str, name: str, *, oib: str = "", city: str = "Zagreb") -> dict:
    """A `/subjekti` listing record (thin)."""

    return {
        "mbs": int(mbs) if mbs.isdigit() else mbs,
        "oib": oib,
        "naziv": name,
        "naziv_naselja": city,
    }


def detail_document(
    mbs: str,
    name: str,
    *,
    oib: str = "12345678901",
    city: str = "Zagreb",
    county: str = "Grad Zagreb",
    primary: str | None = "47.11",
    secondary: Iterable[str] = ("62.01",),
) -> dict:
    """An expanded `/detalji_subjekta` document, shaped like the real API."""

    doc: dict[str, Any] = {
        "mbs": int(mbs) if mbs.isdigit() else mbs,
        "potpuni_mbs": mbs.zfill(9),
        "oib": oib,
        "potpuni_oib": oib,
        "tvrtka": {"ime": name},
        "skracene_tvrtke": [{"ime": name.split(" ")[0]}],
        "status": {"sifra": 1, "naziv": "Aktivan"},
        "sud_nadlezan": {"sifra": 10, "naziv": "Trgovački sud u Zagrebu"},
        "sud_sluzba": {"sifra": 10, "naziv": "Trgovački sud u Zagrebu"},
        "sjediste": {
            "naziv_naselja": city,
            "naziv_zupanije": county,
            "ulica": "Ilica",
            "kucni_broj": 1,
        },
        "pravni_oblik": {
            "vrsta_pravnog_oblika": {"sifra": 4, "naziv": "društvo s ograničenom odgovornošću", "kratica": "d.o.o."}
        },
        "datum_osnivanja": "2010-05-04",
        "sporedne_djelatnosti": [
            {"nacionalna_klasifikacija_djelatnosti": {"sifra": code, "puni_naziv": f"Djelatnost {code}"}}
            for code in secondary
        ],
        "evidencijske_djelatnosti": [],
        "temeljni_kapitali": [{"iznos": 2500, "valuta": {"naziv": "EUR"}}],
        "postupci": [],
        "gfi": [{"godina": 2023, "vrsta_dokumenta": "GFI-POD"}],
        "promjene": [],
    }
    if primary is not None:
        doc["pretezita_djelatnost"] = {
            "nacionalna_klasifikacija_djelatnosti": {
                "sifra": primary,
                "puni_naziv": f"Djelatnost {primary}",
            }
        }
    return doc


class FakeResponse:
    def __init__(self, *, status_code: int = 200, json_data: Any = None, text: str = ""):
        self.status_code = status_code
        self._json_data = json_data
        self.text = text

    def json(self):
        if self._json_data is None:
            raise ValueError("not json")
        return self._json_data


class FakeHttpSession:
    """Records requests and replays queued responses (or raises queued errors)."""

    def __init__(self, responses: Iterable[Any] = ()):
        self._responses = list(responses)
        self.calls: list[dict] = []

    def _next(self):
        if not self._responses:
            raise RuntimeError("No more fake responses")
        r = self._responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r

    def post(self, url, data=None, auth=None, headers=None, timeout=None):
        self.calls.append(
            {"method": "POST", "url": url, "data": data, "auth": auth, "headers": headers or {}}
        )
        return self._next()

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append(
            {"method": "GET", "url": url, "params": params, "headers": headers or {}}
        )
        return self._next()


class FakeTokens:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls = 0

    def get_token(self) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return "fake-token"

    def invalidate(self) -> None:
        pass


class FakeSudregApi:
    """In-memory stand-in for `SudregClient`.

    `pages` are returned in call order (then empty pages); `details` maps MBS to
    detail documents; MBS values in `failing_details` raise UpstreamRequestError.
    """

    def __init__(
        self,
        *,
        pages: Iterable[list] = (),
        details: dict[str, Any] | None = None,
        nkd: Iterable[Any] = (),
        failing_details: Iterable[str] = (),
        nkd_error: Exception | None = None,
        list_error: Exception | None = None,
        token_error: Exception | None = None,
        gate: threading.Event | None = None,
    ):
        self.tokens = FakeTokens(token_error)
        self.pages = [list(p) for p in pages]
        self.details = dict(details or {})
        self.nkd = list(nkd)
        self.failing_details = set(failing_details)
        self.nkd_error = nkd_error
        self.list_error = list_error
        self.gate = gate
        self.list_calls: list[tuple[int, int]] = []
        self.detail_calls: list[str] = []

    def list_nkd(self) -> list:
        if self.nkd_error is not None:
            raise self.nkd_error
        return list(self.nkd)

    def list_companies(self, *, offset: int, limit: int) -> list:
        if self.gate is not None:
            self.gate.wait(timeout=5)
        self.list_calls.append((offset, limit))
        if self.list_error is not None:
            raise self.list_error
        idx = len(self.list_calls) - 1
        return list(self.pages[idx]) if idx < len(self.pages) else []

    def company_detail(self, mbs: str) -> Any:
        self.detail_calls.append(mbs)
        if mbs in self.failing_details:
            raise UpstreamRequestError(
                "Sudreg request failed status=503 endpoint=/detalji_subjekta",
                status=503,
                endpoint="/detalji_subjekta",
            )
        return self.details.get(mbs, {"mbs": mbs})
