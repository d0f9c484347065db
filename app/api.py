"""FastAPI surface over daily report editing sessions.

Sessions live in an in-process registry keyed by (actor, date). Handlers are
coroutines so edits and autosave timers share the event loop.

Sessions are not thread-safe, so handlers run their database calls inline on
the loop instead of in the threadpool. Each call is one short transaction
against the local SQLite file; a networked database would need the session
work moved off the loop together with the timers.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import datetime
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

# Ensure sibling absolute imports (e.g., "import database") resolve.
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from autosave import AsyncioTimerFactory  # noqa: E402
from backup import JsonFileCache, LocalBackupStore  # noqa: E402
from database import SessionLocal, init_database, list_staff_members  # noqa: E402
from errors import DateLockedError, InvariantViolationError, ReportEngineError  # noqa: E402
from gateway import PersistenceGateway  # noqa: E402
from locator import RecordLocator  # noqa: E402
from report_session import DailyReportSession  # noqa: E402
from roles import RoleResolver  # noqa: E402
from settings import BACKUP_DIR, EngineConfig  # noqa: E402


logger = logging.getLogger(__name__)


class SessionRegistry:
    """Keeps one editing session per (actor, date)."""

    def __init__(
        self,
        session_factory: Callable,
        backup_store: LocalBackupStore,
        timer_factory: Callable,
        *,
        config: EngineConfig | None = None,
        clock: Optional[Callable[[], datetime.datetime]] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.session_factory = session_factory
        self.gateway = PersistenceGateway(session_factory, module_key=self.config.module_key)
        self.backup_store = backup_store
        self.timer_factory = timer_factory
        self.clock = clock or (lambda: datetime.datetime.now(datetime.timezone.utc))
        self._sessions: Dict[Tuple[str, datetime.date], DailyReportSession] = {}

    def _staff_directory(self) -> Dict[str, str]:
        try:
            with self.session_factory() as db:
                members = list_staff_members(db, self.config.staff_directory_roles)
        except SQLAlchemyError:
            logger.warning("Staff directory unavailable; staff names will not auto-fill", exc_info=True)
            return {}
        return {member["user_id"]: member["full_name"] for member in members}

    def open(self, actor_id: str, report_date: datetime.date) -> DailyReportSession:
        """Return the actor's session for the date, reloading it when nothing is unsaved.

        The actor's idle sessions for other dates are dropped.
        """
        key = (actor_id, report_date)
        self._evict_idle(actor_id, keep=key)
        session = self._sessions.get(key)
        if session is not None:
            if not session.has_unsaved_changes():
                session.load()
            return session
        locator = RecordLocator(self.gateway, RoleResolver(self.session_factory, self.config.manager_roles))
        session = DailyReportSession(
            actor_id,
            self.gateway,
            locator,
            self.backup_store,
            timer_factory=self.timer_factory,
            config=self.config,
            staff_directory=self._staff_directory(),
            report_date=report_date,
            clock=self.clock,
        )
        session.load()
        self._sessions[key] = session
        return session

    def _evict_idle(self, actor_id: str, keep: Tuple[str, datetime.date]) -> None:
        for key, session in list(self._sessions.items()):
            if key[0] == actor_id and key != keep and not session.has_unsaved_changes():
                self._sessions.pop(key)
                session.scheduler.cancel()
                logger.debug("Dropped idle session for %s on %s", actor_id, key[1])

    def get(self, actor_id: str, report_date: datetime.date) -> DailyReportSession:
        session = self._sessions.get((actor_id, report_date))
        if session is None:
            raise HTTPException(status_code=404, detail="No open session for this actor and date")
        return session

    def drop(self, actor_id: str, report_date: datetime.date) -> Optional[DailyReportSession]:
        return self._sessions.pop((actor_id, report_date), None)

    def close_all(self) -> None:
        for key in list(self._sessions):
            session = self._sessions.pop(key)
            session.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_database()
    config = EngineConfig.from_env()
    app.state.registry = SessionRegistry(
        SessionLocal,
        LocalBackupStore(JsonFileCache(BACKUP_DIR), module_key=config.module_key),
        AsyncioTimerFactory(),
        config=config,
    )
    yield
    logger.info("Daily report API shutting down; flushing open sessions")
    app.state.registry.close_all()


app = FastAPI(title="Daily Report API", version="0.1", lifespan=lifespan)


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


@app.exception_handler(InvariantViolationError)
async def invariant_violation_handler(_: Request, exc: InvariantViolationError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(DateLockedError)
async def date_locked_handler(_: Request, exc: DateLockedError) -> JSONResponse:
    return JSONResponse(status_code=423, content={"detail": str(exc), "locked_by": exc.locked_by})


@app.exception_handler(ReportEngineError)
async def engine_error_handler(_: Request, exc: ReportEngineError) -> JSONResponse:
    logger.warning("Request failed: %s", exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(IndexError)
async def row_index_handler(_: Request, exc: IndexError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


def _parse_report_date(value: str) -> datetime.date:
    try:
        return datetime.date.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="report_date must be YYYY-MM-DD")


def _field_payload(payload: Dict[str, Any]) -> Tuple[str, Any]:
    field = (payload.get("field") or "").strip()
    if not field:
        raise HTTPException(status_code=400, detail="field is required")
    return field, payload.get("value")


def _require_manager(registry: SessionRegistry, actor_id: str) -> None:
    resolver = RoleResolver(registry.session_factory, registry.config.manager_roles)
    if not resolver.is_manager(actor_id):
        raise HTTPException(status_code=403, detail="Only managers can lock or unlock report dates")


def _state(session: DailyReportSession) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder(session.snapshot()))


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/v1/reports")
async def saved_reports(
    limit: int = Query(50, ge=1, le=500),
    registry: SessionRegistry = Depends(get_registry),
) -> JSONResponse:
    reports = registry.gateway.list_reports(limit=limit)
    return JSONResponse(content=jsonable_encoder({"reports": reports}))


@app.get("/api/v1/reports/{report_date}/session")
async def open_session(
    report_date: str,
    actor: str = Query(..., min_length=1),
    registry: SessionRegistry = Depends(get_registry),
) -> JSONResponse:
    session = registry.open(actor, _parse_report_date(report_date))
    return _state(session)


@app.patch("/api/v1/reports/{report_date}/orders/{index}")
async def update_order_row(
    report_date: str,
    index: int,
    payload: Dict[str, Any],
    actor: str = Query(..., min_length=1),
    registry: SessionRegistry = Depends(get_registry),
) -> JSONResponse:
    session = registry.get(actor, _parse_report_date(report_date))
    field, value = _field_payload(payload)
    session.update_order_field(index, field, value)
    return _state(session)


@app.patch("/api/v1/reports/{report_date}/staff/{index}")
async def update_staff_row(
    report_date: str,
    index: int,
    payload: Dict[str, Any],
    actor: str = Query(..., min_length=1),
    registry: SessionRegistry = Depends(get_registry),
) -> JSONResponse:
    session = registry.get(actor, _parse_report_date(report_date))
    field, value = _field_payload(payload)
    session.update_staff_field(index, field, value)
    return _state(session)


@app.post("/api/v1/reports/{report_date}/orders")
async def add_order_row(
    report_date: str,
    actor: str = Query(..., min_length=1),
    registry: SessionRegistry = Depends(get_registry),
) -> JSONResponse:
    session = registry.get(actor, _parse_report_date(report_date))
    session.add_order_row()
    return _state(session)


@app.post("/api/v1/reports/{report_date}/staff")
async def add_staff_row(
    report_date: str,
    actor: str = Query(..., min_length=1),
    registry: SessionRegistry = Depends(get_registry),
) -> JSONResponse:
    session = registry.get(actor, _parse_report_date(report_date))
    session.add_staff_row()
    return _state(session)


@app.delete("/api/v1/reports/{report_date}/orders/{index}")
async def remove_order_row(
    report_date: str,
    index: int,
    actor: str = Query(..., min_length=1),
    registry: SessionRegistry = Depends(get_registry),
) -> JSONResponse:
    session = registry.get(actor, _parse_report_date(report_date))
    session.remove_order_row(index)
    return _state(session)


@app.delete("/api/v1/reports/{report_date}/staff/{index}")
async def remove_staff_row(
    report_date: str,
    index: int,
    actor: str = Query(..., min_length=1),
    registry: SessionRegistry = Depends(get_registry),
) -> JSONResponse:
    session = registry.get(actor, _parse_report_date(report_date))
    session.remove_staff_row(index)
    return _state(session)


@app.post("/api/v1/reports/{report_date}/flush")
async def flush_session(
    report_date: str,
    actor: str = Query(..., min_length=1),
    registry: SessionRegistry = Depends(get_registry),
) -> JSONResponse:
    session = registry.get(actor, _parse_report_date(report_date))
    flushed = session.flush()
    content = jsonable_encoder(session.snapshot())
    content["flushed"] = flushed
    return JSONResponse(content=content)


@app.post("/api/v1/reports/{report_date}/finalize")
async def finalize_session(
    report_date: str,
    actor: str = Query(..., min_length=1),
    registry: SessionRegistry = Depends(get_registry),
) -> JSONResponse:
    parsed = _parse_report_date(report_date)
    session = registry.get(actor, parsed)
    summary = session.finalize()
    registry.drop(actor, parsed)
    return JSONResponse(content=jsonable_encoder(summary))


@app.delete("/api/v1/reports/{report_date}/session")
async def close_session(
    report_date: str,
    actor: str = Query(..., min_length=1),
    registry: SessionRegistry = Depends(get_registry),
) -> JSONResponse:
    session = registry.drop(actor, _parse_report_date(report_date))
    if session is None:
        raise HTTPException(status_code=404, detail="No open session for this actor and date")
    flushed = session.close()
    return JSONResponse(content={"closed": True, "flushed": flushed})


@app.post("/api/v1/dates/{report_date}/lock")
async def lock_date(
    report_date: str,
    actor: str = Query(..., min_length=1),
    registry: SessionRegistry = Depends(get_registry),
) -> JSONResponse:
    parsed = _parse_report_date(report_date)
    _require_manager(registry, actor)
    if not registry.gateway.lock_date(parsed, actor):
        raise HTTPException(status_code=409, detail="This date is already locked")
    return JSONResponse(content={"report_date": parsed.isoformat(), "locked": True})


@app.delete("/api/v1/dates/{report_date}/lock")
async def unlock_date(
    report_date: str,
    actor: str = Query(..., min_length=1),
    registry: SessionRegistry = Depends(get_registry),
) -> JSONResponse:
    parsed = _parse_report_date(report_date)
    _require_manager(registry, actor)
    if not registry.gateway.unlock_date(parsed, actor):
        raise HTTPException(status_code=404, detail="This date is not locked")
    return JSONResponse(content={"report_date": parsed.isoformat(), "locked": False})
