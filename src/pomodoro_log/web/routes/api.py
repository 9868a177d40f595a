"""API routes for the timer and the session history."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from pomodoro_log.core.orchestrator import Orchestrator
from pomodoro_log.focus.state import TimerType
from pomodoro_log.history.models import HistoricalStats, ImportData
from pomodoro_log.storage.database import StorageError
from pomodoro_log.web.app import get_orchestrator

router = APIRouter(tags=["api"])

START_ACTIONS = {
    TimerType.FOCUS: "startFocus",
    TimerType.SHORT_BREAK: "startShortBreak",
    TimerType.LONG_BREAK: "startLongBreak",
}


class TimerResponse(BaseModel):
    """Timer state plus its compact badge text."""
    state: dict[str, Any]
    badge: str


class NextPhaseResponse(BaseModel):
    type: TimerType
    sessions_today: int


class DailyGroupsResponse(BaseModel):
    """Sessions per local day, keyed by local midnight in epoch milliseconds."""
    since: str
    groups: dict[int, int]


class ImportResponse(BaseModel):
    added: int


class DedupResponse(BaseModel):
    removed: int


class SettingUpdate(BaseModel):
    phase: TimerType
    field: str
    value: Any


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database_connected: bool
    database_size_mb: float
    timer_status: str | None


async def _dispatch(orchestrator: Orchestrator, message: dict[str, Any]) -> dict[str, Any]:
    result = await orchestrator.dispatcher.dispatch(message)
    if "error" in result:
        raise HTTPException(status_code=400, detail=result["error"])
    return result


@router.get("/health", response_model=HealthResponse)
async def health_check(orchestrator: Orchestrator = Depends(get_orchestrator)) -> HealthResponse:
    """API health check."""
    health = await orchestrator.get_health()
    database = health.get("database", {})
    return HealthResponse(
        status=health["status"],
        database_connected=database.get("connected", False),
        database_size_mb=database.get("size_mb", 0.0),
        timer_status=health.get("timer", {}).get("timer_status"),
    )


@router.get("/timer", response_model=TimerResponse)
async def get_timer(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return await _dispatch(orchestrator, {"action": "getCurrentTimer"})


@router.post("/timer/toggle", response_model=TimerResponse)
async def toggle_timer(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return await _dispatch(orchestrator, {"action": "toggleTimer"})


@router.post("/timer/start/{phase}", response_model=TimerResponse)
async def start_timer(phase: TimerType, orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    """Start a phase, restarting any active one."""
    return await _dispatch(orchestrator, {"action": START_ACTIONS[phase]})


@router.post("/timer/pause", response_model=TimerResponse)
async def pause_timer(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return await _dispatch(orchestrator, {"action": "pause"})


@router.post("/timer/resume", response_model=TimerResponse)
async def resume_timer(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return await _dispatch(orchestrator, {"action": "resume"})


@router.post("/timer/stop", response_model=TimerResponse)
async def stop_timer(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return await _dispatch(orchestrator, {"action": "stop"})


@router.post("/timer/reset-cycle", response_model=TimerResponse)
async def reset_cycle(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return await _dispatch(orchestrator, {"action": "resetCycle"})


@router.get("/timer/next", response_model=NextPhaseResponse)
async def next_phase(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return await _dispatch(orchestrator, {"action": "getNextPhaseInfo"})


@router.get("/stats", response_model=HistoricalStats)
async def get_stats(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    """Counts for today, this week and this month plus averages."""
    return await _dispatch(orchestrator, {"action": "getHistoricalStats"})


@router.get("/history/daily", response_model=DailyGroupsResponse)
async def daily_groups(
    days: int = Query(30, ge=1, le=3660),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return await _dispatch(orchestrator, {"action": "getDailyGroups", "days": days})


@router.get("/history/export", response_model=ImportData)
async def export_history(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    """History in the interchange format."""
    return await _dispatch(orchestrator, {"action": "exportHistory"})


@router.get("/history/export.csv", response_class=PlainTextResponse)
async def export_csv(orchestrator: Orchestrator = Depends(get_orchestrator)) -> PlainTextResponse:
    result = await _dispatch(orchestrator, {"action": "exportCsv"})
    return PlainTextResponse(
        result["csv"],
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="pomodoro-history.csv"'},
    )


@router.post("/history/import", response_model=ImportResponse)
async def import_history(
    payload: dict[str, Any] = Body(...),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Merge an interchange payload; sessions already present are skipped."""
    return await _dispatch(orchestrator, {"action": "importHistory", "data": payload})


@router.delete("/history")
async def clear_history(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return await _dispatch(orchestrator, {"action": "clearHistory"})


@router.post("/history/dedup", response_model=DedupResponse)
async def deduplicate_history(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return await _dispatch(orchestrator, {"action": "deduplicateHistory"})


@router.get("/settings")
async def get_settings(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return orchestrator.settings.get_settings().to_dict()


@router.patch("/settings")
async def update_setting(
    update: SettingUpdate,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    try:
        settings = await orchestrator.settings.update_setting(update.phase, update.field, update.value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return settings.to_dict()


@router.post("/commands")
async def run_command(
    message: dict[str, Any] = Body(...),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Raw dispatcher access; failures come back as ``{"error": ...}``."""
    return await orchestrator.dispatcher.dispatch(message)
