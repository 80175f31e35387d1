import logging

import httpx
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response

from budgetsync.models.actions import (
    ConnectivityRequest,
    ExpenseAction,
    ExpensePayload,
    FlushResponse,
    IncomeAction,
    IncomePayload,
    SubmitResponse,
    dump_action,
)
from budgetsync.services.offline_queue import ActionRejected
from budgetsync.services.state import Services
from budgetsync.services.summary import build_chart_series, build_summary, export_csv

logger = logging.getLogger(__name__)

router = APIRouter()


def get_services(req: Request) -> Services:
    services = getattr(req.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Sync agent not ready")
    return services


async def _submit(req: Request, action: ExpenseAction | IncomeAction) -> SubmitResponse:
    services = get_services(req)
    try:
        result = await services.queue.submit(action, online=services.monitor.online)
    except ActionRejected as exc:
        raise HTTPException(status_code=502, detail=exc.detail)
    return SubmitResponse(queued=result.queued, stored=result.stored, status=result.status, record=result.record)


@router.get("/health")
def health():
    return {"ok": True}


@router.post("/expense", response_model=SubmitResponse)
async def submit_expense(req: Request, payload: ExpensePayload):
    return await _submit(req, ExpenseAction(payload=payload))


@router.post("/income", response_model=SubmitResponse)
async def submit_income(req: Request, payload: IncomePayload):
    return await _submit(req, IncomeAction(payload=payload))


@router.get("/sync/queue")
async def list_queue(req: Request):
    services = get_services(req)
    actions = await services.queue.pending()
    return {"count": len(actions), "actions": [dump_action(action) for action in actions]}


@router.post("/sync/flush", response_model=FlushResponse)
async def flush_queue(req: Request):
    services = get_services(req)
    if not services.monitor.online:
        raise HTTPException(status_code=409, detail="Offline, flush deferred until reconnect")
    result = await services.queue.flush()
    return FlushResponse(flushed=result.flushed, pending=result.pending)


@router.get("/sync/status")
async def sync_status(req: Request):
    services = get_services(req)
    pending = await services.queue.pending()
    return {
        "online": services.monitor.online,
        "banner": services.monitor.banner(),
        "pending": len(pending),
        "flushing": services.queue.flushing,
        "cache": {"version": services.assets.version, "state": services.assets.state.value},
    }


@router.post("/connectivity")
async def connectivity(req: Request, body: ConnectivityRequest):
    services = get_services(req)
    event = services.monitor.publish(body.online)
    return {"ok": True, "state": event.state.value}


async def _load_dashboard(services: Services) -> dict:
    try:
        return await services.api.fetch_dashboard()
    except httpx.HTTPError as exc:
        logger.warning("Dashboard refresh failed: %s", exc)
        raise HTTPException(status_code=502, detail="Dashboard unavailable")


@router.get("/dashboard/summary")
async def dashboard_summary(req: Request):
    services = get_services(req)
    data = await _load_dashboard(services)
    return {
        "summary": build_summary(data["expenses"], data["incomes"]),
        "chart": build_chart_series(data["expenses"], data["incomes"], tz=services.display_tz),
        "expenses": data["expenses"],
        "incomes": data["incomes"],
    }


@router.get("/dashboard/export")
async def dashboard_export(req: Request):
    data = await _load_dashboard(get_services(req))
    content = export_csv(data["expenses"], data["incomes"])
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="budget-export.csv"'},
    )
