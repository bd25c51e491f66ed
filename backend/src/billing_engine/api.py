from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Query, Request, status

from .engine import Engine
from .models import ChannelSyncResponse, JobRunResponse, JobStatusResponse, QrCodeResponse
from .notifier import ChannelSettingsMissingError
from .reconciler import ChannelSyncError
from .scheduler import JobNotFoundError
from .store import ChannelInstanceNotFoundError

router = APIRouter(prefix="/engine", tags=["engine"])


def _engine(request: Request) -> Engine:
    return request.app.state.engine


@router.get("/health")
def health(request: Request) -> dict[str, object]:
    engine = _engine(request)
    return {
        "status": "ok",
        "scheduler_running": engine.orchestrator.running,
        "timezone": engine.timezone.key,
    }


@router.get("/jobs", response_model=JobStatusResponse)
def list_jobs(request: Request) -> JobStatusResponse:
    orchestrator = _engine(request).orchestrator
    return JobStatusResponse(running=orchestrator.running, jobs=orchestrator.status())


@router.post("/jobs/{name}/run", response_model=JobRunResponse, status_code=status.HTTP_202_ACCEPTED)
async def run_job(name: str, request: Request) -> JobRunResponse:
    orchestrator = _engine(request).orchestrator
    triggered_at = datetime.now(timezone.utc)
    try:
        executed = await orchestrator.run_now(name)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"job not found: {name}") from exc
    if not executed:
        raise HTTPException(status_code=409, detail=f"job already running: {name}")
    return JobRunResponse(name=name, triggered_at=triggered_at)


@router.post("/channels/{instance_id}/sync", response_model=ChannelSyncResponse)
def sync_channel(instance_id: int, request: Request, owner_id: str = Query(min_length=1)) -> ChannelSyncResponse:
    reconciler = _engine(request).reconciler
    try:
        instance = reconciler.sync_instance(instance_id, owner_id)
    except ChannelInstanceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"channel instance not found: {instance_id}") from exc
    except ChannelSettingsMissingError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ChannelSyncError as exc:
        raise HTTPException(status_code=502, detail=f"provider error ({exc.error_code}): {exc}") from exc
    return ChannelSyncResponse(
        instance_id=instance.id,
        instance_name=instance.instance_name,
        status=instance.status,
        is_connected=instance.is_connected,
    )


@router.get("/channels/{instance_id}/qrcode", response_model=QrCodeResponse)
def channel_qr_code(instance_id: int, request: Request, owner_id: str = Query(min_length=1)) -> QrCodeResponse:
    reconciler = _engine(request).reconciler
    try:
        qr_code = reconciler.fetch_qr_code(instance_id, owner_id)
    except ChannelInstanceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"channel instance not found: {instance_id}") from exc
    except ChannelSettingsMissingError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ChannelSyncError as exc:
        raise HTTPException(status_code=502, detail=f"provider error ({exc.error_code}): {exc}") from exc
    return QrCodeResponse(
        instance_id=instance_id,
        base64=qr_code.base64,
        pairing_code=qr_code.pairing_code,
        code=qr_code.code,
    )
