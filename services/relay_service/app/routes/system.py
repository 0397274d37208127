from fastapi import APIRouter, Depends, Response, status
from fastapi.responses import JSONResponse
from loguru import logger
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..dependencies import get_session, get_settings, get_upstream_client
from ..services.upstream import UpstreamClient
from ..settings import RelaySettings

router = APIRouter()


@router.get("/healthz")
async def healthz(settings: RelaySettings = Depends(get_settings)) -> dict[str, str]:
    return {"status": "ok", "service": settings.service_name}


@router.get("/readyz")
async def readyz(
    session: AsyncSession = Depends(get_session),
    upstream: UpstreamClient = Depends(get_upstream_client),
) -> JSONResponse:
    try:
        await session.execute(text("SELECT 1"))
        db_ok = True
    except SQLAlchemyError as exc:
        logger.warning(f"Readiness: database check failed: {exc}")
        db_ok = False
    upstream_ok = await upstream.server_settings()
    ready = db_ok and upstream_ok
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if ready else "unavailable", "database": db_ok, "upstream": upstream_ok},
    )


@router.get("/metrics")
async def metrics() -> Response:
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
