"""存活与就绪检查。"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from tsp_api.core.config import get_settings
from tsp_api.core.security import revocation_store_status
from tsp_api.db.session import get_db
from tsp_api.schemas.common import ErrorResponse, SuccessResponse
from tsp_api.schemas.responses import HealthStatusData
from tsp_api.services.site_context import resolve_site
from tsp_api.utils.response import success

router = APIRouter(prefix="/health", tags=["health"])


@router.get(
    "/live",
    summary="存活检查",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[HealthStatusData],
)
def live(request: Request):
    return success(request, {"status": "ok"})


@router.get(
    "/ready",
    summary="就绪检查",
    description="默认站点可从数据库解析，且已配置的 Redis 能响应时才视为就绪。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[HealthStatusData],
    responses={503: {"model": ErrorResponse}},
)
def ready(request: Request, db: Session = Depends(get_db)):
    """无请求主机与别名时按默认别名解析站点；Redis 未配置时吊销名单走进程内存储，不影响就绪。"""
    site = resolve_site(db, host=None, alias=None)
    store = revocation_store_status()
    if site is None or store == "unavailable":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "code": "NOT_READY",
                "message": "服务尚未就绪。",
                "details": {
                    "default_site": site.alias_id if site is not None else None,
                    "expected_site": get_settings().default_site_alias,
                    "revocation_store": store,
                },
            },
        )
    return success(request, {"status": "ready", "default_site": site.alias_id, "revocation_store": store})
