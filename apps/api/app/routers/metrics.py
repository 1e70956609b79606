from fastapi import APIRouter, Depends

from app.auth.dependencies import AuthContext, require_staff
from app.observability import metrics_store
from app.schemas.metrics import MetricsResponse

router = APIRouter(prefix="/metrics", tags=["metrics"])


@router.get("", summary="Service counters and timings", response_model=MetricsResponse)
def metrics_endpoint(_auth: AuthContext = Depends(require_staff)) -> MetricsResponse:
    return MetricsResponse.from_snapshot(metrics_store.snapshot())
