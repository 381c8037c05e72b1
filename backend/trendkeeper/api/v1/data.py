"""Read-only access to the refreshed trends dataset."""
from fastapi import APIRouter, Depends

from ...schemas.refresh_status import TrendsDatasetResponse
from ...services.refresh_control import RefreshControlService
from ...wiring.bootstrap import get_refresh_control

router = APIRouter(prefix="/data", tags=["data"])


@router.get("/trends", response_model=TrendsDatasetResponse)
async def get_trends(control: RefreshControlService = Depends(get_refresh_control)):
    """Return every stored entry keyed by partition and item, with dataset metadata."""
    return control.get_dataset_document()
