"""
Organizer Scan API - consumption of verification tokens

Provides:
- GET /verify/{registration_id}?token=: what the organizer sees after
  scanning a participant's code (nothing is written)
- POST /verify/{registration_id}: confirm the presence, consuming the token
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from presence_cert.dependencies import get_db, verify_api_key
from presence_cert.schemas import ScanRequest, ScanResponse
from presence_cert.services.organizer_scan_service import ScanResult, organizer_scan_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/verify", tags=["Organizer Scan"], dependencies=[Depends(verify_api_key)])


def _to_response(result: ScanResult) -> ScanResponse:
    if result.status == "not_found":
        raise HTTPException(status_code=404, detail=result.message)
    return ScanResponse(
        success=result.success,
        status=result.status,
        registration_id=result.registration_id,
        user_name=result.user_name,
        event_name=result.event_name,
        attended_at=result.attended_at,
        message=result.message
    )


@router.get("/{registration_id}", response_model=ScanResponse)
async def preview_scan(
    registration_id: int,
    token: str = Query(..., description="Token embedded in the scanned code"),
    db: Session = Depends(get_db)
):
    return _to_response(organizer_scan_service.preview(db, registration_id, token))


@router.post("/{registration_id}", response_model=ScanResponse)
async def confirm_scan(
    registration_id: int,
    request: ScanRequest,
    db: Session = Depends(get_db)
):
    """
    Validate the scanned token and mark the registration as attended.

    Returns success=False with status already_certified or invalid_token for
    rejected scans.
    """
    try:
        result = organizer_scan_service.scan(db, registration_id, request.token, request.scanner_id)
    except Exception as e:
        logger.error(f"Organizer scan failed for registration {registration_id}: {e}")
        raise HTTPException(status_code=500, detail="Presence could not be recorded")
    return _to_response(result)
