"""
Certification API - face match, tokens and self-certification

Provides:
- POST /certification/face-match: match oracle (issues the token on a pass
  for operator-witnessed events)
- GET /certification/registrations/{id}/token: live token lookup
- POST /certification/registrations/{id}/token: reissue after a failed token
  write, without a new capture
- GET /certification/registrations/{id}/qr.png: scannable code of the token
- POST /certification/registrations/{id}/self-certification: final write of
  the self-attested path
- GET /certification/reverse-geocode: address of a coordinate (best-effort)
- GET /certification/logs: audit trail (API key)
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session

from presence_cert.dependencies import get_db, verify_api_key
from presence_cert.flow.backend import reissue_for_registration, record_from_request
from presence_cert.schemas import (
    FaceMatchRequest, FaceMatchResponse, ReverseGeocodeResponse,
    SelfCertificationRequest, SelfCertificationResponse, TokenResponse
)
from presence_cert.services.attendance_service import (
    AttendanceWriteError, RecordOutcome, attendance_recorder
)
from presence_cert.services.certification_log_service import certification_log_service
from presence_cert.services.geocode_service import geocode_service
from presence_cert.services.match_oracle_service import match_oracle_service
from presence_cert.services.qr_service import build_verification_url, qr_renderer
from presence_cert.services.token_service import token_store

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/certification", tags=["Certification"])


# ============================================================
# MATCH ORACLE / TOKENS
# ============================================================

@router.post("/face-match", response_model=FaceMatchResponse)
async def face_match(
    request: FaceMatchRequest,
    db: Session = Depends(get_db)
):
    """
    Compare a live still with the user's reference selfie.

    Domain and provider failures come back as success=False with an
    error_code, never as an HTTP error, so the client can map them.
    """
    return await match_oracle_service.face_match(db, request)


@router.get("/registrations/{registration_id}/token", response_model=TokenResponse)
async def get_token(
    registration_id: int,
    db: Session = Depends(get_db)
):
    issued = token_store.get_token(db, registration_id)
    if not issued:
        raise HTTPException(status_code=404, detail="No token issued for this registration")
    return TokenResponse(
        registration_id=issued.registration_id,
        token=issued.token,
        issued_at=issued.issued_at,
        consumed=issued.consumed,
        verification_url=build_verification_url(issued.registration_id, issued.token)
    )


@router.post("/registrations/{registration_id}/token", response_model=FaceMatchResponse)
async def reissue_token(
    registration_id: int,
    db: Session = Depends(get_db)
):
    """Issue the token after a passed match whose token write failed."""
    return reissue_for_registration(db, registration_id, match_oracle_service)


@router.get("/registrations/{registration_id}/qr.png")
async def get_qr_image(
    registration_id: int,
    db: Session = Depends(get_db)
):
    issued = token_store.get_live_token(db, registration_id)
    if not issued:
        raise HTTPException(status_code=404, detail="No live token for this registration")

    try:
        png = qr_renderer.render_png(build_verification_url(registration_id, issued.token))
    except Exception as e:
        logger.error(f"QR rendering failed for registration {registration_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to generate QR image")

    return Response(content=png, media_type="image/png", headers={"Cache-Control": "no-store"})


# ============================================================
# SELF-CERTIFICATION
# ============================================================

@router.post("/registrations/{registration_id}/self-certification", response_model=SelfCertificationResponse)
async def self_certify(
    registration_id: int,
    request: SelfCertificationRequest,
    db: Session = Depends(get_db)
):
    """
    Record a self-attested presence.

    - 200 with recorded=True on the first write
    - 200 with outcome=already_certified for a duplicate
    - 400 without the honor declaration
    - 403 without a recent passed face match
    - 404 unknown registration, 409 registration or event not eligible
    """
    if not request.honor_declaration:
        raise HTTPException(status_code=400, detail="The honor declaration must be affirmed")

    try:
        result = attendance_recorder.record_self_certification(
            db, registration_id, record_from_request(request)
        )
    except AttendanceWriteError:
        raise HTTPException(status_code=500, detail="Presence could not be saved, please retry")

    if result.outcome == RecordOutcome.NOT_FOUND:
        raise HTTPException(status_code=404, detail=result.message)
    if result.outcome == RecordOutcome.NOT_ALLOWED:
        raise HTTPException(status_code=409, detail=result.message)
    if result.outcome == RecordOutcome.MATCH_REQUIRED:
        raise HTTPException(status_code=403, detail=result.message)

    return SelfCertificationResponse(
        registration_id=registration_id,
        outcome=result.outcome.value,
        recorded=result.ok,
        attended_at=result.attended_at,
        message=result.message
    )


@router.get("/reverse-geocode", response_model=ReverseGeocodeResponse)
async def reverse_geocode(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180)
):
    address = geocode_service.reverse_geocode(latitude, longitude)
    return ReverseGeocodeResponse(found=address is not None, address=address)


# ============================================================
# AUDIT
# ============================================================

@router.get("/logs", dependencies=[Depends(verify_api_key)])
async def list_logs(
    page: int = Query(0, ge=0),
    page_size: int = Query(50, ge=1, le=200),
    status: Optional[str] = Query(None, description="passed, failed, rejected, error, recorded"),
    registration_id: Optional[int] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    db: Session = Depends(get_db)
):
    return certification_log_service.list_logs(
        db,
        page=page,
        page_size=page_size,
        status=status,
        registration_id=registration_id,
        date_from=date_from,
        date_to=date_to
    )
