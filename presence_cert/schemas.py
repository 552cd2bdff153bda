"""
Pydantic request/response models shared by the API routers and the
certification flow's HTTP backend
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


# ============================================================
# MATCH ORACLE
# ============================================================

class FaceMatchRequest(BaseModel):
    """Live still to compare against the user's reference selfie"""
    action: Literal["face-match"] = "face-match"
    user_id: int = Field(..., description="User being verified")
    event_id: int = Field(..., description="Event the registration belongs to")
    registration_id: int = Field(..., description="Registration to certify")
    live_image: str = Field(..., description="Base64 JPEG, data-URL prefix tolerated")
    latitude: Optional[float] = Field(None, description="Client-reported latitude")
    longitude: Optional[float] = Field(None, description="Client-reported longitude")

    class Config:
        json_schema_extra = {
            "example": {
                "action": "face-match",
                "user_id": 12,
                "event_id": 3,
                "registration_id": 40,
                "live_image": "data:image/jpeg;base64,/9j/4AAQSkZJRg..."
            }
        }


class FaceMatchResponse(BaseModel):
    """
    success=False is a hard failure (transport, auth, stale identity...);
    passed=False with success=True is a soft failure (score below threshold).
    """
    success: bool
    passed: bool = False
    score: Optional[float] = None
    token: Optional[str] = None
    cached: bool = False
    needs_reverification: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None


# ============================================================
# TOKENS
# ============================================================

class TokenResponse(BaseModel):
    registration_id: int
    token: str
    issued_at: datetime
    consumed: bool
    verification_url: str


# ============================================================
# SELF-CERTIFICATION
# ============================================================

class AttachmentRef(BaseModel):
    kind: Literal["image", "file"]
    storage_key: str
    public_url: str
    uploaded_at: Optional[datetime] = None


class SelfCertificationRequest(BaseModel):
    capture_started_at: datetime = Field(..., description="When the face capture was taken")
    honor_declaration: bool = Field(..., description="Explicit affirmation of presence")
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    note: Optional[str] = Field(None, max_length=2000)
    attachments: List[AttachmentRef] = Field(default_factory=list)


class SelfCertificationResponse(BaseModel):
    registration_id: int
    outcome: str
    recorded: bool
    attended_at: Optional[datetime] = None
    message: Optional[str] = None


# ============================================================
# ORGANIZER SCAN
# ============================================================

class ScanRequest(BaseModel):
    token: str = Field(..., description="Token read from the participant's code")
    scanner_id: int = Field(..., description="Organizer performing the scan")


class ScanResponse(BaseModel):
    success: bool
    status: str  # validated, already_certified, invalid_token, not_found
    registration_id: int
    user_name: Optional[str] = None
    event_name: Optional[str] = None
    attended_at: Optional[datetime] = None
    message: str


# ============================================================
# ELIGIBILITY / GEOCODING
# ============================================================

class EligibilityResponse(BaseModel):
    event_id: int
    is_eligible: bool
    is_within_time_window: bool
    is_within_radius: Optional[bool]
    time_status: str
    location_status: str
    visibility: str
    distance_meters: Optional[float]
    window_opens_at: datetime
    reason: Optional[str]


class ReverseGeocodeResponse(BaseModel):
    found: bool
    address: Optional[str] = None
