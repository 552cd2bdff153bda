"""
Services package - Business logic layer
"""
from presence_cert.services.eligibility_service import eligibility_evaluator
from presence_cert.services.token_service import token_store
from presence_cert.services.attendance_service import attendance_recorder
from presence_cert.services.certification_log_service import certification_log_service
from presence_cert.services.face_match_provider import face_match_provider
from presence_cert.services.match_oracle_service import match_oracle_service
from presence_cert.services.organizer_scan_service import organizer_scan_service
from presence_cert.services.geocode_service import geocode_service
from presence_cert.services.qr_service import qr_renderer

__all__ = [
    "eligibility_evaluator",
    "token_store",
    "attendance_recorder",
    "certification_log_service",
    "face_match_provider",
    "match_oracle_service",
    "organizer_scan_service",
    "geocode_service",
    "qr_renderer",
]
