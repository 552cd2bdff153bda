"""
API routers package
"""
from presence_cert.api import (
    system,
    eligibility,
    certification,
    scan
)

__all__ = [
    "system",
    "eligibility",
    "certification",
    "scan"
]
