"""
Presence Certification Service

Certifies that a registrant was physically present at an event, either
witnessed by an organizer scanning an issued code or self-attested under an
honor declaration, both after a face-match identity re-verification.
"""
__version__ = "1.0.0"
