"""
Recap of the self-attested path

Everything the participant adds between a passed face match and the final
confirmation: an optional note, attachments, the reported position and
address, and the honor declaration the confirmation depends on.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from presence_cert.schemas import AttachmentRef, SelfCertificationRequest
from presence_cert.services.attendance_service import UploadedAttachment
from presence_cert.services.eligibility_service import Position
from presence_cert.services.evidence_service import Attachment

MAX_NOTE_LENGTH = 2000


@dataclass
class Recap:
    capture_started_at: datetime
    note: Optional[str] = None
    position: Optional[Position] = None
    address: Optional[str] = None
    honor_declaration: bool = False
    attachments: List[Attachment] = field(default_factory=list)
    # attachment id -> stored copy; kept across a failed write
    uploaded: Dict[str, UploadedAttachment] = field(default_factory=dict)
    attempted: Set[str] = field(default_factory=set)
    attachment_error: Optional[str] = None

    def set_note(self, note: Optional[str]) -> None:
        note = (note or "").strip()
        self.note = note[:MAX_NOTE_LENGTH] or None

    def add_attachment(self, attachment: Attachment) -> None:
        self.attachments.append(attachment)

    def remove_attachment(self, attachment_id: str) -> None:
        if attachment_id in self.attempted:
            raise ValueError("Submitted attachments cannot be removed")
        self.attachments = [a for a in self.attachments if a.id != attachment_id]

    @property
    def pending_uploads(self) -> List[Attachment]:
        return [a for a in self.attachments if a.id not in self.attempted]

    def mark_uploaded(self, attachments: List[Attachment], results: List[Optional[UploadedAttachment]]) -> None:
        for attachment, stored in zip(attachments, results):
            self.attempted.add(attachment.id)
            if stored is not None:
                self.uploaded[attachment.id] = stored

    def build_request(self) -> SelfCertificationRequest:
        stored = [self.uploaded[a.id] for a in self.attachments if a.id in self.uploaded]
        return SelfCertificationRequest(
            capture_started_at=self.capture_started_at,
            honor_declaration=self.honor_declaration,
            latitude=self.position.latitude if self.position else None,
            longitude=self.position.longitude if self.position else None,
            address=self.address,
            note=self.note,
            attachments=[
                AttachmentRef(
                    kind=u.kind, storage_key=u.storage_key,
                    public_url=u.public_url, uploaded_at=u.uploaded_at
                )
                for u in stored
            ]
        )
