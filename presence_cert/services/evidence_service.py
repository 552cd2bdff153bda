"""
Evidence Service - best-effort upload of self-certification attachments

Attachments (photos taken in the recap step or picked files) are pushed to
an opaque blob store at confirmation time. A failed upload is logged and
skipped; it never fails the certification.
"""
import asyncio
import logging
import mimetypes
import uuid
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from presence_cert.config import settings
from presence_cert.services.attendance_service import UploadedAttachment
from presence_cert.timeutils import utc_now

logger = logging.getLogger(__name__)

ATTACHMENT_KINDS = ("image", "file")


@dataclass
class Attachment:
    """Client-side attachment, immutable once uploaded."""
    kind: str
    content: bytes
    filename: Optional[str] = None
    content_type: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        if self.kind not in ATTACHMENT_KINDS:
            raise ValueError(f"Unknown attachment kind: {self.kind}")
        if self.content_type is None:
            guessed = mimetypes.guess_type(self.filename or "")[0]
            self.content_type = guessed or ("image/jpeg" if self.kind == "image" else "application/octet-stream")

    @property
    def extension(self) -> str:
        if self.filename and "." in self.filename:
            return self.filename.rsplit(".", 1)[-1].lower()
        guessed = mimetypes.guess_extension(self.content_type or "")
        return guessed.lstrip(".") if guessed else "bin"


class EvidenceStoreError(Exception):
    pass


class EvidenceStore:
    """HTTP blob store: put(bytes, key) -> public url."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        bucket: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = (base_url or settings.EVIDENCE_STORE_URL).rstrip("/")
        self.bucket = bucket or settings.EVIDENCE_BUCKET
        self.api_key = api_key if api_key is not None else settings.EVIDENCE_STORE_KEY
        self.timeout = timeout or settings.EVIDENCE_UPLOAD_TIMEOUT_SEC
        self._transport = transport

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/object/public/{self.bucket}/{key}"

    async def put(self, content: bytes, key: str, content_type: str = "application/octet-stream") -> str:
        headers = {"Content-Type": content_type, "x-upsert": "false"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.put(
                    f"{self.base_url}/object/{self.bucket}/{key}",
                    content=content,
                    headers=headers
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise EvidenceStoreError(f"Upload of {key} failed: {e}") from e
        return self.public_url(key)


class EvidenceUploader:

    def __init__(self, store: Optional[EvidenceStore] = None):
        self.store = store or EvidenceStore()

    @staticmethod
    def build_key(registration_id: int, attachment: Attachment) -> str:
        return f"{registration_id}/{attachment.id}.{attachment.extension}"

    async def _upload_one(self, registration_id: int, attachment: Attachment) -> Optional[UploadedAttachment]:
        key = self.build_key(registration_id, attachment)
        try:
            url = await self.store.put(attachment.content, key, attachment.content_type)
        except Exception as e:
            logger.warning(f"Evidence upload skipped for registration {registration_id} ({key}): {e}")
            return None
        return UploadedAttachment(
            kind=attachment.kind,
            storage_key=key,
            public_url=url,
            uploaded_at=utc_now()
        )

    async def upload_each(
        self, registration_id: int, attachments: List[Attachment]
    ) -> List[Optional[UploadedAttachment]]:
        """Upload concurrently; the result is aligned with the input, None where an upload failed."""
        if not attachments:
            return []
        return list(await asyncio.gather(
            *(self._upload_one(registration_id, a) for a in attachments)
        ))

    async def upload_all(self, registration_id: int, attachments: List[Attachment]) -> List[UploadedAttachment]:
        """
        Upload every attachment concurrently.

        Returns:
            The attachments that made it, in submission order
        """
        results = await self.upload_each(registration_id, attachments)
        uploaded = [r for r in results if r is not None]
        if len(uploaded) != len(attachments):
            logger.info(
                f"{len(attachments) - len(uploaded)} of {len(attachments)} attachments "
                f"failed to upload for registration {registration_id}"
            )
        return uploaded
