"""
QR Service - scannable rendering of verification tokens

The organizer scans a URL of the form
    <origin>/verify/<registration_id>?token=<token>
encoded with error-correction level H (~30% of the code recoverable) so the
brand mark punched into the center, plus some wear, still scans.
"""
import io
import logging
from typing import Optional
from urllib.parse import quote

import qrcode
from qrcode.image.pil import PilImage
from PIL import Image, ImageDraw

from presence_cert.config import settings

logger = logging.getLogger(__name__)

BRAND_COLOR = (1, 37, 115)
# Level H restores up to 30% of the modules; stay well below it
MAX_LOGO_RATIO = 0.3


def build_verification_url(registration_id: int, token: str, origin: Optional[str] = None) -> str:
    origin = (origin or settings.PUBLIC_ORIGIN).rstrip("/")
    return f"{origin}/verify/{registration_id}?token={quote(token, safe='')}"


class QRRenderer:

    def __init__(
        self,
        box_size: Optional[int] = None,
        border: Optional[int] = None,
        logo_path: Optional[str] = None,
        logo_ratio: Optional[float] = None
    ):
        self.box_size = box_size or settings.QR_BOX_SIZE
        self.border = border if border is not None else settings.QR_BORDER
        self.logo_path = logo_path if logo_path is not None else settings.QR_LOGO_PATH
        self.logo_ratio = min(logo_ratio or settings.QR_LOGO_MAX_RATIO, MAX_LOGO_RATIO)

    def _brand_mark(self, size: int) -> Image.Image:
        if self.logo_path:
            try:
                with Image.open(self.logo_path) as logo:
                    return logo.convert("RGBA").resize((size, size))
            except OSError as e:
                logger.warning(f"QR logo at {self.logo_path} unusable, drawing default mark: {e}")

        mark = Image.new("RGBA", (size, size), (255, 255, 255, 0))
        draw = ImageDraw.Draw(mark)
        draw.rounded_rectangle((0, 0, size - 1, size - 1), radius=size // 5, fill=BRAND_COLOR)
        inset = size // 4
        draw.ellipse(
            (inset, inset, size - 1 - inset, size - 1 - inset),
            outline=(255, 255, 255), width=max(2, size // 12)
        )
        return mark

    def render_image(self, data: str) -> Image.Image:
        qr = qrcode.QRCode(
            version=None,
            error_correction=qrcode.constants.ERROR_CORRECT_H,
            box_size=self.box_size,
            border=self.border,
        )
        qr.add_data(data)
        qr.make(fit=True)

        img = qr.make_image(
            image_factory=PilImage, fill_color="black", back_color="white"
        ).get_image().convert("RGB")

        # Punch the center: clear a padded square, then lay the mark on it
        width, height = img.size
        logo_size = int(min(width, height) * self.logo_ratio)
        if logo_size > 0:
            pad = max(2, self.box_size // 2)
            left = (width - logo_size) // 2
            top = (height - logo_size) // 2
            ImageDraw.Draw(img).rectangle(
                (left - pad, top - pad, left + logo_size + pad - 1, top + logo_size + pad - 1),
                fill="white"
            )
            mark = self._brand_mark(logo_size)
            img.paste(mark, (left, top), mark)

        return img

    def render_png(self, data: str) -> bytes:
        buffer = io.BytesIO()
        self.render_image(data).save(buffer, format="PNG")
        return buffer.getvalue()


# Singleton instance
qr_renderer = QRRenderer()
