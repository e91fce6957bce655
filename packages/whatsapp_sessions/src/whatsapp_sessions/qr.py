"""QR code rendering for pairing payloads."""

import base64
import io

import qrcode


def render_qr_data_url(payload: str) -> str:
    """Render ``payload`` as a PNG and return it as a ``data:image/png;base64,...`` URL."""
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=2,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")
