"""
Tests for QR code rendering.
"""

import base64

from whatsapp_sessions.qr import render_qr_data_url

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def test_renders_png_data_url():
    url = render_qr_data_url("2@abc,def,ghi")

    assert url.startswith("data:image/png;base64,")
    image = base64.b64decode(url.split(",", 1)[1])
    assert image.startswith(PNG_SIGNATURE)


def test_different_payloads_render_differently():
    assert render_qr_data_url("2@first") != render_qr_data_url("2@second")
