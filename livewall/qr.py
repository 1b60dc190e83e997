"""QR code helpers shared by the live wall overlay, the dashboard and the flyer."""
from io import BytesIO

import qrcode
from qrcode.constants import ERROR_CORRECT_H, ERROR_CORRECT_M

# Live wall overlay size in CSS pixels
LIVEWALL_QR_SIZE = 120
# Dashboard download: 512 px wide, 4 module quiet zone
DOWNLOAD_QR_WIDTH = 512
DOWNLOAD_QR_MARGIN = 4


def make_qr_image(data, box_size=10, border=4, fill_color="black", back_color="white",
                  error_correction=ERROR_CORRECT_M):
    """Build a PIL image of a QR code for ``data``."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=error_correction,
        box_size=box_size,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)
    return qr.make_image(fill_color=fill_color, back_color=back_color).get_image().convert("RGB")


def make_qr_png(data, box_size=10, border=4, fill_color="black", back_color="white",
                error_correction=ERROR_CORRECT_M):
    """Return PNG bytes of a QR code for ``data``."""
    img = make_qr_image(data, box_size, border, fill_color, back_color, error_correction)
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def make_download_qr_png(data):
    """Dashboard download variant: black on white, resized to 512 px wide."""
    img = make_qr_image(data, box_size=10, border=DOWNLOAD_QR_MARGIN)
    img = img.resize((DOWNLOAD_QR_WIDTH, DOWNLOAD_QR_WIDTH))
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def make_flyer_qr_image(data, size, dark_color):
    """High error correction QR sized to ``size`` pixels for printed flyers."""
    img = make_qr_image(data, box_size=10, border=0, fill_color=dark_color,
                        error_correction=ERROR_CORRECT_H)
    return img.resize((max(1, int(size)), max(1, int(size))))
