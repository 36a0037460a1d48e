import io

import qrcode
from qrcode import constants

ERROR_CORRECTION = {
    'L': constants.ERROR_CORRECT_L,
    'M': constants.ERROR_CORRECT_M,
    'Q': constants.ERROR_CORRECT_Q,
    'H': constants.ERROR_CORRECT_H,
}


def _image(qr_data: str, box_size: int = 8, border: int = 4, error_correction: str = 'M'):
    # signed payloads are a few hundred chars, so let the version grow to fit
    qr = qrcode.QRCode(error_correction=ERROR_CORRECTION[error_correction], box_size=box_size, border=border)
    qr.add_data(qr_data)
    qr.make(fit=True)
    return qr.make_image()


def make_qr(qr_data: str, path: str, **options):
    _image(qr_data, **options).save(path)


def make_qr_bytes(qr_data: str, **options) -> bytes:
    """Return QR PNG bytes for an encoded payload."""
    buf = io.BytesIO()
    _image(qr_data, **options).save(buf, format='PNG')
    return buf.getvalue()
