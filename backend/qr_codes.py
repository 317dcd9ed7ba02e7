import logging
import os
import uuid

import qrcode

logger = logging.getLogger(__name__)


def qr_code_dir() -> str:
    return os.getenv("QR_CODE_DIR", os.path.join("public", "qrcodes"))


def menu_url_for_table(table_id: int) -> str:
    frontend_url = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")
    return f"{frontend_url}/menu?table={table_id}"


def generate_table_qr(table_id: int) -> str:
    """Write a PNG pointing at the table's menu page and return its public URL."""
    directory = qr_code_dir()
    os.makedirs(directory, exist_ok=True)

    file_name = f"table_{table_id}_{uuid.uuid4().hex[:12]}.png"
    file_path = os.path.join(directory, file_name)

    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=1,
    )
    qr.add_data(menu_url_for_table(table_id))
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    img.save(file_path)

    backend_url = os.getenv("BACKEND_URL", "http://localhost:8000").rstrip("/")
    return f"{backend_url}/qrcodes/{file_name}"


def delete_qr_file(qr_code_url: str) -> bool:
    if not qr_code_url:
        return False
    file_path = os.path.join(qr_code_dir(), qr_code_url.rsplit("/", 1)[-1])
    if os.path.exists(file_path):
        os.remove(file_path)
        logger.info(f"Deleted QR code {file_path}")
        return True
    return False
