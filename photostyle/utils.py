import base64
import os
from io import BytesIO
from pathlib import Path
from typing import Union

from PIL import Image

ALLOWED_FORMATS = {"JPEG", "PNG", "WEBP"}

def ensure_allowed_image(data: bytes) -> str:
    try:
        with Image.open(BytesIO(data)) as img:
            img.verify()
            fmt = (img.format or "").upper()
    except Exception as e:
        raise ValueError(f"Invalid image file: {e}")

    if fmt not in ALLOWED_FORMATS:
        raise ValueError(f"Unsupported image format: {fmt or 'unknown'}. Allowed: {sorted(ALLOWED_FORMATS)}")
    return fmt

def _to_jpeg(img: Image.Image, quality: int) -> bytes:
    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    buf = BytesIO()
    img.save(buf, format="JPEG", quality=quality)
    return buf.getvalue()

def compress_for_upload(data: bytes, max_dimension: int = 1920, quality: int = 70) -> bytes:
    """
    Resize so the long side fits max_dimension (aspect kept, never upscaled)
    and re-encode as JPEG.
    """
    with Image.open(BytesIO(data)) as img:
        img.load()
        if max(img.size) > max_dimension:
            img.thumbnail((max_dimension, max_dimension))
        return _to_jpeg(img, quality)

def reencode_jpeg(data: bytes, quality: int) -> bytes:
    with Image.open(BytesIO(data)) as img:
        img.load()
        return _to_jpeg(img, quality)

def encode_image_to_data_url(data: bytes, mime: str = "image/jpeg") -> str:
    """
    Returns a data URL like:
    data:image/jpeg;base64,....
    """
    b64 = base64.b64encode(data).decode("utf-8")
    return f"data:{mime};base64,{b64}"

def protect_file(path: Union[str, Path]):
    # owner read/write only
    os.chmod(path, 0o600)

def write_protected(path: Path, data: bytes):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    protect_file(path)

def safe_unlink(p: Union[str, Path, None]) -> bool:
    if not p:
        return False
    try:
        Path(p).unlink(missing_ok=True)
        return True
    except OSError:
        return False
