"""On-disk storage for compressed lab report images."""
from __future__ import annotations

import os
import uuid
from pathlib import Path
from typing import Tuple

UPLOAD_ROOT = Path(
    os.getenv("UPLOAD_ROOT")
    or (Path(__file__).resolve().parent.parent / "uploads")
)

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}


def store_report_image(data: bytes, user_id: str, mime_type: str, root: Path | None = None) -> Tuple[str, str]:
    """Write the image under ``<root>/<user_id>/`` and return (path, image_url).

    ``image_url`` is the root-relative location stored on the analysis row.
    """
    base = Path(root) if root is not None else UPLOAD_ROOT
    user_dir = base / user_id
    user_dir.mkdir(parents=True, exist_ok=True)
    filename = f"{uuid.uuid4().hex}{_EXTENSIONS.get(mime_type, '.bin')}"
    path = user_dir / filename
    path.write_bytes(data)
    return str(path), f"uploads/{user_id}/{filename}"


__all__ = ["store_report_image", "UPLOAD_ROOT"]
