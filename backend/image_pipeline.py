"""Product image ingestion: intake, color slot resolution and normalization."""

import io
import logging
import os
import re
import secrets
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from PIL import Image

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 5 * 1024 * 1024
BOUNDING_BOX = (800, 800)
JPEG_QUALITY = 85
OUTPUT_MIMETYPE = "image/jpeg"
PROCESSED_SUBDIRECTORY = os.path.join("products", "processed")
UPLOADS_URL_PREFIX = "/uploads/"
PROCESSED_URL_PREFIX = "/uploads/products/processed/"

SLOT_FIELD_PATTERNS = (
    re.compile(r"colorImage_(\d+)"),
    re.compile(r"colors\[(\d+)\]\[image\]"),
)


class UploadRejected(Exception):
    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


@dataclass
class UploadedFile:
    field_name: str
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class ProcessedImage:
    original_name: str
    filename: str
    path: str
    url: str
    size: int
    mimetype: str = OUTPUT_MIMETYPE

    def to_dict(self) -> Dict[str, object]:
        return {
            "original_name": self.original_name,
            "filename": self.filename,
            "path": self.path,
            "url": self.url,
            "size": self.size,
            "mimetype": self.mimetype,
        }


def collect_uploaded_files(file_parts, max_bytes: int = MAX_IMAGE_BYTES) -> List[UploadedFile]:
    """Buffer every multipart file part, rejecting the request on the first bad part.

    ``file_parts`` is a werkzeug ``MultiDict`` of ``FileStorage`` objects (``request.files``)
    or any iterable of ``(field_name, FileStorage)`` pairs. Arrival order is preserved.
    """
    if hasattr(file_parts, "items"):
        pairs = file_parts.items(multi=True)
    else:
        pairs = file_parts

    uploaded: List[UploadedFile] = []
    for field_name, storage in pairs:
        filename = getattr(storage, "filename", "") or ""
        content_type = (getattr(storage, "mimetype", "") or "").lower()
        data = storage.read(max_bytes + 1)
        if not filename and not data:
            continue

        if not content_type.startswith("image/"):
            raise UploadRejected("Only image files are allowed!")

        if len(data) > max_bytes:
            raise UploadRejected(
                f"Each image must be {max_bytes // (1024 * 1024)} MB or smaller."
            )

        uploaded.append(
            UploadedFile(
                field_name=str(field_name),
                filename=filename,
                content_type=content_type,
                data=data,
            )
        )

    return uploaded


def parse_color_slot(field_name: Optional[str]) -> Optional[int]:
    candidate = str(field_name or "").strip()
    for pattern in SLOT_FIELD_PATTERNS:
        match = pattern.fullmatch(candidate)
        if match:
            return int(match.group(1))
    return None


def derive_color_slots(files: Iterable[UploadedFile]) -> List[int]:
    slots: List[int] = []
    for uploaded in files:
        slot = parse_color_slot(uploaded.field_name)
        if slot is None or slot in slots:
            continue
        slots.append(slot)
    return slots


def resolve_color_slots(
    files: Sequence[UploadedFile], requested_slots: Optional[Sequence[int]] = None
) -> List[Tuple[int, Optional[UploadedFile]]]:
    """Pair each requested slot with the upload destined for it.

    Without an explicit slot list the slots are derived from the field names.
    A single requested slot with a single upload is matched whatever the field is called.
    """
    if requested_slots is None:
        slots = derive_color_slots(files)
    else:
        slots = [int(slot) for slot in requested_slots]

    if len(slots) == 1 and len(files) == 1:
        return [(slots[0], files[0])]

    first_upload_by_slot: Dict[int, UploadedFile] = {}
    for uploaded in files:
        slot = parse_color_slot(uploaded.field_name)
        if slot is None:
            continue
        first_upload_by_slot.setdefault(slot, uploaded)

    return [(slot, first_upload_by_slot.get(slot)) for slot in slots]


def build_processed_filename(original_name: str) -> str:
    base_name = os.path.splitext(os.path.basename(original_name or ""))[0]
    sanitized = re.sub(r"[^A-Za-z0-9]+", "-", base_name).strip("-") or "image"
    return f"processed-{sanitized[:60]}-{time.monotonic_ns()}-{secrets.token_hex(8)}.jpg"


def processed_directory(static_root: str) -> str:
    return os.path.join(static_root, PROCESSED_SUBDIRECTORY)


def normalize_image(uploaded: UploadedFile, static_root: str) -> ProcessedImage:
    """Resize and re-encode one upload into the processed directory.

    Raises on any decode, encode or filesystem failure; nothing is left on disk in that case.
    """
    with Image.open(io.BytesIO(uploaded.data)) as source:
        source.load()
        image = source.convert("RGB")

    image.thumbnail(BOUNDING_BOX, Image.Resampling.LANCZOS)

    output_directory = processed_directory(static_root)
    os.makedirs(output_directory, exist_ok=True)

    filename = build_processed_filename(uploaded.filename)
    output_path = os.path.join(output_directory, filename)

    try:
        with open(output_path, "xb") as handle:
            image.save(handle, format="JPEG", quality=JPEG_QUALITY)
    except FileExistsError:
        raise
    except Exception:
        _discard_partial_file(output_path)
        raise

    return ProcessedImage(
        original_name=uploaded.filename,
        filename=filename,
        path=output_path,
        url=f"{PROCESSED_URL_PREFIX}{filename}",
        size=os.path.getsize(output_path),
    )


def process_color_images(
    files: Sequence[UploadedFile],
    requested_slots: Optional[Sequence[int]],
    static_root: str,
) -> List[Optional[ProcessedImage]]:
    results: List[Optional[ProcessedImage]] = []
    for slot, uploaded in resolve_color_slots(files, requested_slots):
        if uploaded is None:
            results.append(None)
            continue

        try:
            results.append(normalize_image(uploaded, static_root))
        except Exception as exc:
            logger.warning(
                "Could not process image %r for color slot %s: %s",
                uploaded.filename,
                slot,
                exc,
            )
            results.append(None)

    return results


def resolve_upload_path(url: Optional[str], static_root: str) -> Optional[str]:
    value = str(url or "").strip()
    if not value:
        return None

    pathname = urlparse(value).path if value.startswith("http") else value
    if not pathname.startswith(UPLOADS_URL_PREFIX):
        return None

    relative = pathname[len(UPLOADS_URL_PREFIX):]
    root = os.path.realpath(static_root)
    target = os.path.realpath(os.path.join(root, relative))
    if os.path.commonpath([root, target]) != root or target == root:
        return None
    return target


def remove_uploaded_image(url: Optional[str], static_root: str) -> bool:
    target = resolve_upload_path(url, static_root)
    if not target:
        return False

    try:
        os.remove(target)
    except FileNotFoundError:
        return False
    except OSError as exc:
        logger.error("Failed to delete image %s: %s", target, exc)
        return False
    return True


def _discard_partial_file(path: str) -> None:
    try:
        os.remove(path)
    except OSError:
        return

