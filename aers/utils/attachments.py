"""
Attachment reading - Files to base64 payloads for the generation collaborator

Every failure is raised as AttachmentReadError naming the failing step,
so the controller can abort the send before any turn is created.
"""

import base64
import binascii
import logging
import mimetypes
from pathlib import Path
from typing import Iterable, Tuple, Union

from aers.contracts import AttachmentPayload, FileMetadata
from aers.errors import AttachmentReadError

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


def encode_bytes(name: str, content: bytes, mime_type: str = None) -> AttachmentPayload:
    """
    Encode in-memory content (e.g. an uploaded file).

    Raises:
        AttachmentReadError: If content is not bytes
    """
    if not isinstance(content, (bytes, bytearray)):
        raise AttachmentReadError(
            f"encoding attachment {name}",
            f"expected bytes, got {type(content).__name__}"
        )
    if not mime_type:
        mime_type = mimetypes.guess_type(name)[0] or DEFAULT_MIME_TYPE
    data = base64.b64encode(bytes(content)).decode('ascii')
    return AttachmentPayload(name=name, mime_type=mime_type, data=data, size=len(content))


def read_attachment(path: Union[str, Path]) -> AttachmentPayload:
    """
    Read and encode one file from disk.

    Raises:
        AttachmentReadError: If the file cannot be read
    """
    path = Path(path)
    try:
        content = path.read_bytes()
    except OSError as e:
        raise AttachmentReadError(f"reading attachment {path.name}", str(e))

    logger.debug(f"Read attachment {path.name} ({len(content)} bytes)")
    return encode_bytes(path.name, content)


def read_attachments(paths: Iterable[Union[str, Path]]) -> Tuple[AttachmentPayload, ...]:
    """Read several files; the first failure aborts the whole batch"""
    return tuple(read_attachment(path) for path in paths)


def decode_payload(item: dict) -> AttachmentPayload:
    """
    Validate a client-supplied {name, type, data} payload (already base64).

    Raises:
        AttachmentReadError: If a key is missing or data is not valid base64
    """
    name = item.get('name') or 'attachment'
    step = f"reading attachment {name}"
    data = item.get('data')
    if not isinstance(data, str) or not data:
        raise AttachmentReadError(step, "missing base64 'data'")

    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AttachmentReadError(step, f"invalid base64 data: {e}")

    mime_type = item.get('type') or mimetypes.guess_type(name)[0] or DEFAULT_MIME_TYPE
    return AttachmentPayload(name=name, mime_type=mime_type, data=data, size=len(raw))


def metadata_for(payloads: Iterable[AttachmentPayload]) -> Tuple[FileMetadata, ...]:
    """Metadata kept when a payload must be persisted (content is dropped)"""
    return tuple(FileMetadata(name=p.name, size=p.size, type=p.mime_type) for p in payloads)
