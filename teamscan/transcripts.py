"""Interview transcript ingestion: text extraction, blob storage and batch upload."""
from __future__ import annotations

import enum
import io
import logging
import time
import zipfile
from dataclasses import dataclass, field
from pathlib import Path

from docx import Document
from docx.opc.exceptions import PackageNotFoundError
from pypdf import PdfReader
from pypdf.errors import PdfReadError
from sqlalchemy.orm import Session

from teamscan.errors import InvalidInput, NotFound, TeamscanError, UnsupportedFileType
from teamscan.models import Founder, InterviewTranscript
from teamscan.utils import utcnow

log = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".txt", ".pdf", ".docx"}

_TEXT_TYPES = {"text/plain"}
_PDF_TYPES = {"application/pdf"}
_DOCX_TYPES = {"application/vnd.openxmlformats-officedocument.wordprocessingml.document"}
_DOC_TYPES = {"application/msword"}


# ---------------------------------------------------------------------------
# Text extraction
# ---------------------------------------------------------------------------


def detect_extension(filename: str) -> str:
    return Path(filename or "").suffix.lower()


def extract_text(filename: str, content_type: str | None, data: bytes) -> str:
    """Return the plain text of an uploaded transcript.

    Raises ``UnsupportedFileType`` for anything other than .txt, .pdf or .docx
    (legacy .doc included) and ``InvalidInput`` when no text can be extracted.
    """
    ext = detect_extension(filename)
    ctype = (content_type or "").split(";")[0].strip().lower()

    if ext == ".doc" or ctype in _DOC_TYPES:
        raise UnsupportedFileType(
            ".doc files (older Word format) are not supported. Please convert to .docx, .pdf, or .txt format."
        )
    if ext == ".txt" or (not ext and ctype in _TEXT_TYPES):
        text = data.decode("utf-8", errors="replace")
    elif ext == ".pdf" or (not ext and ctype in _PDF_TYPES):
        text = _extract_pdf(data)
    elif ext == ".docx" or (not ext and ctype in _DOCX_TYPES):
        text = _extract_docx(data)
    else:
        raise UnsupportedFileType("Unsupported file type. Supported formats: .txt, .pdf, .docx")

    if not text.strip():
        raise InvalidInput("Could not extract text from file")
    return text


def _extract_pdf(data: bytes) -> str:
    try:
        reader = PdfReader(io.BytesIO(data))
        pages = [(page.extract_text() or "").strip() for page in reader.pages]
    except PdfReadError as exc:
        raise InvalidInput(f"Could not read PDF: {exc}") from exc
    return "\n\n".join(p for p in pages if p)


def _extract_docx(data: bytes) -> str:
    try:
        document = Document(io.BytesIO(data))
    except (PackageNotFoundError, zipfile.BadZipFile, KeyError) as exc:
        raise InvalidInput(f"Could not read .docx file: {exc}") from exc
    return "\n".join(p.text for p in document.paragraphs if p.text)


# ---------------------------------------------------------------------------
# Blob store
# ---------------------------------------------------------------------------


class TranscriptStore:
    """Local-directory blob store keyed by ``interviews/{founder_id}/{timestamp}.{ext}``."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def save(self, founder_id: int, ext: str, data: bytes) -> str:
        stamp = int(time.time() * 1000)
        while (self.root / f"interviews/{founder_id}/{stamp}{ext}").exists():
            stamp += 1
        key = f"interviews/{founder_id}/{stamp}{ext}"
        path = self.root / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return key

    def delete(self, key: str) -> None:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Refusing to delete outside the transcript store: {key}")
        path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def save_transcript(
    session: Session,
    founder: Founder,
    *,
    filename: str,
    content_type: str | None,
    data: bytes,
    store: TranscriptStore | None = None,
    uploaded_by: str | None = None,
) -> InterviewTranscript:
    """Extract, store and record one transcript (caller must commit).

    A failure to store the original file is logged and leaves ``file_url`` empty.
    """
    raw_text = extract_text(filename, content_type, data)
    file_url = None
    if store is not None:
        try:
            file_url = store.save(founder.id, detect_extension(filename), data)
        except OSError as exc:
            log.warning("Could not store transcript file %s for founder %s: %s", filename, founder.id, exc)

    transcript = InterviewTranscript(
        founder_id=founder.id,
        raw_text=raw_text,
        file_url=file_url,
        file_name=filename,
        uploaded_at=utcnow(),
        uploaded_by=uploaded_by,
    )
    session.add(transcript)
    founder.interview_status = "completed"
    session.flush()
    return transcript


def delete_transcript(session: Session, transcript: InterviewTranscript, store: TranscriptStore | None = None) -> None:
    """Delete the row; a failure to remove the stored file is logged and ignored (caller must commit)."""
    if store is not None and transcript.file_url:
        try:
            store.delete(transcript.file_url)
        except (OSError, ValueError) as exc:
            log.warning("Could not remove stored file %s: %s", transcript.file_url, exc)
    session.delete(transcript)


class UploadStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class UploadFile:
    filename: str
    content_type: str | None
    data: bytes


@dataclass
class UploadItem:
    filename: str
    status: UploadStatus = UploadStatus.PENDING
    transcript_id: int | None = None
    error: str | None = None
    code: str | None = None

    def to_dict(self) -> dict:
        return {"file_name": self.filename, "status": self.status.value,
                "transcript_id": self.transcript_id, "error": self.error, "code": self.code}


@dataclass
class BatchUploadResult:
    items: list[UploadItem] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for i in self.items if i.status is UploadStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return sum(1 for i in self.items if i.status is UploadStatus.FAILED)

    @property
    def outcome(self) -> str:
        if self.succeeded and not self.failed:
            return "success"
        if self.succeeded:
            return "partial_success"
        return "failed"

    def to_dict(self) -> dict:
        return {"outcome": self.outcome, "succeeded": self.succeeded, "failed": self.failed,
                "items": [i.to_dict() for i in self.items]}


def upload_batch(
    session: Session,
    founder_id: int,
    files: list[UploadFile],
    *,
    store: TranscriptStore | None = None,
    uploaded_by: str | None = None,
) -> BatchUploadResult:
    """Process files in order, one transaction each; a failure never stops the rest."""
    if session.get(Founder, founder_id) is None:
        raise NotFound(f"Founder {founder_id} not found")
    if not files:
        raise InvalidInput("At least one file is required")

    result = BatchUploadResult(items=[UploadItem(filename=f.filename) for f in files])
    for upload, item in zip(files, result.items):
        item.status = UploadStatus.IN_PROGRESS
        try:
            # Re-fetch each iteration; a rollback expires loaded objects
            founder = session.get(Founder, founder_id)
            transcript = save_transcript(
                session, founder, filename=upload.filename, content_type=upload.content_type,
                data=upload.data, store=store, uploaded_by=uploaded_by,
            )
            session.commit()
            item.status = UploadStatus.SUCCEEDED
            item.transcript_id = transcript.id
        except TeamscanError as exc:
            session.rollback()
            log.warning("Upload failed for %s: %s", upload.filename, exc.message)
            item.status, item.error, item.code = UploadStatus.FAILED, exc.message, exc.code
        except Exception as exc:
            session.rollback()
            log.warning("Upload failed for %s: %s", upload.filename, exc)
            item.status, item.error, item.code = UploadStatus.FAILED, "Could not save transcript", "internal_error"
    log.info("Batch upload for founder %s: %d succeeded, %d failed", founder_id, result.succeeded, result.failed)
    return result
