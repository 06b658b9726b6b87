"""Read source files as text: plain text as UTF-8, PDF via PyMuPDF."""
from pathlib import Path
from typing import Tuple, Union

import fitz  # PyMuPDF
import structlog

from wali.errors import DocumentNotFoundError, UnsupportedFileError

logger = structlog.get_logger()

PDF_EXTENSIONS = {".pdf"}


def file_type_of(path: Union[str, Path]) -> str:
    """Lower-case extension without the dot, or 'unknown'."""
    suffix = Path(path).suffix.lower().lstrip(".")
    return suffix or "unknown"


def get_file_info(path: Union[str, Path]) -> Tuple[str, int]:
    """Return the display name and size in bytes of a file.

    Raises:
        DocumentNotFoundError: If the file does not exist
    """
    p = Path(path)
    if not p.is_file():
        raise DocumentNotFoundError(f"File not found: {p}")
    return p.name, p.stat().st_size


def read_text(path: Union[str, Path]) -> str:
    """Extract the text content of a file.

    Args:
        path: Path to a text or PDF file

    Returns:
        Decoded text

    Raises:
        DocumentNotFoundError: If the file does not exist
        UnsupportedFileError: If the file cannot be decoded or holds no text
    """
    p = Path(path)
    if not p.is_file():
        raise DocumentNotFoundError(f"File not found: {p}")

    if p.suffix.lower() in PDF_EXTENSIONS:
        return _extract_pdf_text(p)

    try:
        return p.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise UnsupportedFileError(f"File is not UTF-8 text: {p.name}") from e
    except OSError as e:
        raise DocumentNotFoundError(f"Failed to read file {p}: {e}") from e


def _extract_pdf_text(path: Path) -> str:
    try:
        with fitz.open(str(path)) as doc:
            text = "\n\n".join(page.get_text() for page in doc)
    except RuntimeError as e:
        logger.error("pdf_extraction_failed", path=str(path), error=str(e))
        raise UnsupportedFileError(f"PDF parsing failed for {path.name}: {e}") from e

    if not text.strip():
        raise UnsupportedFileError(
            f"No extractable text in {path.name}; it may be a scanned or encrypted PDF"
        )

    logger.info("pdf_text_extracted", path=str(path), text_length=len(text))
    return text
