"""
PDF statement text extraction.

PDF statements carry no header row to detect a bank format from, so the
reader only recovers the text, line by line and page by page. Rows are
pulled out of that text later, in the pipeline (see pdf_rows.py).

Password problems are raised here, while the upload request is still
open, so the user can retry with the right password.
"""

import io
from typing import Optional

import pdfplumber
import structlog
from pdfminer.pdfdocument import PDFPasswordIncorrect
from pdfplumber.utils.exceptions import PdfminerException

from statement_import.errors import (
    EmptyFileError,
    PasswordRequiredError,
    UnreadableFileError,
    WrongPasswordError,
)


logger = structlog.get_logger()


def _is_password_error(error: Exception) -> bool:
    # pdfplumber wraps pdfminer errors; the original is the first arg
    cause = error.args[0] if error.args else None
    return isinstance(error, PDFPasswordIncorrect) or isinstance(cause, PDFPasswordIncorrect)


def extract_pdf_text(data: bytes, password: Optional[str] = None) -> str:
    """
    Extract the text of every page, pages separated by a blank line.

    Raises:
        PasswordRequiredError: Encrypted PDF and no password given
        WrongPasswordError: Encrypted PDF and the password doesn't open it
        UnreadableFileError: Not a PDF pdfplumber can open
        EmptyFileError: No text at all (for example a scanned statement)
    """
    if not data:
        raise EmptyFileError()

    try:
        with pdfplumber.open(io.BytesIO(data), password=password or "") as pdf:
            pages = [page.extract_text() or "" for page in pdf.pages]
    except (PdfminerException, PDFPasswordIncorrect) as e:
        if _is_password_error(e):
            logger.warning("pdf_password_rejected", password_given=bool(password))
            if password:
                raise WrongPasswordError()
            raise PasswordRequiredError()
        raise UnreadableFileError(f"Could not read PDF: {e}")
    except Exception as e:
        raise UnreadableFileError(f"Could not read PDF: {e}")

    text = "\n\n".join(page.strip() for page in pages if page.strip())
    if not text:
        raise EmptyFileError("The PDF statement has no extractable text")

    logger.info("pdf_text_extracted", page_count=len(pages), characters=len(text))
    return text
