import logging
import os
import tempfile
from dataclasses import dataclass

from langchain_community.document_loaders import PyPDFLoader

from app.core.exceptions import PdfParseError

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF-"


@dataclass(frozen=True)
class PdfPage:
    page: int  # 1-indexed
    text: str


def looks_like_pdf(file_bytes: bytes) -> bool:
    return len(file_bytes) >= len(PDF_MAGIC) and file_bytes[: len(PDF_MAGIC)] == PDF_MAGIC


def parse_pdf(file_bytes: bytes) -> list[PdfPage]:
    """
    Extract per-page text from PDF bytes using the Langchain PDF loader.
    Use a temp file since the loader requires a file path.

    Raises:
        PdfParseError: If the bytes cannot be read as a PDF.
    """
    with tempfile.NamedTemporaryFile(delete=False, suffix=".pdf") as temp_file:
        temp_file.write(file_bytes)
        temp_path = temp_file.name

    try:
        docs = PyPDFLoader(temp_path).load()
    except Exception as e:
        logger.warning(f"⚠️ PDF parse failed: {e}")
        raise PdfParseError(detail=str(e)) from e
    finally:
        if os.path.exists(temp_path):
            os.remove(temp_path)

    pages = []
    for index, doc in enumerate(docs):
        page_num = doc.metadata.get("page", index)  # PyPDFLoader pages are 0-indexed
        text = doc.page_content.replace("\x00", "")
        pages.append(PdfPage(page=page_num + 1 if isinstance(page_num, int) else index + 1, text=text))
    return pages


def total_text_length(pages: list[PdfPage]) -> int:
    return sum(len(p.text.strip()) for p in pages)
