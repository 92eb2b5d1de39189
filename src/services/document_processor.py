"""
Course document text extraction for the outline analyzer.
"""

import io
from collections.abc import Iterable
from typing import Any

from pypdf import PdfReader

from services.errors import ValidationError

TEXT_SUFFIXES = (".txt", ".md", ".markdown", ".csv", ".tex", ".rst")


class PDFProcessor:
    """Extracts text from uploaded PDF and plain-text course documents."""

    def extract_pages_from_bytes(self, data: bytes) -> list[dict[str, Any]]:
        """
        Extract per-page text from PDF bytes.

        Returns:
            List of {"page": int, "text": str}.
        """
        if not data:
            raise ValidationError("File is empty and cannot be processed.")

        try:
            reader = PdfReader(io.BytesIO(data))
        except Exception as e:
            raise ValidationError(f"Unable to parse PDF (possibly corrupted): {e!s}") from e

        pages: list[dict[str, Any]] = []
        try:
            for idx, page in enumerate(reader.pages):
                text = (page.extract_text() or "").strip()
                if text:
                    pages.append({"page": idx + 1, "text": text})
        except Exception as e:
            raise ValidationError(f"Error extracting page text: {e!s}") from e

        return pages

    def extract_document_text(self, name: str, data: bytes) -> str:
        """Text of one document: PDFs through pypdf, text files decoded as UTF-8."""
        if not data:
            raise ValidationError(f"{name or 'Document'} is empty and cannot be processed.")
        lower = (name or "").lower()
        if lower.endswith(".pdf") or data[:5] == b"%PDF-":
            pages = self.extract_pages_from_bytes(data)
            return "\n".join(p["text"] for p in pages)
        if lower.endswith(TEXT_SUFFIXES) or "." not in lower:
            return data.decode("utf-8", errors="replace").strip()
        raise ValidationError(f"Unsupported document type: {name}")

    def extract_documents(self, documents: Iterable[tuple[str, bytes]], max_chars: int = 0) -> str:
        """
        Concatenate the text of several (name, bytes) documents under name headers.

        Raises:
            ValidationError: If no document yields any text.
        """
        sections: list[str] = []
        for name, data in documents:
            text = self.extract_document_text(name, data)
            if text:
                sections.append(f"=== {name} ===\n{text}")
        if not sections:
            raise ValidationError("No text could be extracted from the uploaded documents.")
        combined = "\n\n".join(sections)
        return combined[:max_chars] if max_chars > 0 else combined
