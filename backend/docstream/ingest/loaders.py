"""Text extraction for uploaded documents."""

from __future__ import annotations

import io
import zipfile
from pathlib import PurePath

import fitz
import yaml
from docx import Document
from docx.opc.exceptions import PackageNotFoundError
from markdown_it import MarkdownIt

from docstream.core.errors import UnsupportedDocument
from docstream.ingest.types import ExtractedDocument
from docstream.utils.text import normalize_paragraphs

_MD = MarkdownIt()
_PDF_MAGIC = b"%PDF"
_DOCX_MAGIC = b"PK\x03\x04"


class BaseLoader:
    """Common loader interface."""

    suffixes: tuple[str, ...] = ()
    mime_type: str = "application/octet-stream"

    def can_load(self, filename: str, data: bytes) -> bool:
        return PurePath(filename).suffix.lower() in self.suffixes

    def load(self, filename: str, data: bytes) -> ExtractedDocument:  # pragma: no cover - interface
        raise NotImplementedError


class PDFLoader(BaseLoader):
    suffixes = (".pdf",)
    mime_type = "application/pdf"

    def can_load(self, filename: str, data: bytes) -> bool:
        return data.startswith(_PDF_MAGIC) or super().can_load(filename, data)

    def load(self, filename: str, data: bytes) -> ExtractedDocument:
        try:
            with fitz.open(stream=data, filetype="pdf") as doc:
                pages = [page.get_text("text", sort=True) for page in doc]
                title = (doc.metadata or {}).get("title") or None
        except (RuntimeError, ValueError) as exc:
            raise UnsupportedDocument(f"Could not read PDF {filename}: {exc}") from exc
        text = "\n\n".join(normalize_paragraphs(page) for page in pages if page.strip())
        return ExtractedDocument(
            text=text,
            mime=self.mime_type,
            title=title or PurePath(filename).stem,
            page_count=len(pages),
            metadata={"page_count": len(pages)},
        )


class DocxLoader(BaseLoader):
    suffixes = (".docx",)
    mime_type = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

    def can_load(self, filename: str, data: bytes) -> bool:
        return super().can_load(filename, data) and data.startswith(_DOCX_MAGIC)

    def load(self, filename: str, data: bytes) -> ExtractedDocument:
        try:
            document = Document(io.BytesIO(data))
        except (zipfile.BadZipFile, PackageNotFoundError, KeyError, ValueError) as exc:
            raise UnsupportedDocument(f"Could not read DOCX {filename}: {exc}") from exc
        paragraphs = [para.text.strip() for para in document.paragraphs if para.text.strip()]
        core = document.core_properties
        return ExtractedDocument(
            text="\n\n".join(paragraphs),
            mime=self.mime_type,
            title=core.title or PurePath(filename).stem,
            page_count=1,
            metadata={"author": core.author or None, "category": core.category or None},
        )


class MarkdownLoader(BaseLoader):
    suffixes = (".md", ".markdown", ".mdx")
    mime_type = "text/markdown"

    def load(self, filename: str, data: bytes) -> ExtractedDocument:
        text = data.decode("utf-8", errors="ignore")
        front_matter, body = _split_front_matter(text)
        metadata: dict[str, object] = {}
        if front_matter:
            metadata["front_matter"] = front_matter
        title = front_matter.get("title") if front_matter else None
        return ExtractedDocument(
            text=_markdown_to_text(body),
            mime=self.mime_type,
            title=str(title) if title else PurePath(filename).stem,
            page_count=1,
            metadata=metadata,
        )


class TextLoader(BaseLoader):
    suffixes = (".txt", ".text", ".log")
    mime_type = "text/plain"

    def load(self, filename: str, data: bytes) -> ExtractedDocument:
        return ExtractedDocument(
            text=normalize_paragraphs(data.decode("utf-8", errors="ignore")),
            mime=self.mime_type,
            title=PurePath(filename).stem,
            page_count=1,
        )


class LoaderRegistry:
    """Registry that selects an appropriate loader for an uploaded file."""

    def __init__(self) -> None:
        self._loaders: list[BaseLoader] = [
            PDFLoader(),
            DocxLoader(),
            MarkdownLoader(),
            TextLoader(),
        ]

    def register(self, loader: BaseLoader) -> None:
        self._loaders.insert(0, loader)

    def for_file(self, filename: str, data: bytes) -> BaseLoader | None:
        for loader in self._loaders:
            if loader.can_load(filename, data):
                return loader
        return None

    def extract(self, filename: str, data: bytes) -> ExtractedDocument:
        loader = self.for_file(filename, data)
        if loader is None:
            raise UnsupportedDocument(f"No loader registered for {filename!r}")
        return loader.load(filename, data)

    def mime_for(self, filename: str, data: bytes) -> str:
        loader = self.for_file(filename, data)
        return loader.mime_type if loader else BaseLoader.mime_type


def _split_front_matter(text: str) -> tuple[dict[str, object] | None, str]:
    if text.startswith("---"):
        parts = text.split("---", 2)
        if len(parts) >= 3:
            try:
                front_matter = yaml.safe_load(parts[1]) or {}
            except yaml.YAMLError:
                return None, text
            if isinstance(front_matter, dict):
                return front_matter, parts[2]
    return None, text


def _markdown_to_text(text: str) -> str:
    parts = [token.content.strip() for token in _MD.parse(text) if token.content.strip()]
    return normalize_paragraphs("\n\n".join(parts) if parts else text)


__all__ = ["LoaderRegistry", "BaseLoader", "PDFLoader", "DocxLoader", "MarkdownLoader", "TextLoader"]
