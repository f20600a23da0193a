"""Raw document text extraction.

Handles:
- Plain text and Markdown (YAML frontmatter is lifted into metadata)
- PDF via pypdf, with encryption detection
- Content hashing of the normalized text
"""
import hashlib
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Tuple

import structlog
import yaml
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from corpusqa.errors import (
    EncryptedSourceError,
    NotFoundError,
    UnsupportedInputError,
    ValidationError,
)

logger = structlog.get_logger()

KIND_TEXT = "text"
KIND_MARKDOWN = "markdown"
KIND_PDF = "pdf"

EXTENSION_KINDS = {
    ".txt": KIND_TEXT,
    ".text": KIND_TEXT,
    ".md": KIND_MARKDOWN,
    ".markdown": KIND_MARKDOWN,
    ".pdf": KIND_PDF,
}

# YAML frontmatter must start the file
FRONTMATTER_PATTERN = re.compile(r"^---\s*\n(.*?)\n---\s*\n", re.DOTALL)


@dataclass
class ExtractedSource:
    """Text pulled out of one source document."""

    path: Path
    kind: str
    text: str
    content_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def normalize_text(text: str) -> str:
    """Strip NULs and normalize line endings to ``\\n``."""
    return text.replace("\x00", "").replace("\r\n", "\n").replace("\r", "\n")


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def walk_paths(root: Path) -> List[Path]:
    """List the files under a path (or the path itself if it is a file).

    Hidden files and directories are skipped. Order is sorted so repeated
    ingests produce the same manifest.

    Raises:
        ValidationError: If no path was given
        NotFoundError: If the path does not exist
    """
    if root is None or str(root).strip() == "":
        raise ValidationError("A source path is required")

    root = Path(root)
    if not root.exists():
        raise NotFoundError(f"Source path not found: {root}")

    if root.is_file():
        return [root]

    files = [
        p
        for p in sorted(root.rglob("*"))
        if p.is_file() and not any(part.startswith(".") for part in p.relative_to(root).parts)
    ]

    logger.info("source_files_discovered", count=len(files), root=str(root))

    return files


def extract_text(path: Path) -> ExtractedSource:
    """Extract normalized text from a supported document.

    Args:
        path: Path to a .txt, .md or .pdf file

    Returns:
        ExtractedSource with kind, text, content hash and metadata

    Raises:
        UnsupportedInputError: If the extension is not supported or the PDF is unreadable
        EncryptedSourceError: If the PDF is encrypted
        OSError: If the file cannot be read
    """
    path = Path(path)
    kind = EXTENSION_KINDS.get(path.suffix.lower())
    if kind is None:
        raise UnsupportedInputError(f"Unsupported file type: {path.suffix or path.name}")

    metadata: Dict[str, Any] = {"file_name": path.name}

    if kind == KIND_PDF:
        raw, pdf_meta = _read_pdf(path)
        metadata.update(pdf_meta)
    else:
        raw = path.read_text(encoding="utf-8", errors="replace")
        if kind == KIND_MARKDOWN:
            frontmatter, raw = parse_frontmatter(raw)
            metadata.update({k: v for k, v in frontmatter.items() if _is_scalar(v)})

    text = normalize_text(raw)

    logger.info(
        "source_extracted",
        path=str(path),
        kind=kind,
        content_length=len(text),
    )

    return ExtractedSource(
        path=path,
        kind=kind,
        text=text,
        content_hash=content_hash(text),
        metadata=metadata,
    )


def parse_frontmatter(content: str) -> Tuple[Dict[str, Any], str]:
    """Extract YAML frontmatter from markdown content.

    Args:
        content: Full markdown content

    Returns:
        Tuple of (frontmatter_dict, content_without_frontmatter)
    """
    match = FRONTMATTER_PATTERN.match(content)

    if not match:
        return {}, content

    yaml_content = match.group(1)
    try:
        frontmatter = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        logger.warning(
            "frontmatter_parse_error",
            error=str(e),
            yaml_preview=yaml_content[:100],
        )
        frontmatter = None

    if not isinstance(frontmatter, dict):
        frontmatter = {}

    return frontmatter, content[match.end() :]


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


def _read_pdf(path: Path) -> Tuple[str, Dict[str, Any]]:
    try:
        reader = PdfReader(str(path))
    except PdfReadError as e:
        raise UnsupportedInputError(f"Unreadable PDF {path}: {e}") from e

    if reader.is_encrypted:
        raise EncryptedSourceError(f"Encrypted PDF not supported: {path}")

    pages = []
    for number, page in enumerate(reader.pages, 1):
        try:
            pages.append(page.extract_text() or "")
        except (PdfReadError, ValueError, KeyError) as e:
            # Skip damaged pages and keep the rest of the document
            logger.warning("pdf_page_extract_failed", path=str(path), page=number, error=str(e))

    metadata: Dict[str, Any] = {"page_count": len(reader.pages)}
    try:
        info = reader.metadata
        if info and info.title:
            metadata["title"] = str(info.title)
    except (PdfReadError, ValueError, KeyError, TypeError) as e:
        # The document info dictionary is optional; keep the extracted text
        logger.warning("pdf_metadata_read_failed", path=str(path), error=str(e))

    return "\n".join(pages), metadata
