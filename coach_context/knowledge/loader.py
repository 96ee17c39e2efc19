"""Document loader for the knowledge corpus.

Loads markdown and PDF files into ``KnowledgeDocument`` objects. Chunking
happens later, in the re-embedding pipeline.
"""

import logging
import re
from datetime import datetime, timezone
from pathlib import Path

from pypdf import PdfReader

from coach_context.knowledge.models import KnowledgeDocument

logger = logging.getLogger(__name__)

_FRONT_MATTER = re.compile(r"\A---\s*\n(.*?)\n---\s*(?:\n|\Z)", re.DOTALL)
_H1 = re.compile(r"^#\s+(.+?)\s*$", re.MULTILINE)

# Front matter keys copied onto the document
_FRONT_MATTER_KEYS = {"id", "title", "owner_tag", "category", "subtype"}


def load_documents(
    documents_dir: Path,
    owner_tag: str | None = None,
) -> list[KnowledgeDocument]:
    """Load all markdown and PDF documents below a directory.

    Args:
        documents_dir: Directory to scan recursively.
        owner_tag: Owner for every document. Defaults to each file's parent
            directory name unless the file's front matter sets one.

    Returns:
        Documents sorted by file path.
    """
    if not documents_dir.exists():
        logger.warning("Knowledge documents directory not found: %s", documents_dir)
        return []

    documents: list[KnowledgeDocument] = []
    for path in sorted(documents_dir.rglob("*")):
        if not path.is_file() or path.name.startswith("_") or path.name == "README.md":
            continue

        suffix = path.suffix.lower()
        if suffix == ".md":
            documents.append(parse_markdown_file(path, owner_tag))
        elif suffix == ".pdf":
            document = parse_pdf_file(path, owner_tag)
            if document is not None:
                documents.append(document)

    logger.info("Loaded %d knowledge documents from %s", len(documents), documents_dir)
    return documents


def parse_markdown_file(file_path: Path, owner_tag: str | None = None) -> KnowledgeDocument:
    """Parse one markdown file.

    The title comes from the first ``# `` heading (or the file name). An
    optional front matter block of ``key: value`` lines between ``---``
    markers may set ``id``, ``title``, ``owner_tag`` (or ``owner``),
    ``category`` and ``subtype``.
    """
    content = file_path.read_text(encoding="utf-8")
    fields: dict[str, str] = {}

    match = _FRONT_MATTER.match(content)
    if match:
        fields = _parse_front_matter(match.group(1))
        content = content[match.end() :]

    heading = _H1.search(content)
    title = fields.get("title")
    if heading:
        title = title or heading.group(1)
        content = content[: heading.start()] + content[heading.end() :]

    return KnowledgeDocument(
        id=fields.get("id") or file_path.stem,
        owner_tag=fields.get("owner_tag") or owner_tag or file_path.parent.name,
        title=title or _title_from_stem(file_path.stem),
        body=content.strip(),
        category=fields.get("category") or "general",
        subtype=fields.get("subtype"),
        updated_at=_modified_at(file_path),
    )


def parse_pdf_file(file_path: Path, owner_tag: str | None = None) -> KnowledgeDocument | None:
    """Parse one PDF file, joining the text of all pages.

    Returns:
        The document, or None if the PDF contains no extractable text.

    Raises:
        ValueError: If the PDF cannot be read.
    """
    try:
        reader = PdfReader(str(file_path))
        pages = [page.extract_text() or "" for page in reader.pages]
        metadata_title = reader.metadata.title if reader.metadata else None
    except Exception as e:
        raise ValueError(f"Failed to parse PDF file {file_path}: {e}") from e

    body = "\n\n".join(text.strip() for text in pages if text.strip())
    if not body:
        logger.warning("No extractable text in %s, skipping", file_path)
        return None

    return KnowledgeDocument(
        id=file_path.stem,
        owner_tag=owner_tag or file_path.parent.name,
        title=metadata_title or _title_from_stem(file_path.stem),
        body=body,
        category="general",
        updated_at=_modified_at(file_path),
    )


def _parse_front_matter(block: str) -> dict[str, str]:
    fields: dict[str, str] = {}
    for line in block.splitlines():
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip().lower()
        if key == "owner":
            key = "owner_tag"
        value = value.strip().strip("\"'")
        if key in _FRONT_MATTER_KEYS and value:
            fields[key] = value
    return fields


def _title_from_stem(stem: str) -> str:
    # "01_protein_timing" -> "Protein Timing"
    words = [w for w in re.split(r"[_\-\s]+", stem) if w and not w.isdigit()]
    return " ".join(w.capitalize() for w in words) or stem


def _modified_at(file_path: Path) -> datetime:
    return datetime.fromtimestamp(file_path.stat().st_mtime, tz=timezone.utc)
