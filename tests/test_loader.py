"""Tests for the knowledge document loader."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from coach_context.knowledge.loader import load_documents, parse_markdown_file, parse_pdf_file


@pytest.fixture
def documents_dir(tmp_path: Path) -> Path:
    nutri = tmp_path / "nutri"
    nutri.mkdir()
    (nutri / "01_protein_timing.md").write_text(
        "# Protein Timing\n\nEat protein within two hours after training.\n",
        encoding="utf-8",
    )
    (nutri / "hydration.md").write_text(
        "---\n"
        "id: hydration-basics\n"
        "title: \"Hydration Basics\"\n"
        "owner: lucy\n"
        "category: nutrition\n"
        "subtype: fluids\n"
        "---\n"
        "# Ignored Heading\n\nDrink before you are thirsty.\n",
        encoding="utf-8",
    )
    (nutri / "README.md").write_text("# Index\n", encoding="utf-8")
    (nutri / "_draft.md").write_text("# Draft\n", encoding="utf-8")
    (nutri / "notes.txt").write_text("not loaded", encoding="utf-8")
    return tmp_path


class TestMarkdown:
    """Tests for markdown parsing."""

    def test_heading_becomes_title(self, documents_dir):
        document = parse_markdown_file(documents_dir / "nutri" / "01_protein_timing.md")

        assert document.id == "01_protein_timing"
        assert document.title == "Protein Timing"
        assert document.body == "Eat protein within two hours after training."
        assert document.owner_tag == "nutri"
        assert document.category == "general"

    def test_front_matter_overrides(self, documents_dir):
        document = parse_markdown_file(documents_dir / "nutri" / "hydration.md", owner_tag="coach")

        assert document.id == "hydration-basics"
        assert document.title == "Hydration Basics"
        assert document.owner_tag == "lucy"
        assert document.category == "nutrition"
        assert document.subtype == "fluids"
        assert "Ignored Heading" not in document.body
        assert document.body == "Drink before you are thirsty."

    def test_title_from_file_name(self, tmp_path):
        path = tmp_path / "02_carb_loading.md"
        path.write_text("No heading here.", encoding="utf-8")

        assert parse_markdown_file(path).title == "Carb Loading"


class TestLoadDocuments:
    """Tests for directory scanning."""

    def test_skips_readme_drafts_and_other_files(self, documents_dir):
        documents = load_documents(documents_dir)
        assert sorted(d.id for d in documents) == ["01_protein_timing", "hydration-basics"]

    def test_owner_override(self, documents_dir):
        documents = {d.id: d for d in load_documents(documents_dir, owner_tag="coach")}

        assert documents["01_protein_timing"].owner_tag == "coach"
        # Front matter still wins
        assert documents["hydration-basics"].owner_tag == "lucy"

    def test_missing_directory(self, tmp_path):
        assert load_documents(tmp_path / "nope") == []


class TestPdf:
    """Tests for PDF parsing."""

    @staticmethod
    def _reader(*page_texts, title=None):
        reader = MagicMock()
        reader.pages = [MagicMock(**{"extract_text.return_value": t}) for t in page_texts]
        reader.metadata = MagicMock(title=title) if title else None
        return reader

    def test_pages_joined(self, tmp_path):
        path = tmp_path / "strength" / "squat_guide.pdf"
        path.parent.mkdir()
        path.write_bytes(b"%PDF-1.4")

        with patch(
            "coach_context.knowledge.loader.PdfReader",
            return_value=self._reader("Brace first. ", None, " Then descend."),
        ):
            document = parse_pdf_file(path)

        assert document.body == "Brace first.\n\nThen descend."
        assert document.title == "Squat Guide"
        assert document.owner_tag == "strength"

    def test_metadata_title(self, tmp_path):
        path = tmp_path / "guide.pdf"
        path.write_bytes(b"%PDF-1.4")

        with patch(
            "coach_context.knowledge.loader.PdfReader",
            return_value=self._reader("Text", title="Official Guide"),
        ):
            assert parse_pdf_file(path, owner_tag="coach").title == "Official Guide"

    def test_no_text_returns_none(self, tmp_path):
        path = tmp_path / "scan.pdf"
        path.write_bytes(b"%PDF-1.4")

        with patch("coach_context.knowledge.loader.PdfReader", return_value=self._reader("", "  ")):
            assert parse_pdf_file(path, owner_tag="coach") is None

    def test_unreadable_pdf(self, tmp_path):
        path = tmp_path / "broken.pdf"
        path.write_bytes(b"not a pdf")

        with patch("coach_context.knowledge.loader.PdfReader", side_effect=OSError("bad file")):
            with pytest.raises(ValueError):
                parse_pdf_file(path, owner_tag="coach")
