"""
Tests for the effective classification resolver.
"""

import pytest

from docengine.resolver import (
    SOURCE_AI,
    SOURCE_CANONICAL,
    SOURCE_CONFIRMED,
    SOURCE_GATEKEEPER,
    SOURCE_UNKNOWN,
    DocumentClassificationRow,
    resolve_effective_classification,
    resolve_record,
    to_canonical_doc_type,
)


# ============================================================================
# Canonical Mapping Tests
# ============================================================================

class TestToCanonicalDocType:
    """Tests for to_canonical_doc_type."""

    @pytest.mark.parametrize("ai_type,expected", [
        ("IRS_BUSINESS", "BUSINESS_TAX_RETURN"),
        ("IRS_PERSONAL", "PERSONAL_TAX_RETURN"),
        ("K1", "PERSONAL_TAX_RETURN"),
        ("W2", "PERSONAL_TAX_RETURN"),
        ("1099", "PERSONAL_TAX_RETURN"),
        ("PFS", "PERSONAL_FINANCIAL_STATEMENT"),
        ("INCOME_STATEMENT", "FINANCIAL_STATEMENT"),
        ("BALANCE_SHEET", "FINANCIAL_STATEMENT"),
        ("T12", "FINANCIAL_STATEMENT"),
        ("DRIVERS_LICENSE", "ENTITY_DOCS"),
        ("ARTICLES", "ENTITY_DOCS"),
        ("RENT_ROLL", "RENT_ROLL"),
        ("BANK_STATEMENT", "BANK_STATEMENT"),
    ])
    def test_ai_types(self, ai_type, expected):
        """Spine types map onto canonical types."""
        assert to_canonical_doc_type(ai_type) == expected

    def test_canonical_passes_through(self):
        """Values that are already canonical are unchanged."""
        assert to_canonical_doc_type("BUSINESS_TAX_RETURN") == "BUSINESS_TAX_RETURN"
        assert to_canonical_doc_type("entity_docs") == "ENTITY_DOCS"

    def test_unrecognized(self):
        """Missing or garbage input is OTHER."""
        assert to_canonical_doc_type(None) == "OTHER"
        assert to_canonical_doc_type("") == "OTHER"
        assert to_canonical_doc_type("NOT_A_TYPE") == "OTHER"
        assert to_canonical_doc_type("VOIDED_CHECK") == "OTHER"


# ============================================================================
# Type Resolution Tests
# ============================================================================

class TestTypeResolution:
    """Type priority: confirmed > canonical > AI > UNKNOWN."""

    def test_confirmed_wins(self):
        """A confirmed type beats every other source."""
        resolved = resolve_effective_classification(DocumentClassificationRow(
            confirmed_doc_type="BUSINESS_TAX_RETURN",
            canonical_type="PERSONAL_TAX_RETURN",
            ai_doc_type="W2",
        ))
        assert resolved.effective_doc_type == "BUSINESS_TAX_RETURN"
        assert resolved.source == SOURCE_CONFIRMED

    def test_canonical_over_ai(self):
        """Canonical type beats the AI type."""
        resolved = resolve_effective_classification(DocumentClassificationRow(
            canonical_type="FINANCIAL_STATEMENT",
            ai_doc_type="IRS_BUSINESS",
        ))
        assert resolved.effective_doc_type == "FINANCIAL_STATEMENT"
        assert resolved.source == SOURCE_CANONICAL

    def test_document_type_as_canonical(self):
        """document_type stands in when canonical_type is absent."""
        resolved = resolve_effective_classification(DocumentClassificationRow(document_type="RENT_ROLL"))
        assert resolved.effective_doc_type == "RENT_ROLL"
        assert resolved.source == SOURCE_CANONICAL

    def test_ai_type_canonicalized(self):
        """The AI type is canonicalized."""
        resolved = resolve_effective_classification(DocumentClassificationRow(ai_doc_type="K1"))
        assert resolved.effective_doc_type == "PERSONAL_TAX_RETURN"
        assert resolved.source == SOURCE_AI

    def test_nothing_known(self):
        """No type source gives UNKNOWN."""
        resolved = resolve_effective_classification(DocumentClassificationRow())
        assert resolved.effective_doc_type == "UNKNOWN"
        assert resolved.source == SOURCE_UNKNOWN
        assert resolved.effective_tax_year is None
        assert resolved.year_source is None
        assert resolved.is_confirmed is False

    def test_gatekeeper_type_ignored(self):
        """The gatekeeper type never decides the effective type."""
        resolved = resolve_record({"id": "d1", "gatekeeper_doc_type": "BUSINESS_TAX_RETURN"})
        assert resolved.effective_doc_type == "UNKNOWN"


# ============================================================================
# Year Resolution Tests
# ============================================================================

class TestYearResolution:
    """Year priority: document year > gatekeeper year > AI year."""

    def test_doc_year_first(self):
        """The resolved document year wins."""
        resolved = resolve_effective_classification(DocumentClassificationRow(
            doc_year=2022, gatekeeper_tax_year=2023, ai_tax_year=2024,
        ))
        assert resolved.effective_tax_year == 2022
        assert resolved.year_source == SOURCE_CANONICAL

    def test_gatekeeper_year_second(self):
        """The gatekeeper year beats the AI year."""
        resolved = resolve_effective_classification(DocumentClassificationRow(
            gatekeeper_tax_year=2023, ai_tax_year=2024,
        ))
        assert resolved.effective_tax_year == 2023
        assert resolved.year_source == SOURCE_GATEKEEPER

    def test_ai_year_last(self):
        """The AI year is the last resort."""
        resolved = resolve_effective_classification(DocumentClassificationRow(ai_tax_year=2024))
        assert resolved.effective_tax_year == 2024
        assert resolved.year_source == SOURCE_AI


# ============================================================================
# Confirmation Tests
# ============================================================================

class TestConfirmation:
    """Tests for the confirmation timestamp."""

    def test_confirmed_at_forces_source(self):
        """A confirmation timestamp makes the source CONFIRMED."""
        resolved = resolve_effective_classification(DocumentClassificationRow(
            canonical_type="BANK_STATEMENT",
            confirmed_at="2024-06-01T10:00:00Z",
        ))
        assert resolved.effective_doc_type == "BANK_STATEMENT"
        assert resolved.source == SOURCE_CONFIRMED
        assert resolved.is_confirmed is True

    def test_confirmed_type_without_timestamp(self):
        """A confirmed type without a timestamp is not marked confirmed."""
        resolved = resolve_effective_classification(DocumentClassificationRow(confirmed_doc_type="LEASE"))
        assert resolved.source == SOURCE_CONFIRMED
        assert resolved.is_confirmed is False

    def test_confirmed_short_type_canonicalized(self):
        """A confirmed spine type resolves to its canonical type."""
        resolved = resolve_effective_classification(DocumentClassificationRow(
            confirmed_doc_type="PFS",
            confirmed_at="2024-06-01T10:00:00Z",
        ))
        assert resolved.effective_doc_type == "PERSONAL_FINANCIAL_STATEMENT"
        assert resolved.source == SOURCE_CONFIRMED

    def test_canonical_spine_type_canonicalized(self):
        """A spine type stored as canonical_type is mapped too."""
        resolved = resolve_effective_classification(DocumentClassificationRow(canonical_type="IRS_PERSONAL"))
        assert resolved.effective_doc_type == "PERSONAL_TAX_RETURN"
        assert resolved.source == SOURCE_CANONICAL

    def test_unrecognized_confirmed_type_kept(self):
        """A confirmed type with no canonical mapping is kept as written."""
        resolved = resolve_effective_classification(DocumentClassificationRow(confirmed_doc_type="SITE_PLAN"))
        assert resolved.effective_doc_type == "SITE_PLAN"


class TestResolveRecord:
    """Tests for resolve_record on stored rows."""

    def test_spine_stamped_row(self):
        """A row stamped by the spine and gatekeeper resolves from its AI fields."""
        row = {
            "id": "doc-1",
            "ai_doc_type": "IRS_PERSONAL",
            "ai_tax_year": 2023,
            "gatekeeper_doc_type": "PERSONAL_TAX_RETURN",
            "gatekeeper_tax_year": 2023,
        }
        resolved = resolve_record(row)

        assert resolved.effective_doc_type == "PERSONAL_TAX_RETURN"
        assert resolved.effective_tax_year == 2023
        assert resolved.source == SOURCE_AI
        assert resolved.year_source == SOURCE_GATEKEEPER

    def test_to_dict(self):
        """Serializes every field."""
        resolved = resolve_record({"document_type": "LEASE", "doc_year": 2021})
        assert resolved.to_dict() == {
            "effective_doc_type": "LEASE",
            "effective_tax_year": 2021,
            "source": SOURCE_CANONICAL,
            "is_confirmed": False,
            "year_source": SOURCE_CANONICAL,
        }
