"""
Tests for the shared text helpers (tax year and form number extraction).
"""

from docengine.text_utils import extract_form_numbers, extract_tax_year


# ============================================================================
# Tax Year Tests
# ============================================================================

class TestExtractTaxYear:
    """Tests for extract_tax_year."""

    def test_explicit_tax_year_phrase(self):
        """An explicit 'Tax Year' phrase wins."""
        assert extract_tax_year("Form 1040\nTax Year 2023\nPrinted 2025") == 2023

    def test_for_the_year_phrase(self):
        """'For the year 2022' is an explicit phrase."""
        assert extract_tax_year("Income statement for the year 2022") == 2022

    def test_calendar_year_end(self):
        """A December 31 year-end date is used when no explicit phrase exists."""
        assert extract_tax_year("Balance as of December 31, 2021 (prepared 2024)") == 2021

    def test_numeric_year_end(self):
        """12/31 YYYY is recognized."""
        assert extract_tax_year("Period ending 12/31 2020") == 2020

    def test_most_recent_bare_year(self):
        """Without phrases, the most recent year near the top is used."""
        assert extract_tax_year("Comparative 2019 2021 2020") == 2021

    def test_bare_year_only_in_first_500_chars(self):
        """Bare years deep in the document are ignored."""
        text = "x" * 600 + " 2022"
        assert extract_tax_year(text) is None

    def test_no_year(self):
        """No year gives None."""
        assert extract_tax_year("no year here") is None

    def test_empty_text(self):
        """Empty or None text gives None."""
        assert extract_tax_year("") is None
        assert extract_tax_year(None) is None  # type: ignore[arg-type]


# ============================================================================
# Form Number Tests
# ============================================================================

class TestExtractFormNumbers:
    """Tests for extract_form_numbers."""

    def test_personal_return_with_schedules(self):
        """1040 with Schedules C and E."""
        text = "Form 1040 U.S. Individual Income Tax Return\nSchedule C\nSchedule E"
        assert extract_form_numbers(text) == ["1040", "Schedule C", "Schedule E"]

    def test_1120s_is_not_1120(self):
        """Form 1120S does not also report 1120."""
        assert extract_form_numbers("Form 1120S U.S. Income Tax Return for an S Corporation") == ["1120S"]

    def test_deduplicates(self):
        """Repeated forms are reported once."""
        text = "Schedule K-1 (Form 1065)\nForm 1065\nSchedule K1"
        assert extract_form_numbers(text) == ["1065", "K-1"]

    def test_w2_and_1099(self):
        """W-2 and 1099 variants."""
        assert extract_form_numbers("Form W-2 Wage and Tax Statement\nForm 1099-INT") == ["W-2", "1099"]

    def test_only_first_3000_chars(self):
        """Forms beyond the first 3000 characters are ignored."""
        text = "x" * 3100 + "Form 1040"
        assert extract_form_numbers(text) == []
