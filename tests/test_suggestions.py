"""
Test Suggestion Disambiguation helpers

Run with: python3 tests/test_suggestions.py
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from aers.contracts import AdverseEvent, ReportRecord
from aers.core.suggestions import (
    MAX_SUGGESTIONS,
    SuggestionRound,
    build_confirmation,
    normalize_suggestions,
    suggestions_allowed,
)


def test_normalize_suggestions():
    assert normalize_suggestions([' Rash ', 'Rash', '', 'Skin reaction']) == ('Rash', 'Skin reaction')
    assert normalize_suggestions(None) == ()
    assert normalize_suggestions([]) == ()
    assert normalize_suggestions(['a', 3, 'b']) == ('a', 'b')

    many = [f"Term {i}" for i in range(10)]
    assert len(normalize_suggestions(many)) == MAX_SUGGESTIONS
    assert normalize_suggestions(many, limit=2) == ('Term 0', 'Term 1')

    print("✓ Normalize test passed")


def test_build_confirmation():
    text = build_confirmation('Migraine')

    assert text == 'I confirm that "Migraine" best describes my symptom.'

    print("✓ Confirmation test passed")


def test_round_resolve():
    round_ = SuggestionRound(candidates=('Headache', 'Migraine'), turn_index=3)

    assert round_.resolve('Migraine') == 'Migraine'
    with pytest.raises(ValueError, match="not one of the offered terms"):
        round_.resolve('Cluster headache')

    print("✓ Round resolve test passed")


def test_suggestions_allowed():
    empty = ReportRecord()
    described = ReportRecord(adverse_event=AdverseEvent(description_narrative='Migraine'))

    assert suggestions_allowed(empty, is_confirmation=False)
    assert not suggestions_allowed(empty, is_confirmation=True)
    assert not suggestions_allowed(described, is_confirmation=False)

    print("✓ Suggestions allowed test passed")


if __name__ == "__main__":
    test_normalize_suggestions()
    test_build_confirmation()
    test_round_resolve()
    test_suggestions_allowed()
    print("\nAll suggestion tests passed ✓")
