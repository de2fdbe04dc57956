"""Tests for the question catalog and the no-repeat random provider."""
import sys
import os
import json
import random

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from question_bank import Question, QuestionProvider, default_catalog, load_questions, parse_catalog


def make_catalog(categories):
    """One question per entry in `categories`."""
    return [Question(i + 1, cat, f"Q{i + 1}?", f"A{i + 1}") for i, cat in enumerate(categories)]


class TestProvider:
    def test_no_repeats_within_cycle(self):
        catalog = default_catalog()
        provider = QuestionProvider(catalog, random.Random(7))
        ids = [provider.next().id for _ in range(len(catalog))]
        assert len(set(ids)) == len(catalog)

    def test_cycle_restarts_after_exhaustion(self):
        catalog = make_catalog(["A", "B", "C"])
        provider = QuestionProvider(catalog, random.Random(1))
        for _ in range(3):
            provider.next()
        assert provider.used == {1, 2, 3}
        provider.next()
        assert len(provider.used) == 1

    def test_avoids_last_category_when_possible(self):
        catalog = make_catalog(["Geo", "Geo", "Geo", "Sci", "Sci", "Sci"])
        for seed in range(20):
            provider = QuestionProvider(catalog, random.Random(seed))
            previous = provider.next()
            for _ in range(5):
                current = provider.next()
                remaining_other = [q for q in catalog
                                   if q.id not in provider.used and q.category != previous.category]
                if current.category == previous.category:
                    # Only allowed when nothing else was left
                    assert not remaining_other
                previous = current

    def test_single_category_still_progresses(self):
        catalog = make_catalog(["Only", "Only"])
        provider = QuestionProvider(catalog, random.Random(3))
        first = provider.next()
        second = provider.next()
        assert first.id != second.id

    def test_tracks_last_category(self):
        provider = QuestionProvider(make_catalog(["Geo"]), random.Random(0))
        q = provider.next()
        assert provider.last_category == q.category == "Geo"

    def test_reset(self):
        provider = QuestionProvider(make_catalog(["A", "B"]), random.Random(0))
        provider.next()
        provider.reset()
        assert provider.used == set()
        assert provider.last_category is None

    def test_empty_catalog_rejected(self):
        with pytest.raises(ValueError):
            QuestionProvider([])

    def test_public_view_hides_answer(self):
        q = Question(1, "Geo", "Capital of Italy?", "Rome")
        assert "answer" not in q.public()
        assert q.to_dict()["answer"] == "Rome"


class TestCatalogLoading:
    def test_default_catalog_ids_unique(self):
        catalog = default_catalog()
        assert len({q.id for q in catalog}) == len(catalog)

    def test_parse_skips_invalid_items(self):
        raw = [
            {"category": "Geo", "question": "Capital of Peru?", "answer": "Lima"},
            {"category": "Geo", "question": "", "answer": "x"},
            "not an object",
            {"category": "Sci", "question": "<b>H2O</b> is?", "answer": "Water"},
        ]
        catalog = parse_catalog(raw)
        assert [q.id for q in catalog] == [1, 2]
        assert catalog[1].text == "H2O is?"

    def test_parse_rejects_non_list(self):
        with pytest.raises(ValueError):
            parse_catalog({"questions": []})

    def test_parse_rejects_all_invalid(self):
        with pytest.raises(ValueError):
            parse_catalog([{"category": "Geo"}])

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "questions.json"
        path.write_text(json.dumps([{"category": "Art", "question": "Who painted Guernica?", "answer": "Picasso"}]))
        catalog = load_questions(str(path))
        assert len(catalog) == 1
        assert catalog[0].answer == "Picasso"

    def test_bad_file_falls_back_to_default(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")
        assert load_questions(str(path)) == default_catalog()

    def test_missing_file_falls_back_to_default(self, tmp_path):
        assert load_questions(str(tmp_path / "missing.json")) == default_catalog()
