# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for hash embeddings and cosine similarity."""
import pytest

from promptagent.errors import DimensionMismatch
from promptagent.similarity import (
    DEFAULT_DIM, cosine, fnv1a32, hash_vector, text_similarity, tokenize,
)


class TestTokenize:
    def test_lowercase_and_short_tokens_dropped(self):
        assert tokenize("As a User, I GO to the shop!") == ["user", "the", "shop"]

    def test_keeps_hyphen_and_cyrillic(self):
        assert tokenize("Check-out Оплата") == ["check-out", "оплата"]


class TestHashVector:
    def test_fnv_known_value(self):
        # FNV-1a 32-bit of "a"
        assert fnv1a32("a") == 0xE40C292C

    def test_deterministic(self):
        assert hash_vector("pay with saved card") == hash_vector("pay with saved card")

    def test_case_insensitive(self):
        assert hash_vector("Saved CARD") == hash_vector("saved card")

    def test_short_tokens_give_zero_vector(self):
        vec = hash_vector("a an to of")
        assert len(vec) == DEFAULT_DIM
        assert all(v == 0.0 for v in vec)

    def test_empty_input(self):
        assert hash_vector("", dim=8) == [0.0] * 8

    def test_invalid_dim(self):
        with pytest.raises(ValueError):
            hash_vector("text", dim=0)


class TestCosine:
    def test_orthogonal(self):
        assert cosine([1.0, 0.0], [0.0, 1.0]) == 0.0

    def test_parallel(self):
        assert cosine([1.0, 2.0], [2.0, 4.0]) == pytest.approx(1.0)

    def test_opposite(self):
        assert cosine([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_zero_vector(self):
        assert cosine([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_dimension_mismatch(self):
        with pytest.raises(DimensionMismatch):
            cosine([1.0, 0.0], [1.0, 0.0, 0.0])

    def test_dimension_mismatch_is_value_error(self):
        with pytest.raises(ValueError):
            cosine([1.0], [])


class TestTextSimilarity:
    def test_self_similarity(self):
        text = "As a shopper I want to pay with a saved card"
        assert text_similarity(text, text) == pytest.approx(1.0)

    def test_symmetric(self):
        a = "shopper pays with saved card"
        b = "shopper receives email receipt"
        assert text_similarity(a, b) == pytest.approx(text_similarity(b, a))

    def test_bounded(self):
        sim = text_similarity("checkout basket payment", "delivery tracking status")
        assert -1.0 <= sim <= 1.0

    def test_empty_inputs(self):
        assert text_similarity("", "") == 0.0
        assert text_similarity("", "something here") == 0.0
