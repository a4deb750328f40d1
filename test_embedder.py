"""Tests for embeddings and cosine similarity.

Run with: pytest test_embedder.py -v
"""

from unittest.mock import MagicMock, patch

import numpy as np
import pytest
import requests

from embedder import HashingEmbedder, OllamaEmbedder, cosine_similarity, hash_embedding
from utils import string_hash


class TestStringHash:
    """Tests for the token hash."""

    def test_known_values(self):
        assert string_hash("") == 0
        assert string_hash("a") == 97
        assert string_hash("ab") == 3105

    def test_never_negative(self):
        for token in ["overflowing-token-" * 10, "zzzzzzzzzzzzzzzz", "ünïcödé", "repository"]:
            assert string_hash(token) >= 0
            assert string_hash(token) < 2**32


class TestHashingEmbedder:
    """Tests for the hashing-trick embedder."""

    def test_dimension(self):
        assert len(HashingEmbedder().embed("hello world")) == 384
        assert len(HashingEmbedder(64).embed("hello world")) == 64

    def test_deterministic(self):
        """Repeated calls give identical vectors, also across instances."""
        text = "Use the repository pattern for data access"
        assert HashingEmbedder().embed(text) == HashingEmbedder().embed(text)
        assert HashingEmbedder().embed(text) == hash_embedding(text, 384)

    @pytest.mark.parametrize("text", ["a", "hello world", "one two three two one", "Mixed CASE tokens"])
    def test_unit_norm(self, text):
        norm = np.linalg.norm(HashingEmbedder().embed(text))
        assert abs(norm - 1.0) < 1e-9

    @pytest.mark.parametrize("text", ["", "   ", "\n\t  "])
    def test_empty_text_is_zero_vector(self, text):
        vector = HashingEmbedder().embed(text)
        assert len(vector) == 384
        assert all(v == 0.0 for v in vector)

    def test_case_folded(self):
        assert HashingEmbedder().embed("Repository PATTERN") == HashingEmbedder().embed("repository pattern")

    def test_token_order_irrelevant(self):
        """Bag of words: word order does not change the vector."""
        assert HashingEmbedder().embed("data access layer") == HashingEmbedder().embed("layer data access")

    def test_counts_accumulate(self):
        """A single repeated token still normalizes to one hot bucket."""
        vector = HashingEmbedder(16).embed("echo echo echo")
        assert max(vector) == pytest.approx(1.0)
        assert vector.index(max(vector)) == string_hash("echo") % 16

    def test_invalid_dimension(self):
        with pytest.raises(ValueError):
            HashingEmbedder(0)


class TestCosineSimilarity:
    """Tests for the similarity engine."""

    def test_self_similarity(self):
        vector = HashingEmbedder().embed("python async patterns")
        assert cosine_similarity(vector, vector) == pytest.approx(1.0)

    def test_opposite_vectors(self):
        assert cosine_similarity([1.0, 2.0], [-1.0, -2.0]) == pytest.approx(-1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 3.0]) == 0.0

    def test_bounds_random_pairs(self):
        rng = np.random.default_rng(7)
        for _ in range(50):
            a = rng.normal(size=32).tolist()
            b = rng.normal(size=32).tolist()
            assert -1.0 <= cosine_similarity(a, b) <= 1.0

    def test_zero_vector(self):
        zero = [0.0] * 8
        assert cosine_similarity(zero, [1.0] * 8) == 0.0
        assert cosine_similarity([1.0] * 8, zero) == 0.0
        assert cosine_similarity(zero, zero) == 0.0

    def test_dimension_mismatch_returns_zero(self, capsys):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0
        assert "Dimension mismatch" in capsys.readouterr().err

    def test_related_texts_score_higher(self):
        embedder = HashingEmbedder()
        query = embedder.embed("python async programming patterns")
        close = embedder.embed("async python patterns for programming servers")
        far = embedder.embed("recipe for chocolate cake baking")
        assert cosine_similarity(query, close) > cosine_similarity(query, far)


class TestOllamaEmbedder:
    """Tests for the model-backed embedder (HTTP mocked)."""

    def _response(self, embedding):
        response = MagicMock()
        response.json.return_value = {"embedding": embedding}
        response.raise_for_status.return_value = None
        return response

    def test_pads_and_normalizes(self):
        embedder = OllamaEmbedder(dimension=4)
        with patch("requests.post", return_value=self._response([3.0, 4.0])) as post:
            vector = embedder.embed("hello")
        assert vector == pytest.approx((0.6, 0.8, 0.0, 0.0))
        assert post.call_args.kwargs["json"] == {"model": "nomic-embed-text", "prompt": "hello"}

    def test_truncates(self):
        embedder = OllamaEmbedder(dimension=2)
        with patch("requests.post", return_value=self._response([0.0, 2.0, 9.0])):
            assert embedder.embed("hello") == pytest.approx((0.0, 1.0))

    def test_falls_back_to_hash_on_error(self, capsys):
        embedder = OllamaEmbedder(dimension=32)
        with patch("requests.post", side_effect=requests.ConnectionError("refused")):
            vector = embedder.embed("hello world")
        assert vector == HashingEmbedder(32).embed("hello world")
        assert "hash fallback" in capsys.readouterr().err

    def test_empty_text_skips_request(self):
        embedder = OllamaEmbedder(dimension=8)
        with patch("requests.post") as post:
            assert embedder.embed("  ") == (0.0,) * 8
        post.assert_not_called()
