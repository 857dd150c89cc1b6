"""Shared fixtures: a deterministic embedding provider and a sample workspace."""

from __future__ import annotations

import hashlib
import math
import re
from pathlib import Path

import pytest

from codescout.config import CodeScoutConfig
from codescout.knowledge.embeddings import EmbeddingProvider
from codescout.knowledge.store import VectorStore

FAKE_DIMENSION = 256

_WORDS = re.compile(r"\w+")


class FakeEmbeddings(EmbeddingProvider):
    """Bag-of-words vectors: each word is hashed into one of `dimension` buckets.

    Texts sharing words get positive cosine similarity; vectors are
    normalized. Texts containing `fail_on` raise, to simulate a model error.
    """

    def __init__(
        self,
        dimension: int = FAKE_DIMENSION,
        fail_on: str | None = None,
        model_name: str = "fake-embed",
    ):
        self.dimension = dimension
        self.fail_on = fail_on
        self.model_name = model_name
        self.encoded: list[str] = []

    def vector(self, text: str) -> list[float]:
        values = [0.0] * self.dimension
        for word in _WORDS.findall(text.lower()):
            bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % self.dimension
            values[bucket] += 1.0
        norm = math.sqrt(sum(v * v for v in values))
        return [v / norm for v in values] if norm else values

    def encode(self, texts: list[str]) -> list[list[float]]:
        vectors = []
        for text in texts:
            if self.fail_on and self.fail_on in text:
                raise RuntimeError(f"cannot embed text containing {self.fail_on}")
            self.encoded.append(text)
            vectors.append(self.vector(text))
        return vectors

    def get_dimension(self) -> int:
        return self.dimension

    def get_model_name(self) -> str:
        return self.model_name


APP_PY = '''"""Order processing helpers."""

import json


def load_orders(path):
    """Read orders from a JSON file."""
    with open(path) as handle:
        return json.load(handle)


def order_total(order):
    """Sum the price of every line item in an order."""
    return sum(item["price"] * item["quantity"] for item in order["items"])


class OrderRepository:
    """Keeps orders in memory, indexed by id."""

    def __init__(self):
        self.orders = {}

    def add(self, order):
        self.orders[order["id"]] = order

    def get(self, order_id):
        return self.orders.get(order_id)
'''

UTIL_JS = """// Formatting utilities for the storefront
export function formatPrice(amount, currency) {
  const formatter = new Intl.NumberFormat("en-US", { style: "currency", currency });
  return formatter.format(amount);
}

export function slugify(title) {
  return title.toLowerCase().replace(/[^a-z0-9]+/g, "-");
}
"""


@pytest.fixture
def make_embeddings():
    """Factory for FakeEmbeddings instances."""
    return FakeEmbeddings


@pytest.fixture
def fake_embeddings() -> FakeEmbeddings:
    return FakeEmbeddings()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """A small project with indexable, excluded, and non-code files."""
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "node_modules" / "lib").mkdir(parents=True)

    (root / "src" / "app.py").write_text(APP_PY)
    (root / "src" / "util.js").write_text(UTIL_JS)
    (root / "node_modules" / "lib" / "index.js").write_text(
        "module.exports = function vendored() { return 'ignored by the indexer'; };\n"
    )
    (root / "notes.txt").write_text("plain text notes are not indexed by default\n")
    return root


@pytest.fixture
def config(workspace: Path) -> CodeScoutConfig:
    """Configuration sized for FakeEmbeddings, without throttle delays."""
    cfg = CodeScoutConfig(workspace=workspace)
    cfg.embedding.dimension = FAKE_DIMENSION
    cfg.performance.batch_delay_ms = 0
    return cfg


@pytest.fixture
def store(config: CodeScoutConfig):
    vector_store = VectorStore(config.cache_directory, dimension=FAKE_DIMENSION)
    vector_store.load()
    yield vector_store
    vector_store.close()
