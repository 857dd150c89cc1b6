"""Text-to-vector providers used for indexing and queries.

Two local backends are supported:
- sentence-transformers models loaded in-process (default)
- models served by a running Ollama daemon

encode() is synchronous so a provider can live inside an embedding worker
process; embed() and embed_batch() push that work onto a thread so the event
loop keeps serving searches while a batch is encoded.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

# Output sizes of common embedding models, keyed by lower-cased short name
MODEL_DIMENSIONS: dict[str, int] = {
    "all-minilm-l6-v2": 384,
    "all-minilm-l12-v2": 384,
    "paraphrase-minilm-l6-v2": 384,
    "multi-qa-minilm-l6-cos-v1": 384,
    "all-mpnet-base-v2": 768,
    "bge-small-en-v1.5": 384,
    "bge-base-en-v1.5": 768,
    "nomic-embed-text": 768,
    "nomic-embed-text-v1.5": 768,
    "mxbai-embed-large": 1024,
}


def known_dimension(model_name: str) -> int | None:
    """Vector size of a well-known model, without loading it."""
    short = model_name.rsplit("/", 1)[-1].split(":", 1)[0].lower()
    return MODEL_DIMENSIONS.get(short)


class EmbeddingProviderType(Enum):
    """Supported embedding backends."""

    SENTENCE_TRANSFORMERS = "sentence_transformers"
    OLLAMA = "ollama"


@dataclass(frozen=True)
class EmbeddingConfig:
    """Settings needed to build a provider.

    Frozen and picklable: worker processes receive a copy and construct
    their own provider from it.

    Attributes:
        provider_type: Backend to use
        model_name: Model identifier understood by the backend
        dimension: Vector size expected by the store
        batch_size: Texts per forward pass (sentence-transformers only)
        normalize: Return unit-length vectors
        device: 'cpu', 'cuda', 'mps', or None to let the backend pick
        ollama_host: Base URL of the Ollama daemon
    """

    provider_type: EmbeddingProviderType = EmbeddingProviderType.SENTENCE_TRANSFORMERS
    model_name: str = "all-MiniLM-L6-v2"
    dimension: int = 384
    batch_size: int = 32
    normalize: bool = True
    device: str | None = None
    ollama_host: str = "http://localhost:11434"


class EmbeddingProvider(ABC):
    """Turns chunk and query text into fixed-length vectors.

    Indexing and search must share one provider configuration; vectors from
    different models are not comparable.
    """

    @abstractmethod
    def encode(self, texts: list[str]) -> list[list[float]]:
        """Encode texts on the calling thread, preserving input order."""

    @abstractmethod
    def get_dimension(self) -> int: ...

    @abstractmethod
    def get_model_name(self) -> str: ...

    @property
    def device(self) -> str:
        return "cpu"

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return await asyncio.to_thread(self.encode, texts)

    async def embed(self, text: str) -> list[float]:
        (vector,) = await self.embed_batch([text])
        return vector

    async def is_available(self) -> bool:
        """Encode a short sample and check the vector size."""
        try:
            vector = await self.embed("def ping(): pass")
        except Exception as e:
            logger.warning("Embedding provider %s unavailable: %s", self.get_model_name(), e)
            return False
        return len(vector) == self.get_dimension()


class SentenceTransformersEmbeddings(EmbeddingProvider):
    """In-process sentence-transformers model, loaded on first use.

    Requires: pip install sentence-transformers
    """

    def __init__(
        self,
        model_name: str = "all-MiniLM-L6-v2",
        device: str | None = None,
        normalize: bool = True,
        batch_size: int = 32,
        dimension: int | None = None,
    ):
        self.model_name = model_name
        self.normalize = normalize
        self.batch_size = batch_size
        self._device = device
        self._model = None
        self._dimension = known_dimension(model_name) or dimension

    def _load(self):
        if self._model is not None:
            return self._model
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise ImportError(
                "sentence-transformers is not installed. "
                "Run: pip install sentence-transformers"
            ) from e

        logger.info("Loading %s (device=%s)", self.model_name, self._device or "auto")
        self._model = SentenceTransformer(self.model_name, device=self._device)
        self._dimension = self._model.get_sentence_embedding_dimension()
        return self._model

    def encode(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        vectors = self._load().encode(
            texts,
            batch_size=self.batch_size,
            normalize_embeddings=self.normalize,
            convert_to_numpy=True,
            show_progress_bar=False,
        )
        return vectors.tolist()

    def get_dimension(self) -> int:
        # Unknown models report the configured size (or 384) until loaded
        return self._dimension or 384

    def get_model_name(self) -> str:
        return self.model_name

    @property
    def device(self) -> str:
        if self._model is None:
            return self._device or "auto"
        return str(self._model.device)


class OllamaEmbeddings(EmbeddingProvider):
    """Vectors from an Ollama daemon (`ollama pull nomic-embed-text` first).

    Requires: pip install ollama
    """

    def __init__(
        self,
        model_name: str = "nomic-embed-text",
        host: str = "http://localhost:11434",
        dimension: int | None = None,
    ):
        self.model_name = model_name
        self.host = host
        self._dimension = dimension or known_dimension(model_name) or 768
        self._client = None

    def _connect(self):
        if self._client is None:
            try:
                import ollama
            except ImportError as e:
                raise ImportError("ollama is not installed. Run: pip install ollama") from e
            self._client = ollama.Client(host=self.host)
        return self._client

    def encode(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        response = self._connect().embed(model=self.model_name, input=texts)
        vectors = [list(v) for v in response["embeddings"]]
        if len(vectors) != len(texts):
            raise RuntimeError(
                f"Ollama returned {len(vectors)} embeddings for {len(texts)} inputs"
            )
        return vectors

    def get_dimension(self) -> int:
        return self._dimension

    def get_model_name(self) -> str:
        return self.model_name

    @property
    def device(self) -> str:
        return self.host


def create_embedding_provider(config: EmbeddingConfig | None = None) -> EmbeddingProvider:
    """Build the provider described by config (defaults to all-MiniLM-L6-v2)."""
    config = config or EmbeddingConfig()
    if config.provider_type is EmbeddingProviderType.OLLAMA:
        return OllamaEmbeddings(
            model_name=config.model_name,
            host=config.ollama_host,
            dimension=config.dimension,
        )
    return SentenceTransformersEmbeddings(
        model_name=config.model_name,
        device=config.device,
        normalize=config.normalize,
        batch_size=config.batch_size,
        dimension=config.dimension,
    )
