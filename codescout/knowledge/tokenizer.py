"""Token estimation for chunk sizing.

The chunkers never need exact tokenizer output, only a stable estimate that
errs on the high side so that chunks stay inside the embedding model's
sequence limit. Word pieces of up to four characters count as one token and
every punctuation symbol counts as one token, which tracks WordPiece/BPE
vocabularies closely enough for source code.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass

_WORD_PATTERN = re.compile(r"\w+|[^\w\s]")

# Maximum sequence length of known embedding models
MODEL_TOKEN_LIMITS: dict[str, int] = {
    "all-minilm-l6-v2": 256,
    "all-minilm-l12-v2": 256,
    "paraphrase-minilm-l6-v2": 128,
    "all-mpnet-base-v2": 384,
    "multi-qa-minilm-l6-cos-v1": 512,
    "bge-small-en-v1.5": 512,
    "bge-base-en-v1.5": 512,
    "e5-small-v2": 512,
    "gte-small": 512,
    "jina-embeddings-v2-base-code": 8192,
    "nomic-embed-text": 8192,
    "nomic-embed-text-v1.5": 8192,
}

DEFAULT_TOKEN_LIMIT = 256


@dataclass(frozen=True)
class ChunkingParams:
    """Token budgets derived from a model's sequence limit."""

    max_tokens: int
    target_tokens: int
    overlap_tokens: int


def estimate_tokens(text: str) -> int:
    """Estimate the number of model tokens in a piece of text."""
    if not text:
        return 0
    count = 0
    for piece in _WORD_PATTERN.findall(text):
        if piece[0].isalnum() or piece[0] == "_":
            count += math.ceil(len(piece) / 4)
        else:
            count += 1
    return count


def _normalize_model_name(model_name: str) -> str:
    # "sentence-transformers/all-MiniLM-L6-v2" -> "all-minilm-l6-v2"
    return model_name.rsplit("/", 1)[-1].lower()


def get_model_token_limit(model_name: str) -> int:
    """Return the maximum sequence length for an embedding model."""
    return MODEL_TOKEN_LIMITS.get(_normalize_model_name(model_name), DEFAULT_TOKEN_LIMIT)


def get_chunking_params(model_name: str) -> ChunkingParams:
    """Derive target and overlap token budgets for a model.

    The target leaves 15% headroom under the model limit for special tokens
    and estimation error; the overlap is 15% of the target.
    """
    limit = get_model_token_limit(model_name)
    target = math.floor(limit * 0.85)
    return ChunkingParams(
        max_tokens=limit,
        target_tokens=target,
        overlap_tokens=math.floor(target * 0.15),
    )
