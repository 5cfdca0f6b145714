"""Embedding models for semantic chunks.

Supported models (configure via ``[embeddings] model = ...``):

========== ====================================== ========= ====== ======================
Key        Backend                                Download  Dim    Notes
========== ====================================== ========= ====== ======================
jina-code  jinaai/jina-embeddings-v2-base-code    ~550 MB    768   Good quality, code-aware
bge-base   BAAI/bge-base-en-v1.5                  ~440 MB    768   Solid general-purpose
minilm     sentence-transformers/all-MiniLM-L6-v2  ~80 MB    384   Tiny and fast
remote     OpenAI-compatible ``/v1/embeddings``      0 B    varies Needs endpoint + key
hash       (none)                                     0 B    256   No ML, keyword-level only
========== ====================================== ========= ====== ======================

Every embedder exposes ``model_key`` and ``embed_text(text) -> vector``.
The indexer and context builder never call an embedder directly; they go
through :class:`EmbeddingService`, which enforces a timeout and maps any
failure to :class:`~codegraph_ckg.errors.EmbedderUnavailable`.
"""

from __future__ import annotations

import json
import logging
import math
import urllib.error
import urllib.request
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from hashlib import blake2b
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import BASE_DIR, DEFAULT_EMBEDDING_DIM, EmbeddingSettings
from .errors import EmbedderUnavailable
from .tokens import TOKEN_RE, words

logger = logging.getLogger(__name__)

MODEL_CACHE_DIR: Path = BASE_DIR / "models"


# ===================================================================
# Model Registry
# ===================================================================

EMBEDDING_MODELS: Dict[str, Dict[str, Any]] = {
    "jina-code": {
        "hf_id": "jinaai/jina-embeddings-v2-base-code",
        "dim": 768,
        "max_tokens": 8192,
        "pooling": "mean",
        "trust_remote_code": True,
    },
    "bge-base": {
        "hf_id": "BAAI/bge-base-en-v1.5",
        "dim": 768,
        "max_tokens": 512,
        "pooling": "cls",
        "trust_remote_code": False,
    },
    "minilm": {
        "hf_id": "sentence-transformers/all-MiniLM-L6-v2",
        "dim": 384,
        "max_tokens": 256,
        "pooling": "mean",
        "trust_remote_code": False,
    },
    "remote": {"hf_id": None, "dim": None},
    "hash": {"hf_id": None, "dim": DEFAULT_EMBEDDING_DIM},
}

DEFAULT_MODEL = "hash"


# ===================================================================
# HashEmbeddingModel  (offline default)
# ===================================================================

class HashEmbeddingModel:
    """Deterministic token-hashing embedder with no ML dependencies.

    Identifiers are split on camelCase / snake_case so ``getUserName`` and
    ``user name`` share dimensions.  Similarity is keyword-level only.
    """

    def __init__(self, dim: int = DEFAULT_EMBEDDING_DIM) -> None:
        self.dim = dim
        self.model_key = "hash" if dim == DEFAULT_EMBEDDING_DIM else f"hash{dim}"

    def embed_text(self, text: str) -> List[float]:
        vec = [0.0] * self.dim
        tokens = words(text) or TOKEN_RE.findall(text)
        if not tokens:
            # Cosine distance is undefined for the zero vector.
            vec[0] = 1.0
            return vec
        for token in tokens:
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "big") % self.dim
            sign = 1.0 if (digest[4] & 1) == 0 else -1.0
            vec[idx] += sign
        return _l2_normalize(vec)

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        return [self.embed_text(text) for text in texts]


# ===================================================================
# TransformerEmbedder  (optional ``embeddings`` extra)
# ===================================================================

class TransformerEmbedder:
    """HuggingFace encoder with configurable pooling.

    Weights are downloaded on first use into ``$CKG_HOME/models``.  torch and
    transformers are imported lazily so the base install stays light.
    """

    def __init__(self, model_key: str, cache_dir: Optional[Path] = None, device: str = "cpu") -> None:
        spec = EMBEDDING_MODELS.get(model_key)
        if spec is None or spec["hf_id"] is None:
            raise ValueError(f"'{model_key}' is not a transformer model")
        self.model_key = model_key
        self.hf_id: str = spec["hf_id"]
        self.dim: int = spec["dim"]
        self.max_length: int = spec["max_tokens"]
        self.pooling: str = spec["pooling"]
        self.trust_remote_code: bool = spec["trust_remote_code"]
        self.cache_dir = cache_dir or MODEL_CACHE_DIR
        self.device = device
        self._model: Any = None
        self._tokenizer: Any = None

    def _load_model(self) -> None:
        if self._model is not None:
            return
        try:
            from transformers import AutoModel, AutoTokenizer
        except ImportError as exc:
            raise EmbedderUnavailable(
                "torch and transformers are required for neural embeddings. "
                "Install with: pip install codegraph-ckg[embeddings]"
            ) from exc

        logger.info("Loading embedding model '%s' (%s)", self.model_key, self.hf_id)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self._tokenizer = AutoTokenizer.from_pretrained(
            self.hf_id, cache_dir=str(self.cache_dir), trust_remote_code=self.trust_remote_code,
        )
        self._model = AutoModel.from_pretrained(
            self.hf_id, cache_dir=str(self.cache_dir), trust_remote_code=self.trust_remote_code,
        )
        self._model.eval()
        self._model.to(self.device)

    def _pool(self, hidden: Any, mask: Any) -> Any:
        if self.pooling == "cls":
            return hidden[:, 0]
        expanded = mask.unsqueeze(-1).expand(hidden.size()).float()
        return (hidden * expanded).sum(dim=1) / expanded.sum(dim=1).clamp(min=1e-9)

    def _encode(self, texts: List[str]) -> List[List[float]]:
        import torch
        import torch.nn.functional as F

        self._load_model()
        batch = self._tokenizer(
            texts, max_length=self.max_length, padding=True, truncation=True, return_tensors="pt",
        )
        batch = {k: v.to(self.device) for k, v in batch.items()}
        with torch.no_grad():
            outputs = self._model(**batch)
        pooled = self._pool(outputs.last_hidden_state, batch["attention_mask"])
        return F.normalize(pooled, p=2, dim=1).cpu().tolist()

    def embed_text(self, text: str) -> List[float]:
        return self._encode([text])[0]

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        return self._encode(texts) if texts else []


# ===================================================================
# RemoteEmbedder  (OpenAI-compatible HTTP API)
# ===================================================================

class RemoteEmbedder:
    """Calls an OpenAI-compatible ``/v1/embeddings`` endpoint."""

    def __init__(self, endpoint: str, model: str, api_key: str = "", timeout: float = 10.0) -> None:
        if not endpoint:
            raise ValueError("Remote embeddings need an endpoint")
        self.endpoint = endpoint.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self.model_key = f"remote-{model}"

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        payload = json.dumps({"model": self.model, "input": texts}).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        req = urllib.request.Request(
            f"{self.endpoint}/v1/embeddings", data=payload, headers=headers, method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                data = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raise EmbedderUnavailable(f"Embedding API returned HTTP {exc.code}") from exc
        except (urllib.error.URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise EmbedderUnavailable(f"Embedding API unreachable: {exc}") from exc
        try:
            rows = sorted(data["data"], key=lambda row: row.get("index", 0))
            return [list(map(float, row["embedding"])) for row in rows]
        except (KeyError, TypeError, ValueError) as exc:
            raise EmbedderUnavailable(f"Malformed embedding response: {exc}") from exc

    def embed_text(self, text: str) -> List[float]:
        return self.embed_documents([text])[0]


# ===================================================================
# Factory
# ===================================================================

def get_embedder(settings: Optional[EmbeddingSettings] = None, cache_dir: Optional[Path] = None):
    """Return the embedder configured in *settings* (default: hash)."""
    settings = settings or EmbeddingSettings()
    key = settings.model or DEFAULT_MODEL
    if key == "hash":
        return HashEmbeddingModel()
    if key == "remote":
        return RemoteEmbedder(
            settings.endpoint, settings.remote_model, settings.api_key, settings.timeout,
        )
    if key not in EMBEDDING_MODELS:
        raise ValueError(
            f"Unknown embedding model: '{key}'. Available: {', '.join(EMBEDDING_MODELS)}"
        )
    return TransformerEmbedder(key, cache_dir=cache_dir)


# ===================================================================
# EmbeddingService  (timeout + error mapping)
# ===================================================================

class EmbeddingService:
    """Wraps an embedder so every call has a deadline and a typed failure."""

    def __init__(self, embedder: Any, timeout: float = 10.0, batch_size: int = 16) -> None:
        self.embedder = embedder
        self.timeout = timeout
        self.batch_size = max(1, batch_size)
        self._pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="ckg-embed")

    @property
    def model_key(self) -> str:
        return getattr(self.embedder, "model_key", DEFAULT_MODEL)

    def _call(self, fn: Any, arg: Any, timeout: Optional[float]) -> Any:
        limit = self.timeout if timeout is None else timeout
        future = self._pool.submit(fn, arg)
        try:
            return future.result(timeout=limit)
        except FutureTimeout as exc:
            future.cancel()
            raise EmbedderUnavailable(f"Embedder timed out after {limit:.1f}s") from exc
        except EmbedderUnavailable:
            raise
        except Exception as exc:
            raise EmbedderUnavailable(f"Embedder failed: {exc}") from exc

    def embed(self, text: str, timeout: Optional[float] = None) -> Tuple[List[float], str]:
        """Embed one text.  Returns ``(vector, model_key)``."""
        vector = self._call(self.embedder.embed_text, text, timeout)
        _check_vector(vector)
        return list(vector), self.model_key

    def embed_many(self, texts: Sequence[str], timeout: Optional[float] = None) -> List[List[float]]:
        vectors: List[List[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = list(texts[start:start + self.batch_size])
            result = self._call(self.embedder.embed_documents, batch, timeout)
            if len(result) != len(batch):
                raise EmbedderUnavailable(
                    f"Embedder returned {len(result)} vectors for {len(batch)} texts"
                )
            for vector in result:
                _check_vector(vector)
            vectors.extend(list(v) for v in result)
        return vectors

    def close(self) -> None:
        self._pool.shutdown(wait=False)


# ===================================================================
# Utility
# ===================================================================

def _check_vector(vector: Sequence[float]) -> None:
    if not vector or any(math.isnan(v) or math.isinf(v) for v in vector):
        raise EmbedderUnavailable("Embedder returned an empty or non-finite vector")


def cosine_similarity(vec_a: List[float], vec_b: List[float]) -> float:
    """Cosine similarity in ``[-1, 1]``; mismatched or zero vectors give 0.0."""
    if not vec_a or not vec_b or len(vec_a) != len(vec_b):
        return 0.0
    dot = sum(a * b for a, b in zip(vec_a, vec_b))
    norm_a = math.sqrt(sum(a * a for a in vec_a))
    norm_b = math.sqrt(sum(b * b for b in vec_b))
    if norm_a < 1e-12 or norm_b < 1e-12:
        return 0.0
    return dot / (norm_a * norm_b)


def _l2_normalize(vec: List[float]) -> List[float]:
    norm = math.sqrt(sum(v * v for v in vec))
    if norm < 1e-12:
        return vec
    return [v / norm for v in vec]
