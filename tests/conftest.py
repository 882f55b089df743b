import pytest

from deepcite.services.embeddings_local import LocalEmbeddingService
from deepcite.services.indexing import IndexService
from deepcite.services.persistence import InMemoryJobStore
from deepcite.services.retrieval import RetrievalEngine


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def embedder():
    return LocalEmbeddingService(backend="hashed", dimension=128)


@pytest.fixture
def indexer(store, embedder):
    return IndexService(store, embedder, chunk_size=200, chunk_overlap=20)


@pytest.fixture
def retrieval(store, embedder):
    return RetrievalEngine(store, embedder, keyword_weight=0.5, semantic_weight=0.5, default_top_k=10)
