"""Pytest configuration and fixtures for the code knowledge graph tests."""

import shutil
import tempfile
from pathlib import Path
from typing import Callable, Generator

import pytest

from codegraph_ckg.chunk_store import SemanticChunkStore
from codegraph_ckg.config import Settings
from codegraph_ckg.embeddings import HashEmbeddingModel
from codegraph_ckg.engine import CodeKnowledgeGraph
from codegraph_ckg.extraction import ExtractionPipeline
from codegraph_ckg.storage import Database, GraphStore
from codegraph_ckg.vector_store import VectorIndex


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def sample_project_path() -> Path:
    """Get path to the sample project (Python + JS/TS)."""
    return Path(__file__).parent / "fixtures" / "sample_project"


@pytest.fixture
def project_dir(temp_dir: Path, sample_project_path: Path) -> Path:
    """A writable copy of the sample project."""
    target = temp_dir / "sample"
    shutil.copytree(sample_project_path, target)
    return target


@pytest.fixture
def write_source() -> Callable[[Path, str, str], Path]:
    """Write a source file below a project root, creating directories."""

    def _write(root: Path, rel_path: str, text: str) -> Path:
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def settings() -> Settings:
    """Settings tuned for fast tests."""
    s = Settings()
    s.indexer.pool_size = 2
    s.indexer.batch_interval = 0.1
    s.indexer.retry_base_delay = 0.01
    s.indexer.enqueue_timeout = 0.05
    s.store.retry_base_delay = 0.01
    s.embeddings.timeout = 5.0
    return s


@pytest.fixture
def database(temp_dir: Path) -> Generator[Database, None, None]:
    db = Database(temp_dir / "graph.db")
    yield db
    db.close()


@pytest.fixture
def graph(database: Database) -> GraphStore:
    return GraphStore(database)


@pytest.fixture
def vector_index(temp_dir: Path) -> VectorIndex:
    return VectorIndex(temp_dir / "lancedb")


@pytest.fixture
def chunk_store(database: Database, vector_index: VectorIndex) -> SemanticChunkStore:
    return SemanticChunkStore(database, vector_index)


@pytest.fixture
def pipeline() -> ExtractionPipeline:
    return ExtractionPipeline()


@pytest.fixture
def engine(temp_dir: Path, settings: Settings) -> Generator[CodeKnowledgeGraph, None, None]:
    """Engine on a temporary data directory with the offline hash embedder."""
    ckg = CodeKnowledgeGraph(settings=settings, data_dir=temp_dir / "data", embedder=HashEmbeddingModel())
    yield ckg
    ckg.close()


@pytest.fixture
def indexed_engine(engine: CodeKnowledgeGraph, project_dir: Path) -> CodeKnowledgeGraph:
    """Engine with the sample project indexed as ``sample``."""
    engine.build_index("sample", project_dir)
    return engine
