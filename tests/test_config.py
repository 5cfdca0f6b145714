"""Tests for settings loading."""

from pathlib import Path

from codegraph_ckg.config import Settings, load_settings, save_settings, settings_from_dict


def test_defaults():
    """Test the documented defaults."""
    s = Settings()
    assert s.context.max_tokens == 4000
    assert s.context.min_score == 0.7
    assert s.indexer.batch_size == 100
    assert s.indexer.batch_interval == 2.0
    assert s.store.max_depth == 3
    w = s.context.weights
    assert (w.exact_match, w.semantic, w.recency, w.proximity) == (0.45, 0.35, 0.10, 0.10)


def test_missing_file_gives_defaults(temp_dir: Path):
    assert load_settings(temp_dir / "nope.toml") == Settings()


def test_malformed_file_gives_defaults(temp_dir: Path):
    path = temp_dir / "config.toml"
    path.write_text("[indexer\nbatch_size = ", encoding="utf-8")
    assert load_settings(path) == Settings()


def test_nested_sections_and_languages():
    s = settings_from_dict({
        "indexer": {"batch_size": 10, "bogus": 1},
        "context": {"max_tokens": 500, "weights": {"semantic": 0.5}},
        "languages": {"enabled": ["python"]},
    })
    assert s.indexer.batch_size == 10
    assert s.context.max_tokens == 500
    assert s.context.weights.semantic == 0.5
    assert s.context.weights.exact_match == 0.45
    assert s.languages == ["python"]


def test_save_and_load_roundtrip(temp_dir: Path):
    s = Settings()
    s.indexer.pool_size = 3
    s.embeddings.model = "minilm"
    path = save_settings(s, temp_dir / "cfg" / "config.toml")
    loaded = load_settings(path)
    assert loaded.indexer.pool_size == 3
    assert loaded.embeddings.model == "minilm"
    assert loaded.languages == s.languages
