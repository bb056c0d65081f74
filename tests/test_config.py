"""Tests for environment-driven configuration."""

from devmemory.utils.config import load_config


def test_defaults(monkeypatch):
    for name in ('VECTOR_STORE_PROVIDER', 'SEARCH_DEFAULT_LIMIT', 'SEARCH_AUTO_VECTOR_MIN_LENGTH', 'OPENSEARCH_AUTH',
                 'VECTOR_STORE_BATCHING', 'ENTITY_EXTRACTOR'):
        monkeypatch.delenv(name, raising=False)

    cfg = load_config()

    assert cfg.vector_store.provider == 'opensearch'
    assert cfg.vector_store.batching_enabled is False
    assert cfg.entity_extraction.provider == 'pattern'
    assert cfg.search.default_limit == 20
    assert cfg.search.auto_vector_min_length == 50
    assert (cfg.search.vector_share, cfg.search.text_share, cfg.search.graph_share) == (0.6, 0.3, 0.1)
    assert cfg.opensearch.auth == 'aws'


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv('VECTOR_STORE_PROVIDER', 'local')
    monkeypatch.setenv('VECTOR_STORE_BATCHING', 'yes')
    monkeypatch.setenv('VECTOR_STORE_BATCH_SIZE', '10')
    monkeypatch.setenv('SEARCH_BACKEND_TIMEOUT', '2.5')
    monkeypatch.setenv('NEPTUNE_IAM_AUTH', 'false')
    monkeypatch.setenv('OPENSEARCH_USE_SSL', '0')

    cfg = load_config()

    assert cfg.vector_store.provider == 'local'
    assert cfg.vector_store.batching_enabled is True
    assert cfg.vector_store.batch_size == 10
    assert cfg.search.backend_timeout == 2.5
    assert cfg.neptune.use_iam_auth is False
    assert cfg.opensearch.use_ssl is False
