"""Shared test fixtures and configuration."""
import os

# Keep module-level engines off the filesystem
os.environ.setdefault('DB_URL', 'sqlite:///:memory:')
os.environ.setdefault('POLLER_SECRET', 'test-secret')

from pathlib import Path
import pytest
import yaml

from src.storage.db import init_db, make_engine, make_session_factory
from src.storage.repo import RuleRepository


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test."""
    engine = make_engine('sqlite:///:memory:')
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def repo(session_factory) -> RuleRepository:
    return RuleRepository(session_factory)


@pytest.fixture
def test_config_yaml(tmp_path: Path) -> Path:
    """Create a temporary test config YAML file."""
    config = {
        'bot': {
            'name': 'Rule Automation Test',
            'version': '2.0.0'
        },
        'poller': {
            'interval_seconds': 30,
            'price_timeout_seconds': 5,
            'default_window': '24h'
        },
        'oracle': {
            'provider': 'mock',
            'base_url': 'http://prices.local',
            'max_retries': 2
        },
        'executor': {
            'mode': 'dry_run',
            'funding_asset': 'USDC'
        },
        'healthcheck': {
            'enabled': False,
            'port': 9090
        }
    }

    config_file = tmp_path / 'test_config.yaml'
    with open(config_file, 'w', encoding='utf-8') as f:
        yaml.dump(config, f)

    return config_file
