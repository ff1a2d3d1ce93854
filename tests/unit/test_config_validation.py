import pydantic
import pytest

from bouncer.config import Settings, validate_startup_config
from bouncer.errors import ConfigurationError


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


def test_defaults_are_valid():
    config = make_settings()
    validate_startup_config(config)

    assert config.scoring_weights() == {
        "username": 0.4,
        "display_name": 0.3,
        "profile_image": 0.2,
        "metadata": 0.1,
    }
    assert config.queue_concurrency()["scoring"] == 3


def test_weights_that_do_not_sum_to_one_are_rejected():
    config = make_settings(SCORING_WEIGHTS_USERNAME=0.6)
    with pytest.raises(ConfigurationError):
        validate_startup_config(config)


def test_unordered_thresholds_are_rejected():
    config = make_settings(THRESHOLD_MEDIUM=0.9)
    with pytest.raises(ConfigurationError):
        validate_startup_config(config)


def test_short_encryption_key_is_rejected():
    config = make_settings(ENCRYPTION_KEY="abcd")
    with pytest.raises(ConfigurationError):
        validate_startup_config(config)


def test_unknown_queue_backend_is_rejected():
    config = make_settings(QUEUE_BACKEND="kafka")
    with pytest.raises(ConfigurationError):
        validate_startup_config(config)


def test_field_constraints_are_enforced_by_pydantic():
    with pytest.raises(pydantic.ValidationError):
        make_settings(QUEUE_CONCURRENCY_SCORING=0)


def test_settings_read_from_environment(monkeypatch):
    monkeypatch.setenv("QUEUE_BACKEND", "memory")
    monkeypatch.setenv("THRESHOLD_HIGH", "0.85")

    config = make_settings()

    assert config.QUEUE_BACKEND == "memory"
    assert config.scoring_thresholds()["high"] == 0.85


def test_development_pool_is_small():
    assert make_settings(environment="development").get_db_pool_config()["max_size"] == 4
    assert make_settings(environment="production").get_db_pool_config()["max_size"] == 10
