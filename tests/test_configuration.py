import json
import os
import tempfile
import pytest
from rollout_controller.config import ServiceConfig, load_service_config, service_config_from_dict
from rollout_controller.models import HealthPolicy, RetryPolicy


class TestConfiguration:
    """Service configuration loading and validation tests."""

    def test_defaults(self):
        config = ServiceConfig(name="web")
        assert config.active_group == "blue"
        assert config.replicas is None
        assert config.max_unavailable == 0
        assert config.max_surge == 1
        assert config.readiness.period_s < config.liveness.period_s
        assert config.probe.path == "/healthz"

    def test_nested_sections_become_dataclasses(self):
        config = service_config_from_dict({
            "name": "web",
            "readiness": {"success_threshold": 2, "failure_threshold": 1, "period_s": 0.5},
            "retry": {"max_attempts": 5, "base_delay_s": 0.2},
        })
        assert isinstance(config.readiness, HealthPolicy)
        assert config.readiness.success_threshold == 2
        assert isinstance(config.retry, RetryPolicy)
        assert config.retry.max_attempts == 5

    def test_load_from_file(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
            json.dump({"name": "api", "active_group": "green", "replicas": 4}, f)
            temp_path = f.name
        try:
            config = load_service_config(temp_path)
        finally:
            os.unlink(temp_path)
        assert config.name == "api"
        assert config.active_group == "green"
        assert config.replicas == 4

    def test_unknown_keys_rejected(self):
        with pytest.raises(ValueError, match="invalid service config"):
            service_config_from_dict({"name": "web", "batch_size": 5})
        with pytest.raises(ValueError, match="invalid service config"):
            service_config_from_dict({"name": "web", "retry": {"attempts": 5}})

    def test_invalid_values_rejected(self):
        with pytest.raises(ValueError, match="service name"):
            ServiceConfig(name="")
        with pytest.raises(ValueError, match="replicas"):
            ServiceConfig(name="web", replicas=-1)
        with pytest.raises(ValueError, match="max_unavailable"):
            ServiceConfig(name="web", max_surge=-1)
        with pytest.raises(ValueError, match="thresholds"):
            service_config_from_dict({"name": "web", "liveness": {"failure_threshold": 0}})

    def test_backoff_doubles_and_caps(self):
        retry = RetryPolicy(base_delay_s=0.1, max_delay_s=0.5)
        assert retry.backoff(1) == pytest.approx(0.1)
        assert retry.backoff(2) == pytest.approx(0.2)
        assert retry.backoff(3) == pytest.approx(0.4)
        assert retry.backoff(4) == pytest.approx(0.5)

    def test_secrets_not_in_repr(self):
        config = ServiceConfig(name="web", secrets={"DB_PASSWORD": "hunter2"})
        assert "hunter2" not in repr(config)
