"""Tests for YAML settings loading and per-tenant overrides."""
import pytest

from channels.base import ChannelRegistry
from config.settings import QueueConfig, Settings, TenantOverrides, get_settings, load_settings, reset_settings
from core.container import build_container
from notifications.notifier import InMemoryNotifier


YAML = """
app_name: Router Test
queue:
  backend: sql
  max_concurrent_keys: 20
  lease_duration_s: 45
  unknown_knob: 1
bots:
  satisfaction_timeout_ms: 600000
routing:
  sector_choice: route_first
  entry_dialogs: [customer_linking]
channels:
  wa-main:
    provider: cloud_api
    api_url: https://graph.example.com/v18.0/123
    token: ${ROUTER_TEST_TOKEN}
  legacy:
    provider: loopback
    enabled: false
tenants:
  globex:
    max_concurrent_keys: 4
    dedicated_pool: true
    customer_linking_enabled: true
    sector_choice: ask_first
    entry_dialogs: []
"""


@pytest.fixture
def settings_file(tmp_path, monkeypatch):
    monkeypatch.setenv("ROUTER_TEST_TOKEN", "tok-123")
    path = tmp_path / "settings.yaml"
    path.write_text(YAML)
    yield str(path)
    reset_settings()


class TestLoadSettings:

    def test_sections_are_parsed(self, settings_file):
        settings = load_settings(settings_file)
        assert settings.app_name == "Router Test"
        assert settings.queue.backend == "sql"
        assert settings.queue.max_concurrent_keys == 20
        assert settings.queue.lease_duration_s == 45
        assert settings.queue.max_retries == 3
        assert settings.bots.satisfaction_timeout_ms == 600000
        assert settings.routing.entry_dialogs == ["customer_linking"]

    def test_env_substitution(self, settings_file):
        settings = load_settings(settings_file)
        assert settings.channels["wa-main"].token == "tok-123"
        assert settings.channels["legacy"].enabled is False

    def test_unset_env_var_is_left_verbatim(self, settings_file, monkeypatch):
        monkeypatch.delenv("ROUTER_TEST_TOKEN")
        settings = load_settings(settings_file)
        assert settings.channels["wa-main"].token == "${ROUTER_TEST_TOKEN}"

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.queue.backend == "memory"
        assert settings.channels == {}
        reset_settings()

    def test_get_settings_caches(self, settings_file, monkeypatch):
        monkeypatch.setenv("SUPPORT_ROUTER_CONFIG", settings_file)
        reset_settings()
        assert get_settings() is get_settings()
        assert get_settings().app_name == "Router Test"


class TestTenantOverrides:

    def test_override_applies_only_to_its_tenant(self, settings_file):
        settings = load_settings(settings_file)
        assert settings.queue_for("globex").max_concurrent_keys == 4
        assert settings.queue_for("globex").lease_duration_s == 45
        assert settings.queue_for("acme").max_concurrent_keys == 20
        assert settings.queue_for(None) is settings.queue

    def test_bot_and_routing_overrides(self, settings_file):
        settings = load_settings(settings_file)
        assert settings.bots_for("globex").customer_linking_enabled is True
        assert settings.bots_for("acme").customer_linking_enabled is False
        assert settings.sector_choice_for("globex") == "ask_first"
        assert settings.sector_choice_for("acme") == "route_first"
        assert settings.entry_dialogs_for("globex") == []
        assert settings.entry_dialogs_for("acme") == ["customer_linking"]

    def test_dedicated_pool_flag(self, settings_file):
        assert load_settings(settings_file).tenants["globex"].dedicated_pool is True

    def test_overrides_built_in_code(self):
        settings = Settings(tenants={"t": TenantOverrides(max_retries=9)})
        assert settings.queue_for("t").max_retries == 9
        assert settings.queue.max_retries == 3


class TestWorkerIdentity:

    def test_configured_worker_id_owns_the_leases(self):
        settings = Settings(
            queue=QueueConfig(worker_id="router-1"),
            tenants={"globex": TenantOverrides(dedicated_pool=True)},
        )
        services = build_container(settings, channels=ChannelRegistry(),
                                   notifier=InMemoryNotifier(), background=False)
        assert services.leases.owner_id == "router-1"
        assert {p.leases.owner_id for p in services.pools} == {"router-1", "router-1:globex"}

    def test_default_worker_id_is_per_process(self):
        services = build_container(Settings(), channels=ChannelRegistry(),
                                   notifier=InMemoryNotifier(), background=False)
        assert services.leases.owner_id.startswith("worker-")
