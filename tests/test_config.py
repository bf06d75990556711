import pytest

from core.config import DEFAULT_CONFIG_PATH, AppConfig, ConfigError


def test_bundled_config_loads_both_slices():
    settings = AppConfig.load(environ={}).settings()

    assert [s.key for s in settings.slices] == ["sylvania", "bitmain"]
    assert settings.slices[1].table.mode == "uptime"
    assert settings.slices[1].categories[0].match == "worker"
    assert settings.schedule.timezone == "America/New_York"
    assert settings.store.backend == "local"


def test_missing_file_falls_back_to_defaults(tmp_path):
    config = AppConfig.load(str(tmp_path / "absent.yaml"), environ={})
    settings = config.settings()

    assert settings.slices == []
    assert settings.publish.window_hours == 24
    assert settings.publish.manifest_max_entries == 500
    assert settings.store.github.branch == "main"
    assert settings.metrics.excluded_tables == ["customer_btc_info", "customer_lmp_prices"]


def test_yaml_is_merged_over_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("publish:\n  window_hours: 12\nstore:\n  github:\n    repo: site\n")

    settings = AppConfig.load(str(path), environ={}).settings()

    assert settings.publish.window_hours == 12
    assert settings.publish.manifest_max_entries == 500
    assert settings.store.github.repo == "site"
    assert settings.store.github.api_url == "https://api.github.com"


def test_environment_overrides_yaml(tmp_path):
    env = {
        "HASH_REPORT_CONFIG": str(DEFAULT_CONFIG_PATH),
        "GITHUB_TOKEN": "secret",
        "GITHUB_OWNER": "acme",
        "CMS_GITHUB_BASEDIR": "site/",
        "REPORT_TZ": "America/Chicago",
        "STORE_BACKEND": "GitHub",
        "MEAGPOWER_USER": "ops",
        "BIGQUERY_PROJECT": "",
    }

    settings = AppConfig.load(environ=env).settings()

    assert settings.store.github.token == "secret"
    assert settings.store.github.owner == "acme"
    assert settings.store.github.base_dir == "site/"
    assert settings.schedule.timezone == "America/Chicago"
    assert settings.store.backend == "github"
    assert settings.price.username == "ops"
    # Empty variables do not clobber file values
    assert settings.metrics.project == "foreman-production"


def test_invalid_yaml_raises_config_error(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("schedule: [unclosed\n")

    with pytest.raises(ConfigError):
        AppConfig.load(str(path), environ={})


def test_non_mapping_root_raises_config_error(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n")

    with pytest.raises(ConfigError):
        AppConfig.load(str(path), environ={})


@pytest.mark.parametrize(
    "data",
    [
        {"store": {"backend": "s3"}},
        {"publish": {"window_hours": 0}},
        {"slices": [{"key": "x", "label": "X", "client_name": "X", "table": {"mode": "weekly"}}]},
        {"slices": [{"key": "x", "label": "X", "client_name": "X",
                     "categories": [{"label": "a", "match": "hostname", "pattern": "a"}]}]},
    ],
)
def test_invalid_values_raise_config_error(data):
    with pytest.raises(ConfigError):
        AppConfig(data).settings()


def test_dotted_get_and_set():
    config = AppConfig()

    config.set("store.github.repo", "site")
    config.set("extra.nested.value", 3)

    assert config.get("store.github.repo") == "site"
    assert config.get("extra.nested.value") == 3
    assert config.get("store.missing.key", "fallback") == "fallback"
