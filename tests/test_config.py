import tomllib
import uuid
from datetime import datetime

import pytest

from dynacli.config import (
    AuthConfig,
    Config,
    ConfigError,
    ConfigExamplePair,
    EntityComparison,
    SavedComparison,
    SavedMigration,
    Settings,
    ViewComparison,
    mapping_key,
)


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "config.toml"


@pytest.fixture
def cfg(config_path):
    return Config(path=config_path)


def make_auth(host="https://org.example.com"):
    password = "password"
    return AuthConfig(
        host=host,
        username="user@example.com",
        password=password,
        client_id="client-id",
        client_secret="secret",
    )


def test_mapping_key_joins_with_colon():
    assert mapping_key("account", "contact") == "account:contact"


def test_load_missing_file_gives_defaults(config_path):
    config = Config.load(config_path)
    assert config.environments == {}
    assert config.current_environment is None
    assert config.settings.default_query_limit == 100
    assert not config_path.exists()


def test_first_environment_becomes_current_and_persists(cfg, config_path):
    cfg.add_environment("dev", make_auth())
    cfg.add_environment("prod", make_auth("https://prod.example.com"))
    assert cfg.current_environment == "dev"
    loaded = Config.load(config_path)
    assert loaded.current_environment == "dev"
    assert loaded.environments == cfg.environments
    assert loaded.current_auth() == make_auth()
    assert sorted(loaded.list_environments()) == ["dev", "prod"]


def test_set_current_environment(cfg):
    cfg.add_environment("dev", make_auth())
    cfg.add_environment("prod", make_auth("https://prod.example.com"))
    cfg.set_current_environment("prod")
    assert cfg.current_auth().host == "https://prod.example.com"
    with pytest.raises(ConfigError, match="Environment 'nope' not found"):
        cfg.set_current_environment("nope")


def test_remove_current_environment_clears_selection(cfg):
    cfg.add_environment("dev", make_auth())
    cfg.remove_environment("dev")
    assert cfg.current_environment is None
    assert cfg.current_auth() is None
    assert cfg.get_auth("dev") is None
    with pytest.raises(ConfigError):
        cfg.remove_environment("dev")


def test_entity_mappings(cfg, config_path):
    cfg.add_entity_mapping("person", "people")
    assert Config.load(config_path).get_entity_mapping("person") == "people"
    cfg.remove_entity_mapping("person")
    assert cfg.get_entity_mapping("person") is None
    with pytest.raises(ConfigError, match="Entity mapping 'person' not found"):
        cfg.remove_entity_mapping("person")


def test_update_default_query_limit(cfg, config_path):
    cfg.update_default_query_limit(250)
    assert Config.load(config_path).settings.default_query_limit == 250
    with pytest.raises(ConfigError):
        cfg.update_default_query_limit(-1)
    assert cfg.settings.default_query_limit == 250


def test_field_mappings_add_get_remove(cfg, config_path):
    cfg.add_field_mapping("account", "contact", "name", "fullname")
    cfg.add_field_mapping("account", "contact", "city", "address1_city")
    loaded = Config.load(config_path)
    assert loaded.get_field_mappings("account", "contact") == {
        "name": "fullname",
        "city": "address1_city",
    }
    cfg.remove_field_mapping("account", "contact", "name")
    assert cfg.get_field_mappings("account", "contact") == {"city": "address1_city"}
    cfg.remove_field_mapping("account", "contact", "city")
    assert cfg.get_field_mappings("account", "contact") is None
    assert mapping_key("account", "contact") not in cfg.settings.field_mappings


def test_field_mapping_remove_errors(cfg):
    with pytest.raises(ConfigError, match="No field mappings found"):
        cfg.remove_field_mapping("a", "b", "x")
    cfg.add_field_mapping("a", "b", "x", "y")
    with pytest.raises(ConfigError, match="Field mapping 'z' not found"):
        cfg.remove_field_mapping("a", "b", "z")


def test_prefix_mappings(cfg, config_path):
    cfg.add_prefix_mapping("account", "account", "new_", "cr1_")
    assert Config.load(config_path).get_prefix_mappings("account", "account") == {"new_": "cr1_"}
    with pytest.raises(ConfigError, match="Prefix mapping 'old_' not found"):
        cfg.remove_prefix_mapping("account", "account", "old_")
    cfg.remove_prefix_mapping("account", "account", "new_")
    assert cfg.get_prefix_mappings("account", "account") is None
    with pytest.raises(ConfigError, match="No prefix mappings found"):
        cfg.remove_prefix_mapping("account", "account", "new_")


def test_saved_file_is_valid_toml_with_mapping_key(cfg, config_path):
    cfg.add_field_mapping("account", "contact", "name", "fullname")
    data = tomllib.loads(config_path.read_text(encoding="utf-8"))
    assert data["settings"]["field_mappings"]["account:contact"] == {"name": "fullname"}
    assert "current_environment" not in data
    assert cfg.to_dict()["settings"]["field_mappings"] == {"account:contact": {"name": "fullname"}}
    loaded = Config.load(config_path)
    assert loaded.get_field_mappings("account", "contact") == {"name": "fullname"}
    assert loaded.current_environment is None


def test_migration_round_trip(cfg, config_path):
    comparison = SavedComparison(
        name="account_to_contact",
        source_entity="account",
        target_entity="contact",
        entity_comparison=EntityComparison(field_mappings={"a": "b"}),
        view_comparisons=[ViewComparison("All", "All Active", column_mappings={"c": "d"})],
    )
    migration = SavedMigration("dev_to_prod", "dev", "prod", comparisons=[comparison])
    cfg.save_migration(migration)
    loaded = Config.load(config_path)
    assert loaded.get_migration("dev_to_prod") == migration
    assert loaded.get_migration("missing") is None


def test_list_migrations_order(cfg):
    cfg.save_migration(SavedMigration("b", "x", "y", last_used="2024-01-01"))
    cfg.save_migration(SavedMigration("a", "x", "y", last_used="2024-01-01"))
    cfg.save_migration(SavedMigration("c", "x", "y", last_used="2025-01-01"))
    cfg.save_migration(SavedMigration("d", "x", "y"))
    assert [m.name for m in cfg.list_migrations()] == ["c", "a", "b", "d"]


def test_touch_and_remove_migration(cfg):
    cfg.save_migration(SavedMigration("m", "x", "y"))
    cfg.touch_migration("m")
    stamp = cfg.get_migration("m").last_used
    assert datetime.fromisoformat(stamp).tzinfo is not None
    cfg.remove_migration("m")
    assert cfg.get_migration("m") is None
    with pytest.raises(ConfigError, match="Migration 'm' not found"):
        cfg.touch_migration("m")
    with pytest.raises(ConfigError, match="Migration 'm' not found"):
        cfg.remove_migration("m")


def test_add_and_remove_comparisons(cfg, config_path):
    cfg.save_migration(SavedMigration("m", "x", "y"))
    cfg.add_comparison_to_migration("m", SavedComparison("c1", "account", "contact"))
    assert [c.name for c in Config.load(config_path).get_migration("m").comparisons] == ["c1"]
    assert cfg.get_migration("m").last_used != ""
    with pytest.raises(ConfigError, match="Comparison 'zz' not found in migration 'm'"):
        cfg.remove_comparison_from_migration("m", "zz")
    cfg.remove_comparison_from_migration("m", "c1")
    assert cfg.get_migration("m").comparisons == []
    with pytest.raises(ConfigError):
        cfg.add_comparison_to_migration("nope", SavedComparison("c", "a", "b"))


def test_example_pair_create_and_label():
    first = ConfigExamplePair.create("src", "tgt")
    second = ConfigExamplePair.create("src", "tgt")
    assert str(uuid.UUID(first.id)) == first.id
    assert first.id != second.id
    labelled = first.with_label("demo")
    assert labelled.label == "demo"
    assert labelled.id == first.id
    assert first.label is None


def test_examples_lifecycle(cfg, config_path):
    one = ConfigExamplePair.create("s1", "t1").with_label("first")
    two = ConfigExamplePair.create("s2", "t2")
    cfg.add_example("account", "contact", one)
    cfg.add_example("account", "contact", two)
    assert Config.load(config_path).get_examples("account", "contact") == [one, two]
    cfg.remove_example("account", "contact", one.id)
    assert cfg.get_examples("account", "contact") == [two]
    with pytest.raises(ConfigError, match="not found for entity comparison"):
        cfg.remove_example("account", "contact", one.id)
    cfg.remove_example("account", "contact", two.id)
    assert cfg.get_examples("account", "contact") is None
    with pytest.raises(ConfigError, match="No examples found"):
        cfg.remove_example("account", "contact", two.id)


def test_update_and_clear_examples(cfg):
    pair = ConfigExamplePair.create("s", "t")
    cfg.update_examples("a", "b", [pair])
    assert cfg.get_examples("a", "b") == [pair]
    cfg.update_examples("a", "b", [])
    assert cfg.get_examples("a", "b") is None
    cfg.update_examples("a", "b", [pair])
    cfg.clear_examples("a", "b")
    assert cfg.settings.examples == {}
    with pytest.raises(ConfigError, match="No examples found for entity comparison 'a:b'"):
        cfg.clear_examples("a", "b")


def test_from_dict_applies_defaults():
    config = Config.from_dict({"environments": {}, "migrations": {
        "m": {"name": "m", "source_env": "x", "target_env": "y", "comparisons": [
            {"name": "c", "source_entity": "a", "target_entity": "b"}]}}})
    assert config.settings == Settings()
    comparison = config.get_migration("m").comparisons[0]
    assert comparison.entity_comparison == EntityComparison()
    assert comparison.view_comparisons == []
    assert comparison.created_at == ""


def test_to_dict_from_dict_round_trip(cfg):
    cfg.add_environment("dev", make_auth())
    cfg.add_field_mapping("a", "b", "x", "y")
    cfg.add_example("a", "b", ConfigExamplePair.create("s", "t"))
    assert Config.from_dict(cfg.to_dict()) == cfg


def test_from_dict_requires_environments():
    with pytest.raises(ConfigError, match="environments"):
        Config.from_dict({"entity_mappings": {}})


def test_from_dict_rejects_incomplete_environment():
    with pytest.raises(ConfigError, match="client_secret"):
        Config.from_dict({"environments": {"dev": {
            "host": "h", "username": "u", "password": "password", "client_id": "c"}}})


def test_load_invalid_toml_raises(config_path):
    config_path.write_text("this is = = not toml", encoding="utf-8")
    with pytest.raises(ConfigError, match="Failed to parse config file"):
        Config.load(config_path)