"""Persistent configuration: environments, mappings, settings and migrations."""

from __future__ import annotations

import logging
import sys
import tomllib
import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import platformdirs
import tomli_w

log = logging.getLogger(__name__)

APP_NAME = "dynamics-cli"
CONFIG_FILE_NAME = "config.toml"
DEFAULT_QUERY_LIMIT = 100
_U32_MAX = 2**32 - 1


class ConfigError(Exception):
    """Raised when the configuration cannot be read, written or changed."""


def mapping_key(source_entity: str, target_entity: str) -> str:
    """Key under which per-comparison data is stored."""
    return f"{source_entity}:{target_entity}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _table(data: Any, what: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ConfigError(f"{what} must be a table")
    return data


def _require_str(data: dict[str, Any], key: str, what: str) -> str:
    if key not in data:
        raise ConfigError(f"{what} is missing field '{key}'")
    value = data[key]
    if not isinstance(value, str):
        raise ConfigError(f"{what}: field '{key}' must be a string")
    return value


def _optional_str(data: dict[str, Any], key: str, what: str, default: str | None = "") -> str | None:
    value = data.get(key, default)
    if value is not None and not isinstance(value, str):
        raise ConfigError(f"{what}: field '{key}' must be a string")
    return value


def _str_map(data: Any, what: str) -> dict[str, str]:
    table = _table(data, what)
    for key, value in table.items():
        if not isinstance(value, str):
            raise ConfigError(f"{what}: value for '{key}' must be a string")
    return dict(table)


def _nested_str_map(data: Any, what: str) -> dict[str, dict[str, str]]:
    return {key: _str_map(value, f"{what}.{key}") for key, value in _table(data, what).items()}


def _list(data: Any, what: str) -> list[Any]:
    if not isinstance(data, list):
        raise ConfigError(f"{what} must be an array")
    return data


@dataclass
class ConfigExamplePair:
    """A pair of record ids, one per environment, used as a worked example."""

    id: str
    source_uuid: str
    target_uuid: str
    label: str | None = None

    @classmethod
    def create(cls, source_uuid: str, target_uuid: str) -> ConfigExamplePair:
        """Build a pair with a freshly generated id."""
        return cls(id=str(uuid.uuid4()), source_uuid=source_uuid, target_uuid=target_uuid)

    def with_label(self, label: str) -> ConfigExamplePair:
        """Return a copy carrying the given label."""
        return replace(self, label=label)

    @classmethod
    def _from_dict(cls, data: Any) -> ConfigExamplePair:
        what = "example"
        table = _table(data, what)
        return cls(
            id=_require_str(table, "id", what),
            source_uuid=_require_str(table, "source_uuid", what),
            target_uuid=_require_str(table, "target_uuid", what),
            label=_optional_str(table, "label", what, default=None),
        )

    def _to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "source_uuid": self.source_uuid,
            "target_uuid": self.target_uuid,
        }
        if self.label is not None:
            data["label"] = self.label
        return data


@dataclass
class AuthConfig:
    """Credentials for one Dynamics environment."""

    host: str
    username: str
    password: str
    client_id: str
    client_secret: str

    @classmethod
    def _from_dict(cls, data: Any, name: str) -> AuthConfig:
        what = f"environment '{name}'"
        table = _table(data, what)
        values = {f.name: _require_str(table, f.name, what) for f in fields(cls)}
        return cls(**values)

    def _to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EntityComparison:
    """Manual field mappings and bulk prefix rules for one comparison."""

    field_mappings: dict[str, str] = field(default_factory=dict)
    prefix_mappings: dict[str, str] = field(default_factory=dict)

    @classmethod
    def _from_dict(cls, data: Any) -> EntityComparison:
        table = _table(data, "entity_comparison")
        return cls(
            field_mappings=_str_map(table.get("field_mappings", {}), "field_mappings"),
            prefix_mappings=_str_map(table.get("prefix_mappings", {}), "prefix_mappings"),
        )

    def _to_dict(self) -> dict[str, Any]:
        return {
            "field_mappings": dict(self.field_mappings),
            "prefix_mappings": dict(self.prefix_mappings),
        }


@dataclass
class ViewComparison:
    """Mappings between a source view and a target view."""

    source_view_name: str
    target_view_name: str
    column_mappings: dict[str, str] = field(default_factory=dict)
    filter_mappings: dict[str, str] = field(default_factory=dict)
    sort_mappings: dict[str, str] = field(default_factory=dict)

    @classmethod
    def _from_dict(cls, data: Any) -> ViewComparison:
        what = "view comparison"
        table = _table(data, what)
        return cls(
            source_view_name=_require_str(table, "source_view_name", what),
            target_view_name=_require_str(table, "target_view_name", what),
            column_mappings=_str_map(table.get("column_mappings", {}), "column_mappings"),
            filter_mappings=_str_map(table.get("filter_mappings", {}), "filter_mappings"),
            sort_mappings=_str_map(table.get("sort_mappings", {}), "sort_mappings"),
        )

    def _to_dict(self) -> dict[str, Any]:
        return {
            "source_view_name": self.source_view_name,
            "target_view_name": self.target_view_name,
            "column_mappings": dict(self.column_mappings),
            "filter_mappings": dict(self.filter_mappings),
            "sort_mappings": dict(self.sort_mappings),
        }


@dataclass
class SavedComparison:
    """A saved comparison between a source and a target entity."""

    name: str
    source_entity: str
    target_entity: str
    entity_comparison: EntityComparison = field(default_factory=EntityComparison)
    view_comparisons: list[ViewComparison] = field(default_factory=list)
    created_at: str = ""
    last_used: str = ""

    @classmethod
    def _from_dict(cls, data: Any) -> SavedComparison:
        what = "comparison"
        table = _table(data, what)
        return cls(
            name=_require_str(table, "name", what),
            source_entity=_require_str(table, "source_entity", what),
            target_entity=_require_str(table, "target_entity", what),
            entity_comparison=EntityComparison._from_dict(table.get("entity_comparison", {})),
            view_comparisons=[
                ViewComparison._from_dict(item)
                for item in _list(table.get("view_comparisons", []), "view_comparisons")
            ],
            created_at=_optional_str(table, "created_at", what),
            last_used=_optional_str(table, "last_used", what),
        )

    def _to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "source_entity": self.source_entity,
            "target_entity": self.target_entity,
            "entity_comparison": self.entity_comparison._to_dict(),
            "view_comparisons": [view._to_dict() for view in self.view_comparisons],
            "created_at": self.created_at,
            "last_used": self.last_used,
        }


@dataclass
class SavedMigration:
    """A saved migration between two environments."""

    name: str
    source_env: str
    target_env: str
    comparisons: list[SavedComparison] = field(default_factory=list)
    created_at: str = ""
    last_used: str = ""

    @classmethod
    def _from_dict(cls, data: Any, name: str) -> SavedMigration:
        what = f"migration '{name}'"
        table = _table(data, what)
        if "comparisons" not in table:
            raise ConfigError(f"{what} is missing field 'comparisons'")
        return cls(
            name=_require_str(table, "name", what),
            source_env=_require_str(table, "source_env", what),
            target_env=_require_str(table, "target_env", what),
            comparisons=[
                SavedComparison._from_dict(item)
                for item in _list(table["comparisons"], "comparisons")
            ],
            created_at=_optional_str(table, "created_at", what),
            last_used=_optional_str(table, "last_used", what),
        )

    def _to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "source_env": self.source_env,
            "target_env": self.target_env,
            "comparisons": [comparison._to_dict() for comparison in self.comparisons],
            "created_at": self.created_at,
            "last_used": self.last_used,
        }


def _check_limit(limit: Any) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or not 0 <= limit <= _U32_MAX:
        raise ConfigError(f"Invalid query limit: {limit!r}")
    return limit


@dataclass
class Settings:
    """User settings, including per-comparison mappings and examples."""

    default_query_limit: int = DEFAULT_QUERY_LIMIT
    field_mappings: dict[str, dict[str, str]] = field(default_factory=dict)
    prefix_mappings: dict[str, dict[str, str]] = field(default_factory=dict)
    examples: dict[str, list[ConfigExamplePair]] = field(default_factory=dict)

    @classmethod
    def _from_dict(cls, data: Any) -> Settings:
        table = _table(data, "settings")
        return cls(
            default_query_limit=_check_limit(table.get("default_query_limit", DEFAULT_QUERY_LIMIT)),
            field_mappings=_nested_str_map(table.get("field_mappings", {}), "field_mappings"),
            prefix_mappings=_nested_str_map(table.get("prefix_mappings", {}), "prefix_mappings"),
            examples={
                key: [ConfigExamplePair._from_dict(item) for item in _list(items, f"examples.{key}")]
                for key, items in _table(table.get("examples", {}), "examples").items()
            },
        )

    def _to_dict(self) -> dict[str, Any]:
        return {
            "default_query_limit": self.default_query_limit,
            "field_mappings": {k: dict(v) for k, v in self.field_mappings.items()},
            "prefix_mappings": {k: dict(v) for k, v in self.prefix_mappings.items()},
            "examples": {k: [e._to_dict() for e in v] for k, v in self.examples.items()},
        }


@dataclass
class Config:
    """The whole configuration file; every change is saved immediately."""

    current_environment: str | None = None
    environments: dict[str, AuthConfig] = field(default_factory=dict)
    entity_mappings: dict[str, str] = field(default_factory=dict)
    settings: Settings = field(default_factory=Settings)
    migrations: dict[str, SavedMigration] = field(default_factory=dict)
    path: Path | None = field(default=None, compare=False, repr=False)

    # --- persistence -------------------------------------------------------

    @classmethod
    def default_path(cls) -> Path:
        """Location of the config file, creating its directory if needed."""
        if sys.platform.startswith("linux"):
            directory = Path(platformdirs.user_config_dir(APP_NAME, appauthor=False))
        else:
            directory = Path.home() / f".{APP_NAME}"
        if not directory.exists():
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise ConfigError(f"Failed to create config directory: {directory}") from exc
            log.info("Created config directory: %s", directory)
        return directory / CONFIG_FILE_NAME

    @classmethod
    def load(cls, path: str | Path | None = None) -> Config:
        """Read the config file, or return defaults if it does not exist."""
        config_path = Path(path) if path is not None else cls.default_path()
        log.debug("Loading config from: %s", config_path)
        if not config_path.exists():
            log.info("Config file doesn't exist, creating default config")
            return cls(path=config_path)
        try:
            content = config_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Failed to read config file: {config_path}") from exc
        try:
            data = tomllib.loads(content)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Failed to parse config file: {config_path}: {exc}") from exc
        config = cls.from_dict(data, config_path)
        log.debug("Loaded config with %d environments", len(config.environments))
        return config

    @classmethod
    def from_dict(cls, data: dict[str, Any], path: str | Path | None = None) -> Config:
        """Build a config from parsed TOML data."""
        table = _table(data, "config")
        if "environments" not in table:
            raise ConfigError("config is missing field 'environments'")
        return cls(
            current_environment=_optional_str(table, "current_environment", "config", default=None),
            environments={
                name: AuthConfig._from_dict(value, name)
                for name, value in _table(table["environments"], "environments").items()
            },
            entity_mappings=_str_map(table.get("entity_mappings", {}), "entity_mappings"),
            settings=Settings._from_dict(table.get("settings", {})),
            migrations={
                name: SavedMigration._from_dict(value, name)
                for name, value in _table(table.get("migrations", {}), "migrations").items()
            },
            path=Path(path) if path is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Plain data suitable for writing as TOML."""
        data: dict[str, Any] = {}
        if self.current_environment is not None:
            data["current_environment"] = self.current_environment
        data["environments"] = {name: auth._to_dict() for name, auth in self.environments.items()}
        data["entity_mappings"] = dict(self.entity_mappings)
        data["settings"] = self.settings._to_dict()
        data["migrations"] = {name: m._to_dict() for name, m in self.migrations.items()}
        return data

    def save(self) -> None:
        """Write the config to its file."""
        if self.path is None:
            self.path = self.default_path()
        log.debug("Saving config to: %s", self.path)
        content = tomli_w.dumps(self.to_dict())
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Failed to write config file: {self.path}") from exc
        log.info("Config saved successfully")

    # --- environments ------------------------------------------------------

    def add_environment(self, name: str, auth_config: AuthConfig) -> None:
        log.info("Adding environment: %s", name)
        self.environments[name] = auth_config
        if self.current_environment is None:
            self.current_environment = name
            log.info("Set %s as current environment", name)
        self.save()

    def current_auth(self) -> AuthConfig | None:
        if self.current_environment is None:
            return None
        return self.environments.get(self.current_environment)

    def get_auth(self, env_name: str) -> AuthConfig | None:
        return self.environments.get(env_name)

    def set_current_environment(self, name: str) -> None:
        if name not in self.environments:
            raise ConfigError(f"Environment '{name}' not found")
        log.info("Setting current environment to: %s", name)
        self.current_environment = name
        self.save()

    def list_environments(self) -> list[str]:
        return list(self.environments)

    def remove_environment(self, name: str) -> None:
        if name not in self.environments:
            raise ConfigError(f"Environment '{name}' not found")
        log.info("Removing environment: %s", name)
        del self.environments[name]
        if self.current_environment == name:
            log.warning("Removed current environment, clearing current selection")
            self.current_environment = None
        self.save()

    # --- entity mappings ---------------------------------------------------

    def add_entity_mapping(self, entity_name: str, plural_name: str) -> None:
        log.info("Adding entity mapping: %s -> %s", entity_name, plural_name)
        self.entity_mappings[entity_name] = plural_name
        self.save()

    def get_entity_mapping(self, entity_name: str) -> str | None:
        return self.entity_mappings.get(entity_name)

    def remove_entity_mapping(self, entity_name: str) -> None:
        if self.entity_mappings.pop(entity_name, None) is None:
            raise ConfigError(f"Entity mapping '{entity_name}' not found")
        log.info("Removed entity mapping: %s", entity_name)
        self.save()

    # --- settings ----------------------------------------------------------

    def update_default_query_limit(self, limit: int) -> None:
        self.settings.default_query_limit = _check_limit(limit)
        log.info("Updating default query limit to: %d", limit)
        self.save()

    def add_field_mapping(
        self, source_entity: str, target_entity: str, source_field: str, target_field: str
    ) -> None:
        key = mapping_key(source_entity, target_entity)
        log.info("Adding field mapping for %s: %s -> %s", key, source_field, target_field)
        self.settings.field_mappings.setdefault(key, {})[source_field] = target_field
        self.save()

    def get_field_mappings(self, source_entity: str, target_entity: str) -> dict[str, str] | None:
        return self.settings.field_mappings.get(mapping_key(source_entity, target_entity))

    def remove_field_mapping(self, source_entity: str, target_entity: str, source_field: str) -> None:
        self._remove_mapping(
            self.settings.field_mappings, "field", source_entity, target_entity, source_field
        )

    def add_prefix_mapping(
        self, source_entity: str, target_entity: str, source_prefix: str, target_prefix: str
    ) -> None:
        key = mapping_key(source_entity, target_entity)
        log.info("Adding prefix mapping for %s: %s -> %s", key, source_prefix, target_prefix)
        self.settings.prefix_mappings.setdefault(key, {})[source_prefix] = target_prefix
        self.save()

    def get_prefix_mappings(self, source_entity: str, target_entity: str) -> dict[str, str] | None:
        return self.settings.prefix_mappings.get(mapping_key(source_entity, target_entity))

    def remove_prefix_mapping(self, source_entity: str, target_entity: str, source_prefix: str) -> None:
        self._remove_mapping(
            self.settings.prefix_mappings, "prefix", source_entity, target_entity, source_prefix
        )

    def _remove_mapping(
        self,
        table: dict[str, dict[str, str]],
        kind: str,
        source_entity: str,
        target_entity: str,
        name: str,
    ) -> None:
        key = mapping_key(source_entity, target_entity)
        entries = table.get(key)
        if entries is None:
            raise ConfigError(f"No {kind} mappings found for entity comparison '{key}'")
        if name not in entries:
            raise ConfigError(
                f"{kind.capitalize()} mapping '{name}' not found for entity comparison '{key}'"
            )
        del entries[name]
        log.info("Removed %s mapping for %s: %s", kind, key, name)
        if not entries:
            del table[key]
        self.save()

    # --- migrations --------------------------------------------------------

    def save_migration(self, migration: SavedMigration) -> None:
        log.info("Saving migration: %s", migration.name)
        self.migrations[migration.name] = migration
        self.save()

    def get_migration(self, name: str) -> SavedMigration | None:
        return self.migrations.get(name)

    def list_migrations(self) -> list[SavedMigration]:
        """Migrations, most recently used first, ties broken by name."""
        by_name = sorted(self.migrations.values(), key=lambda m: m.name)
        return sorted(by_name, key=lambda m: m.last_used, reverse=True)

    def remove_migration(self, name: str) -> None:
        if self.migrations.pop(name, None) is None:
            raise ConfigError(f"Migration '{name}' not found")
        log.info("Removed migration: %s", name)
        self.save()

    def _migration(self, name: str) -> SavedMigration:
        try:
            return self.migrations[name]
        except KeyError:
            raise ConfigError(f"Migration '{name}' not found") from None

    def touch_migration(self, name: str) -> None:
        self._migration(name).last_used = _now()
        self.save()

    def add_comparison_to_migration(self, migration_name: str, comparison: SavedComparison) -> None:
        migration = self._migration(migration_name)
        log.info("Adding comparison '%s' to migration '%s'", comparison.name, migration_name)
        migration.comparisons.append(comparison)
        migration.last_used = _now()
        self.save()

    def remove_comparison_from_migration(self, migration_name: str, comparison_name: str) -> None:
        migration = self._migration(migration_name)
        remaining = [c for c in migration.comparisons if c.name != comparison_name]
        if len(remaining) == len(migration.comparisons):
            raise ConfigError(
                f"Comparison '{comparison_name}' not found in migration '{migration_name}'"
            )
        migration.comparisons = remaining
        log.info("Removed comparison '%s' from migration '%s'", comparison_name, migration_name)
        migration.last_used = _now()
        self.save()

    # --- examples ----------------------------------------------------------

    def add_example(self, source_entity: str, target_entity: str, example: ConfigExamplePair) -> None:
        key = mapping_key(source_entity, target_entity)
        log.info("Adding example for %s: %s -> %s", key, example.source_uuid, example.target_uuid)
        self.settings.examples.setdefault(key, []).append(example)
        self.save()

    def get_examples(self, source_entity: str, target_entity: str) -> list[ConfigExamplePair] | None:
        return self.settings.examples.get(mapping_key(source_entity, target_entity))

    def remove_example(self, source_entity: str, target_entity: str, example_id: str) -> None:
        key = mapping_key(source_entity, target_entity)
        examples = self.settings.examples.get(key)
        if examples is None:
            raise ConfigError(f"No examples found for entity comparison '{key}'")
        remaining = [e for e in examples if e.id != example_id]
        if len(remaining) == len(examples):
            raise ConfigError(f"Example '{example_id}' not found for entity comparison '{key}'")
        log.info("Removed example %s for %s", example_id, key)
        if remaining:
            self.settings.examples[key] = remaining
        else:
            del self.settings.examples[key]
        self.save()

    def update_examples(
        self, source_entity: str, target_entity: str, examples: list[ConfigExamplePair]
    ) -> None:
        key = mapping_key(source_entity, target_entity)
        examples = list(examples)
        log.info("Updating %d examples for %s", len(examples), key)
        if examples:
            self.settings.examples[key] = examples
        else:
            self.settings.examples.pop(key, None)
        self.save()

    def clear_examples(self, source_entity: str, target_entity: str) -> None:
        key = mapping_key(source_entity, target_entity)
        if self.settings.examples.pop(key, None) is None:
            raise ConfigError(f"No examples found for entity comparison '{key}'")
        log.info("Cleared all examples for %s", key)
        self.save()