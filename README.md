# dynacli

Tools for working with Microsoft Dynamics 365 from Python and the command
line:

- `dynacli.config` – a TOML configuration holding environments (credentials),
  entity plural mappings, settings, per-comparison field and prefix mappings,
  example record pairs and saved migrations. Every change made through a
  `Config` method is saved to disk at once.
- `dynacli.client` – `DynamicsClient`, which authenticates with the password
  grant and runs FetchXML queries, fetches the `$metadata` document, saved
  views, system forms and single records.
- `dynacli.metadata` – parsers for EDMX metadata, FetchXML and FormXML.
- `dynacli.odata` – helpers for Web API URLs, well-known entity plurals, and
  formatting query results.
- `dynacli.settings` – the `dynacli-settings` command.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Settings command

```
dynacli-settings show
dynacli-settings get default-query-limit
dynacli-settings set default-query-limit 500
dynacli-settings reset default-query-limit
dynacli-settings reset-all
dynacli-settings reset-all --force
dynacli-settings list-mappings
```

`--config PATH` (given before the sub-command) uses another config file.

The only setting is `default-query-limit` (default 100). `set` accepts a
whole number greater than 0; above 50000 it prints a warning but still
saves the value. `reset-all` asks for confirmation unless `--force` is
given. `list-mappings` prints every stored field mapping grouped by entity
comparison (`source_entity:target_entity`), with totals. Errors are printed
to standard error and the command exits with status 1.

The configuration file is `config.toml`. On Linux it lives in the user
configuration directory under `dynamics-cli`; elsewhere in
`~/.dynamics-cli`. The directory is created when first needed.

## Using the library

```python
from dynacli.config import Config
from dynacli.client import DynamicsClient

config = Config.load()
client = DynamicsClient(config.current_auth(), config)
print(client.query("<fetch><entity name='account'/></fetch>", "table", False))
```

Query output formats are `json`, `xml` (the FetchXML followed by the JSON
result) and `table`. For an entity whose plural is neither mapped in the
configuration nor one of the built-in names, `query`, `execute_fetchxml`
and `fetch_record_by_id` ask for the plural on the console and save the
answer; the `_silent` and example-record methods add an `s` instead. A
`session` and a `prompt` callable can be passed to `DynamicsClient` in
place of the defaults.

The parsers work on plain strings:

```python
from dynacli.metadata import parse_entity_fields, parse_view_columns

fields = parse_entity_fields(metadata_xml, "account")
columns = parse_view_columns(fetch_xml)
```

`parse_view_structure` and `parse_form_structure` take a `ViewInfo` or
`FormInfo` and return its columns, filters and sort orders, or its tabs,
sections and fields.

Errors are raised as `ConfigError`, `MetadataError`, `ODataError`,
`DynamicsError` and `SettingsError` from their respective modules.

## What is not included

`dynacli-settings` is the only command. Environments, entity mappings,
migrations, comparisons and examples can be managed only through the
`Config` class in Python. There is no query language that compiles to
FetchXML (queries are given as FetchXML), no interactive screen for
comparing entities between environments, and no spreadsheet export.