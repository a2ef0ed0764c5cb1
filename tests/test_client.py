import json
import re
from urllib.parse import parse_qs, unquote

import pytest
import responses

from dynacli.client import TOKEN_URL, DynamicsClient, DynamicsError
from dynacli.config import AuthConfig, Config
from dynacli.odata import ODataError

HOST = "https://org.example.com"
API = HOST + "/api/data/v9.2/"
FETCHXML = '<fetch><entity name="account"><attribute name="name"/></entity></fetch>'


def _auth() -> AuthConfig:
    password = "password"
    return AuthConfig(
        host=HOST,
        username="user@example.com",
        password=password,
        client_id="client-id",
        client_secret="secret",
    )


@pytest.fixture
def config(tmp_path):
    return Config(path=tmp_path / "config.toml")


@pytest.fixture
def client(config):
    return DynamicsClient(_auth(), config=config, prompt=lambda message, default: "")


@pytest.fixture
def mocked():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


def _token_ok(mocked):
    mocked.add(responses.POST, TOKEN_URL, json={"access_token": "token"})


def test_authenticate_sends_password_grant(mocked, client):
    _token_ok(mocked)
    assert client.access_token() == "token"
    body = parse_qs(mocked.calls[0].request.body)
    assert body["grant_type"] == ["password"]
    assert body["client_id"] == ["client-id"]
    assert body["username"] == ["user@example.com"]
    assert body["resource"] == [HOST]


def test_access_token_is_cached(mocked, client):
    _token_ok(mocked)
    assert client.access_token() == "token"
    assert client.access_token() == "token"
    assert len(mocked.calls) == 1


def test_authenticate_without_token_fails(mocked, client):
    mocked.add(responses.POST, TOKEN_URL, json={"other": 1})
    with pytest.raises(DynamicsError, match="No access token in response"):
        client.authenticate()


def test_authenticate_error_status(mocked, client):
    mocked.add(responses.POST, TOKEN_URL, body="bad credentials", status=401)
    with pytest.raises(DynamicsError, match="Authentication failed: bad credentials"):
        client.authenticate()


def test_pluralize_prefers_config_mapping(config, client):
    config.add_entity_mapping("account", "customaccounts")
    assert client.pluralize_entity_name("account") == "customaccounts"


def test_pluralize_builtin(client):
    assert client.pluralize_entity_name("opportunity") == "opportunities"
    assert client.pluralize_entity_name_silent("fax") == "faxes"


def test_pluralize_silent_adds_s(config, client):
    assert client.pluralize_entity_name_silent("widget") == "widgets"
    assert config.get_entity_mapping("widget") is None


def test_pluralize_prompts_and_saves(config, capsys):
    seen = []

    def prompt(message, default):
        seen.append(default)
        return "  widgetries "

    client = DynamicsClient(_auth(), config=config, prompt=prompt)
    assert client.pluralize_entity_name("widget") == "widgetries"
    assert seen == ["widgets"]
    assert Config.load(config.path).get_entity_mapping("widget") == "widgetries"
    assert "Saved mapping: widget -> widgetries" in capsys.readouterr().out


def test_pluralize_empty_answer_uses_suggestion(config, client):
    assert client.pluralize_entity_name("gadget") == "gadgets"
    assert config.get_entity_mapping("gadget") == "gadgets"


def test_execute_fetchxml_builds_url_and_headers(mocked, client):
    _token_ok(mocked)
    mocked.add(responses.GET, re.compile(re.escape(API + "accounts") + ".*"), json={"value": []})
    assert client.execute_fetchxml(FETCHXML) == {"value": []}
    request = mocked.calls[1].request
    assert request.url.startswith(API + "accounts?fetchXml=")
    assert unquote(request.url.split("fetchXml=", 1)[1]) == FETCHXML
    assert request.headers["Authorization"] == "Bearer token"
    assert request.headers["OData-Version"] == "4.0"


def test_execute_fetchxml_failure(mocked, client):
    _token_ok(mocked)
    mocked.add(responses.GET, re.compile(re.escape(API) + ".*"), body="boom", status=500)
    with pytest.raises(DynamicsError, match="Query execution failed: boom"):
        client.execute_fetchxml(FETCHXML)


def test_query_json_round_trip(mocked, client):
    _token_ok(mocked)
    payload = {"value": [{"name": "Contoso"}]}
    mocked.add(responses.GET, re.compile(re.escape(API) + ".*"), json=payload)
    assert json.loads(client.query(FETCHXML, "json", False)) == payload


def test_query_unsupported_format(mocked, client):
    _token_ok(mocked)
    mocked.add(responses.GET, re.compile(re.escape(API) + ".*"), json={"value": []})
    with pytest.raises(ODataError, match="Unsupported format: csv"):
        client.query(FETCHXML, "csv", False)


def test_fetch_metadata(mocked, client):
    _token_ok(mocked)
    mocked.add(responses.GET, API + "$metadata", body="<edmx/>")
    assert client.fetch_metadata() == "<edmx/>"
    assert mocked.calls[1].request.headers["Accept"] == "application/xml"


def test_fetch_views_filters_and_skips_incomplete(mocked, client):
    _token_ok(mocked)
    records = {
        "value": [
            {"name": "Active", "returnedtypecode": "account", "querytype": 0,
             "iscustom": True, "fetchxml": FETCHXML},
            {"name": "Broken", "returnedtypecode": "account", "querytype": 0},
        ]
    }
    mocked.add(responses.GET, re.compile(re.escape(API + "savedqueries") + ".*"), json=records)
    views = client.fetch_views("account")
    assert [v.name for v in views] == ["Active"]
    assert views[0].view_type == "Public"
    assert [c.name for c in views[0].columns] == ["name"]
    assert "returnedtypecode eq 'account'" in unquote(mocked.calls[1].request.url)


def test_fetch_forms(mocked, client):
    _token_ok(mocked)
    form_xml = (
        '<form><tabs><tab name="general"><columns><column><sections>'
        '<section name="s1"><rows><row><cell>'
        '<control datafieldname="name"/></cell></row></rows></section>'
        "</sections></column></columns></tab></tabs></form>"
    )
    records = {
        "value": [
            {"name": "Information", "objecttypecode": "account", "type": 2,
             "iscustomizable": {"Value": True}, "formactivationstate": 1, "formxml": form_xml},
        ]
    }
    mocked.add(responses.GET, re.compile(re.escape(API + "systemforms") + ".*"), json=records)
    forms = client.fetch_forms(None)
    assert len(forms) == 1
    assert forms[0].form_type == "Main"
    assert forms[0].is_custom is True
    tab = forms[0].form_structure.tabs[0]
    assert tab.sections[0].fields[0].logical_name == "name"


def test_fetch_record_by_id(mocked, client):
    _token_ok(mocked)
    mocked.add(responses.GET, API + "contacts(abc)", json={"contactid": "abc"})
    assert client.fetch_record_by_id("contact", "abc") == {"contactid": "abc"}


def test_fetch_record_error_reports_status(mocked, client):
    _token_ok(mocked)
    mocked.add(responses.GET, API + "widgets(abc)", body="missing", status=404)
    with pytest.raises(DynamicsError, match=r"Failed to fetch record abc: HTTP 404.*missing"):
        client.fetch_record_by_id_silent("widget", "abc")


def test_fetch_example_record_requests_annotations(mocked, client):
    _token_ok(mocked)
    mocked.add(responses.GET, API + "accounts(abc)", json={"accountid": "abc"})
    assert client.fetch_example_record_by_id("account", "abc") == {"accountid": "abc"}
    assert mocked.calls[1].request.headers["Prefer"] == 'odata.include-annotations="*"'