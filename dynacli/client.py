"""HTTP client for the Dynamics 365 Web API."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any
from urllib.parse import quote

import requests

from dynacli.config import AuthConfig, Config
from dynacli.metadata import FormInfo, ViewInfo
from dynacli.odata import (
    api_base,
    builtin_plural,
    fetchxml_entity_name,
    form_from_json,
    format_result,
    view_from_json,
)

log = logging.getLogger(__name__)

TOKEN_URL = "https://login.windows.net/common/oauth2/token"

_VIEW_SELECT = "$select=name,returnedtypecode,querytype,iscustom,fetchxml"
_FORM_FILTER = "formactivationstate eq 1 and (type eq 2 or type eq 7 or type eq 8)"
_FORM_SELECT = "$select=name,objecttypecode,type,iscustomizable,formactivationstate,formxml"

Prompt = Callable[[str, str], str]


class DynamicsError(Exception):
    """Raised when authentication or a Web API request fails."""


def _console_prompt(message: str, default: str) -> str:
    answer = input(f"{message} [{default}]: ")
    return answer if answer.strip() else default


def _json(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise DynamicsError(f"Invalid JSON in response: {exc}") from exc


def _status(response: requests.Response) -> str:
    return f"{response.status_code} {response.reason or ''}".rstrip()


class DynamicsClient:
    """Talks to one Dynamics environment, authenticating on first use."""

    def __init__(
        self,
        auth_config: AuthConfig,
        config: Config | None = None,
        session: requests.Session | None = None,
        prompt: Prompt | None = None,
    ) -> None:
        self.auth_config = auth_config
        self._config = config
        self._session = session if session is not None else requests.Session()
        self._prompt = prompt if prompt is not None else _console_prompt
        self._token: str | None = None

    # --- authentication ----------------------------------------------------

    def access_token(self) -> str:
        """The access token, requesting one if none is held yet."""
        if self._token is None:
            self.authenticate()
        assert self._token is not None
        return self._token

    def authenticate(self) -> None:
        """Obtain an access token with the password grant."""
        log.info("Authenticating with Dynamics 365...")
        log.debug("Host: %s, Client ID: %s", self.auth_config.host, self.auth_config.client_id)
        form = {
            "grant_type": "password",
            "client_id": self.auth_config.client_id,
            "client_secret": self.auth_config.client_secret,
            "username": self.auth_config.username,
            "password": self.auth_config.password,
            "resource": self.auth_config.host,
        }
        try:
            response = self._session.post(TOKEN_URL, data=form)
        except requests.RequestException as exc:
            raise DynamicsError(f"Authentication request failed: {exc}") from exc
        log.debug("Token request status: %s", response.status_code)

        if not response.ok:
            raise DynamicsError(f"Authentication failed: {response.text or 'Unknown error'}")
        data = _json(response)
        token = data.get("access_token") if isinstance(data, dict) else None
        if not isinstance(token, str):
            raise DynamicsError("Authentication failed: No access token in response")
        self._token = token
        log.debug("Access token obtained successfully")

    # --- entity names ------------------------------------------------------

    def _load_config(self) -> Config:
        return self._config if self._config is not None else Config.load()

    def _known_plural(self, entity_name: str) -> str | None:
        custom = self._load_config().get_entity_mapping(entity_name)
        if custom is not None:
            log.debug("Found custom mapping: %s -> %s", entity_name, custom)
            return custom
        builtin = builtin_plural(entity_name)
        if builtin is not None:
            log.debug("Found built-in mapping: %s -> %s", entity_name, builtin)
        return builtin

    def pluralize_entity_name(self, entity_name: str) -> str:
        """Collection name of an entity, asking the user if it is unknown."""
        known = self._known_plural(entity_name)
        if known is not None:
            return known
        return self._prompt_for_entity_mapping(entity_name)

    def pluralize_entity_name_silent(self, entity_name: str) -> str:
        """Collection name of an entity, guessing by adding 's' if it is unknown."""
        known = self._known_plural(entity_name)
        if known is not None:
            return known
        plural = f"{entity_name}s"
        log.debug("Using default pluralization for unknown entity: %s -> %s", entity_name, plural)
        return plural

    def _prompt_for_entity_mapping(self, entity_name: str) -> str:
        print(f"\nUnknown entity: '{entity_name}'")
        print("Dynamics 365 Web API requires the plural form of entity names.")
        suggested = f"{entity_name}s"
        print(f"Suggested plural form: '{suggested}'")
        message = f"Enter plural form for '{entity_name}' (or press Enter for '{suggested}')"
        answer = self._prompt(message, suggested).strip()
        plural = answer or suggested

        self._load_config().add_entity_mapping(entity_name, plural)
        print(f"Saved mapping: {entity_name} -> {plural}")
        print("You can manage entity mappings with: dynamics-cli entity")
        return plural

    # --- requests ----------------------------------------------------------

    def _get(
        self, url: str, token: str, accept: str = "application/json", prefer: str | None = None
    ) -> requests.Response:
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": accept,
            "OData-MaxVersion": "4.0",
            "OData-Version": "4.0",
        }
        if prefer is not None:
            headers["Prefer"] = prefer
        try:
            return self._session.get(url, headers=headers)
        except requests.RequestException as exc:
            raise DynamicsError(f"Request to {url} failed: {exc}") from exc

    def execute_fetchxml(self, fetchxml: str) -> Any:
        """Run a FetchXML query and return the decoded JSON response."""
        token = self.access_token()
        entity = self.pluralize_entity_name(fetchxml_entity_name(fetchxml))
        query_url = api_base(self.auth_config.host) + entity
        log.info("Executing FetchXML query against: %s", query_url)
        log.debug("FetchXML: %s", fetchxml)

        response = self._get(f"{query_url}?fetchXml={quote(fetchxml, safe='')}", token)
        log.debug("Query response status: %s", response.status_code)
        if not response.ok:
            raise DynamicsError(f"Query execution failed: {response.text}")
        return _json(response)

    def query(self, fetchxml: str, output_format: str, pretty: bool) -> str:
        """Run a FetchXML query and format the result as json, xml or table."""
        result = self.execute_fetchxml(fetchxml)
        return format_result(result, fetchxml, output_format, pretty)

    def fetch_metadata(self) -> str:
        """The EDMX metadata document of the environment."""
        token = self.access_token()
        url = api_base(self.auth_config.host) + "$metadata"
        log.info("Fetching metadata from: %s", url)
        response = self._get(url, token, accept="application/xml")
        log.debug("Metadata response status: %s", response.status_code)
        if not response.ok:
            raise DynamicsError(f"Metadata fetch failed: {response.text}")
        return response.text

    def fetch_views(self, entity_name: str | None = None) -> list[ViewInfo]:
        """Saved views, optionally only those of one entity."""
        token = self.access_token()
        url = api_base(self.auth_config.host) + "savedqueries"
        if entity_name is not None:
            url += f"?$filter=returnedtypecode eq '{entity_name}'&{_VIEW_SELECT}"
        else:
            url += f"?{_VIEW_SELECT}"
        url += "&$orderby=returnedtypecode,name"
        log.info("Fetching views from: %s", url)

        response = self._get(url, token)
        log.debug("Views response status: %s", response.status_code)
        if not response.ok:
            raise DynamicsError(f"Views fetch failed: {response.text}")
        data = _json(response)
        records = data.get("value") if isinstance(data, dict) else None
        views = [
            view
            for view in map(view_from_json, records if isinstance(records, list) else [])
            if view is not None
        ]
        log.debug("Parsed %d views", len(views))
        return views

    def fetch_forms(self, entity_name: str | None = None) -> list[FormInfo]:
        """Active main, quick-create and quick-view forms, optionally of one entity."""
        token = self.access_token()
        url = api_base(self.auth_config.host) + "systemforms"
        if entity_name is not None:
            url += f"?$filter=objecttypecode eq '{entity_name}' and {_FORM_FILTER}&{_FORM_SELECT}"
        else:
            url += f"?$filter={_FORM_FILTER}&{_FORM_SELECT}"
        url += "&$orderby=type,name"
        log.info("Fetching forms from: %s", url)

        response = self._get(url, token)
        log.debug("Forms response status: %s", response.status_code)
        if not response.ok:
            raise DynamicsError(f"Forms fetch failed: {response.text}")
        try:
            data = json.loads(response.text)
        except ValueError as exc:
            raise DynamicsError(f"Invalid JSON in response: {exc}") from exc
        records = data.get("value") if isinstance(data, dict) else None
        forms = [
            form
            for form in map(form_from_json, records if isinstance(records, list) else [])
            if form is not None
        ]
        log.debug("Parsed %d forms", len(forms))
        return forms

    def _fetch_record(
        self, plural: str, record_id: str, token: str, what: str, prefer: str | None = None
    ) -> Any:
        url = f"{api_base(self.auth_config.host)}{plural}({record_id})"
        log.info("Fetching %s from: %s", what, url)
        response = self._get(url, token, prefer=prefer)
        if not response.ok:
            raise DynamicsError(
                f"Failed to fetch {what} {record_id}: HTTP {_status(response)} - {response.text}"
            )
        return _json(response)

    def fetch_record_by_id(self, entity_name: str, record_id: str) -> Any:
        """One record by id, asking for the entity's plural if unknown."""
        token = self.access_token()
        plural = self.pluralize_entity_name(entity_name)
        return self._fetch_record(plural, record_id, token, "record")

    def fetch_record_by_id_silent(self, entity_name: str, record_id: str) -> Any:
        """One record by id, without ever prompting."""
        token = self.access_token()
        plural = self.pluralize_entity_name_silent(entity_name)
        return self._fetch_record(plural, record_id, token, "record")

    def fetch_example_record_by_id(self, entity_name: str, record_id: str) -> Any:
        """One record by id including formatted-value annotations."""
        token = self.access_token()
        plural = self.pluralize_entity_name_silent(entity_name)
        return self._fetch_record(
            plural, record_id, token, "example record", prefer='odata.include-annotations="*"'
        )