# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "httpx",
#   "tqdm",
#   "humanize"
# ]
# ///

"""
Saves Directus collections as local JSON files, with optional asset downloads and
filtered schema backup/restore.

Every setting can come from (highest priority first):
  1. a CLI flag, or a keyword argument when called as a library
  2. the JSON config file (default `.directus.json`; camelCase keys like `cmsUrl`)
  3. an environment variable (like `CMS_URL`)
  4. a built-in default

Usage:
  uv run ./directus_to_data.py --cms-url https://cms.example.com --static-token abc --collection Posts Authors
  uv run ./directus_to_data.py -c 'Posts:id,title' --output 'data/{{collectionName}}.json'
  uv run ./directus_to_data.py -c Posts --backup-schema schema.json
  uv run ./directus_to_data.py -c Posts --restore-schema schema.json --apply-schema

Args:
  --cms-url, --static-token, --collection-name (one or many; `name:field1,field2` selects fields)
  --collection-output (`{{collectionName}}` placeholder; `none` disables writing)
  --assets-output (`{{filename}}` placeholder; `none` disables downloads)
  --encoding, --prettify, --config-filename
  --backup-schema, --restore-schema, --apply-schema, --force-schema
"""

import argparse
import asyncio
import inspect
import json
import logging
import os
import sys
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

import httpx
import humanize
from tqdm.asyncio import tqdm_asyncio

## setup logging ----------------------------------------------------
log_level_name: str = os.getenv('LOG_LEVEL', 'INFO').upper()
log_level = getattr(
    logging, log_level_name, logging.INFO
)  # maps the string name to the corresponding logging level constant; defaults to INFO
logging.basicConfig(
    level=log_level,
    format='[%(asctime)s] %(levelname)s [%(module)s-%(funcName)s()::%(lineno)d] %(message)s',
    datefmt='%d/%b/%Y %H:%M:%S',
)
if log_level <= logging.INFO:
    for noisy in ('httpx', 'httpcore'):  # prevent httpx from logging
        lg = logging.getLogger(noisy)
        lg.setLevel(logging.WARNING)  # or logging.ERROR if you prefer only errors
        lg.propagate = False  # don't bubble up to root
log = logging.getLogger(__name__)

## constants --------------------------------------------------------
VERSION: str = '0.6.0'
COLLECTION_PLACEHOLDER: str = '{{collectionName}}'
FILENAME_PLACEHOLDER: str = '{{filename}}'
DO_NOT_WRITE: str = 'none'  # output-template value that disables writing
DEFAULT_CONFIG_FILENAME: str = '.directus.json'
DEFAULT_COLLECTION_OUTPUT: str = f'{COLLECTION_PLACEHOLDER}.json'
DEFAULT_ASSETS_OUTPUT: str = FILENAME_PLACEHOLDER
DEFAULT_ENCODING: str = 'utf-8'
DEFAULT_PRETTIFY: int = 4
REQUEST_STAGGER_SECONDS: float = 0.1  # each request starts this much later than the previous one
SCHEMA_CATEGORIES: tuple[str, ...] = ('collections', 'fields', 'relations')
SCHEMA_METADATA_KEYS: tuple[str, ...] = ('version', 'directus', 'vendor')
TRUTHY_STRINGS: frozenset[str] = frozenset({'1', 'true', 'yes', 'on'})
COMPACT_SEPARATORS: tuple[str, str] = (',', ':')

## setting -> config-file key, and setting -> env var
CONFIG_KEYS: dict[str, str] = {
    'cms_url': 'cmsUrl',
    'static_token': 'staticToken',
    'collection_name': 'collectionName',
    'collection_output': 'collectionOutput',
    'assets_output': 'assetsOutput',
    'encoding': 'encoding',
    'prettify': 'prettify',
    'backup_schema': 'backupSchema',
    'restore_schema': 'restoreSchema',
    'apply_schema': 'applySchema',
    'force_schema': 'forceSchema',
}
ENV_VARS: dict[str, str] = {
    'cms_url': 'CMS_URL',
    'static_token': 'STATIC_TOKEN',
    'collection_name': 'COLLECTION_NAME',
    'collection_output': 'OUTPUT_FILENAME',
    'assets_output': 'ASSETS_OUTPUT',
    'encoding': 'ENCODING',
    'prettify': 'PRETTIFY',
    'config_filename': 'CONFIG_FILENAME',
    'backup_schema': 'BACKUP_SCHEMA',
    'restore_schema': 'RESTORE_SCHEMA',
    'apply_schema': 'APPLY_SCHEMA',
    'force_schema': 'FORCE_SCHEMA',
}

T = TypeVar('T')


## errors -----------------------------------------------------------
class DirectusToDataError(Exception):
    """Base class for every error this tool raises on purpose."""


class ConfigParseError(DirectusToDataError):
    """The config file exists but is not a JSON object."""


class MissingCollectionError(DirectusToDataError):
    """No collection name was resolved from any source."""


class RequestError(DirectusToDataError):
    """A remote call failed on its first attempt and on its retry."""

    reason: str = 'request failed after retry'

    def __init__(self, label: str) -> None:
        super().__init__(f'{self.reason}: {label}')
        self.label: str = label


class EmptyResultError(RequestError):
    """A remote call that must return data returned nothing, twice."""

    reason = 'request returned no data'


class FileWriteError(DirectusToDataError):
    """A local output file could not be written."""

    def __init__(self, path: Path, cause: Exception) -> None:
        super().__init__(f'could not write ``{path}``: {cause}')
        self.path: Path = path


class SchemaApplyMisuseError(DirectusToDataError):
    """`apply_schema` was requested without `restore_schema`."""


## data model -------------------------------------------------------
@dataclass(frozen=True)
class CollectionSelector:
    """
    A collection identifier plus an optional comma-separated field selection.
    - Parsed from raw names like `Posts` or `Posts:id,title`.
    - Only `collection` is used for output paths and schema filtering.
    - `fields` goes to the item-read call as its `fields` query parameter.
    """

    collection: str
    fields: str | None = None

    @classmethod
    def parse(cls, raw_name: str) -> 'CollectionSelector':
        collection, _sep, fields = str(raw_name).partition(':')
        return cls(collection=collection, fields=fields or None)


@dataclass(frozen=True)
class AssetReference:
    asset_id: str
    filename: str


@dataclass(frozen=True)
class Settings:
    """
    The resolved configuration for one run; built once by SettingsResolver.
    """

    cms_url: str
    static_token: str
    collections: tuple[CollectionSelector, ...]
    collection_output: str = DEFAULT_COLLECTION_OUTPUT
    assets_output: str = DEFAULT_ASSETS_OUTPUT
    encoding: str = DEFAULT_ENCODING
    prettify: int = DEFAULT_PRETTIFY
    backup_schema: str | None = None
    restore_schema: str | None = None
    apply_schema: bool = False
    force_schema: bool = False
    config_filename: str = DEFAULT_CONFIG_FILENAME

    @property
    def collection_names(self) -> list[str]:
        return [selector.collection for selector in self.collections]


@dataclass
class ExportReport:
    """
    Summarizes one run; returned by `directus_to_data()`.
    - `exported` lists collections whose items were fetched, in completion order.
    - `failed` maps collection identifiers to the error that stopped them.
    - `write_errors` collects file-write and asset-download failures that did not stop a collection.
    """

    mode: str = 'export'
    exported: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    write_errors: list[str] = field(default_factory=list)
    assets_written: int = 0
    asset_bytes: int = 0
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.failed and not self.write_errors

    def summary_lines(self) -> list[str]:
        took: str = humanize.naturaldelta(self.elapsed_seconds)
        if self.mode != 'export':
            return [f'Done. Schema {self.mode} finished in {took}.'] + [
                f'Write error: {err}' for err in self.write_errors
            ]
        lines: list[str] = [
            f'Done. Exported {len(self.exported)} collection(s) in {took}.',
            f'Assets written: {self.assets_written} ({humanize.naturalsize(self.asset_bytes)})',
        ]
        for name, err in self.failed.items():
            lines.append(f'Failed collection {name}: {err}')
        for err in self.write_errors:
            lines.append(f'Write error: {err}')
        return lines


## collection names -------------------------------------------------
def normalize_collection_names(value: object) -> list[CollectionSelector]:
    """
    Turns a collection-name setting into ordered selectors.

    Accepts a list/tuple of names, a JSON string holding an array of names, or a plain name.
    Order is kept and duplicates are not removed.
    """
    names: list[object]
    if isinstance(value, (list, tuple)):
        names = list(value)
    else:
        raw: str = str(value)
        try:
            parsed: object = json.loads(raw)
        except ValueError:
            parsed = None
        names = parsed if isinstance(parsed, list) else [raw]
    return [CollectionSelector.parse(str(name)) for name in names]


## settings resolution ----------------------------------------------
def _is_set(value: object) -> bool:
    """
    Returns True for values that count as "set"; None, '', [] and False do not.
    """
    if value is None or value is False:
        return False
    if isinstance(value, (str, list, tuple, dict)) and not value:
        return False
    return True


def _first_set(*values: object, default: Any = None) -> Any:
    for value in values:
        if _is_set(value):
            return value
    return default


def _env_flag(raw: str | None) -> bool:
    return bool(raw) and raw.strip().lower() in TRUTHY_STRINGS


def _coerce_prettify(value: object) -> bool | int | None:
    """
    Interprets one prettify source; None means "not set here, keep looking".
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return None if value == -1 else value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        text: str = value.strip().lower()
        if not text:
            return None
        if text in ('true', 'false'):
            return text == 'true'
        try:
            number: int = int(text)
        except ValueError:
            return True  # any other non-empty text is truthy
        return None if number == -1 else number
    return bool(value)


def resolve_prettify(*sources: object) -> int:
    """
    Resolves the JSON indent width from sources given in priority order.

    `True` (and any non-numeric text) means the default width, `False` and `0` mean compact output,
    other numbers are used as-is. If no source is set the default width applies.
    """
    chosen: bool | int = True
    for source in sources:
        coerced: bool | int | None = _coerce_prettify(source)
        if coerced is not None:
            chosen = coerced
            break
    if isinstance(chosen, bool):
        return DEFAULT_PRETTIFY if chosen else 0
    return chosen


class SettingsResolver:
    """
    Builds a Settings record from call-time parameters, the JSON config file, and the environment.
    - Determines the config-file path from parameter, then `CONFIG_FILENAME`, then `.directus.json`.
    - Reads the config file at most once per `resolve()` call.
    - Resolves each field independently; the first set value wins.
    - Normalizes the collection-name union into selectors before returning.
    """

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self.environ: Mapping[str, str] = os.environ if environ is None else environ

    def env(self, name: str) -> str | None:
        return self.environ.get(ENV_VARS[name]) or None

    def load_config_file(self, path: Path, encoding: str) -> dict[str, object]:
        """
        Returns the parsed config file, or {} when it doesn't exist.
        """
        if not path.is_file():
            log.debug(f'no config file at ``{path}``')
            return {}
        text: str = path.read_text(encoding=encoding)
        try:
            data: object = json.loads(text)
        except ValueError as exc:
            raise ConfigParseError(f'config file ``{path}`` is not valid JSON: {exc}') from exc
        if not isinstance(data, dict):
            raise ConfigParseError(f'config file ``{path}`` must hold a JSON object')
        log.debug(f'loaded config file ``{path}`` with keys ``{sorted(data)}``')
        return data

    def resolve(
        self,
        *,
        cms_url: str = '',
        static_token: str = '',
        collection_name: object = None,
        collection_output: str = '',
        assets_output: str = '',
        config_filename: str = '',
        encoding: str = '',
        prettify: object = None,
        backup_schema: str = '',
        restore_schema: str = '',
        apply_schema: bool = False,
        force_schema: bool = False,
    ) -> Settings:
        ## load config file once ------------------------------------
        config_path: str = _first_set(config_filename, self.env('config_filename'), default=DEFAULT_CONFIG_FILENAME)
        read_encoding: str = _first_set(encoding, self.env('encoding'), default=DEFAULT_ENCODING)
        config: dict[str, object] = self.load_config_file(Path(config_path), read_encoding)

        def pick(name: str, explicit: object, default: Any = None) -> Any:
            return _first_set(explicit, config.get(CONFIG_KEYS[name]), self.env(name), default=default)

        ## collection names -----------------------------------------
        raw_collections: object = pick('collection_name', collection_name)
        if not _is_set(raw_collections):
            raise MissingCollectionError('at least one collection name must be defined')
        selectors: list[CollectionSelector] = [
            selector for selector in normalize_collection_names(raw_collections) if selector.collection
        ]
        if not selectors:
            raise MissingCollectionError('at least one collection name must be defined')

        ## everything else ------------------------------------------
        settings = Settings(
            cms_url=str(pick('cms_url', cms_url, default='')),
            static_token=str(pick('static_token', static_token, default='')),
            collections=tuple(selectors),
            collection_output=str(pick('collection_output', collection_output, default=DEFAULT_COLLECTION_OUTPUT)),
            assets_output=str(pick('assets_output', assets_output, default=DEFAULT_ASSETS_OUTPUT)),
            encoding=str(pick('encoding', encoding, default=DEFAULT_ENCODING)),
            prettify=resolve_prettify(prettify, config.get(CONFIG_KEYS['prettify']), self.env('prettify')),
            backup_schema=pick('backup_schema', backup_schema),
            restore_schema=pick('restore_schema', restore_schema),
            apply_schema=bool(
                _first_set(apply_schema, config.get(CONFIG_KEYS['apply_schema']), _env_flag(self.env('apply_schema')))
            ),
            force_schema=bool(
                _first_set(force_schema, config.get(CONFIG_KEYS['force_schema']), _env_flag(self.env('force_schema')))
            ),
            config_filename=config_path,
        )
        log.debug(f'resolved collections, ``{settings.collection_names}``')
        return settings


## output paths and serialization -----------------------------------
def render_path(template: str, placeholder: str, value: str) -> str:
    """
    Substitutes every occurrence of `placeholder` in `template`; no other templating.
    """
    return template.replace(placeholder, value)


def writing_disabled(template: str) -> bool:
    return template.strip().lower() == DO_NOT_WRITE


def to_json_text(data: object, prettify: int) -> str:
    if prettify:
        return json.dumps(data, ensure_ascii=False, indent=prettify)
    return json.dumps(data, ensure_ascii=False, separators=COMPACT_SEPARATORS)


def write_text(path: Path, text: str, encoding: str) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding=encoding)
    except (OSError, LookupError, UnicodeError) as exc:
        raise FileWriteError(path, exc) from exc


def write_bytes(path: Path, content: bytes) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    except OSError as exc:
        raise FileWriteError(path, exc) from exc


## asset discovery --------------------------------------------------
def find_asset_references(data: object) -> list[AssetReference]:
    """
    Walks fetched item data depth-first and returns every file object found, in encounter order.

    A file object is any mapping that has both an `id` and a `filename_download` key.
    Only mapping values that are themselves mappings are descended into; the one list walked is
    the top-level items list, so files inside nested lists (many-to-many relations) are not found.
    """
    found: list[AssetReference] = []
    visited: set[int] = set()

    def walk(node: dict) -> None:
        if id(node) in visited:
            return
        visited.add(id(node))
        if 'id' in node and 'filename_download' in node:
            found.append(AssetReference(asset_id=str(node['id']), filename=str(node['filename_download'])))
        for value in node.values():
            if isinstance(value, dict):
                walk(value)

    top_level: list = data if isinstance(data, list) else [data]
    for item in top_level:
        if isinstance(item, dict):
            walk(item)
    return found


## http -------------------------------------------------------------
class RequestDispatcher:
    """
    Runs remote calls with a growing stagger and exactly one retry.
    - Owns the stagger counter; the n-th attempt waits `n * stagger_seconds` before starting.
    - Retries once on an exception, or on an empty result when one is required.
    - Raises RequestError (or EmptyResultError) when the retry fails too.
    - Logs every failure and every successful retry with the caller's label.
    """

    def __init__(self, stagger_seconds: float = REQUEST_STAGGER_SECONDS) -> None:
        self.stagger_seconds: float = max(0.0, stagger_seconds)
        self.call_count: int = 0

    def next_delay(self) -> float:
        delay: float = self.call_count * self.stagger_seconds
        self.call_count += 1
        return delay

    async def _attempt(self, request: Callable[[], Awaitable[T]], label: str, require_result: bool) -> T:
        delay: float = self.next_delay()
        if delay:
            await asyncio.sleep(delay)
        result: T = await request()
        if require_result and not result:
            raise EmptyResultError(label)
        return result

    async def execute(
        self, request: Callable[[], Awaitable[T]], label: str, *, require_result: bool = False
    ) -> T:
        try:
            return await self._attempt(request, label, require_result)
        except Exception as exc:
            log.warning(f'{label} failed, ``{exc!r}``; retrying once')
        try:
            result: T = await self._attempt(request, label, require_result)
        except EmptyResultError:
            log.error(f'{label} returned no data on retry')
            raise
        except Exception as exc:
            log.error(f'{label} failed on retry, ``{exc!r}``')
            raise RequestError(label) from exc
        log.info(f'{label} succeeded on retry')
        return result


def build_async_client(cms_url: str, static_token: str) -> httpx.AsyncClient:
    """
    Creates the AsyncClient used for every Directus call: base url, bearer token, timeouts, limits.
    """
    headers: dict[str, str] = {'user-agent': f'directus-to-data/{VERSION}'}
    if static_token:
        headers['authorization'] = f'Bearer {static_token}'
    timeout: httpx.Timeout = httpx.Timeout(connect=30.0, read=60.0, write=60.0, pool=30.0)
    limits: httpx.Limits = httpx.Limits(max_keepalive_connections=10, max_connections=10)
    return httpx.AsyncClient(
        base_url=cms_url.rstrip('/'), headers=headers, timeout=timeout, limits=limits, follow_redirects=True
    )


class DirectusClient:
    """
    Encapsulates the handful of Directus REST endpoints this tool uses.
    - Unwraps the `{"data": ...}` envelope Directus puts around JSON responses.
    - Raises httpx.HTTPStatusError on 4xx/5xx so the dispatcher can retry.
    - Returns None for 204 responses (schema diff with no differences, schema apply).
    """

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client: httpx.AsyncClient = client

    @classmethod
    def connect(cls, cms_url: str, static_token: str) -> 'DirectusClient':
        return cls(build_async_client(cms_url, static_token))

    @staticmethod
    def _unwrap(resp: httpx.Response) -> Any:
        resp.raise_for_status()
        if resp.status_code == 204 or not resp.content:
            return None
        payload: object = resp.json()
        if isinstance(payload, dict) and 'data' in payload:
            return payload['data']
        return payload

    async def read_items(self, collection: str, fields: str | None = None) -> Any:
        params: dict[str, str] = {'fields': fields} if fields else {}
        log.debug(f'reading items of ``{collection}`` with params ``{params}``')
        resp: httpx.Response = await self.client.get(f'/items/{collection}', params=params)
        return self._unwrap(resp)

    async def schema_snapshot(self) -> Any:
        resp: httpx.Response = await self.client.get('/schema/snapshot')
        return self._unwrap(resp)

    async def schema_diff(self, snapshot: object, force: bool = False) -> Any:
        params: dict[str, str] = {'force': 'true'} if force else {}
        resp: httpx.Response = await self.client.post('/schema/diff', params=params, json=snapshot)
        return self._unwrap(resp)

    async def schema_apply(self, diff: object) -> Any:
        resp: httpx.Response = await self.client.post('/schema/apply', json=diff)
        return self._unwrap(resp)

    async def read_asset_raw(self, asset_id: str) -> bytes:
        resp: httpx.Response = await self.client.get(f'/assets/{asset_id}')
        resp.raise_for_status()
        return resp.content

    async def aclose(self) -> None:
        await self.client.aclose()


## collection export ------------------------------------------------
class CollectionExporter:
    """
    Fetches every requested collection and persists its items and assets.
    - Runs one task per collection and waits for all of them; one failing doesn't stop the rest.
    - Writes each collection's JSON to its rendered `collection_output` path.
    - Downloads each discovered asset concurrently to its rendered `assets_output` path.
    - Calls the optional callback with each collection's raw data.
    """

    def __init__(
        self,
        settings: Settings,
        api: DirectusClient,
        dispatcher: RequestDispatcher,
        report: ExportReport,
        callback: Callable[[Any], object] | None = None,
    ) -> None:
        self.settings = settings
        self.api = api
        self.dispatcher = dispatcher
        self.report = report
        self.callback = callback

    async def export_all(self) -> None:
        await tqdm_asyncio.gather(
            *(self.export_safely(selector) for selector in self.settings.collections),
            desc='Fetching collections',
            unit='collection',
            disable=None,
        )

    async def export_safely(self, selector: CollectionSelector) -> None:
        try:
            await self.export_collection(selector)
        except Exception as exc:
            log.error(f'collection ``{selector.collection}`` failed, ``{exc}``')
            self.report.failed[selector.collection] = str(exc)

    async def export_collection(self, selector: CollectionSelector) -> Any:
        name: str = selector.collection
        data: Any = await self.dispatcher.execute(
            lambda: self.api.read_items(name, selector.fields), f'read items of `{name}`'
        )
        self.report.exported.append(name)

        ## write collection json ------------------------------------
        if not writing_disabled(self.settings.collection_output):
            output_path = Path(render_path(self.settings.collection_output, COLLECTION_PLACEHOLDER, name))
            try:
                write_text(output_path, to_json_text(data, self.settings.prettify), self.settings.encoding)
                log.info(f'wrote ``{name}`` to ``{output_path}``')
            except FileWriteError as exc:
                log.error(f'collection ``{name}``: {exc}')
                self.report.write_errors.append(str(exc))

        ## download assets ------------------------------------------
        if not writing_disabled(self.settings.assets_output):
            assets: list[AssetReference] = find_asset_references(data)
            log.debug(f'found {len(assets)} asset(s) in ``{name}``')
            await asyncio.gather(*(self.download_asset_safely(asset) for asset in assets))

        ## hand data to caller --------------------------------------
        if self.callback is not None:
            result: object = self.callback(data)
            if inspect.isawaitable(result):
                await result
        return data

    async def download_asset_safely(self, asset: AssetReference) -> None:
        try:
            await self.download_asset(asset)
        except (RequestError, FileWriteError) as exc:
            log.error(f'asset ``{asset.filename}`` ({asset.asset_id}) failed, ``{exc}``')
            self.report.write_errors.append(str(exc))

    async def download_asset(self, asset: AssetReference) -> Path:
        content: bytes = await self.dispatcher.execute(
            lambda: self.api.read_asset_raw(asset.asset_id),
            f'read asset `{asset.asset_id}` ({asset.filename})',
            require_result=True,
        )
        asset_path = Path(render_path(self.settings.assets_output, FILENAME_PLACEHOLDER, asset.filename))
        write_bytes(asset_path, content)
        self.report.assets_written += 1
        self.report.asset_bytes += len(content)
        log.info(f'wrote asset ``{asset_path}`` ({humanize.naturalsize(len(content))})')
        return asset_path


## schema backup / restore ------------------------------------------
def filter_schema(snapshot: Mapping[str, object], collection_names: list[str]) -> dict[str, object]:
    """
    Keeps snapshot metadata and the collection/field/relation entries of the requested collections.
    Any other top-level key is dropped.
    """
    wanted: set[str] = set(collection_names)
    filtered: dict[str, object] = {key: snapshot[key] for key in SCHEMA_METADATA_KEYS if key in snapshot}
    for category in SCHEMA_CATEGORIES:
        entries: list = snapshot.get(category) or []  # type: ignore[assignment]
        filtered[category] = [e for e in entries if isinstance(e, dict) and e.get('collection') in wanted]
    return filtered


def filter_schema_diff(diff_data: Mapping[str, object], collection_names: list[str]) -> dict[str, object]:
    """
    Returns a copy of a schema-diff response with each category limited to the requested collections.
    The `hash` (and anything else beside `diff`) is kept, so the result can be sent to schema-apply.
    """
    diff: Mapping[str, object] = diff_data.get('diff') or {}  # type: ignore[assignment]
    filtered = dict(diff_data)
    filtered['diff'] = filter_schema(diff, collection_names)
    for key in SCHEMA_METADATA_KEYS:
        filtered['diff'].pop(key, None)  # type: ignore[union-attr]
    return filtered


KIND_LABELS: dict[str, str] = {'N': 'NEW', 'E': 'EDIT', 'D': 'DELETE'}
ATTRIBUTE_LABELS: dict[str, str] = {'path': 'path', 'lhs': 'Old value (lhs)', 'rhs': 'New value (rhs)'}


def render_diff_report(filtered_diff: Mapping[str, object]) -> list[str]:
    """
    Renders a filtered schema diff as report lines, like:

    --- Posts ---
    EDIT
    path: ["meta","note"]
    Old value (lhs): null
    New value (rhs): "Blog posts"
    """
    lines: list[str] = []
    diff: Mapping[str, object] = filtered_diff.get('diff') or {}  # type: ignore[assignment]
    for category in SCHEMA_CATEGORIES:
        for entry in diff.get(category) or []:  # type: ignore[union-attr]
            lines.append(f'--- {entry.get("collection")} ---')
            for difference in entry.get('diff') or []:
                kind: object = difference.get('kind')
                lines.append(KIND_LABELS.get(kind, f'Unknown({kind})'))  # type: ignore[arg-type]
                for key, value in difference.items():
                    if key == 'kind':
                        continue
                    shown: str = json.dumps(value, ensure_ascii=False, separators=COMPACT_SEPARATORS)
                    lines.append(f'{ATTRIBUTE_LABELS.get(key, key)}: {shown}')
    return lines


class SchemaManager:
    """
    Backs up, diffs, and applies the Directus schema, limited to the requested collections.
    - Backup writes a filtered snapshot to `backup_schema`.
    - Restore diffs `restore_schema` against the live CMS and prints a readable report.
    - Apply (restore + `apply_schema`) sends the filtered diff back to the CMS.
    """

    def __init__(self, settings: Settings, api: DirectusClient, dispatcher: RequestDispatcher) -> None:
        self.settings = settings
        self.api = api
        self.dispatcher = dispatcher

    async def backup(self) -> Path:
        assert self.settings.backup_schema
        snapshot: Any = await self.dispatcher.execute(self.api.schema_snapshot, 'schema snapshot')
        filtered: dict[str, object] = filter_schema(snapshot or {}, self.settings.collection_names)
        backup_path = Path(self.settings.backup_schema)
        write_text(backup_path, to_json_text(filtered, self.settings.prettify), self.settings.encoding)
        log.info(f'wrote schema of ``{self.settings.collection_names}`` to ``{backup_path}``')
        return backup_path

    async def restore(self) -> dict[str, object] | None:
        assert self.settings.restore_schema
        snapshot_path = Path(self.settings.restore_schema)
        snapshot: object = json.loads(snapshot_path.read_text(encoding=self.settings.encoding))
        diff_data: Any = await self.dispatcher.execute(
            lambda: self.api.schema_diff(snapshot, force=self.settings.force_schema), 'schema diff'
        )
        if not diff_data:
            print('No schema differences found.')
            return None

        ## report ---------------------------------------------------
        filtered: dict[str, object] = filter_schema_diff(diff_data, self.settings.collection_names)
        for line in render_diff_report(filtered):
            print(line)

        ## apply ----------------------------------------------------
        if self.settings.apply_schema:
            print('Applying schema...')
            result: Any = await self.dispatcher.execute(lambda: self.api.schema_apply(filtered), 'schema apply')
            log.info(f'schema apply result, ``{result}``')
        return filtered


## entry points -----------------------------------------------------
async def directus_to_data(
    *,
    callback: Callable[[Any], object] | None = None,
    client: DirectusClient | None = None,
    environ: Mapping[str, str] | None = None,
    stagger_seconds: float = REQUEST_STAGGER_SECONDS,
    **params: Any,
) -> ExportReport | None:
    """
    Saves the requested collections (or backs up / restores their schema) and returns a report.

    `params` are the Settings fields as keyword arguments (`cms_url`, `collection_name`, `prettify`, etc).
    `client` replaces the DirectusClient built from `cms_url`/`static_token`; `callback` receives each
    collection's raw data. Returns None, after logging an error, when no collection name is set.

    Called by: main(), or directly as a library.
    """
    start: float = time.monotonic()
    ## resolve settings ---------------------------------------------
    try:
        settings: Settings = SettingsResolver(environ).resolve(**params)
    except MissingCollectionError:
        log.error('directus-to-data requires at least one collection name to be defined')
        return None
    if settings.apply_schema and not settings.restore_schema:
        raise SchemaApplyMisuseError('--apply-schema only works together with --restore-schema')

    ## run ----------------------------------------------------------
    api: DirectusClient = client or DirectusClient.connect(settings.cms_url, settings.static_token)
    dispatcher = RequestDispatcher(stagger_seconds)
    report = ExportReport()
    try:
        if settings.restore_schema:
            report.mode = 'restore'
            await SchemaManager(settings, api, dispatcher).restore()
        elif settings.backup_schema:
            report.mode = 'backup'
            try:
                await SchemaManager(settings, api, dispatcher).backup()
            except FileWriteError as exc:
                log.error(f'schema backup: {exc}')
                report.write_errors.append(str(exc))
        else:
            await CollectionExporter(settings, api, dispatcher, report, callback).export_all()
    finally:
        if client is None:
            await api.aclose()
    report.elapsed_seconds = time.monotonic() - start
    return report


class CLI:
    """
    Manages command-line parsing for the script entrypoint.
    - One flag per setting, keeping the short aliases of the npm `directus-to-data` CLI.
    - Unset flags stay empty so config file and environment can fill them in.
    """

    @staticmethod
    def build_parser() -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog='directus-to-data',
            description='A minimal utility to save specific Collections from Directus into local JSON files!',
        )
        parser.add_argument('--version', action='version', version=f'%(prog)s {VERSION}')
        parser.add_argument('-u', '--cms-url', default='', help='url of your Directus instance, like https://cms.example.com')
        parser.add_argument('-t', '--static-token', default='', help='static token for user login')
        parser.add_argument(
            '-c',
            '--collection-name',
            '--collection',
            dest='collection_name',
            nargs='+',
            default=None,
            metavar='NAME',
            help='name(s) of the collection(s) to save locally; `name:field1,field2` selects fields',
        )
        parser.add_argument(
            '-co',
            '--collection-output',
            '--output',
            dest='collection_output',
            default='',
            help=f'where to save the JSON file; {COLLECTION_PLACEHOLDER} is replaced with the collection name, '
            f'`{DO_NOT_WRITE}` disables writing (default: {DEFAULT_COLLECTION_OUTPUT})',
        )
        parser.add_argument(
            '-ao',
            '--assets-output',
            default='',
            help=f'where to save asset files; {FILENAME_PLACEHOLDER} is replaced with the download filename, '
            f'`{DO_NOT_WRITE}` disables downloads (default: {DEFAULT_ASSETS_OUTPUT})',
        )
        parser.add_argument('-e', '--encoding', default='', help=f'text encoding for reading/writing (default: {DEFAULT_ENCODING})')
        parser.add_argument(
            '-p',
            '--prettify',
            default=None,
            metavar='SPACE',
            help=f'JSON indent width; 0 or false disables, true uses the default (default: {DEFAULT_PRETTIFY})',
        )
        parser.add_argument(
            '-i',
            '--config-filename',
            '--config',
            dest='config_filename',
            default='',
            help=f'path to the JSON config file (default: {DEFAULT_CONFIG_FILENAME})',
        )
        parser.add_argument(
            '-b', '--backup-schema', default='', help='file to store the schema of the passed collections in'
        )
        parser.add_argument(
            '-r',
            '--restore-schema',
            default='',
            help='schema file to diff against the CMS (only the passed collections); replaces the normal fetch',
        )
        parser.add_argument(
            '--apply-schema',
            action='store_true',
            help='with --restore-schema, apply the differences instead of only displaying them',
        )
        parser.add_argument(
            '--force-schema',
            action='store_true',
            help='with --restore-schema, skip the Directus version/vendor compatibility check',
        )
        return parser

    @staticmethod
    def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
        return CLI.build_parser().parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """
    Parses CLI args, runs the export (or schema backup/restore), prints a summary.
    Returns 0 on success, 1 when no collection was given or anything failed.

    Called by: dundermain, and the `directus-to-data` console script.
    """
    args: argparse.Namespace = CLI.parse_args(argv)
    report: ExportReport | None = asyncio.run(directus_to_data(**vars(args)))
    if report is None:
        return 1
    for line in report.summary_lines():
        print(line, file=sys.stdout if report.ok else sys.stderr)
    return 0 if report.ok else 1


if __name__ == '__main__':
    raise SystemExit(main())
