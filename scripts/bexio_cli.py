#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "requests>=2.32.0",
#     "tabulate>=0.9.0",
#     "pyyaml>=6.0.1",
# ]
# ///
"""bexio ERP CLI.

Maps one invocation onto one call against the bexio REST API
(https://api.bexio.com) and prints JSON, so scripts and AI agents can drive
contacts, invoices, bills, projects and the rest of the ERP.

Every resource is declared once in ``RESOURCES`` and expanded into
``list|show|search|create|edit|overwrite|delete`` subcommands by
``register_resource``.

Usage examples:
    ./scripts/bexio_cli.py config set-token <token>
    ./scripts/bexio_cli.py contacts list --limit 20 --order-by name_1_desc
    ./scripts/bexio_cli.py contacts search '[{"field": "name_1", "value": "Acme", "criteria": "like"}]'
    ./scripts/bexio_cli.py bills list --order-by document_no --order-direction asc
    ./scripts/bexio_cli.py --format yaml invoices create-payment 12 --date 2024-05-01 --value 100.00
"""

from __future__ import annotations

import argparse
import json
import os
import re
import signal
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, NoReturn, Optional, Tuple, Type, Union
from urllib.parse import urljoin

import requests
import yaml
from tabulate import tabulate

# Prevent BrokenPipeError when piping output
signal.signal(signal.SIGPIPE, signal.SIG_DFL)

API_BASE_URL = "https://api.bexio.com"
TOKEN_ENV_VAR = "BEXIO_API_TOKEN"
DEFAULT_CONFIG_FILE = Path.home() / ".bexio-cli" / "config.json"
OUTPUT_FORMATS = ("json", "yaml", "plain")

OPERATIONS = ("list", "show", "search", "create", "edit", "overwrite", "delete")
ALL_OPERATIONS = frozenset(OPERATIONS)
SORT_DIRECTIONS = ("asc", "desc")
_SORT_SUFFIX = re.compile(r"^(?P<field>.+)_(?P<direction>asc|desc)$", re.IGNORECASE)
_LEADING_INT = re.compile(r"[ \t\n\r\f\v]*[+-]?[0-9]+")

ResourceId = Union[int, str]


# Errors


class BexioCliError(Exception):
    pass


class CliError(BexioCliError):
    """A failure reported to the user as ``{"error": message, "details": ...}``."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ApiError(BexioCliError):
    def __init__(self, status: int, method: str, path: str, body: Any):
        super().__init__(f"API error {status}: {method} {path}")
        self.status = status
        self.method = method
        self.path = path
        self.body = body

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "method": self.method, "path": self.path, "body": self.body}


def error_details(exc: BaseException) -> Any:
    to_dict = getattr(exc, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return {"type": type(exc).__name__, "message": str(exc)}


@contextmanager
def reported_as(message: str) -> Iterator[None]:
    """Re-raise any non-``CliError`` failure as a ``CliError`` carrying ``message``."""
    try:
        yield
    except CliError:
        raise
    except Exception as exc:
        raise CliError(message, error_details(exc)) from exc


# Configuration and token storage


@dataclass
class AppConfig:
    base_url: str = API_BASE_URL
    config_file: Path = DEFAULT_CONFIG_FILE
    debug: bool = False
    request_timeout: Optional[float] = None
    output_format: str = "json"


class TokenStore:
    def __init__(self, config_file: Path, env_lookup: Optional[Dict[str, str]] = None):
        self.config_file = config_file
        self.env_lookup = os.environ if env_lookup is None else env_lookup

    def read(self) -> Dict[str, Any]:
        if not self.config_file.exists():
            return {}
        try:
            data = json.loads(self.config_file.read_text())
        except (OSError, json.JSONDecodeError):
            return {}
        return data if isinstance(data, dict) else {}

    def write(self, data: Dict[str, Any]) -> None:
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.config_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as fh:
            fh.write(json.dumps(data, indent=2) + "\n")
        os.chmod(self.config_file, 0o600)

    def load(self) -> Optional[str]:
        token = self.env_lookup.get(TOKEN_ENV_VAR)
        if token:
            return token
        return self.read().get("token") or None

    def resolve(self) -> str:
        token = self.load()
        if not token:
            raise SystemExit(
                f"Error: No API token found. Set {TOKEN_ENV_VAR} env var or run: bexio config set-token <token>"
            )
        return token

    def save(self, token: str) -> None:
        data = self.read()
        data["token"] = token
        self.write(data)

    def clear(self) -> None:
        data = self.read()
        data.pop("token", None)
        self.write(data)


# Output


def render(data: Any, output_format: str = "json") -> str:
    if output_format == "yaml":
        return yaml.safe_dump(data, sort_keys=False, allow_unicode=True).rstrip("\n")

    if output_format == "plain":
        rows = [data] if isinstance(data, dict) else data
        if isinstance(rows, list) and rows and all(isinstance(row, dict) for row in rows):
            return tabulate(rows, headers="keys", tablefmt="github")

    return json.dumps(data, indent=2, ensure_ascii=False, default=str)


def emit(data: Any, output_format: str = "json") -> None:
    sys.stdout.write(render(data, output_format) + "\n")


def emit_error(message: str, details: Any = None) -> None:
    payload: Dict[str, Any] = {"error": message}
    if details is not None:
        payload["details"] = details
    sys.stderr.write(json.dumps(payload, indent=2, ensure_ascii=False, default=str) + "\n")


# API client facade


class Resource:
    """A bexio endpoint. Verb mixins add the operations it supports."""

    def __init__(self, client: "BexioClient", path: str):
        self.client = client
        self.path = path.strip("/")

    @property
    def edit_method(self) -> str:
        # v2 edits are partial POSTs; v4 endpoints take PUT
        return "PUT" if self.path.startswith("4.0/") else "POST"

    @classmethod
    def operations(cls) -> FrozenSet[str]:
        return frozenset(op for op in OPERATIONS if callable(getattr(cls, op, None)))

    def _item(self, resource_id: ResourceId, *parts: Any) -> str:
        return "/".join([self.path, str(resource_id), *(str(p) for p in parts)])


class Listable:
    def list(self, options: Optional[Dict[str, Any]] = None) -> Any:
        return self.client.request("GET", self.path, params=options)


class Showable:
    def show(self, resource_id: ResourceId) -> Any:
        return self.client.request("GET", self._item(resource_id))


class Searchable:
    def search(self, criteria: List[Dict[str, Any]], options: Optional[Dict[str, Any]] = None) -> Any:
        return self.client.request("POST", f"{self.path}/search", params=options, json_body=criteria)


class Creatable:
    def create(self, data: Any) -> Any:
        return self.client.request("POST", self.path, json_body=data)


class Editable:
    def edit(self, resource_id: ResourceId, data: Any) -> Any:
        return self.client.request(self.edit_method, self._item(resource_id), json_body=data)


class Overwritable:
    def overwrite(self, resource_id: ResourceId, data: Any) -> Any:
        return self.client.request("PUT", self._item(resource_id), json_body=data)


class Deletable:
    def delete(self, resource_id: ResourceId) -> Any:
        return self.client.request("DELETE", self._item(resource_id))


class CrudResource(Listable, Showable, Searchable, Creatable, Editable, Overwritable, Deletable, Resource):
    pass


class LookupResource(Listable, Showable, Searchable, Resource):
    pass


class ContactGroupResource(Listable, Showable, Searchable, Creatable, Editable, Overwritable, Resource):
    pass


class TimetrackingResource(Listable, Showable, Searchable, Creatable, Editable, Deletable, Resource):
    pass


class CurrencyResource(Listable, Showable, Creatable, Deletable, Resource):
    pass


class BankAccountResource(Listable, Showable, Resource):
    pass


class AccountResource(Listable, Searchable, Deletable, Resource):
    pass


class TaxResource(Listable, Resource):
    pass


class InvoiceResource(CrudResource):
    def sent(self, invoice_id: ResourceId, data: Optional[Dict[str, Any]] = None) -> Any:
        return self.client.request("POST", self._item(invoice_id, "send"), json_body=data or {})

    def issue(self, invoice_id: ResourceId) -> Any:
        return self.client.request("POST", self._item(invoice_id, "issue"))

    def revert_issue(self, invoice_id: ResourceId) -> Any:
        return self.client.request("POST", self._item(invoice_id, "revert_issue"))

    def list_payments(self, invoice_id: ResourceId) -> Any:
        return self.client.request("GET", self._item(invoice_id, "payment"))

    def create_payment(
        self,
        invoice_id: ResourceId,
        paid_on: date,
        value: str,
        bank_account_id: Optional[int] = None,
        payment_service_id: Optional[int] = None,
    ) -> Any:
        body: Dict[str, Any] = {"date": paid_on.isoformat(), "value": value}
        if bank_account_id is not None:
            body["bank_account_id"] = bank_account_id
        if payment_service_id is not None:
            body["payment_service_id"] = payment_service_id
        return self.client.request("POST", self._item(invoice_id, "payment"), json_body=body)

    def get_payment(self, invoice_id: ResourceId, payment_id: ResourceId) -> Any:
        return self.client.request("GET", self._item(invoice_id, "payment", payment_id))

    def delete_payment(self, invoice_id: ResourceId, payment_id: ResourceId) -> Any:
        return self.client.request("DELETE", self._item(invoice_id, "payment", payment_id))


class BillResource(Listable, Showable, Creatable, Editable, Overwritable, Deletable, Resource):
    def update_status(self, bill_id: str, status: str) -> Any:
        return self.client.request("PUT", self._item(bill_id, "bookings", status))

    def execute_action(self, bill_id: str, action: str) -> Any:
        return self.client.request("POST", self._item(bill_id, "actions"), json_body={"action": action})

    def validate_document_number(self, document_no: str) -> Any:
        return self.client.request(
            "GET", "4.0/purchase/documentnumbers/bills", params={"document_no": document_no}
        )


class OutgoingPaymentResource(Listable, Showable, Creatable, Resource):
    def cancel(self, payment_id: str) -> Any:
        return self.client.request("POST", self._item(payment_id, "cancel"))

    def update(self, data: Any) -> Any:
        return self.client.request("PUT", self.path, json_body=data)


class ManualEntryResource(Listable, Creatable, Deletable, Resource):
    def next_reference_number(self) -> Any:
        return self.client.request("GET", f"{self.path}/next_ref_nr")


RESOURCE_TYPES: Dict[str, Tuple[Type[Resource], str]] = {
    "contacts": (CrudResource, "2.0/contact"),
    "contact_types": (LookupResource, "2.0/contact_type"),
    "contact_sectors": (LookupResource, "2.0/contact_branch"),
    "contact_groups": (ContactGroupResource, "2.0/contact_group"),
    "contact_relations": (CrudResource, "2.0/contact_relation"),
    "orders": (CrudResource, "2.0/kb_order"),
    "invoices": (InvoiceResource, "2.0/kb_invoice"),
    "expenses": (CrudResource, "4.0/expenses"),
    "bills": (BillResource, "4.0/purchase/bills"),
    "outgoing_payments": (OutgoingPaymentResource, "4.0/purchase/outgoing-payments"),
    "projects": (CrudResource, "2.0/pr_project"),
    "project_statuses": (LookupResource, "2.0/pr_project_state"),
    "project_types": (LookupResource, "2.0/pr_project_type"),
    "timetrackings": (TimetrackingResource, "2.0/timesheet"),
    "timetracking_statuses": (LookupResource, "2.0/timesheet_status"),
    "business_activities": (CrudResource, "2.0/client_service"),
    "users": (LookupResource, "3.0/users"),
    "items": (CrudResource, "2.0/article"),
    "currencies": (CurrencyResource, "3.0/currencies"),
    "bank_accounts": (BankAccountResource, "3.0/banking/accounts"),
    "accounts": (AccountResource, "2.0/accounts"),
    "manual_entries": (ManualEntryResource, "3.0/accounting/manual_entries"),
    "taxes": (TaxResource, "3.0/taxes"),
}


def _response_body(resp: requests.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text


class BexioClient:
    def __init__(
        self,
        token: str,
        *,
        base_url: str = API_BASE_URL,
        debug: bool = False,
        request_timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url
        self.debug = debug
        self.request_timeout = request_timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
            }
        )
        self._resources = {key: cls(self, path) for key, (cls, path) in RESOURCE_TYPES.items()}

    def resource(self, key: str) -> Resource:
        try:
            return self._resources[key]
        except KeyError:
            raise BexioCliError(f"Unknown resource key: {key}") from None

    def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Any] = None,
    ) -> Any:
        url = urljoin(self.base_url + "/", path.lstrip("/"))
        if self.debug:
            print(
                f"HTTP {method} {url} params={params} json_body_present={json_body is not None} "
                f"timeout={self.request_timeout}",
                file=sys.stderr,
            )
        resp = self.session.request(
            method,
            url,
            params=params,
            json=json_body,
            timeout=self.request_timeout,
        )
        if self.debug:
            print(f"HTTP {resp.status_code} {resp.reason} content-type={resp.headers.get('Content-Type')}", file=sys.stderr)

        if resp.status_code >= 400:
            raise ApiError(resp.status_code, method, path, _response_body(resp))
        if not resp.content:
            return {"success": True}
        return _response_body(resp)


class CliContext:
    """Per-run state handed to every handler. The client is built on first use."""

    def __init__(self, config: AppConfig, store: TokenStore):
        self.config = config
        self.store = store
        self._client: Optional[BexioClient] = None

    @property
    def client(self) -> BexioClient:
        if self._client is None:
            self._client = BexioClient(
                self.store.resolve(),
                base_url=self.config.base_url,
                debug=self.config.debug,
                request_timeout=self.config.request_timeout,
            )
        return self._client

    def resource(self, config: "ResourceConfig") -> Any:
        return self.client.resource(config.resource_key)

    def emit(self, data: Any) -> None:
        emit(data, self.config.output_format)


# Resource declarations


@dataclass(frozen=True)
class ListOption:
    flag: str
    help: str
    metavar: Optional[str] = None
    parser: Optional[Callable[[str], Any]] = None

    @property
    def wire_name(self) -> str:
        return self.flag.lstrip("-").replace("-", "_")


@dataclass(frozen=True)
class SortConfig:
    field_param: str
    direction_param: Optional[str] = None


DEFAULT_SORT = SortConfig(field_param="order_by")


@dataclass(frozen=True)
class Arg:
    flags: Tuple[str, ...]
    kwargs: Dict[str, Any] = field(default_factory=dict)


def arg(*flags: str, **kwargs: Any) -> Arg:
    return Arg(flags, kwargs)


@dataclass(frozen=True)
class CustomCommand:
    name: str
    help: str
    handler: Callable[[Any, argparse.Namespace], Any]
    failure: str
    arguments: Tuple[Arg, ...] = ()
    # Validates and converts args in place before the client is built.
    prepare: Optional[Callable[[argparse.Namespace], None]] = None


@dataclass(frozen=True)
class ResourceConfig:
    name: str
    description: str
    resource_key: str
    operations: FrozenSet[str]
    string_ids: bool = False
    sort_config: Optional[SortConfig] = None
    extra_list_options: Tuple[ListOption, ...] = ()
    custom_commands: Tuple[CustomCommand, ...] = ()

    def __post_init__(self) -> None:
        unknown = set(self.operations) - ALL_OPERATIONS
        if unknown:
            raise ValueError(f"{self.name}: unknown operations {sorted(unknown)}")


def validate_resource_config(config: ResourceConfig) -> None:
    if config.resource_key not in RESOURCE_TYPES:
        raise ValueError(f"{config.name}: no API resource named {config.resource_key!r}")
    resource_cls = RESOURCE_TYPES[config.resource_key][0]
    missing = config.operations - resource_cls.operations()
    if missing:
        raise ValueError(f"{config.name}: {resource_cls.__name__} does not support {sorted(missing)}")


# Input parsing


def parse_id(value: str, string_ids: bool = False) -> ResourceId:
    # Leading ASCII digits win, like JS parseInt; anything else is forwarded as-is.
    if string_ids:
        return value
    match = _LEADING_INT.match(value)
    if not match:
        return value
    return int(match.group(0))


def parse_json(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        raise CliError("Invalid JSON input", {"input": raw}) from None


SEARCH_EXAMPLE = [{"field": "name_1", "value": "Acme", "criteria": "like"}]


def parse_search_params(raw: str) -> List[Dict[str, Any]]:
    parsed = parse_json(raw)
    if not isinstance(parsed, list):
        raise CliError("Search params must be a JSON array", {"input": raw, "example": SEARCH_EXAMPLE})
    for index, entry in enumerate(parsed):
        if not isinstance(entry, dict) or not isinstance(entry.get("field"), str) or "value" not in entry:
            raise CliError(
                f"Invalid search param at index {index}",
                {"param": entry, "example": SEARCH_EXAMPLE},
            )
    return parsed


def parse_payment_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise CliError("Invalid payment date, expected YYYY-MM-DD", {"date": value}) from None


def resolve_sort(order_by: Optional[str], order_direction: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Split ``--order-by``/``--order-direction`` into ``(field, direction)``.

    ``order_by`` may carry its own direction as a ``_asc``/``_desc`` suffix; an
    explicit ``order_direction`` must agree with it.
    """
    explicit = None
    if order_direction is not None:
        explicit = order_direction.lower()
        if explicit not in SORT_DIRECTIONS:
            raise CliError(
                "Invalid order direction",
                {"orderDirection": order_direction, "allowed": list(SORT_DIRECTIONS)},
            )
    if not order_by:
        if explicit is not None:
            raise CliError("--order-direction requires --order-by", {"orderDirection": order_direction})
        return None, None

    sort_field, embedded = order_by, None
    match = _SORT_SUFFIX.match(order_by)
    if match:
        sort_field, embedded = match.group("field"), match.group("direction").lower()

    if embedded and explicit and embedded != explicit:
        raise CliError(
            f"Conflicting sort direction: --order-by {order_by} implies {embedded} "
            f"but --order-direction is {order_direction}",
            {"orderBy": order_by, "orderDirection": order_direction},
        )
    return sort_field, explicit or embedded


def apply_sort(
    options: Dict[str, Any],
    sort_config: SortConfig,
    order_by: Optional[str],
    order_direction: Optional[str],
) -> None:
    sort_field, direction = resolve_sort(order_by, order_direction)
    if sort_field is None:
        return
    if sort_config.direction_param:
        options[sort_config.field_param] = sort_field
        if direction:
            options[sort_config.direction_param] = direction
    else:
        options[sort_config.field_param] = f"{sort_field}_{direction}" if direction else sort_field


def build_list_options(
    args: argparse.Namespace,
    resource: ResourceConfig,
    extra_options: Tuple[ListOption, ...] = (),
) -> Optional[Dict[str, Any]]:
    options: Dict[str, Any] = {}
    if args.limit is not None:
        options["limit"] = args.limit
    if args.offset is not None:
        options["offset"] = args.offset
    apply_sort(
        options,
        resource.sort_config or DEFAULT_SORT,
        args.order_by,
        getattr(args, "order_direction", None),
    )
    for opt in extra_options:
        value = getattr(args, opt.wire_name, None)
        if value is not None:
            options[opt.wire_name] = value
    return options or None


# Handlers for generated subcommands


def handle_list(resource: ResourceConfig, args: argparse.Namespace, ctx: CliContext) -> None:
    options = build_list_options(args, resource, resource.extra_list_options)
    with reported_as(f"Failed to list {resource.name}"):
        result = ctx.resource(resource).list(options)
    ctx.emit(result)


def handle_show(resource: ResourceConfig, args: argparse.Namespace, ctx: CliContext) -> None:
    with reported_as(f"Failed to show {resource.name} {args.id}"):
        result = ctx.resource(resource).show(parse_id(args.id, resource.string_ids))
    ctx.emit(result)


def handle_search(resource: ResourceConfig, args: argparse.Namespace, ctx: CliContext) -> None:
    criteria = parse_search_params(args.params)
    options = build_list_options(args, resource)
    with reported_as(f"Failed to search {resource.name}"):
        result = ctx.resource(resource).search(criteria, options)
    ctx.emit(result)


def handle_create(resource: ResourceConfig, args: argparse.Namespace, ctx: CliContext) -> None:
    data = parse_json(args.json)
    with reported_as(f"Failed to create {resource.name}"):
        result = ctx.resource(resource).create(data)
    ctx.emit(result)


def handle_edit(resource: ResourceConfig, args: argparse.Namespace, ctx: CliContext) -> None:
    data = parse_json(args.json)
    with reported_as(f"Failed to edit {resource.name} {args.id}"):
        result = ctx.resource(resource).edit(parse_id(args.id, resource.string_ids), data)
    ctx.emit(result)


def handle_overwrite(resource: ResourceConfig, args: argparse.Namespace, ctx: CliContext) -> None:
    data = parse_json(args.json)
    with reported_as(f"Failed to overwrite {resource.name} {args.id}"):
        result = ctx.resource(resource).overwrite(parse_id(args.id, resource.string_ids), data)
    ctx.emit(result)


def handle_delete(resource: ResourceConfig, args: argparse.Namespace, ctx: CliContext) -> None:
    with reported_as(f"Failed to delete {resource.name} {args.id}"):
        result = ctx.resource(resource).delete(parse_id(args.id, resource.string_ids))
    ctx.emit(result)


def handle_custom(
    resource: ResourceConfig, command: CustomCommand, args: argparse.Namespace, ctx: CliContext
) -> None:
    if command.prepare is not None:
        command.prepare(args)
    with reported_as(command.failure.format(**vars(args))):
        result = command.handler(ctx.resource(resource), args)
    ctx.emit(result)


def handle_set_token(args: argparse.Namespace, ctx: CliContext) -> None:
    ctx.store.save(args.token)
    ctx.emit({"success": True, "message": "Token saved"})


def handle_clear_token(args: argparse.Namespace, ctx: CliContext) -> None:
    ctx.store.clear()
    ctx.emit({"success": True, "message": "Token cleared"})


# Command generator


def _add_paging_options(parser: argparse.ArgumentParser, resource: ResourceConfig) -> None:
    parser.add_argument("--limit", type=int, help="Max results to return")
    parser.add_argument("--offset", type=int, help="Number of results to skip")
    parser.add_argument("--order-by", metavar="FIELD", help="Field to order by; FIELD_asc/FIELD_desc sets the direction")
    if resource.sort_config is not None:
        parser.add_argument("--order-direction", metavar="{asc,desc}", help="Sort direction")


def register_custom_command(
    subparsers: argparse._SubParsersAction, resource: ResourceConfig, command: CustomCommand
) -> None:
    parser = subparsers.add_parser(command.name, help=command.help, description=command.help)
    for spec in command.arguments:
        parser.add_argument(*spec.flags, **spec.kwargs)
    parser.set_defaults(func=partial(handle_custom, resource, command))


def register_resource(subparsers: argparse._SubParsersAction, resource: ResourceConfig) -> None:
    validate_resource_config(resource)
    ops = resource.operations
    id_help = "Resource ID" if resource.string_ids else "Numeric resource ID"

    cmd = subparsers.add_parser(resource.name, help=resource.description, description=resource.description)
    sub = cmd.add_subparsers(dest="action", required=True)

    if "list" in ops:
        p = sub.add_parser("list", help=f"List all {resource.name}")
        _add_paging_options(p, resource)
        for opt in resource.extra_list_options:
            kwargs: Dict[str, Any] = {"dest": opt.wire_name, "help": opt.help}
            if opt.metavar:
                kwargs["metavar"] = opt.metavar
            if opt.parser:
                kwargs["type"] = opt.parser
            p.add_argument(opt.flag, **kwargs)
        p.set_defaults(func=partial(handle_list, resource))

    if "show" in ops:
        p = sub.add_parser("show", help=f"Show a single {resource.name} by ID")
        p.add_argument("id", help=id_help)
        p.set_defaults(func=partial(handle_show, resource))

    if "search" in ops:
        p = sub.add_parser(
            "search", help=f"Search {resource.name}. Params: JSON array of {{field, value, criteria?}}"
        )
        p.add_argument("params", help='JSON array, e.g. \'[{"field": "name_1", "value": "Acme", "criteria": "like"}]\'')
        _add_paging_options(p, resource)
        p.set_defaults(func=partial(handle_search, resource))

    if "create" in ops:
        p = sub.add_parser("create", help=f"Create a new {resource.name}. Provide data as JSON string")
        p.add_argument("json", help="JSON object")
        p.set_defaults(func=partial(handle_create, resource))

    if "edit" in ops:
        p = sub.add_parser("edit", help=f"Edit (partial update) a {resource.name} by ID. Provide fields as JSON")
        p.add_argument("id", help=id_help)
        p.add_argument("json", help="JSON object with the fields to change")
        p.set_defaults(func=partial(handle_edit, resource))

    if "overwrite" in ops:
        p = sub.add_parser(
            "overwrite", help=f"Overwrite (full replace) a {resource.name} by ID. Provide full data as JSON"
        )
        p.add_argument("id", help=id_help)
        p.add_argument("json", help="Complete JSON object")
        p.set_defaults(func=partial(handle_overwrite, resource))

    if "delete" in ops:
        p = sub.add_parser("delete", help=f"Delete a {resource.name} by ID")
        p.add_argument("id", help=id_help)
        p.set_defaults(func=partial(handle_delete, resource))

    for command in resource.custom_commands:
        register_custom_command(sub, resource, command)


def register_config_command(subparsers: argparse._SubParsersAction) -> None:
    cmd = subparsers.add_parser("config", help="Manage CLI configuration")
    sub = cmd.add_subparsers(dest="action", required=True)

    set_token = sub.add_parser("set-token", help="Save API token to the config file")
    set_token.add_argument("token", help="bexio personal access token")
    set_token.set_defaults(func=handle_set_token)

    clear_token = sub.add_parser("clear-token", help="Remove saved API token")
    clear_token.set_defaults(func=handle_clear_token)


# Custom command handlers


def _parse_json_arg(args: argparse.Namespace) -> None:
    args.json = parse_json(args.json)


def _parse_optional_json_arg(args: argparse.Namespace) -> None:
    args.json = parse_json(args.json) if args.json else {}


def _parse_payment_date_arg(args: argparse.Namespace) -> None:
    args.date = parse_payment_date(args.date)


def _invoice_send(invoices: InvoiceResource, args: argparse.Namespace) -> Any:
    return invoices.sent(parse_id(args.id), args.json)


def _invoice_create_payment(invoices: InvoiceResource, args: argparse.Namespace) -> Any:
    return invoices.create_payment(
        parse_id(args.invoice_id),
        args.date,
        args.value,
        args.bank_account_id,
        args.payment_service_id,
    )


def _invoice_delete_payment(invoices: InvoiceResource, args: argparse.Namespace) -> Any:
    invoices.delete_payment(parse_id(args.invoice_id), parse_id(args.payment_id))
    return {"success": True}


def _outgoing_payment_update(payments: OutgoingPaymentResource, args: argparse.Namespace) -> Any:
    return payments.update(args.json)


INVOICE_COMMANDS = (
    CustomCommand(
        "send",
        "Send an invoice. Optional JSON body for recipient info",
        _invoice_send,
        "Failed to send invoice {id}",
        (arg("id", help="Invoice ID"), arg("json", nargs="?", help="Optional JSON with recipient_email, etc.")),
        prepare=_parse_optional_json_arg,
    ),
    CustomCommand(
        "issue",
        "Issue a draft invoice",
        lambda invoices, args: invoices.issue(parse_id(args.id)),
        "Failed to issue invoice {id}",
        (arg("id", help="Invoice ID"),),
    ),
    CustomCommand(
        "revert-issue",
        "Revert an invoice issue",
        lambda invoices, args: invoices.revert_issue(parse_id(args.id)),
        "Failed to revert invoice {id}",
        (arg("id", help="Invoice ID"),),
    ),
    CustomCommand(
        "list-payments",
        "List payments recorded against an invoice",
        lambda invoices, args: invoices.list_payments(parse_id(args.invoice_id)),
        "Failed to list payments for invoice {invoice_id}",
        (arg("invoice_id", help="Invoice ID"),),
    ),
    CustomCommand(
        "create-payment",
        "Create a payment for an invoice",
        _invoice_create_payment,
        "Failed to create payment for invoice {invoice_id}",
        (
            arg("invoice_id", help="Invoice ID"),
            arg("--date", required=True, help="Payment date (YYYY-MM-DD)"),
            arg("--value", required=True, help="Payment amount"),
            arg("--bank-account-id", type=int, help="Bank account ID"),
            arg("--payment-service-id", type=int, help="Payment service ID"),
        ),
        prepare=_parse_payment_date_arg,
    ),
    CustomCommand(
        "get-payment",
        "Get a specific payment for an invoice",
        lambda invoices, args: invoices.get_payment(parse_id(args.invoice_id), parse_id(args.payment_id)),
        "Failed to get payment {payment_id} for invoice {invoice_id}",
        (arg("invoice_id", help="Invoice ID"), arg("payment_id", help="Payment ID")),
    ),
    CustomCommand(
        "delete-payment",
        "Delete a payment from an invoice",
        _invoice_delete_payment,
        "Failed to delete payment {payment_id} from invoice {invoice_id}",
        (arg("invoice_id", help="Invoice ID"), arg("payment_id", help="Payment ID")),
    ),
)

BILL_COMMANDS = (
    CustomCommand(
        "update-status",
        "Update bill status (DRAFT or BOOKED)",
        lambda bills, args: bills.update_status(args.id, args.status),
        "Failed to update status of bill {id}",
        (arg("id", help="Bill ID"), arg("status", type=str.upper, choices=["DRAFT", "BOOKED"], help="New status")),
    ),
    CustomCommand(
        "execute-action",
        "Execute an action on a bill (e.g. DUPLICATE)",
        lambda bills, args: bills.execute_action(args.id, args.action_name),
        "Failed to execute {action_name} on bill {id}",
        (arg("id", help="Bill ID"), arg("action_name", metavar="action", type=str.upper, help="Action name")),
    ),
    CustomCommand(
        "validate-doc-number",
        "Validate a document number for bills",
        lambda bills, args: bills.validate_document_number(args.document_no),
        "Failed to validate document number {document_no}",
        (arg("document_no", help="Document number to check"),),
    ),
)

OUTGOING_PAYMENT_COMMANDS = (
    CustomCommand(
        "cancel",
        "Cancel an outgoing payment",
        lambda payments, args: payments.cancel(args.id),
        "Failed to cancel payment {id}",
        (arg("id", help="Outgoing payment ID"),),
    ),
    CustomCommand(
        "update",
        "Update an outgoing payment (the JSON carries its id)",
        _outgoing_payment_update,
        "Failed to update payment",
        (arg("json", help="JSON object"),),
        prepare=_parse_json_arg,
    ),
)

MANUAL_ENTRY_COMMANDS = (
    CustomCommand(
        "next-ref-number",
        "Get next available reference number",
        lambda entries, args: entries.next_reference_number(),
        "Failed to get next reference number",
    ),
)


# Command table

READ_ONLY = frozenset({"list", "show", "search"})

RESOURCES: Tuple[ResourceConfig, ...] = (
    # Contacts
    ResourceConfig("contacts", "Manage contacts", "contacts", ALL_OPERATIONS),
    ResourceConfig("contact-types", "View contact types", "contact_types", READ_ONLY),
    ResourceConfig("contact-sectors", "View contact sectors", "contact_sectors", READ_ONLY),
    ResourceConfig(
        "contact-groups",
        "Manage contact groups",
        "contact_groups",
        frozenset({"list", "show", "create", "edit", "overwrite", "search"}),
    ),
    ResourceConfig("contact-relations", "Manage contact relations", "contact_relations", ALL_OPERATIONS),
    # Sales & orders
    ResourceConfig("orders", "Manage sales orders", "orders", ALL_OPERATIONS),
    ResourceConfig(
        "invoices", "Manage invoices", "invoices", ALL_OPERATIONS, custom_commands=INVOICE_COMMANDS
    ),
    ResourceConfig("expenses", "Manage expenses", "expenses", ALL_OPERATIONS),
    # Purchases
    ResourceConfig(
        "bills",
        "Manage bills (v4 API)",
        "bills",
        frozenset({"list", "show", "create", "edit", "overwrite", "delete"}),
        string_ids=True,
        sort_config=SortConfig(field_param="sort", direction_param="order"),
        custom_commands=BILL_COMMANDS,
    ),
    ResourceConfig(
        "outgoing-payments",
        "Manage outgoing payments",
        "outgoing_payments",
        frozenset({"list", "show", "create"}),
        string_ids=True,
        sort_config=SortConfig(field_param="sort", direction_param="order"),
        extra_list_options=(ListOption("--bill-id", "Filter by bill ID (required by the API)", metavar="ID"),),
        custom_commands=OUTGOING_PAYMENT_COMMANDS,
    ),
    # Projects & time
    ResourceConfig("projects", "Manage projects", "projects", ALL_OPERATIONS),
    ResourceConfig("project-statuses", "View project statuses", "project_statuses", READ_ONLY),
    ResourceConfig("project-types", "View project types", "project_types", READ_ONLY),
    ResourceConfig(
        "timetrackings",
        "Manage time tracking entries",
        "timetrackings",
        frozenset({"list", "show", "create", "edit", "delete", "search"}),
    ),
    ResourceConfig("timetracking-statuses", "View timetracking statuses", "timetracking_statuses", READ_ONLY),
    ResourceConfig("business-activities", "Manage business activities", "business_activities", ALL_OPERATIONS),
    ResourceConfig("users", "View users", "users", READ_ONLY),
    ResourceConfig("items", "Manage items/products", "items", ALL_OPERATIONS),
    # Accounting
    ResourceConfig(
        "currencies", "Manage currencies", "currencies", frozenset({"list", "show", "create", "delete"})
    ),
    ResourceConfig("bank-accounts", "View bank accounts", "bank_accounts", frozenset({"list", "show"})),
    ResourceConfig("accounts", "View chart of accounts", "accounts", frozenset({"list", "search", "delete"})),
    ResourceConfig(
        "manual-entries",
        "Manage manual journal entries",
        "manual_entries",
        frozenset({"list", "create", "delete"}),
        custom_commands=MANUAL_ENTRY_COMMANDS,
    ),
    ResourceConfig("taxes", "View tax definitions", "taxes", frozenset({"list"})),
)


# CLI assembly


class JsonArgumentParser(argparse.ArgumentParser):
    """Report usage errors through the JSON error channel with exit status 1."""

    def error(self, message: str) -> NoReturn:
        emit_error(message, {"usage": self.format_usage().strip()})
        raise SystemExit(1)


def build_parser(resources: Tuple[ResourceConfig, ...] = RESOURCES) -> argparse.ArgumentParser:
    parser = JsonArgumentParser(prog="bexio", description="CLI for bexio ERP - JSON output for AI tool integration")
    parser.add_argument("--version", action="version", version="%(prog)s 1.0.0")
    parser.add_argument(
        "--config-file",
        default=str(DEFAULT_CONFIG_FILE),
        help="Path to the token config file (default: ~/.bexio-cli/config.json)",
    )
    parser.add_argument("--base-url", default=API_BASE_URL, help="Override API base URL")
    parser.add_argument(
        "--format",
        default="json",
        choices=list(OUTPUT_FORMATS),
        help="Output format for successful results (default: json)",
    )
    parser.add_argument("--debug", action="store_true", help="Print HTTP traces to stderr")
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="HTTP connect/read timeout in seconds (default: none)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_config_command(subparsers)

    seen = {"config"}
    for resource in resources:
        if resource.name in seen:
            raise ValueError(f"Duplicate resource command: {resource.name}")
        seen.add(resource.name)
        register_resource(subparsers, resource)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    config = AppConfig(
        base_url=args.base_url,
        config_file=Path(args.config_file).expanduser(),
        debug=args.debug,
        request_timeout=args.timeout,
        output_format=args.format,
    )
    ctx = CliContext(config, TokenStore(config.config_file))

    try:
        args.func(args, ctx)
    except CliError as exc:
        emit_error(exc.message, exc.details)
        raise SystemExit(1) from exc
    except Exception as exc:
        emit_error("Unexpected error", error_details(exc))
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
