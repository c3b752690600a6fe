"""Unit tests for configuration parsing, record conversion and the gateways."""

from __future__ import annotations

import configparser
from dataclasses import replace
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock

import pytest
import requests

from field_sales import data_manager
from field_sales.constants import BackendKind, InventoryFailurePolicy, TableName


def _order_row(**overrides) -> data_manager.SalesOrderRow:
    values = dict(
        id="SO-1",
        order_number="SO-20250101000000000000",
        customer_id="C-1",
        customer_name="Acme Stores",
        agency_id="AG-1",
        subtotal=Decimal("100.00"),
        discount_percentage=Decimal("0"),
        discount_amount=Decimal("0.00"),
        total=Decimal("100.00"),
        total_invoiced=Decimal("0.00"),
        status="approved",
        requires_approval=False,
        approved_by=None,
        approved_at=None,
        latitude=None,
        longitude=None,
        location_status="unavailable",
        discount_rule_id=None,
        notes=None,
        created_by="U-AGENT",
        created_at="2025-01-01T00:00:00+00:00",
    )
    values.update(overrides)
    return data_manager.SalesOrderRow(**values)


def _parser(text: str) -> configparser.ConfigParser:
    parser = configparser.ConfigParser()
    parser.read_string(text)
    return parser


def _response(status_code=200, body=None, *, content=None):
    response = Mock(name="response")
    response.status_code = status_code
    response.json.return_value = body
    response.content = content if content is not None else (b"[]" if body is None else b"x")
    response.text = "" if body is None else str(body)
    return response


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_returns_explicit_path(tmp_path):
    explicit = tmp_path / "custom.ini"

    assert data_manager.find_config_file(explicit) == explicit


def test_find_config_file_walks_up_from_cwd(tmp_path, monkeypatch):
    """The first config.ini found on the way to the filesystem root wins."""

    config_path = tmp_path / data_manager.CONFIG_FILE_NAME
    config_path.write_text("[System]\n")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_path


def test_read_config_raises_for_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "missing.ini")


def test_parse_settings_resolves_relative_data_file(tmp_path):
    parser = _parser("[System]\nDataFile = data/field_sales.xlsx\nSchemaVersion = 1.0.0\n")

    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.data_file == (tmp_path / "data" / "field_sales.xlsx").resolve()
    assert settings.backend is BackendKind.WORKBOOK
    assert settings.default_discount_limit == Decimal("20")
    assert settings.inventory_failure_policy is InventoryFailurePolicy.WARN
    assert settings.zero_subtotal_requires_approval is False


def test_parse_settings_reads_policy_section(tmp_path):
    parser = _parser(
        "[System]\nDataFile = x.xlsx\nSchemaVersion = 1.0.0\n"
        "[Policy]\nDefaultDiscountLimit = 12.5\nZeroSubtotalRequiresApproval = yes\n"
        "InventoryFailurePolicy = Rollback\n"
    )

    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.default_discount_limit == Decimal("12.5")
    assert settings.zero_subtotal_requires_approval is True
    assert settings.inventory_failure_policy is InventoryFailurePolicy.ROLLBACK


@pytest.mark.parametrize(
    "text",
    [
        "[System]\nDataFile = x.xlsx\n",
        "[System]\nSchemaVersion = 1.0.0\n",
        "[System]\nSchemaVersion = 1.0.0\nBackend = rest\n",
    ],
)
def test_parse_settings_requires_mandatory_entries(text):
    with pytest.raises(KeyError):
        data_manager.parse_settings(_parser(text))


@pytest.mark.parametrize(
    "text",
    [
        "[System]\nDataFile = x.xlsx\nSchemaVersion = 1.0.0\nBackend = sqlite\n",
        "[System]\nDataFile = x.xlsx\nSchemaVersion = 1.0.0\n[Policy]\nDefaultDiscountLimit = lots\n",
        "[System]\nDataFile = x.xlsx\nSchemaVersion = 1.0.0\n[Policy]\nInventoryFailurePolicy = ignore\n",
    ],
)
def test_parse_settings_rejects_invalid_values(text, tmp_path):
    with pytest.raises(ValueError):
        data_manager.parse_settings(_parser(text), base_path=tmp_path)


def test_parse_settings_prefers_api_key_from_environment(monkeypatch):
    monkeypatch.setenv(data_manager.API_KEY_ENV_VAR, "env-key")
    parser = _parser(
        "[System]\nSchemaVersion = 1.0.0\nBackend = rest\n[Rest]\nUrl = https://db.example.com\nApiKey = file-key\n"
    )

    settings = data_manager.parse_settings(parser)

    assert settings.backend is BackendKind.REST
    assert settings.data_file is None
    assert settings.rest_api_key == "env-key"


def test_build_gateway_requires_rest_api_key(monkeypatch):
    monkeypatch.delenv(data_manager.API_KEY_ENV_VAR, raising=False)
    settings = data_manager.ConfigSettings(
        data_file=None,
        schema_version="1.0.0",
        backend=BackendKind.REST,
        rest_url="https://db.example.com",
    )

    with pytest.raises(KeyError):
        data_manager.build_gateway(settings)

    gateway = data_manager.build_gateway(replace(settings, rest_api_key="k"))
    assert isinstance(gateway, data_manager.RestGateway)


def test_build_gateway_raises_for_missing_workbook(tmp_path):
    settings = data_manager.ConfigSettings(data_file=tmp_path / "absent.xlsx", schema_version="1.0.0")

    with pytest.raises(FileNotFoundError):
        data_manager.build_gateway(settings)


# ---------------------------------------------------------------------------
# Record conversion and querying
# ---------------------------------------------------------------------------


def test_table_columns_follow_record_fields():
    columns = data_manager.table_columns(TableName.SALES_ORDERS)

    assert columns[0] == "id"
    assert "total_invoiced" in columns
    assert "target_ids" in data_manager.table_columns(TableName.DISCOUNT_RULES)


def test_decode_value_handles_blank_cells():
    columns = {column.name: column for column in data_manager.TABLE_COLUMNS[TableName.SALES_ORDERS]}

    assert data_manager.decode_value(columns["approved_by"], None) is None
    assert data_manager.decode_value(columns["latitude"], "") is None
    assert data_manager.decode_value(columns["total"], None) == Decimal("0.00")
    assert data_manager.decode_value(columns["requires_approval"], "FALSE") is False
    with pytest.raises(data_manager.PersistenceError):
        data_manager.decode_value(columns["total"], "ten")


def test_serialize_record_joins_identifier_lists():
    rule = data_manager.DiscountRuleRow(
        id="DR-1",
        name="Loyalty",
        discount_type="percentage",
        value=Decimal("5"),
        applicable_to="customer",
        target_ids=("C-1", "C-2"),
        is_active=True,
        valid_from="2025-01-01",
        valid_to="2025-12-31",
        max_usage_count=None,
        current_usage_count=0,
        description=None,
        created_by="U-ADMIN",
        created_at="2025-01-01T00:00:00+00:00",
    )
    cells = dict(zip(data_manager.table_columns(TableName.DISCOUNT_RULES), data_manager.serialize_record(rule)))

    assert cells["target_ids"] == "C-1,C-2"
    assert data_manager.record_to_json(rule)["target_ids"] == ["C-1", "C-2"]
    assert data_manager.record_to_json(rule)["value"] == "5"


def test_deserialize_record_tolerates_missing_columns():
    record = data_manager.deserialize_record(TableName.SALES_ORDERS, {"id": "SO-9", "total": "12.50"})

    assert record.id == "SO-9"
    assert record.total == Decimal("12.50")
    assert record.notes is None


def test_apply_query_filters_orders_and_limits():
    rows = [
        _order_row(id="A", created_at="2025-01-02", status="approved"),
        _order_row(id="B", created_at="2025-01-03", status="pending"),
        _order_row(id="C", created_at="2025-01-01", status="approved"),
    ]

    result = data_manager.apply_query(
        rows,
        table=TableName.SALES_ORDERS,
        filters={"status": "approved"},
        order_by="created_at",
        descending=True,
        limit=1,
    )

    assert [row.id for row in result] == ["A"]
    with pytest.raises(KeyError):
        data_manager.apply_query(rows, table=TableName.SALES_ORDERS, filters={"colour": "red"})


# ---------------------------------------------------------------------------
# In-memory gateway
# ---------------------------------------------------------------------------


def test_in_memory_gateway_rejects_duplicate_ids():
    gateway = data_manager.InMemoryGateway()
    gateway.insert(TableName.SALES_ORDERS, [_order_row()])

    with pytest.raises(data_manager.PersistenceError):
        gateway.insert(TableName.SALES_ORDERS, [_order_row()])


def test_in_memory_gateway_update_and_delete():
    gateway = data_manager.InMemoryGateway()
    gateway.insert(TableName.SALES_ORDERS, [_order_row()])

    updated = gateway.update(TableName.SALES_ORDERS, "SO-1", {"status": "closed"})

    assert updated.status == "closed"
    with pytest.raises(KeyError):
        gateway.update(TableName.SALES_ORDERS, "SO-1", {"id": "SO-2"})
    gateway.delete(TableName.SALES_ORDERS, "SO-1")
    with pytest.raises(data_manager.PersistenceError):
        gateway.update(TableName.SALES_ORDERS, "SO-1", {"status": "closed"})


def test_in_memory_gateway_rejects_wrong_record_type():
    gateway = data_manager.InMemoryGateway()

    with pytest.raises(TypeError):
        gateway.insert(TableName.INVOICES, [_order_row()])


# ---------------------------------------------------------------------------
# Workbook gateway
# ---------------------------------------------------------------------------


def test_workbook_gateway_persists_records(workbook_factory):
    """Rows written through the gateway survive a save and reload."""

    path = workbook_factory()
    gateway = data_manager.WorkbookGateway(data_manager.open_workbook(path))
    gateway.insert(TableName.SALES_ORDERS, [_order_row(), _order_row(id="SO-2", status="pending")])
    gateway.update(TableName.SALES_ORDERS, "SO-2", {"status": "cancelled", "approved_by": "U-ADMIN"})
    gateway.save(path)

    reloaded = data_manager.WorkbookGateway(data_manager.open_workbook(path))
    rows = reloaded.select(TableName.SALES_ORDERS, order_by="id")

    assert [row.id for row in rows] == ["SO-1", "SO-2"]
    assert rows[0].total == Decimal("100.00")
    assert rows[0].approved_by is None
    assert rows[1].status == "cancelled"
    assert rows[1].approved_by == "U-ADMIN"


def test_workbook_gateway_delete_removes_row(workbook_factory):
    gateway = data_manager.WorkbookGateway(data_manager.open_workbook(workbook_factory()))
    gateway.insert(TableName.SALES_ORDERS, [_order_row()])

    gateway.delete(TableName.SALES_ORDERS, "SO-1")

    assert gateway.select(TableName.SALES_ORDERS) == []
    with pytest.raises(data_manager.PersistenceError):
        gateway.delete(TableName.SALES_ORDERS, "SO-1")


def test_workbook_gateway_requires_sheet(workbook_factory):
    workbook = data_manager.open_workbook(workbook_factory())
    workbook.remove(workbook[TableName.DISPUTES.value])
    gateway = data_manager.WorkbookGateway(workbook)

    with pytest.raises(data_manager.PersistenceError):
        gateway.select(TableName.DISPUTES)


def test_locate_row_rejects_unknown_column(workbook_factory):
    workbook = data_manager.open_workbook(workbook_factory())

    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, TableName.SALES_ORDERS.value, "colour", "x")


# ---------------------------------------------------------------------------
# REST gateway
# ---------------------------------------------------------------------------


def test_rest_gateway_insert_posts_json_with_auth_headers():
    row = _order_row()
    session = Mock(spec=requests.Session)
    session.request.return_value = _response(201, [data_manager.record_to_json(row)])
    gateway = data_manager.RestGateway("https://db.example.com/", "secret", session=session)

    inserted = gateway.insert(TableName.SALES_ORDERS, [row])

    assert inserted == [row]
    method, url = session.request.call_args.args
    kwargs = session.request.call_args.kwargs
    assert method == "POST"
    assert url == "https://db.example.com/rest/v1/sales_orders"
    assert kwargs["headers"]["apikey"] == "secret"
    assert kwargs["headers"]["Authorization"] == "Bearer secret"
    assert kwargs["headers"]["Prefer"] == "return=representation"
    assert kwargs["json"][0]["total"] == "100.00"


def test_rest_gateway_select_builds_query_parameters():
    session = Mock(spec=requests.Session)
    session.request.return_value = _response(200, [])
    gateway = data_manager.RestGateway("https://db.example.com", "secret", session=session)

    gateway.select(
        TableName.SALES_ORDERS,
        filters={"status": "pending", "requires_approval": True, "approved_by": None},
        order_by="created_at",
        descending=True,
        limit=5,
    )

    params = session.request.call_args.kwargs["params"]
    assert params == {
        "select": "*",
        "status": "eq.pending",
        "requires_approval": "eq.true",
        "approved_by": "is.null",
        "order": "created_at.desc",
        "limit": "5",
    }


def test_rest_gateway_update_reports_missing_rows():
    session = Mock(spec=requests.Session)
    session.request.return_value = _response(200, [])
    gateway = data_manager.RestGateway("https://db.example.com", "secret", session=session)

    with pytest.raises(data_manager.PersistenceError):
        gateway.update(TableName.SALES_ORDERS, "SO-404", {"status": "closed"})

    assert session.request.call_args.kwargs["params"] == {"id": "eq.SO-404"}


def test_rest_gateway_translates_http_errors():
    session = Mock(spec=requests.Session)
    session.request.return_value = _response(409, {"message": "duplicate key"})
    gateway = data_manager.RestGateway("https://db.example.com", "secret", session=session)

    with pytest.raises(data_manager.PersistenceError, match="409"):
        gateway.insert(TableName.SALES_ORDERS, [_order_row()])


def test_rest_gateway_translates_transport_errors():
    session = Mock(spec=requests.Session)
    session.request.side_effect = requests.ConnectionError("offline")
    gateway = data_manager.RestGateway("https://db.example.com", "secret", session=session)

    with pytest.raises(data_manager.PersistenceError, match="offline"):
        gateway.select(TableName.INVOICES)


def test_rest_gateway_rejects_invalid_json():
    session = Mock(spec=requests.Session)
    response = _response(200, None, content=b"<html>")
    response.json.side_effect = ValueError("not json")
    session.request.return_value = response
    gateway = data_manager.RestGateway("https://db.example.com", "secret", session=session)

    with pytest.raises(data_manager.PersistenceError):
        gateway.select(TableName.INVOICES)
