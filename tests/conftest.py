"""Shared pytest fixtures and utilities for field sales tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, Optional, Sequence, Set, Tuple

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from field_sales import cli, constants, core_logic, data_manager  # noqa: E402
from field_sales.constants import TableName, UserRole  # noqa: E402
from field_sales.discount_policy import Discount  # noqa: E402
from field_sales.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "SchemaVersion = {schema_version}\n"
    "Backend = workbook\n\n"
    "[Policy]\n"
    "DefaultDiscountLimit = {default_limit}\n"
    "InventoryFailurePolicy = {inventory_policy}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str


class FlakyGateway(data_manager.InMemoryGateway):
    """In-memory gateway that fails chosen ``(operation, table)`` pairs.

    Every gateway call is recorded in :attr:`calls` so tests can assert what
    reached storage.
    """

    def __init__(self) -> None:
        super().__init__()
        self.failures: Set[Tuple[str, TableName]] = set()
        self.calls: list[Tuple[str, TableName]] = []

    def fail_on(self, operation: str, table: TableName) -> None:
        self.failures.add((operation, TableName(table)))

    def _check(self, operation: str, table: TableName) -> None:
        self.calls.append((operation, TableName(table)))
        if (operation, TableName(table)) in self.failures:
            raise data_manager.PersistenceError(f"simulated {operation} failure on {TableName(table).value}")

    def insert(self, table: TableName, records: Sequence[Any]) -> list[Any]:
        self._check("insert", table)
        return super().insert(table, records)

    def update(self, table: TableName, record_id: str, field_values: Mapping[str, Any]) -> Any:
        self._check("update", table)
        return super().update(table, record_id, field_values)

    def delete(self, table: TableName, record_id: str) -> None:
        self._check("delete", table)
        super().delete(table, record_id)

    def select(self, table: TableName, **kwargs: Any) -> list[Any]:
        self._check("select", table)
        return super().select(table, **kwargs)


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "field_sales.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_limit: str = "20",
        inventory_policy: str = "warn",
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        workbook_path = workbook_factory(subdir=bundle_dir_name)
        bundle_dir = workbook_path.parent
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                schema_version=schema_version,
                default_limit=default_limit,
                inventory_policy=inventory_policy,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a workbook-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="field-sales", description="Field sales CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Business logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "field_sales.xlsx",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def gateway() -> FlakyGateway:
    """Return an empty in-memory gateway that can be told to fail."""

    return FlakyGateway()


@pytest.fixture
def context(settings: data_manager.ConfigSettings, gateway: FlakyGateway) -> core_logic.RuntimeContext:
    """Assemble a runtime context around the in-memory gateway."""

    return core_logic.RuntimeContext(settings=settings, gateway=gateway)


@pytest.fixture
def superuser() -> core_logic.Actor:
    return core_logic.Actor(user_id="U-ADMIN", role=UserRole.SUPERUSER)


@pytest.fixture
def agency_user() -> core_logic.Actor:
    return core_logic.Actor(user_id="U-AGENCY", role=UserRole.AGENCY, agency_id="AG-1")


@pytest.fixture
def agent() -> core_logic.Actor:
    return core_logic.Actor(user_id="U-AGENT", role=UserRole.AGENT, agency_id="AG-1")


@pytest.fixture
def place_order(context: core_logic.RuntimeContext, agent: core_logic.Actor) -> Callable[..., core_logic.PlacedOrder]:
    """Factory placing an order for customer ``C-1`` through the public API."""

    def _place(
        items: Sequence[Tuple[str, int, str]] = (("P-1", 1, "100.00"),),
        *,
        discount: Optional[Discount] = None,
        actor: Optional[core_logic.Actor] = None,
        agency_id: Optional[str] = None,
    ) -> core_logic.PlacedOrder:
        command = core_logic.CreateOrderCommand(
            customer_id="C-1",
            customer_name="Acme Stores",
            items=[
                core_logic.OrderItemInput(product_id, f"Product {product_id}", quantity, Decimal(price))
                for product_id, quantity, price in items
            ],
            discount=discount or Discount.none(),
            agency_id=agency_id,
        )
        return core_logic.create_order(context, actor or agent, command)

    return _place


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
