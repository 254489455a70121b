"""Shared pytest fixtures and utilities for Outvoicing tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from outvoicing import cli, constants, core_logic, data_manager, demo_data  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
TODAY = date(2024, 8, 5)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "SchemaVersion = {schema_version}\n"
    "ExportDirectory = {export_dir}\n\n"
    "[Company]\n"
    "Name = {company_name}\n"
    "Address = 1 Test Street\n"
    "InvoicePrefix = {invoice_prefix}\n"
    "InvoiceCounter = {invoice_counter}\n"
    "TaxRate = {tax_rate}\n"
    "PreferredGateway = {gateway}\n"
    "PayfastMerchantId = 10000100\n"
    "PayfastMerchantKey = 46f0cd694581a\n"
    "YocoPublicKey = pk_test_123456\n\n"
    "[Assistant]\n"
    "Model = test-model\n"
    "ApiKeyEnv = OUTVOICING_TEST_KEY\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    company_name: str
    schema_version: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the repository root path."""

    return PROJECT_ROOT


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that writes config.ini files on demand."""

    def _create_config(
        *,
        company_name: str = "Test Company",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        invoice_prefix: str = "INV-",
        invoice_counter: int = 5,
        tax_rate: str = "15",
        gateway: str = "payfast",
        export_dir: str = "exports",
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                schema_version=schema_version,
                export_dir=export_dir,
                company_name=company_name,
                invoice_prefix=invoice_prefix,
                invoice_counter=invoice_counter,
                tax_rate=tax_rate,
                gateway=gateway,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            company_name=company_name,
            schema_version=schema_version,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="outvoicing-cli", description="Outvoicing CLI")


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
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings built around the demo company."""

    return data_manager.ConfigSettings(
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        export_dir=tmp_path / "exports",
        company=demo_data.demo_company(),
        assistant_model="test-model",
        assistant_api_key_env="OUTVOICING_TEST_KEY",
    )


@pytest.fixture
def context(settings: data_manager.ConfigSettings) -> core_logic.RuntimeContext:
    """Assemble a runtime context around an empty state."""

    return core_logic.RuntimeContext(settings=settings, state=data_manager.AppState(company=settings.company))


@pytest.fixture
def demo_context(settings: data_manager.ConfigSettings) -> core_logic.RuntimeContext:
    """Assemble a runtime context around the seeded demo business."""

    return core_logic.RuntimeContext(
        settings=settings,
        state=demo_data.build_demo_state(settings.company, today=TODAY),
    )


@pytest.fixture
def client(context: core_logic.RuntimeContext) -> data_manager.Client:
    """Register a single client in the empty context."""

    return core_logic.add_client(
        context,
        name="Acme Trading",
        email="billing@acme.test",
        address="9 Main Road, Durban",
        hourly_rate=Decimal("500"),
        client_id="cli-acme",
    )


@pytest.fixture
def make_item() -> Callable[..., data_manager.LineItem]:
    """Return a helper that builds line items from plain strings."""

    def _make(
        description: str = "Consulting",
        quantity: str = "1",
        rate: str = "100",
        *,
        cost: str | None = None,
        product_id: str | None = None,
    ) -> data_manager.LineItem:
        return core_logic.build_line_item(description, quantity, rate, cost=cost, product_id=product_id)

    return _make


@pytest.fixture
def set_fixed_today(monkeypatch: pytest.MonkeyPatch) -> Callable[[date], date]:
    """Patch ``core_logic.datetime`` so the current date is predetermined."""

    def _apply(day: date) -> date:
        moment = datetime(day.year, day.month, day.day, 9, 30)

        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return day

    return _apply
