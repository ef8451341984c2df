"""Shared pytest fixtures and utilities for Soundbox Ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

candidate_str = str(SRC_DIR)
if candidate_str not in sys.path:
    sys.path.insert(0, candidate_str)

from soundbox_ledger import cli, constants, core_logic, data_manager, reconciliation  # noqa: E402
from soundbox_ledger.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "ShopName = {shop_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Search]\n"
    "TopK = {top_k}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    shop_name: str


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
    """Factory that creates an initialized shop workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "shop_workbook.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def shop_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh shop workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        shop_name: str = "Test Shop",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        top_k: int = 5,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                shop_name=shop_name,
                schema_version=schema_version,
                top_k=top_k,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            shop_name=shop_name,
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

    return argparse.ArgumentParser(prog="soundbox-cli", description="Soundbox CLI")


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
    """Provide default configuration settings for in-memory contexts."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "shop_workbook.xlsx",
        shop_name="Test Shop",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def tea() -> data_manager.ProductRow:
    return data_manager.ProductRow("P-TEA", "Tea", Decimal("10"))


@pytest.fixture
def samosa() -> data_manager.ProductRow:
    return data_manager.ProductRow("P-SAM", "Samosa", Decimal("15"))


@pytest.fixture
def catalog(tea: data_manager.ProductRow, samosa: data_manager.ProductRow) -> list[data_manager.ProductRow]:
    """Two-product catalog used throughout the reconciliation tests."""

    return [tea, samosa]


@pytest.fixture
def memory_store(catalog: list[data_manager.ProductRow]) -> data_manager.InMemoryStore:
    """In-memory store seeded with the sample catalog and some stock."""

    return data_manager.InMemoryStore(
        {
            constants.StoreKey.PRODUCTS.value: catalog,
            constants.StoreKey.INVENTORY.value: [
                data_manager.StockRow("P-TEA", 20, 5),
                data_manager.StockRow("P-SAM", 2, 5),
            ],
        }
    )


@pytest.fixture
def context(
    settings: data_manager.ConfigSettings,
    memory_store: data_manager.InMemoryStore,
) -> core_logic.RuntimeContext:
    """Assemble a runtime context backed by the in-memory store."""

    return core_logic.open_context(settings, memory_store)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``reconciliation.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(reconciliation, "datetime", _FixedDateTime)
        return moment

    return _apply
