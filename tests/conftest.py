"""Shared pytest fixtures and utilities for water ERP tests."""

from __future__ import annotations

import argparse
import logging
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Iterator, Optional
from unittest.mock import Mock

import openpyxl
import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

import water_erp  # noqa: E402
from water_erp import cli, constants, core_logic, data_manager  # noqa: E402
from water_erp.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_USER_ID = "u1"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BusinessName = {business_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "DefaultUser = {default_user_id}\n\n"
    "[Storage]\n"
    "AutoSave = {autosave}\n\n"
    "[Inventory]\n"
    "StrictReconciliation = {strict}\n"
    "RestoreStockOnSaleChange = {restore}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_user_id: str
    schema_version: str
    business_name: str


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
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "water_master.xlsx") -> Path:
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
        business_name: str = "Agua Test",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_user_id: str = DEFAULT_USER_ID,
        autosave: bool = True,
        strict: bool = False,
        restore: bool = False,
        log_file: Optional[str] = None,
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        workbook_path = workbook_factory(subdir=bundle_dir_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                business_name=business_name,
                schema_version=schema_version,
                default_user_id=default_user_id,
                autosave=str(autosave).lower(),
                strict=str(strict).lower(),
                restore=str(restore).lower(),
            )
            + (f"\n[Logging]\nLogFile = {log_file}\n" if log_file else "")
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_user_id=default_user_id,
            schema_version=schema_version,
            business_name=business_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a disk-backed runtime context bound to the default test user."""

    context = core_logic.load_runtime_context(config_file, user_id=DEFAULT_USER_ID)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# In-memory store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def memory_workbook() -> openpyxl.Workbook:
    """Return a migrated workbook that never touches disk."""

    workbook = openpyxl.Workbook()
    data_manager.migrate_workbook(workbook)
    return workbook


@pytest.fixture
def store(memory_workbook: openpyxl.Workbook) -> data_manager.RecordStore:
    """Return a record store bound to the default test user."""

    return data_manager.RecordStore(memory_workbook, user_id=DEFAULT_USER_ID)


@pytest.fixture
def context_factory(tmp_path: Path) -> Callable[..., core_logic.RuntimeContext]:
    """Build runtime contexts over fresh in-memory workbooks."""

    def _create_context(
        *,
        strict: bool = False,
        restore: bool = False,
        notifier: Optional[Callable] = None,
        user_id: Optional[str] = DEFAULT_USER_ID,
    ) -> core_logic.RuntimeContext:
        settings = data_manager.ConfigSettings(
            data_file=tmp_path / "unused.xlsx",
            business_name="Agua Test",
            schema_version=DEFAULT_SCHEMA_VERSION,
            default_user_id=DEFAULT_USER_ID,
            autosave=False,
            strict_reconciliation=strict,
            restore_stock_on_sale_change=restore,
        )
        workbook = openpyxl.Workbook()
        data_manager.migrate_workbook(workbook)
        record_store = data_manager.RecordStore(workbook, user_id=user_id)
        return core_logic.RuntimeContext(settings=settings, workbook=workbook, store=record_store, notifier=notifier)

    return _create_context


@pytest.fixture
def notifier() -> Mock:
    """Return a mock notification hook."""

    return Mock(name="notifier")


@pytest.fixture
def context(context_factory: Callable[..., core_logic.RuntimeContext], notifier: Mock) -> core_logic.RuntimeContext:
    """In-memory context with lenient reconciliation and a mock notifier."""

    return context_factory(notifier=notifier)


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


@pytest.fixture
def package_log_handlers() -> Iterator[logging.Logger]:
    """Yield the package logger and put its original handlers back afterwards."""

    original = list(water_erp.log.handlers)
    yield water_erp.log
    for handler in list(water_erp.log.handlers):
        if handler not in original:
            water_erp.log.removeHandler(handler)
            handler.close()
    for handler in original:
        if handler not in water_erp.log.handlers:
            water_erp.log.addHandler(handler)


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def command_table_entry() -> tuple[str, cli.CommandSpec]:
    """Provide a placeholder command table entry for dispatch tests."""

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        execute.__dict__["called"] = True
        return 0

    def register(subparsers: argparse._SubParsersAction) -> argparse.ArgumentParser:
        return subparsers.add_parser("catalog-test")

    spec = cli.CommandSpec(name="catalog-test", help_text="help", register=register, execute=execute)
    return "catalog-test", spec


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
