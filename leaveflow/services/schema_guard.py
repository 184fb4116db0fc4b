"""Startup check that the live database matches the ORM models.

Tables, columns, enum labels and named unique keys are read from
``Base.metadata`` so the guard follows the models without a second list to
maintain. The balance ledger depends on ``uq_leave_balances_key``: a first
insert for a (user, type, year) that loses a race must fail with a unique
violation so the transaction is retried, which is why missing unique keys are
issues rather than warnings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Enum as SqlEnum
from sqlalchemy import MetaData, UniqueConstraint, inspect, text
from sqlalchemy.engine import Engine, Inspector

from leaveflow.db import Base
import leaveflow.models  # noqa: F401  registers the tables on Base.metadata

EXPECTED_ALEMBIC_HEAD = "0001_initial"

# Created by the migration only; the models cannot express a lower(name) index.
MIGRATION_ONLY_UNIQUE_INDEXES: dict[str, set[str]] = {
    "teams": {"uq_teams_name_lower"},
}


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


def required_table_columns(metadata: MetaData | None = None) -> dict[str, set[str]]:
    metadata = metadata if metadata is not None else Base.metadata
    return {name: {column.name for column in table.columns} for name, table in metadata.tables.items()}


def required_enum_labels(metadata: MetaData | None = None) -> dict[str, set[str]]:
    metadata = metadata if metadata is not None else Base.metadata
    labels: dict[str, set[str]] = {}
    for table in metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, SqlEnum) and column.type.name:
                labels.setdefault(column.type.name, set()).update(column.type.enums)
    return labels


def required_unique_keys(metadata: MetaData | None = None) -> dict[str, set[str]]:
    metadata = metadata if metadata is not None else Base.metadata
    keys: dict[str, set[str]] = {}
    for name, table in metadata.tables.items():
        named = {str(item.name) for item in table.constraints if isinstance(item, UniqueConstraint) and item.name}
        if named:
            keys[name] = named
    return keys


def _unique_names(inspector: Inspector, table_name: str) -> set[str]:
    names = {str(item.get("name")) for item in inspector.get_unique_constraints(table_name)}
    # Postgres reports functional unique indexes only through get_indexes.
    names.update(str(item.get("name")) for item in inspector.get_indexes(table_name) if item.get("unique"))
    return names


def _check_tables(inspector: Inspector, issues: list[str]) -> set[str]:
    readable: set[str] = set()
    for table_name, required in sorted(required_table_columns().items()):
        try:
            present = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        except Exception as exc:
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue
        readable.add(table_name)
        missing = sorted(required - present)
        if missing:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing)}")
    return readable


def _check_unique_keys(inspector: Inspector, tables: set[str], issues: list[str], warnings: list[str]) -> None:
    for table_name, required in sorted(required_unique_keys().items()):
        if table_name not in tables:
            continue
        missing = sorted(required - _unique_names(inspector, table_name))
        if missing:
            issues.append(f"MISSING_UNIQUE_KEYS:{table_name}:{','.join(missing)}")

    for table_name, required in sorted(MIGRATION_ONLY_UNIQUE_INDEXES.items()):
        if table_name not in tables:
            continue
        missing = sorted(required - _unique_names(inspector, table_name))
        if missing:
            warnings.append(f"MISSING_UNIQUE_INDEXES:{table_name}:{','.join(missing)}")


def _check_enums(inspector: Inspector, issues: list[str], warnings: list[str]) -> None:
    try:
        reported = inspector.get_enums() or []
    except Exception as exc:
        warnings.append(f"ENUM_INSPECTION_FAILED:{exc.__class__.__name__}")
        return

    live = {str(item.get("name")): set(item.get("labels") or []) for item in reported if item.get("name")}
    for enum_name, required in sorted(required_enum_labels().items()):
        if enum_name not in live:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing = sorted(required - live[enum_name])
        if missing:
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing)}")


def _check_alembic_head(engine: Engine, issues: list[str], warnings: list[str]) -> None:
    try:
        with engine.connect() as connection:
            row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
    except Exception as exc:
        issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")
        return

    version = str(row).strip() if row is not None else ""
    if not version:
        issues.append("ALEMBIC_VERSION_EMPTY")
    elif version != EXPECTED_ALEMBIC_HEAD:
        warnings.append(f"ALEMBIC_VERSION_MISMATCH:{version}")


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)

    tables = _check_tables(inspector, issues)
    _check_unique_keys(inspector, tables, issues, warnings)
    _check_enums(inspector, issues, warnings)
    _check_alembic_head(engine, issues, warnings)

    return SchemaGuardResult(ok=not issues, checked_at_utc=checked_at_utc, issues=issues, warnings=warnings)
