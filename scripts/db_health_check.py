#!/usr/bin/env python
from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url


EXPECTED_HEAD = "0001_initial"
REQUIRED_TABLES = (
    "teams",
    "users",
    "leave_requests",
    "leave_logs",
    "leave_balances",
    "leave_balance_adjustments",
)


def load_env_if_exists() -> None:
    env_file = Path(".env")
    if not env_file.exists():
        return
    for raw_line in env_file.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


def run() -> dict:
    load_env_if_exists()
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL not found (.env or env vars).")

    engine = create_engine(database_url)
    report: dict = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "database_url": make_url(database_url).render_as_string(hide_password=True),
        "checks": [],
    }

    def add(name: str, status: str, details: dict) -> None:
        report["checks"].append(
            {
                "name": name,
                "status": status,
                "details": details,
            }
        )

    with engine.connect() as conn:
        tables = set(
            conn.execute(
                text(
                    """
                    select table_name
                    from information_schema.tables
                    where table_schema='public'
                    """
                )
            ).scalars()
        )

        current_versions: list[str] = []
        if "alembic_version" in tables:
            current_versions = [
                row[0]
                for row in conn.execute(text("select version_num from alembic_version")).fetchall()
            ]
        add("alembic_version", "ok" if current_versions else "fail", {"current": current_versions})
        add(
            "migration_up_to_date",
            "ok" if EXPECTED_HEAD in current_versions else "warn",
            {"expected_head": EXPECTED_HEAD, "current": current_versions},
        )

        missing = [table for table in REQUIRED_TABLES if table not in tables]
        add("missing_tables", "fail" if missing else "ok", {"tables": missing})
        if missing:
            return report

        drifted_balances = conn.execute(
            text(
                """
                select b.user_id, b.leave_type_id, b.year, b.balance_minutes,
                       coalesce(sum(a.delta_minutes), 0) as ledger_minutes
                from leave_balances b
                left join leave_balance_adjustments a
                  on a.user_id = b.user_id
                 and a.leave_type_id = b.leave_type_id
                 and a.year = b.year
                group by b.user_id, b.leave_type_id, b.year, b.balance_minutes
                having b.balance_minutes <> coalesce(sum(a.delta_minutes), 0)
                limit 20
                """
            )
        ).fetchall()
        add(
            "balance_matches_ledger",
            "fail" if drifted_balances else "ok",
            {"rows": [list(row) for row in drifted_balances]},
        )

        orphan_adjustments = conn.execute(
            text(
                """
                select a.user_id, a.leave_type_id, a.year, count(*)
                from leave_balance_adjustments a
                left join leave_balances b
                  on b.user_id = a.user_id
                 and b.leave_type_id = a.leave_type_id
                 and b.year = a.year
                where b.id is null
                group by a.user_id, a.leave_type_id, a.year
                limit 20
                """
            )
        ).fetchall()
        add(
            "adjustments_without_balance",
            "fail" if orphan_adjustments else "ok",
            {"rows": [list(row) for row in orphan_adjustments]},
        )

        # Net ledger effect per request: approved = one debit, cancelled after approval = debit + restore.
        approved_without_debit = conn.execute(
            text(
                """
                select r.id, r.employee_uid, r.requested_minutes,
                       coalesce(sum(a.delta_minutes), 0) as ledger_minutes
                from leave_requests r
                left join leave_balance_adjustments a
                  on a.reference = 'leave-request:' || r.id
                where r.status = 'APPROVED'
                group by r.id, r.employee_uid, r.requested_minutes
                having coalesce(sum(a.delta_minutes), 0) <> -r.requested_minutes
                limit 20
                """
            )
        ).fetchall()
        add(
            "approved_request_debited_once",
            "fail" if approved_without_debit else "ok",
            {"rows": [list(row) for row in approved_without_debit]},
        )

        unapproved_with_balance_effect = conn.execute(
            text(
                """
                select r.id, r.status, sum(a.delta_minutes) as ledger_minutes
                from leave_requests r
                join leave_balance_adjustments a
                  on a.reference = 'leave-request:' || r.id
                where r.status <> 'APPROVED'
                group by r.id, r.status
                having sum(a.delta_minutes) <> 0
                limit 20
                """
            )
        ).fetchall()
        add(
            "unapproved_request_has_no_net_debit",
            "fail" if unapproved_with_balance_effect else "ok",
            {"rows": [list(row) for row in unapproved_with_balance_effect]},
        )

        orphan_requests = conn.execute(
            text(
                """
                select r.id
                from leave_requests r
                left join users u on u.uid = r.employee_uid
                where u.uid is null
                limit 20
                """
            )
        ).fetchall()
        add(
            "leave_request_orphan_user",
            "fail" if orphan_requests else "ok",
            {"sample_ids": [row[0] for row in orphan_requests]},
        )

    return report


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2))
