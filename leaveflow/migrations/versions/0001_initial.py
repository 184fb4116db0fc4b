"""Initial leave management schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

user_role = postgresql.ENUM(
    "employee",
    "team_lead",
    "manager",
    "admin",
    name="user_role",
    create_type=False,
)
leave_type = postgresql.ENUM(
    "annual",
    "sick",
    "unpaid",
    "other",
    name="leave_type",
    create_type=False,
)
leave_status = postgresql.ENUM(
    "SUBMITTED",
    "TL_APPROVED",
    "APPROVED",
    "REJECTED",
    "CANCELLED",
    name="leave_status",
    create_type=False,
)
leave_log_action = postgresql.ENUM(
    "CREATED",
    "TL_APPROVED",
    "APPROVED",
    "REJECTED",
    "CANCELLED",
    name="leave_log_action",
    create_type=False,
)
adjustment_source = postgresql.ENUM(
    "admin",
    "system",
    name="adjustment_source",
    create_type=False,
)


def _timestamp(name: str, *, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=None if nullable else sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in (user_role, leave_type, leave_status, leave_log_action, adjustment_source):
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "teams",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("lead_uid", sa.String(length=128), nullable=True),
        sa.Column("manager_uid", sa.String(length=128), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_teams_lead_uid", "teams", ["lead_uid"], unique=False)
    op.create_index("ix_teams_manager_uid", "teams", ["manager_uid"], unique=False)
    op.create_index("uq_teams_name_lower", "teams", [sa.text("lower(name)")], unique=True)

    op.create_table(
        "users",
        sa.Column("uid", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False, server_default=sa.text("''")),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("photo_url", sa.String(length=1024), nullable=True),
        sa.Column("is_whitelisted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("role", user_role, nullable=False, server_default=sa.text("'employee'")),
        sa.Column("team_id", sa.Integer(), nullable=True),
        sa.Column("join_date", sa.Date(), nullable=True),
        sa.Column("annual_entitlement_days", sa.Integer(), nullable=True),
        _timestamp("created_at"),
        _timestamp("last_login_at", nullable=True),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_users_team_id", "users", ["team_id"], unique=False)

    op.create_table(
        "leave_requests",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_uid", sa.String(length=128), nullable=False),
        sa.Column("team_id", sa.Integer(), nullable=False),
        sa.Column("type", leave_type, nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("requested_minutes", sa.Integer(), nullable=False),
        sa.Column("status", leave_status, nullable=False, server_default=sa.text("'SUBMITTED'")),
        sa.Column("note", sa.String(length=1000), nullable=True),
        sa.Column("step1_by_uid", sa.String(length=128), nullable=True),
        _timestamp("step1_at", nullable=True),
        sa.Column("step2_by_uid", sa.String(length=128), nullable=True),
        _timestamp("step2_at", nullable=True),
        sa.Column("rejected_by_uid", sa.String(length=128), nullable=True),
        _timestamp("rejected_at", nullable=True),
        sa.Column("rejection_reason", sa.String(length=1000), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("requested_minutes > 0", name="ck_leave_requests_minutes_positive"),
        sa.CheckConstraint("end_at > start_at", name="ck_leave_requests_range"),
        sa.ForeignKeyConstraint(["employee_uid"], ["users.uid"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_leave_requests_employee_uid", "leave_requests", ["employee_uid"], unique=False)
    op.create_index("ix_leave_requests_team_id", "leave_requests", ["team_id"], unique=False)
    op.create_index("ix_leave_requests_status", "leave_requests", ["status"], unique=False)
    op.create_index(
        "ix_leave_requests_employee_start",
        "leave_requests",
        ["employee_uid", "start_at"],
        unique=False,
    )

    op.create_table(
        "leave_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("request_id", sa.Integer(), nullable=False),
        sa.Column("action", leave_log_action, nullable=False),
        sa.Column("actor_uid", sa.String(length=128), nullable=False),
        _timestamp("at"),
        sa.Column("meta", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.ForeignKeyConstraint(["request_id"], ["leave_requests.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_leave_logs_request_id", "leave_logs", ["request_id"], unique=False)

    op.create_table(
        "leave_balances",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("leave_type_id", sa.String(length=32), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("balance_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _timestamp("updated_at", nullable=True),
        sa.Column("updated_by", sa.String(length=128), nullable=True),
        _timestamp("last_carryover_at", nullable=True),
        sa.Column("last_carryover_from_year", sa.Integer(), nullable=True),
        sa.UniqueConstraint("user_id", "leave_type_id", "year", name="uq_leave_balances_key"),
    )
    op.create_index("ix_leave_balances_user_id", "leave_balances", ["user_id"], unique=False)

    op.create_table(
        "leave_balance_adjustments",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("leave_type_id", sa.String(length=32), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("delta_minutes", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=500), nullable=False),
        sa.Column("reference", sa.String(length=500), nullable=True),
        sa.Column("actor_uid", sa.String(length=128), nullable=False),
        sa.Column("source", adjustment_source, nullable=False),
        _timestamp("created_at"),
        sa.CheckConstraint("delta_minutes <> 0", name="ck_leave_balance_adjustments_nonzero"),
    )
    op.create_index(
        "ix_leave_balance_adjustments_user_id",
        "leave_balance_adjustments",
        ["user_id"],
        unique=False,
    )
    op.create_index(
        "ix_leave_balance_adjustments_created_at",
        "leave_balance_adjustments",
        ["created_at"],
        unique=False,
    )
    op.create_index(
        "ix_leave_balance_adjustments_key",
        "leave_balance_adjustments",
        ["user_id", "leave_type_id", "year"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_leave_balance_adjustments_key", table_name="leave_balance_adjustments")
    op.drop_index("ix_leave_balance_adjustments_created_at", table_name="leave_balance_adjustments")
    op.drop_index("ix_leave_balance_adjustments_user_id", table_name="leave_balance_adjustments")
    op.drop_table("leave_balance_adjustments")
    op.drop_index("ix_leave_balances_user_id", table_name="leave_balances")
    op.drop_table("leave_balances")
    op.drop_index("ix_leave_logs_request_id", table_name="leave_logs")
    op.drop_table("leave_logs")
    op.drop_index("ix_leave_requests_employee_start", table_name="leave_requests")
    op.drop_index("ix_leave_requests_status", table_name="leave_requests")
    op.drop_index("ix_leave_requests_team_id", table_name="leave_requests")
    op.drop_index("ix_leave_requests_employee_uid", table_name="leave_requests")
    op.drop_table("leave_requests")
    op.drop_index("ix_users_team_id", table_name="users")
    op.drop_table("users")
    op.drop_index("uq_teams_name_lower", table_name="teams")
    op.drop_index("ix_teams_manager_uid", table_name="teams")
    op.drop_index("ix_teams_lead_uid", table_name="teams")
    op.drop_table("teams")

    bind = op.get_bind()
    for enum_type in (adjustment_source, leave_log_action, leave_status, leave_type, user_role):
        enum_type.drop(bind, checkfirst=True)
