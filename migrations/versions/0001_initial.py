"""Initial CarbonWatch schema: device catalog, telemetry, alerting, notifications.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18

"""

from __future__ import annotations

from datetime import datetime, timezone

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _json() -> sa.types.TypeEngine:
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


# Device types shipped with the original platform. Flat mappings mean every
# field is required; the battery type only declares optional fields.
SEED_DEVICE_TYPES = [
    {
        "id": "dt-elec-meter",
        "name": "Electricity meter",
        "description": "Smart meter reporting consumption and electrical quantities",
        "category": "energy",
        "data_schema": {
            "energy_consumption": "number",
            "power": "number",
            "voltage": "number",
            "current": "number",
        },
    },
    {
        "id": "dt-carbon-sensor",
        "name": "Carbon sensor",
        "description": "Carbon emission sensor",
        "category": "carbon",
        "data_schema": {"carbon_emission": "number", "intensity": "number"},
    },
    {
        "id": "dt-thermostat",
        "name": "Thermostat",
        "description": "HVAC thermostat",
        "category": "energy",
        "data_schema": {"temperature": "number", "humidity": "number", "mode": "string"},
    },
    {
        "id": "dt-battery-storage",
        "name": "Battery storage",
        "description": "Energy storage battery",
        "category": "energy",
        "data_schema": {
            "required": {},
            "optional": {
                "capacity": "number",
                "charge_rate": "number",
                "discharge_rate": "number",
                "efficiency": "number",
            },
        },
    },
]


def upgrade() -> None:
    device_types = op.create_table(
        "device_types",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(length=256), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(length=64), nullable=True),
        sa.Column("data_schema", _json(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
    )

    op.create_table(
        "devices",
        sa.Column("device_id", sa.String(length=128), primary_key=True),
        sa.Column("display_name", sa.String(length=256), nullable=False),
        sa.Column("device_type_id", sa.String(length=64), sa.ForeignKey("device_types.id"), nullable=True),
        _ts("last_seen_at", nullable=True),
        sa.Column("status", sa.String(length=32), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
    )

    op.create_table(
        "telemetry_points",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("device_id", sa.String(length=128), nullable=False),
        sa.Column("category", sa.String(length=16), nullable=False),
        _ts("ts"),
        sa.Column("fields", _json(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("device_id", "category", "ts", name="uq_telemetry_device_category_ts"),
    )
    op.create_index("ix_telemetry_device_ts", "telemetry_points", ["device_id", "ts"])

    op.create_table(
        "alert_rules",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("data_type", sa.String(length=16), nullable=False),
        sa.Column("device_id", sa.String(length=128), nullable=True),
        sa.Column("conditions", _json(), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False, server_default="medium"),
        sa.Column("cooldown_s", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.String(length=1024), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_alert_rules_data_type", "alert_rules", ["data_type"])
    op.create_index("ix_alert_rules_device_id", "alert_rules", ["device_id"])

    op.create_table(
        "alerts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("rule_id", sa.String(length=36), nullable=True),
        sa.Column("alert_type", sa.String(length=64), nullable=False, server_default="THRESHOLD"),
        sa.Column("device_id", sa.String(length=128), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("description", sa.String(length=1024), nullable=False),
        sa.Column("data", _json(), nullable=False),
        sa.Column("clear_streak", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("resolution", sa.String(length=1024), nullable=True),
        sa.Column("acknowledged_by", sa.String(length=256), nullable=True),
        _ts("acknowledged_at", nullable=True),
        sa.Column("resolved_by", sa.String(length=256), nullable=True),
        _ts("resolved_at", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index(
        "uq_alerts_open_rule_device",
        "alerts",
        ["rule_id", "device_id"],
        unique=True,
        sqlite_where=sa.text("status != 'resolved'"),
        postgresql_where=sa.text("status != 'resolved'"),
    )
    op.create_index("ix_alerts_rule_device_created", "alerts", ["rule_id", "device_id", "created_at"])
    op.create_index("ix_alerts_device_created", "alerts", ["device_id", "created_at"])
    op.create_index("ix_alerts_status_created", "alerts", ["status", "created_at"])
    op.create_index("ix_alerts_created_id", "alerts", ["created_at", "id"])

    op.create_table(
        "alert_audit",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("alert_id", sa.String(length=36), sa.ForeignKey("alerts.id"), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("actor", sa.String(length=256), nullable=False),
        sa.Column("from_status", sa.String(length=16), nullable=True),
        sa.Column("to_status", sa.String(length=16), nullable=False),
        sa.Column("note", sa.String(length=1024), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_alert_audit_alert_created", "alert_audit", ["alert_id", "created_at"])

    op.create_table(
        "notification_preferences",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=256), nullable=False, unique=True),
        sa.Column("channels", _json(), nullable=False),
        sa.Column("severity_filters", _json(), nullable=False),
        sa.Column("contacts", _json(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
    )

    op.create_table(
        "notification_logs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("alert_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=256), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("event", sa.String(length=32), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("error", sa.String(length=1024), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_notification_logs_alert_id", "notification_logs", ["alert_id"])
    op.create_index("ix_notification_logs_user_id", "notification_logs", ["user_id"])

    op.create_table(
        "device_access_grants",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("device_id", sa.String(length=128), sa.ForeignKey("devices.device_id"), nullable=False),
        sa.Column("user_id", sa.String(length=256), nullable=False),
        sa.Column("access_role", sa.String(length=16), nullable=False, server_default="viewer"),
        _ts("created_at"),
        sa.UniqueConstraint("device_id", "user_id", name="uq_device_access_grants_device_user"),
    )
    op.create_index("ix_device_access_grants_user", "device_access_grants", ["user_id"])

    now = datetime.now(timezone.utc)
    op.bulk_insert(
        device_types,
        [{**row, "created_at": now, "updated_at": now} for row in SEED_DEVICE_TYPES],
    )


def downgrade() -> None:
    op.drop_index("ix_device_access_grants_user", table_name="device_access_grants")
    op.drop_table("device_access_grants")
    op.drop_index("ix_notification_logs_user_id", table_name="notification_logs")
    op.drop_index("ix_notification_logs_alert_id", table_name="notification_logs")
    op.drop_table("notification_logs")
    op.drop_table("notification_preferences")
    op.drop_index("ix_alert_audit_alert_created", table_name="alert_audit")
    op.drop_table("alert_audit")
    op.drop_index("ix_alerts_created_id", table_name="alerts")
    op.drop_index("ix_alerts_status_created", table_name="alerts")
    op.drop_index("ix_alerts_device_created", table_name="alerts")
    op.drop_index("ix_alerts_rule_device_created", table_name="alerts")
    op.drop_index("uq_alerts_open_rule_device", table_name="alerts")
    op.drop_table("alerts")
    op.drop_index("ix_alert_rules_device_id", table_name="alert_rules")
    op.drop_index("ix_alert_rules_data_type", table_name="alert_rules")
    op.drop_table("alert_rules")
    op.drop_index("ix_telemetry_device_ts", table_name="telemetry_points")
    op.drop_table("telemetry_points")
    op.drop_table("devices")
    op.drop_table("device_types")
