"""create invite tables

Revision ID: a1c3e5f70001
Revises:
Create Date: 2026-10-16 09:12:04.118230

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "a1c3e5f70001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # Portable: SQLite + Postgres
    op.create_table(
        "properties",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("address", sa.String(length=255), nullable=True),
        sa.Column("city", sa.String(length=128), nullable=True),
        sa.Column("state", sa.String(length=64), nullable=True),
        sa.Column("zip", sa.String(length=16), nullable=True),
        sa.Column("unit", sa.String(length=32), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
    )
    op.create_index("ix_properties_owner_id", "properties", ["owner_id"], unique=False)

    op.create_table(
        "invite_tokens",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("resource_id", sa.String(length=36), nullable=False),
        sa.Column("lookup_hash", sa.String(length=64), nullable=False),
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("token_salt", sa.String(length=32), nullable=False),
        sa.Column("max_uses", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("use_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("intended_identity", sa.String(length=255), nullable=True),
        sa.Column("issued_by", sa.String(length=255), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_by", sa.String(length=255), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("exhausted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["resource_id"], ["properties.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("lookup_hash", name="uq_invite_tokens_lookup_hash"),
        sa.UniqueConstraint("token_hash", name="uq_invite_tokens_token_hash"),
        sa.CheckConstraint("max_uses >= 1", name="ck_invite_tokens_max_uses_positive"),
        sa.CheckConstraint("use_count >= 0", name="ck_invite_tokens_use_count_non_negative"),
        sa.CheckConstraint("use_count <= max_uses", name="ck_invite_tokens_use_count_within_max"),
    )

    # Lookups, owner listings and cleanup sweeps
    op.create_index("ix_invite_tokens_resource_id", "invite_tokens", ["resource_id"], unique=False)
    op.create_index("ix_invite_tokens_expires_at", "invite_tokens", ["expires_at"], unique=False)
    op.create_index(
        "ix_invite_tokens_resource_created",
        "invite_tokens",
        ["resource_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "access_grants",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("grantee_id", sa.String(length=255), nullable=False),
        sa.Column("resource_id", sa.String(length=36), nullable=False),
        sa.Column("token_id", sa.String(length=36), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["resource_id"], ["properties.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["token_id"], ["invite_tokens.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("grantee_id", "resource_id", name="uq_access_grants_grantee_resource"),
    )
    op.create_index("ix_access_grants_id", "access_grants", ["id"], unique=False)
    op.create_index("ix_access_grants_grantee_id", "access_grants", ["grantee_id"], unique=False)
    op.create_index("ix_access_grants_resource_id", "access_grants", ["resource_id"], unique=False)
    op.create_index("ix_access_grants_token_id", "access_grants", ["token_id"], unique=False)

    op.create_table(
        "rate_limit_counters",
        sa.Column("limiter_key", sa.String(length=255), nullable=False),
        sa.Column("window_start", sa.BigInteger(), nullable=False),
        sa.Column("window_seconds", sa.Integer(), nullable=False),
        sa.Column("count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.PrimaryKeyConstraint("limiter_key", "window_start"),
    )
    op.create_index(
        "ix_rate_limit_counters_window_start",
        "rate_limit_counters",
        ["window_start"],
        unique=False,
    )


def downgrade():
    op.drop_index("ix_rate_limit_counters_window_start", table_name="rate_limit_counters")
    op.drop_table("rate_limit_counters")

    op.drop_index("ix_access_grants_token_id", table_name="access_grants")
    op.drop_index("ix_access_grants_resource_id", table_name="access_grants")
    op.drop_index("ix_access_grants_grantee_id", table_name="access_grants")
    op.drop_index("ix_access_grants_id", table_name="access_grants")
    op.drop_table("access_grants")

    op.drop_index("ix_invite_tokens_resource_created", table_name="invite_tokens")
    op.drop_index("ix_invite_tokens_expires_at", table_name="invite_tokens")
    op.drop_index("ix_invite_tokens_resource_id", table_name="invite_tokens")
    op.drop_table("invite_tokens")

    op.drop_index("ix_properties_owner_id", table_name="properties")
    op.drop_table("properties")
