"""initial schema: users, transactions, conversations, messages

Revision ID: 3f1c2a9d7b10
Revises:
Create Date: 2026-10-19 09:12:41.507213

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c2a9d7b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.TIMESTAMP(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("password", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False, server_default="user"),
        _timestamp("created_at"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("card_no", sa.String(255), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("process_date", sa.Date(), nullable=False),
        sa.Column("trx_amount_usd", sa.Numeric(15, 2)),
        sa.Column("trx_amount_eur", sa.Numeric(15, 2)),
        sa.Column("trx_amount_local", sa.Numeric(15, 2)),
        sa.Column("trx_cnt_usd", sa.Integer()),
        sa.Column("trx_cnt_eur", sa.Integer()),
        sa.Column("trx_cnt_local", sa.Integer()),
        sa.Column("interchange_fee", sa.Numeric(15, 2)),
        sa.Column("merch_name", sa.String(255)),
        sa.Column("agg_merch_name", sa.String(255)),
        sa.Column("issuer_code", sa.String(50)),
        sa.Column("issuer_country", sa.String(100)),
        sa.Column("bin6_code", sa.String(6)),
        sa.Column("acquirer_code", sa.String(50)),
        sa.Column("acquirer_country", sa.String(100)),
        sa.Column("trx_type", sa.String(50)),
        sa.Column("trx_direction", sa.String(10)),
        sa.Column("mcc", sa.String(10)),
        sa.Column("mcc_group", sa.String(100)),
        sa.Column("input_mode", sa.String(50)),
        sa.Column("wallet_type", sa.String(50)),
        sa.Column("product_type", sa.String(50)),
        sa.Column("authorization_status", sa.String(50)),
        sa.Column("authorization_response_code", sa.String(10)),
        sa.Column("location_id", sa.String(100)),
        sa.Column("location_city", sa.String(100)),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    for column in (
        "date",
        "process_date",
        "merch_name",
        "agg_merch_name",
        "issuer_code",
        "issuer_country",
        "acquirer_code",
        "trx_type",
        "mcc",
        "mcc_group",
        "authorization_status",
        "location_city",
    ):
        op.create_index(f"ix_transactions_{column}", "transactions", [column])

    op.create_table(
        "conversations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("title", sa.String(255), nullable=True),
        sa.Column(
            "parent_id",
            sa.Integer(),
            sa.ForeignKey("conversations.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("branch_point_message_id", sa.Integer(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_conversations_user_id", "conversations", ["user_id"])
    op.create_index("ix_conversations_parent_id", "conversations", ["parent_id"])

    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "conversation_id",
            sa.Integer(),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_message", sa.Text(), nullable=False),
        sa.Column("sql_query", sa.Text(), nullable=True),
        sa.Column("result_data", sa.Text(), nullable=True),
        sa.Column("result_format", sa.String(20), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("execution_time_ms", sa.Integer(), nullable=True),
        _timestamp("created_at"),
        sa.CheckConstraint(
            "result_data IS NULL OR error_message IS NULL",
            name="ck_messages_result_or_error",
        ),
    )
    op.create_index("ix_messages_conversation_id", "messages", ["conversation_id"])
    op.create_index("ix_messages_created_at", "messages", ["created_at"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("messages")
    op.drop_table("conversations")
    op.drop_table("transactions")
    op.drop_table("users")
