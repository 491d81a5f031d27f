from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    ForeignKey,
    Integer,
    String,
    Numeric,
    TIMESTAMP,
    Text,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from app.core.database import Base


# =========================
# User
# =========================
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)

    email = Column(String, nullable=False, unique=True, index=True)
    password = Column(String, nullable=False)
    role = Column(String, nullable=False, server_default="user")

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Relationships
    conversations = relationship(
        "Conversation",
        back_populates="owner",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


# =========================
# Transaction (the table users ask questions about)
# =========================
class Transaction(Base):
    """
    Card transaction facts.

    Generated SQL only ever reads from here; the application never writes
    to it on behalf of a question.
    """

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)

    card_no = Column(String(255), nullable=False)
    date = Column(Date, nullable=False, index=True)
    process_date = Column(Date, nullable=False, index=True)

    trx_amount_usd = Column(Numeric(15, 2))
    trx_amount_eur = Column(Numeric(15, 2))
    trx_amount_local = Column(Numeric(15, 2))
    trx_cnt_usd = Column(Integer, default=0)
    trx_cnt_eur = Column(Integer, default=0)
    trx_cnt_local = Column(Integer, default=0)
    interchange_fee = Column(Numeric(15, 2))

    merch_name = Column(String(255), index=True)
    agg_merch_name = Column(String(255), index=True)
    issuer_code = Column(String(50), index=True)
    issuer_country = Column(String(100), index=True)
    bin6_code = Column(String(6))
    acquirer_code = Column(String(50), index=True)
    acquirer_country = Column(String(100))

    trx_type = Column(String(50), index=True)
    trx_direction = Column(String(10))  # plus / minus
    mcc = Column(String(10), index=True)
    mcc_group = Column(String(100), index=True)
    input_mode = Column(String(50))
    wallet_type = Column(String(50))
    product_type = Column(String(50))
    authorization_status = Column(String(50), index=True)
    authorization_response_code = Column(String(10))
    location_id = Column(String(100))
    location_city = Column(String(100), index=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# =========================
# Conversation
# =========================
class Conversation(Base):
    """
    A thread of questions owned by one user.

    Conversations form a forest: a root has no parent, a branch points at
    its parent conversation and at the message it diverged from.
    """

    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title = Column(String(255), nullable=True)

    parent_id = Column(
        Integer,
        ForeignKey("conversations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    # Not a foreign key: the branch point is recorded as given by the caller
    branch_point_message_id = Column(Integer, nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Relationships
    owner = relationship("User", back_populates="conversations")

    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by=lambda: [Message.created_at, Message.id],
    )


# =========================
# Message (one question/answer exchange)
# =========================
class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint(
            "result_data IS NULL OR error_message IS NULL",
            name="ck_messages_result_or_error",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)

    conversation_id = Column(
        Integer,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    user_message = Column(Text, nullable=False)
    sql_query = Column(Text, nullable=True)

    # serialized JSON array of row objects
    result_data = Column(Text, nullable=True)
    result_format = Column(String(20), nullable=True)  # text / table / error
    error_message = Column(Text, nullable=True)
    execution_time_ms = Column(Integer, nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        index=True,
    )

    # Relationships
    conversation = relationship("Conversation", back_populates="messages")
