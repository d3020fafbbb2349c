from sqlalchemy import (
    Column,
    Date,
    ForeignKey,
    Integer,
    String,
    Numeric,
    TIMESTAMP,
    Text,
    JSON,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from ledgerchat.core.database import Base


# =========================
# Customer
# =========================
class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, autoincrement=True)

    entity_id = Column(String, nullable=False, unique=True, index=True)  # "CUST-0042"
    company_name = Column(String, nullable=False)
    email = Column(String)
    state = Column(String(2), index=True)  # two-letter US state code
    balance = Column(Numeric(12, 2), nullable=False, server_default="0")

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Relationships
    transactions = relationship(
        "Transaction",
        back_populates="customer",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


# =========================
# Transaction
# =========================
class Transaction(Base):
    """
    Core table of the datastore: invoices, payments, sales orders and credit
    memos, each tied to one customer.
    """

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)

    tran_id = Column(String, nullable=False, index=True)  # document number, "INV-1001"
    tran_date = Column(Date, nullable=False, index=True)
    type = Column(String, nullable=False)  # invoice/payment/sales_order/credit_memo
    status = Column(String, nullable=False)  # open/paid/pending/cancelled

    total = Column(Numeric(12, 2), nullable=False)
    currency = Column(String, default="USD")

    customer_id = Column(
        Integer,
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    memo = Column(Text)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Relationships
    customer = relationship("Customer", back_populates="transactions")


# =========================
# Saved query (written by the generate-and-persist flow)
# =========================
class SavedQuery(Base):
    __tablename__ = "saved_queries"

    id = Column(Integer, primary_key=True, autoincrement=True)

    title = Column(String, nullable=False)
    record_type = Column(String, nullable=False)
    filters = Column(JSON, nullable=False)
    columns = Column(JSON, nullable=False)

    # the request that produced it, kept for auditing
    source_prompt = Column(Text)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# Tables the query flow may read and the persist flow may target
QUERYABLE_MODELS = {
    "customer": Customer,
    "transaction": Transaction,
}
