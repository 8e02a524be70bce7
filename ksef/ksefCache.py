import os
import json
import logging
import datetime

from sqlalchemy import Column, String, Float, DateTime, Text, Index, create_engine, select, func
from sqlalchemy.orm import DeclarativeBase, Session

DIRECTIONS = ('received', 'sent')


def utcnow() -> datetime.datetime:
    # SQLite keeps no timezone, cache timestamps are naive UTC
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class InvoiceRecord(Base):
    __tablename__ = "invoices_cache"

    id = Column(String(100), primary_key=True)
    ksef_id = Column(String(100), nullable=True)
    direction = Column(String(10), nullable=False) # received / sent
    number = Column(String(255), nullable=True)

    seller_name = Column(String(512), nullable=True)
    seller_tax_id = Column(String(32), nullable=True)
    buyer_name = Column(String(512), nullable=True)
    buyer_tax_id = Column(String(32), nullable=True)

    net_amount = Column(Float, nullable=True)
    amount = Column(Float, nullable=True) # gross
    currency = Column(String(3), default="PLN")
    issue_date = Column(String(32), nullable=True)
    due_date = Column(String(32), nullable=True)
    status = Column(String(32), nullable=True)

    payload = Column(Text, nullable=False) # invoice summary as JSON
    cached_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_invoices_direction_cached_at', 'direction', 'cached_at'),
    )

    @classmethod
    def from_summary(cls, summary: dict, cached_at: datetime.datetime = None):
        direction = summary.get('type')
        if direction not in DIRECTIONS:
            raise ValueError(f"Unknown invoice direction: {direction}")

        seller = summary.get('seller') or {}
        buyer = summary.get('buyer') or {}
        return cls(
            id=summary['id'],
            ksef_id=summary.get('ksefNumber'),
            direction=direction,
            number=summary.get('invoiceNumber'),
            seller_name=seller.get('name'),
            seller_tax_id=seller.get('taxId'),
            buyer_name=buyer.get('name'),
            buyer_tax_id=buyer.get('taxId'),
            net_amount=summary.get('netAmount'),
            amount=summary.get('grossAmount', summary.get('amount')),
            currency=summary.get('currency') or 'PLN',
            issue_date=summary.get('issueDate'),
            due_date=summary.get('dueDate'),
            status=summary.get('status'),
            payload=json.dumps(summary, ensure_ascii=False, default=str),
            cached_at=cached_at,
        )

    def to_summary(self) -> dict:
        return json.loads(self.payload)

    def __repr__(self):
        return f"InvoiceRecord(id={self.id!r}, direction={self.direction!r}, cached_at={self.cached_at!r})"


class ksefCache:
    """
    Local invoice store (SQLite through SQLAlchemy).

    One row per KSeF number; re-fetching the same invoice replaces it. Nothing is
    ever evicted.
    """

    def __init__(self, db_path: str = None, url: str = None, logger: logging.Logger = None):
        """
        Args:
            db_path: SQLite file path
            url: SQLAlchemy database URL, overrides db_path ('sqlite://' for in-memory)
        """
        self.logger = logger or logging.getLogger(__name__)

        if url is None:
            if not db_path:
                raise ValueError("db_path or url is required")
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
            url = f"sqlite:///{db_path}"

        self.engine = create_engine(url, connect_args={"check_same_thread": False} if url.startswith('sqlite') else {})
        Base.metadata.create_all(self.engine)
        self.logger.debug(f"Invoice cache ready: {self.engine.url}")

    def upsert(self, record: InvoiceRecord) -> InvoiceRecord:
        """
        Insert or replace invoice by id.

        cached_at is set to now unless the record carries its own.
        """
        now = utcnow()
        if record.cached_at is None:
            record.cached_at = now
        record.updated_at = now

        with Session(self.engine, expire_on_commit=False) as session:
            merged = session.merge(record)
            session.commit()
        self.logger.debug(f"Invoice {record.id[:20]}... cached")
        return merged

    def query_by_direction(self, direction: str, limit: int = 50, offset: int = 0) -> list:
        """
        Get cached invoices, newest cached first.

        Returns:
            list of InvoiceRecord
        """
        stmt = (
            select(InvoiceRecord)
            .where(InvoiceRecord.direction == direction)
            .order_by(InvoiceRecord.cached_at.desc(), InvoiceRecord.id)
            .limit(limit)
            .offset(offset)
        )
        with Session(self.engine, expire_on_commit=False) as session:
            return list(session.scalars(stmt))

    def get(self, invoice_id: str) -> InvoiceRecord:
        with Session(self.engine, expire_on_commit=False) as session:
            return session.get(InvoiceRecord, invoice_id)

    def count(self, direction: str = None) -> int:
        stmt = select(func.count()).select_from(InvoiceRecord)
        if direction:
            stmt = stmt.where(InvoiceRecord.direction == direction)
        with Session(self.engine) as session:
            return session.scalar(stmt)

    def close(self):
        self.engine.dispose()
