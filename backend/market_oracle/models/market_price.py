from sqlalchemy import Column, Date, DateTime, Float, Index, String

from market_oracle.db.base import Base


class MarketPrice(Base):
    """
    One cached price observation per (commodity, market, day).
    The primary key is the composite key built by ``services.normalizer.price_key``.
    """

    __tablename__ = "market_prices"

    id = Column(String(160), primary_key=True)
    commodity = Column(String(64), nullable=False)
    market = Column(String(64), nullable=False)
    county = Column(String(64), nullable=False)
    retail = Column(Float, nullable=False)
    wholesale = Column(Float, nullable=False)
    price_date = Column(Date, nullable=False)

    # created_at is written once per key; updated_at on every upsert
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_market_prices_commodity_market_date", "commodity", "market", "price_date"),
        Index("ix_market_prices_date", "price_date"),
        Index("ix_market_prices_county", "county"),
    )
