from sqlalchemy import Column, String, Integer, Float, Date, DateTime, PrimaryKeyConstraint
from models.base import Base, utcnow


class DimDate(Base):
    """
    Calendar dimension. DateKey is the smart key YYYYMMDD.

    Rows are derived from the date itself, so inserting a missing date is the
    only write this table ever needs.
    """
    __tablename__ = "DimDate"

    date_key = Column("DateKey", Integer, primary_key=True, autoincrement=False)
    date = Column("Date", Date, nullable=False, unique=True)
    year = Column("Year", Integer, nullable=False)
    quarter = Column("Quarter", Integer, nullable=False)
    month = Column("Month", Integer, nullable=False)
    day = Column("Day", Integer, nullable=False)
    month_name = Column("MonthName", String(20), nullable=False)
    day_name = Column("DayName", String(20), nullable=False)


class DimCustomer(Base):
    """
    Customer dimension (type-1).

    CustomerKey equals the registry's surrogate key for ("customer", id).
    RowVersion is the optimistic concurrency token bumped on every overwrite.
    """
    __tablename__ = "DimCustomer"

    customer_key = Column("CustomerKey", Integer, primary_key=True, autoincrement=False)
    business_customer_id = Column("BusinessCustomerId", String(255), nullable=False, unique=True)
    customer_name = Column("CustomerName", String(255), nullable=True)
    city = Column("City", String(200), nullable=True)
    country = Column("Country", String(100), nullable=True)
    last_updated = Column("LastUpdated", DateTime, nullable=False, default=utcnow)
    row_version = Column("RowVersion", Integer, nullable=False, default=1)


class DimProduct(Base):
    """Product dimension (type-1)."""
    __tablename__ = "DimProduct"

    product_key = Column("ProductKey", Integer, primary_key=True, autoincrement=False)
    business_product_id = Column("BusinessProductId", String(255), nullable=False, unique=True)
    product_name = Column("ProductName", String(255), nullable=True)
    category = Column("Category", String(200), nullable=True)
    unit_price = Column("UnitPrice", Float, nullable=True)
    last_updated = Column("LastUpdated", DateTime, nullable=False, default=utcnow)
    row_version = Column("RowVersion", Integer, nullable=False, default=1)


class DimSalesRep(Base):
    """Sales representative dimension (type-1)."""
    __tablename__ = "DimSalesRep"

    sales_rep_key = Column("SalesRepKey", Integer, primary_key=True, autoincrement=False)
    business_sales_rep_id = Column("BusinessSalesRepId", String(255), nullable=False, unique=True)
    sales_rep_name = Column("SalesRepName", String(255), nullable=True)
    region = Column("Region", String(100), nullable=True)
    last_updated = Column("LastUpdated", DateTime, nullable=False, default=utcnow)
    row_version = Column("RowVersion", Integer, nullable=False, default=1)


class FactSales(Base):
    """
    Sales fact at the grain (DateKey, CustomerKey, ProductKey, SalesRepKey).

    No foreign key constraints: dimensions and facts load independently and
    referential integrity is enforced by key resolution plus the quality
    validator. Unresolved optional references carry the dimension's
    unknown-member key.
    """
    __tablename__ = "FactSales"

    date_key = Column("DateKey", Integer, nullable=False)
    customer_key = Column("CustomerKey", Integer, nullable=False)
    product_key = Column("ProductKey", Integer, nullable=False)
    sales_rep_key = Column("SalesRepKey", Integer, nullable=False)

    quantity = Column("Quantity", Float, nullable=True)
    amount = Column("Amount", Float, nullable=True)

    last_updated = Column("LastUpdated", DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        PrimaryKeyConstraint("DateKey", "CustomerKey", "ProductKey", "SalesRepKey", name="pk_fact_sales_grain"),
    )
