# Database access layer: engine and session setup, schema creation, and a few
# read helpers shared by the CLI and the pipeline components.

from typing import List, Optional

import pymysql
import sqlalchemy.exc
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import Session, sessionmaker

from config.settings import get_settings
from pricewatch.database.models import Base, MergedProduct, ProductSource, ProductVariant

# Get application settings
settings = get_settings()

# The engine owns the connection pool; creating it does not connect yet
engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True)

# Session factory used by every component; one session per scrape request
SessionLocal = sessionmaker(bind=engine)


def ensure_database_exists(target: Optional[Engine] = None):
    """Ensure that the MySQL database exists before attempting operations.

    Non-MySQL backends (SQLite in tests and local runs) create their storage on
    first connect, so they are left alone.
    """
    target = target or engine
    if target.dialect.name != "mysql":
        return

    try:
        # Test if we can connect to the database
        with target.connect() as conn:
            conn.execute(text("SELECT 1"))
        return
    except sqlalchemy.exc.OperationalError as e:
        if "Unknown database" not in str(e):
            print(f"Database connection error: {e}")
            raise

    url = make_url(str(target.url))
    try:
        create_db_connection = pymysql.connect(
            host=url.host or settings.DB_HOST,
            user=url.username or settings.DB_USER,
            password=url.password or settings.DB_PASS,
            port=int(url.port or settings.DB_PORT),
        )
    except pymysql.Error as conn_err:
        print(f"Failed to connect to MySQL server: {conn_err}")
        raise

    try:
        with create_db_connection.cursor() as cursor:
            cursor.execute(f"CREATE DATABASE IF NOT EXISTS `{url.database}` CHARACTER SET utf8mb4")
        print(f"Created database '{url.database}'")
    except pymysql.Error as db_err:
        print(f"Failed to create database: {db_err}")
        raise
    finally:
        create_db_connection.close()


def init_db(target: Optional[Engine] = None):
    """Create database tables if they don't exist.

    Schema migrations are not managed here; create_all only adds missing tables.
    """
    target = target or engine
    ensure_database_exists(target)
    Base.metadata.create_all(bind=target)


def get_active_sources(db: Session, limit: int = 100) -> List[ProductSource]:
    """Return active sources, least recently scraped first.

    Sources that were never scraped sort before everything else.
    """
    return (
        db.query(ProductSource)
        .filter(ProductSource.is_active.is_(True))
        .order_by(ProductSource.last_scraped_at.is_(None).desc(), ProductSource.last_scraped_at.asc())
        .limit(limit)
        .all()
    )


def get_merged_product(db: Session, merged_product_id: str) -> Optional[MergedProduct]:
    return db.query(MergedProduct).filter(MergedProduct.id == merged_product_id).first()


def get_variants(db: Session, merged_product_id: str) -> List[ProductVariant]:
    return (
        db.query(ProductVariant)
        .filter(ProductVariant.merged_product_id == merged_product_id)
        .order_by(ProductVariant.is_default.desc(), ProductVariant.label.asc())
        .all()
    )
