"""
Database session management with SQLAlchemy.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from typing import Generator
from contextlib import contextmanager

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
    }


engine = create_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Dependency for getting database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for database session."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db():
    """
    Initialize database connection and run startup tasks.

    Schema is managed by Alembic migrations, NOT create_all().
    Run `alembic upgrade head` before first startup.

    Startup order:
    1. Run preflight check (validates DB connectivity)
    2. Verify schema exists (tables were created by Alembic)
    3. Seed demo parties and prices ONLY if SEED_DEMO=true
    """
    from sqlalchemy import inspect

    from app.db.preflight import run_db_preflight
    run_db_preflight()

    # Import models to register them (but don't create tables)
    from app.db import models  # noqa

    inspector = inspect(engine)
    existing_tables = inspector.get_table_names()
    required_tables = ['parties', 'quote_requests', 'quote_responses', 'counter_offers']

    missing = [t for t in required_tables if t not in existing_tables]
    if missing:
        logger.warning(f"Database schema missing tables: {missing}. Run 'alembic upgrade head'.")

        if settings.DEBUG:
            logger.warning("DEBUG=true: Auto-creating tables (NOT for production!)")
            Base.metadata.create_all(bind=engine)
        else:
            logger.error("Production mode: waiting for migrations to be run")
            return
    else:
        logger.info(f"Database schema verified: {len(existing_tables)} tables found")

    if settings.SEED_DEMO:
        logger.info("SEED_DEMO=true: Seeding demo data...")
        seed_demo_data()


def seed_demo_data():
    """
    Seed demo parties, a product with a default price and one private price.

    WARNING: creates predictable demo records. Never enable in production.
    """
    from decimal import Decimal
    from app.db.models import Party, User, Product, DefaultPrice, PrivatePrice, PartyType

    db = SessionLocal()
    try:
        if db.query(Party).first():
            logger.info("Demo data already exists. Skipping...")
            return

        company = Party(name="Acme Builders (DEMO)", party_type=PartyType.COMPANY.value)
        supplier = Party(name="Northwind Materials (DEMO)", party_type=PartyType.SUPPLIER.value)
        provider = Party(name="Rapid Plumbing (DEMO)", party_type=PartyType.SERVICE_PROVIDER.value)
        db.add_all([company, supplier, provider])
        db.flush()

        db.add_all([
            User(email="buyer@acme.example", full_name="Demo Buyer", party_id=company.id),
            User(email="sales@northwind.example", full_name="Demo Seller", party_id=supplier.id),
            User(email="ops@rapid.example", full_name="Demo Provider", party_id=provider.id),
        ])

        product = Product(
            supplier_id=supplier.id,
            sku="CONC-25KG",
            name="Concrete Mix 25kg",
            category="Building Materials",
            unit="bag",
        )
        db.add(product)
        db.flush()

        db.add(DefaultPrice(product_id=product.id, amount=Decimal("50.00"), currency="USD"))
        db.add(PrivatePrice(
            product_id=product.id,
            party_id=company.id,
            discount_percentage=Decimal("10"),
            notes="Framework agreement",
        ))

        db.commit()
        logger.info("Demo data seeded: 3 parties, 1 product, default and private price")

    except Exception:
        db.rollback()
        logger.exception("Demo seeding failed")
        raise
    finally:
        db.close()
