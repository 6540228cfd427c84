"""
Shared fixtures: a throwaway SQLite database per test, demo parties and a
priced product, and an API client wired to the test database.
"""
import os

# Settings are read at import time
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-quotedesk-suite-0123456789")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SEED_DEMO", "false")

from dataclasses import dataclass
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.rbac import PartyType
from app.core.security import create_access_token
from app.db.session import Base, get_db
from app.db import models  # noqa - register tables
from app.db.models import DefaultPrice, Party, Product, User


@dataclass
class Actor:
    party: Party
    user: User

    @property
    def party_id(self) -> int:
        return self.party.id

    @property
    def user_id(self) -> int:
        return self.user.id


@dataclass
class World:
    buyer: Actor
    other_buyer: Actor
    supplier: Actor
    provider: Actor
    other_supplier: Actor
    product: Product


def make_actor(db: Session, name: str, party_type: PartyType) -> Actor:
    party = Party(name=name, party_type=party_type.value)
    db.add(party)
    db.flush()
    user = User(
        email=f"{name.lower().replace(' ', '.')}@quotedesk.test",
        full_name=f"{name} User",
        party_id=party.id,
    )
    db.add(user)
    db.commit()
    db.refresh(party)
    db.refresh(user)
    return Actor(party=party, user=user)


def token_for(actor: Actor) -> str:
    return create_access_token({
        "sub": str(actor.user.id),
        "party_id": actor.party.id,
        "party_type": actor.party.party_type,
        "email": actor.user.email,
    })


def auth_headers(actor: Actor) -> dict:
    return {"Authorization": f"Bearer {token_for(actor)}"}


@pytest.fixture
def engine(tmp_path):
    """File-backed so several sessions can see each other's commits."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'quotedesk.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def world(db_session: Session) -> World:
    buyer = make_actor(db_session, "Acme Builders", PartyType.COMPANY)
    other_buyer = make_actor(db_session, "Globex Construction", PartyType.COMPANY)
    supplier = make_actor(db_session, "Northwind Materials", PartyType.SUPPLIER)
    provider = make_actor(db_session, "Rapid Plumbing", PartyType.SERVICE_PROVIDER)
    other_supplier = make_actor(db_session, "Contoso Supply", PartyType.SUPPLIER)

    product = Product(
        supplier_id=supplier.party_id,
        sku="CONC-25KG",
        name="Concrete Mix 25kg",
        category="Building Materials",
        unit="bag",
    )
    db_session.add(product)
    db_session.flush()
    db_session.add(DefaultPrice(product_id=product.id, amount=Decimal("200.00"), currency="USD"))
    db_session.commit()
    db_session.refresh(product)

    return World(
        buyer=buyer,
        other_buyer=other_buyer,
        supplier=supplier,
        provider=provider,
        other_supplier=other_supplier,
        product=product,
    )


@pytest.fixture
def client(session_factory):
    """TestClient against the per-test database. Lifespan (preflight) is not run."""
    from fastapi.testclient import TestClient
    from app.main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
