"""Test configuration and fixtures."""

import os

# Settings are read once; keep the app's own engine off the working directory.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTH_MODE", "trusted")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from proposals.database import Base, get_db
from proposals.documents import get_analyzer
from proposals.identity import TrustedIdentityVerifier, get_verifier
from proposals.main import app
from proposals.models import User, UserPosition
from proposals.notifications import get_dispatcher


class RecordingDispatcher:
    """Collects deliveries instead of sending them."""

    def __init__(self):
        self.sent = []

    def notify(self, recipient, template, data):
        self.sent.append((recipient.email, template, data))

    def templates_for(self, email):
        return [template for recipient, template, _ in self.sent if recipient == email]


class FakeAnalyzer:
    def __init__(self, text="1. Overview\n2. Market\n3. Budget", report=None):
        self.text = text
        self.report = report or {
            "completeness_score": 72,
            "category_scores": {"market": 80, "budget": 55},
            "missing_sections": [
                {
                    "section_number": 4,
                    "is_missing": True,
                    "is_incomplete": False,
                    "reason": "No risk analysis",
                    "checkpoints": ["risks", "mitigation"],
                }
            ],
            "strengths": ["Clear market sizing"],
            "critical_issues": [],
            "recommendations": ["Add a risk section"],
        }
        self.analyzed = []
        self.scored = []

    def analyze(self, content, mime_type):
        self.analyzed.append((content, mime_type))
        return {"extracted_text": self.text}

    def score(self, extracted_text):
        self.scored.append(extracted_text)
        return self.report


@pytest.fixture
def db_session():
    """Create an in-memory SQLite database for each test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def client(db_session, dispatcher, analyzer):
    """Test client acting as whoever is named in the bearer header."""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_verifier] = TrustedIdentityVerifier
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_analyzer] = lambda: analyzer
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db_session):
    def _make_user(
        email, position=UserPosition.REVIEWER, is_admin=False, is_approved=True
    ):
        user = User(
            email=email,
            name=email.split("@")[0].title(),
            position=position,
            is_admin=is_admin,
            is_approved=is_approved,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def executor(make_user):
    return make_user("executor@example.com", position=UserPosition.EXECUTOR)


@pytest.fixture
def reviewer(make_user):
    return make_user("reviewer1@example.com")


@pytest.fixture
def second_reviewer(make_user):
    return make_user("reviewer2@example.com")


@pytest.fixture
def final_approver(make_user):
    return make_user("approver@example.com")


@pytest.fixture
def admin(make_user):
    return make_user("admin@example.com", is_admin=True)
