"""
Shared test fixtures.

Service flows run against an in-memory store that stands in for the
repositories, so registration, verification and sessions can be exercised
end to end without a database. Single-call units use AsyncMock sessions.
"""

import os

# Configure before any shule module reads settings
os.environ["PYTHON_ENV"] = "test"
os.environ["JWT_ACCESS_SECRET"] = "test-access-secret-0123456789abcdef"
os.environ["JWT_REFRESH_SECRET"] = "test-refresh-secret-0123456789abcdef"
os.environ["PASSWORD_HASH_ROUNDS"] = "4"
os.environ.pop("RESEND_API_KEY", None)

from contextlib import ExitStack  # noqa: E402
from datetime import UTC, datetime, timedelta  # noqa: E402
from types import SimpleNamespace  # noqa: E402
from unittest.mock import AsyncMock, MagicMock, patch  # noqa: E402
from uuid import uuid4  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from shule.core import redis as redis_state  # noqa: E402
from shule.core.config import Settings  # noqa: E402
from shule.core.database import get_db  # noqa: E402
from shule.core.email import EmailDeliveryError, EmailKind, EmailResult  # noqa: E402
from shule.core.errors import ConflictError  # noqa: E402
from shule.core.rate_limit import reset_memory_store  # noqa: E402
from shule.core.security import PasswordHasher, TokenIssuer, hash_token  # noqa: E402
from shule.dependencies import Services  # noqa: E402
from shule.main import create_app  # noqa: E402
from shule.modules.auth.registry import DeviceInfo  # noqa: E402
from shule.modules.auth.schemas import RegisterSchoolRequest  # noqa: E402
from shule.modules.auth.service import AuthService  # noqa: E402
from shule.modules.schools.models import (  # noqa: E402
    MembershipRole,
    SchoolStatus,
    SubscriptionStatus,
)
from shule.modules.schools.repository import LEADERSHIP_ROLES  # noqa: E402
from shule.modules.schools.service import SchoolService  # noqa: E402
from shule.modules.users.models import UserRole  # noqa: E402
from shule.modules.verification.service import VerificationCodeService  # noqa: E402

FOUNDER_EMAIL = "founder@example.com"
FOUNDER_PASSWORD = "Secret123"
SCHOOL_EMAIL = "info@kilimani.ac.tz"
SCHOOL_PHONE = "+255712345678"


def _now() -> datetime:
    return datetime.now(UTC)


def _row(**fields) -> SimpleNamespace:
    now = _now()
    fields.setdefault("id", str(uuid4()))
    fields.setdefault("created_at", now)
    fields.setdefault("updated_at", now)
    return SimpleNamespace(**fields)


# ============================================
# In-memory store and repositories
# ============================================


class InMemoryStore:
    """Rows of every table, keyed by id where lookups need it."""

    def __init__(self):
        self.users: dict[str, SimpleNamespace] = {}
        self.schools: dict[str, SimpleNamespace] = {}
        self.memberships: list[SimpleNamespace] = []
        self.subscriptions: list[SimpleNamespace] = []
        self.settings: list[SimpleNamespace] = []
        self.codes: list[SimpleNamespace] = []
        self.tokens: list[SimpleNamespace] = []

    def user_by_email(self, email: str) -> SimpleNamespace | None:
        return next((u for u in self.users.values() if u.email == email.lower()), None)

    def codes_for(self, email: str, type) -> list[SimpleNamespace]:
        return [c for c in self.codes if c.email == email.lower() and c.type == type]


class FakeUserRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def create(
        self,
        db,
        *,
        email,
        password_hash,
        full_name,
        role,
        phone=None,
        is_active=True,
        email_verified=False,
    ):
        user = _row(
            email=email.lower(),
            password_hash=password_hash,
            full_name=full_name,
            role=role,
            phone=phone,
            is_active=is_active,
            email_verified=email_verified,
            token_version=1,
            last_login=None,
        )
        self.store.users[user.id] = user
        return user

    async def get_by_id(self, db, user_id):
        return self.store.users.get(str(user_id))

    async def get_by_email(self, db, email):
        return self.store.user_by_email(email)

    async def get_active_by_email(self, db, email):
        user = self.store.user_by_email(email)
        return user if user is not None and user.is_active else None

    async def email_exists(self, db, email):
        return self.store.user_by_email(email) is not None

    async def mark_founder_verified(self, db, user):
        user.role = UserRole.SCHOOL_ADMIN
        user.email_verified = True
        return user

    async def update_last_login(self, db, user):
        user.last_login = _now()

    async def set_password(self, db, user, password_hash):
        user.password_hash = password_hash
        user.token_version += 1
        return user.token_version


class FakeSchoolRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def create(self, db, **fields):
        fields.setdefault("country", "Tanzania")
        school = _row(
            status=SchoolStatus.PENDING,
            verified_at=None,
            email_verified_at=None,
            **fields,
        )
        self.store.schools[school.id] = school
        return school

    async def get_by_id(self, db, school_id):
        return self.store.schools.get(str(school_id))

    async def get_by_email(self, db, email):
        return next(
            (s for s in self.store.schools.values() if s.email == email.lower()), None
        )

    async def code_exists(self, db, code):
        return any(s.code == code.upper() for s in self.store.schools.values())

    async def email_exists(self, db, email):
        return await self.get_by_email(db, email) is not None

    async def phone_exists(self, db, phone, *, exclude_school_id=None):
        return any(
            s.phone == phone and s.id != exclude_school_id for s in self.store.schools.values()
        )

    async def get_pending_by_founder_email(self, db, email):
        founder = self.store.user_by_email(email)
        if founder is None:
            return None
        return next(
            (
                s
                for s in self.store.schools.values()
                if s.founder_user_id == founder.id and s.status == SchoolStatus.PENDING
            ),
            None,
        )

    async def activate(self, db, school):
        school.status = SchoolStatus.ACTIVE
        school.verified_at = _now()
        return school

    async def mark_email_verified(self, db, school):
        school.email_verified_at = _now()
        return school

    async def update_fields(self, db, school, changes):
        for field, value in changes.items():
            setattr(school, field, value)
        return school


class FakeMembershipRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def create(
        self,
        db,
        *,
        school_id,
        user_id,
        role,
        is_primary_contact=False,
        permissions=None,
        added_by=None,
    ):
        if role in LEADERSHIP_ROLES and any(
            m.user_id == user_id and m.role in LEADERSHIP_ROLES and m.removed_at is None
            for m in self.store.memberships
        ):
            raise ConflictError("This user already leads a school.", "MEMBERSHIP_CONFLICT")

        membership = _row(
            school_id=school_id,
            user_id=user_id,
            role=role,
            is_primary_contact=is_primary_contact,
            permissions=permissions or [],
            added_by=added_by,
            removed_at=None,
        )
        self.store.memberships.append(membership)
        return membership

    async def get_primary_for_user(self, db, user_id):
        active = [
            m for m in self.store.memberships if m.user_id == str(user_id) and m.removed_at is None
        ]
        active.sort(key=lambda m: (m.role not in LEADERSHIP_ROLES, m.created_at))
        return active[0] if active else None


class FakeSubscriptionRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def create_trial(self, db, *, school_id, days, max_students, max_teachers):
        start = _now()
        subscription = _row(
            school_id=school_id,
            plan_name="trial",
            status=SubscriptionStatus.TRIAL,
            start_date=start,
            end_date=start + timedelta(days=days),
            trial_end_date=start + timedelta(days=days),
            max_students=max_students,
            max_teachers=max_teachers,
        )
        self.store.subscriptions.append(subscription)
        return subscription

    async def get_current(self, db, school_id):
        rows = [s for s in self.store.subscriptions if s.school_id == str(school_id)]
        return rows[-1] if rows else None


class FakeSettingRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def create_many(self, db, *, school_id, settings):
        for category, key, value, value_type in settings:
            self.store.settings.append(
                _row(
                    school_id=school_id,
                    category=category,
                    setting_key=key,
                    setting_value=value,
                    setting_type=value_type,
                )
            )
        return len(settings)

    async def count_for_school(self, db, school_id):
        return sum(1 for s in self.store.settings if s.school_id == str(school_id))


class FakeCodeRepository:
    """Stands in for the verification repository module."""

    def __init__(self, store: InMemoryStore):
        self.store = store

    async def create(
        self,
        db,
        *,
        email,
        code,
        type,
        expires_at,
        metadata=None,
        user_id=None,
        school_id=None,
    ):
        record = _row(
            email=email,
            code=code,
            type=type,
            expires_at=expires_at,
            code_metadata=metadata or {},
            user_id=user_id,
            school_id=school_id,
            used=False,
            used_at=None,
        )
        self.store.codes.append(record)
        return record

    def _matches(self, email, code, type):
        return [c for c in self.store.codes_for(email, type) if c.code == code]

    async def consume(self, db, *, email, code, type):
        valid = [
            c for c in self._matches(email, code, type) if not c.used and c.expires_at > _now()
        ]
        if not valid:
            return None
        record = max(valid, key=lambda c: c.created_at)
        record.used = True
        record.used_at = _now()
        return record

    async def find_match(self, db, *, email, code, type):
        matches = self._matches(email, code, type)
        return max(matches, key=lambda c: c.created_at) if matches else None

    async def count_created_since(self, db, *, email, type, since):
        return sum(1 for c in self.store.codes_for(email, type) if c.created_at > since)

    async def get_latest(self, db, *, email, type):
        codes = self.store.codes_for(email, type)
        return max(codes, key=lambda c: c.created_at) if codes else None

    async def invalidate_unused(self, db, *, email, type):
        unused = [c for c in self.store.codes_for(email, type) if not c.used]
        for c in unused:
            c.used = True
            c.used_at = _now()
        return len(unused)

    async def purge_expired(self, db, *, expired_before):
        before = len(self.store.codes)
        self.store.codes = [c for c in self.store.codes if c.expires_at >= expired_before]
        return before - len(self.store.codes)


class InMemoryRegistry:
    """Refresh token registry over the in-memory store."""

    def __init__(self, store: InMemoryStore):
        self.store = store

    def _find(self, raw_token):
        token_hash = hash_token(raw_token)
        return next((t for t in self.store.tokens if t.token_hash == token_hash), None)

    async def issue(self, db, *, user_id, raw_token, ttl, device=None):
        device = device or DeviceInfo()
        record = _row(
            user_id=str(user_id),
            token_hash=hash_token(raw_token),
            expires_at=_now() + ttl,
            revoked=False,
            user_agent=device.user_agent,
            ip_address=device.ip_address,
            last_used_at=None,
        )
        self.store.tokens.append(record)
        return record

    async def lookup(self, db, raw_token):
        record = self._find(raw_token)
        if record is None or record.revoked or record.expires_at <= _now():
            return None
        return record

    async def revoke(self, db, raw_token):
        record = self._find(raw_token)
        if record is None or record.revoked:
            return False
        record.revoked = True
        return True

    async def revoke_all_for_user(self, db, user_id):
        count = 0
        for record in self.store.tokens:
            if record.user_id == str(user_id) and not record.revoked:
                record.revoked = True
                count += 1
        return count

    async def touch(self, db, record_id):
        for record in self.store.tokens:
            if record.id == record_id:
                record.last_used_at = _now()

    async def purge_expired(self, db, *, older_than):
        before = len(self.store.tokens)
        self.store.tokens = [t for t in self.store.tokens if t.expires_at >= older_than]
        return before - len(self.store.tokens)


class RecordingNotifier:
    """Captures emails instead of sending them."""

    def __init__(self):
        self.sent: list[tuple[EmailKind, str, dict]] = []
        self.fail_sends = False

    async def send(self, kind, recipient, data):
        if self.fail_sends:
            raise EmailDeliveryError(f"Failed to send {kind.value} email")
        self.sent.append((kind, recipient, data))
        return EmailResult(success=True, message_id="msg-test")

    def dispatch(self, kind, recipient, data):
        self.sent.append((kind, recipient, data))

    @property
    def pending(self) -> int:
        return 0

    async def drain(self, timeout=None):
        return None

    def last(self, kind: EmailKind) -> tuple[str, dict]:
        """Recipient and data of the latest email of a kind."""
        for sent_kind, recipient, data in reversed(self.sent):
            if sent_kind == kind:
                return recipient, data
        raise AssertionError(f"No {kind.value} email was sent")


# ============================================
# Fixtures
# ============================================


@pytest.fixture(autouse=True)
def isolated_rate_limits(monkeypatch):
    """Each test starts with empty in-memory rate limit counters and no Redis."""
    monkeypatch.setattr(redis_state, "redis_client", None)
    reset_memory_store()
    yield
    reset_memory_store()


@pytest.fixture
def mock_db():
    """Create a mock database session."""
    db = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.refresh = AsyncMock()
    db.flush = AsyncMock()
    db.execute = AsyncMock()
    db.add = MagicMock()
    db.add_all = MagicMock()
    return db


@pytest.fixture
def mock_redis():
    """Create a mock Redis client."""
    redis = AsyncMock()
    redis.ping = AsyncMock(return_value=True)
    redis.pipeline = MagicMock()
    pipe = MagicMock()
    pipe.zremrangebyscore = MagicMock()
    pipe.zcard = MagicMock()
    pipe.zadd = MagicMock()
    pipe.expire = MagicMock()
    pipe.execute = AsyncMock(return_value=[0, 0, 1, True])
    redis.pipeline.return_value = pipe
    return redis


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        python_env="test",
        jwt_access_secret="test-access-secret-0123456789abcdef",
        jwt_refresh_secret="test-refresh-secret-0123456789abcdef",
        password_hash_rounds=4,
    )


@pytest.fixture
def hasher():
    return PasswordHasher(rounds=4)


@pytest.fixture
def issuer(test_settings):
    return TokenIssuer.from_settings(test_settings)


@pytest.fixture
def store():
    """In-memory store with every repository patched to use it."""
    store = InMemoryStore()
    users = FakeUserRepository(store)
    schools = FakeSchoolRepository(store)
    memberships = FakeMembershipRepository(store)
    subscriptions = FakeSubscriptionRepository(store)
    settings = FakeSettingRepository(store)

    targets = {
        "shule.modules.auth.service.UserRepository": users,
        "shule.modules.auth.service.SchoolRepository": schools,
        "shule.modules.auth.service.MembershipRepository": memberships,
        "shule.modules.auth.service.SubscriptionRepository": subscriptions,
        "shule.modules.auth.service.SettingRepository": settings,
        "shule.modules.schools.helpers.SchoolRepository": schools,
        "shule.modules.schools.service.SchoolRepository": schools,
        "shule.modules.schools.service.SubscriptionRepository": subscriptions,
        "shule.modules.schools.service.SettingRepository": settings,
        "shule.modules.verification.service.repository": FakeCodeRepository(store),
        "shule.core.auth.UserRepository": users,
    }

    with ExitStack() as stack:
        for target, fake in targets.items():
            stack.enter_context(patch(target, fake))
        yield store


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def registry(store):
    return InMemoryRegistry(store)


@pytest.fixture
def services(test_settings, hasher, issuer, registry, notifier):
    codes = VerificationCodeService()
    return Services(
        settings=test_settings,
        hasher=hasher,
        issuer=issuer,
        registry=registry,
        codes=codes,
        notifier=notifier,
        auth=AuthService(
            settings=test_settings,
            hasher=hasher,
            issuer=issuer,
            registry=registry,
            codes=codes,
            notifier=notifier,
        ),
        schools=SchoolService(codes=codes),
    )


@pytest.fixture
def auth_service(services):
    return services.auth


@pytest.fixture
def registration():
    """A valid school registration request."""
    return RegisterSchoolRequest(
        name="Kilimani Secondary School",
        email=SCHOOL_EMAIL,
        phone=SCHOOL_PHONE,
        address="Plot 12, Kilimani Road",
        district="Kinondoni",
        region="Dar es Salaam",
        founder_name="Amina Juma",
        founder_email=FOUNDER_EMAIL,
        founder_phone="0754000111",
        founder_password=FOUNDER_PASSWORD,
        agree_terms=True,
        agree_admin=True,
    )


@pytest.fixture
def onboard(auth_service, notifier, registration, mock_db):
    """
    Register a school and verify its founder.

    Returns an async callable giving (founder email, founder password, school id).
    """

    async def run(request: RegisterSchoolRequest | None = None):
        request = request or registration
        registered = await auth_service.register_school(mock_db, request)
        _, data = notifier.last(EmailKind.FOUNDER_VERIFICATION)
        await auth_service.verify_email(mock_db, request.founder_email, data["code"])
        return request.founder_email, request.founder_password, registered.school.id

    return run


@pytest.fixture
def make_membership(store):
    """Attach an existing user to a school with a role."""

    def make(user_id: str, school_id: str, role: MembershipRole = MembershipRole.TEACHER):
        membership = _row(
            school_id=school_id,
            user_id=user_id,
            role=role,
            is_primary_contact=False,
            permissions=[],
            added_by=None,
            removed_at=None,
        )
        store.memberships.append(membership)
        return membership

    return make


@pytest.fixture
def client(services, store, mock_db):
    """TestClient over the full application with the fake services."""
    app = create_app(services)

    async def override_get_db():
        yield mock_db

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)
