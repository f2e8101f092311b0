"""
Tests for AuthService.

These tests cover:
- School registration and founder verification
- Login, refresh, logout and logout-all
- Password forgot/reset/change and session invalidation
"""

import asyncio

import pytest

from shule.core.email import EmailKind
from shule.core.errors import (
    AuthenticationError,
    ConflictError,
    DependencyError,
    EmailNotVerifiedError,
    NotFoundError,
    SchoolInactiveError,
    ValidationError,
)
from shule.core.security import TokenKind
from shule.modules.auth import service as auth_module
from shule.modules.auth.registry import DeviceInfo
from shule.modules.auth.service import AuthService
from shule.modules.schools.helpers import DEFAULT_SETTINGS, TRIAL_DAYS
from shule.modules.schools.models import MembershipRole, SchoolStatus, SubscriptionStatus
from shule.modules.users.models import UserRole

FOUNDER_EMAIL = "founder@example.com"
FOUNDER_PASSWORD = "Secret123"
SCHOOL_EMAIL = "info@kilimani.ac.tz"


async def create_user(db, hasher, *, email, role, password="Teacher123", verified=True):
    return await auth_module.UserRepository.create(
        db,
        email=email,
        password_hash=hasher.hash(password),
        full_name="Test User",
        role=role,
        email_verified=verified,
    )


class TestRegistration:
    """Tests for register_school and founder verification."""

    @pytest.mark.asyncio
    async def test_register_creates_pending_school(
        self, auth_service, store, notifier, registration, mock_db
    ):
        result = await auth_service.register_school(mock_db, registration)

        assert result.status == "pending_verification"
        assert result.school.status == "pending"
        assert result.school.code.startswith("SCH-")
        assert result.school.email == SCHOOL_EMAIL

        founder = store.user_by_email(FOUNDER_EMAIL)
        assert founder.role == UserRole.PENDING_ADMIN
        assert founder.email_verified is False
        assert founder.password_hash != FOUNDER_PASSWORD

        recipient, data = notifier.last(EmailKind.FOUNDER_VERIFICATION)
        assert recipient == FOUNDER_EMAIL
        assert len(data["code"]) == 6
        assert data["school_code"] == result.school.code
        mock_db.commit.assert_awaited()

    @pytest.mark.asyncio
    async def test_login_before_verification_is_refused(
        self, auth_service, store, registration, mock_db
    ):
        await auth_service.register_school(mock_db, registration)

        with pytest.raises(EmailNotVerifiedError):
            await auth_service.login(mock_db, email=FOUNDER_EMAIL, password=FOUNDER_PASSWORD)

    @pytest.mark.asyncio
    async def test_duplicate_founder_email(self, auth_service, store, registration, mock_db):
        await auth_service.register_school(mock_db, registration)

        with pytest.raises(ConflictError) as exc_info:
            await auth_service.register_school(mock_db, registration)

        assert exc_info.value.error_code == "EMAIL_TAKEN"

    @pytest.mark.asyncio
    async def test_duplicate_school_email(self, auth_service, store, registration, mock_db):
        await auth_service.register_school(mock_db, registration)
        second = registration.model_copy(update={"founder_email": "other@example.com"})

        with pytest.raises(ConflictError) as exc_info:
            await auth_service.register_school(mock_db, second)

        assert exc_info.value.error_code == "SCHOOL_EXISTS"
        assert len(store.schools) == 1

    @pytest.mark.asyncio
    async def test_verification_activates_school(self, onboard, store, notifier):
        email, _, school_id = await onboard()

        school = store.schools[school_id]
        founder = store.user_by_email(email)
        assert school.status == SchoolStatus.ACTIVE
        assert school.verified_at is not None
        assert founder.role == UserRole.SCHOOL_ADMIN
        assert founder.email_verified is True

        (membership,) = store.memberships
        assert membership.role == MembershipRole.OWNER
        assert membership.is_primary_contact is True
        assert membership.user_id == founder.id

        (subscription,) = store.subscriptions
        assert subscription.status == SubscriptionStatus.TRIAL
        assert (subscription.end_date - subscription.start_date).days == TRIAL_DAYS
        assert len(store.settings) == len(DEFAULT_SETTINGS)

        welcome_to, _ = notifier.last(EmailKind.WELCOME)
        school_email_to, data = notifier.last(EmailKind.SCHOOL_EMAIL_VERIFICATION)
        assert welcome_to == email
        assert school_email_to == SCHOOL_EMAIL
        assert len(data["code"]) == 8

    @pytest.mark.asyncio
    async def test_code_cannot_be_reused(self, auth_service, notifier, registration, mock_db):
        await auth_service.register_school(mock_db, registration)
        _, data = notifier.last(EmailKind.FOUNDER_VERIFICATION)
        await auth_service.verify_email(mock_db, FOUNDER_EMAIL, data["code"])

        with pytest.raises(ValidationError) as exc_info:
            await auth_service.verify_email(mock_db, FOUNDER_EMAIL, data["code"])

        assert exc_info.value.error_code == "INVALID_CODE"

    @pytest.mark.asyncio
    async def test_wrong_code_leaves_school_pending(
        self, auth_service, store, notifier, registration, mock_db
    ):
        result = await auth_service.register_school(mock_db, registration)
        _, data = notifier.last(EmailKind.FOUNDER_VERIFICATION)
        wrong = "000000" if data["code"] != "000000" else "111111"

        with pytest.raises(ValidationError):
            await auth_service.verify_email(mock_db, FOUNDER_EMAIL, wrong)

        assert store.schools[result.school.id].status == SchoolStatus.PENDING
        mock_db.rollback.assert_awaited()


class TestResendVerification:
    """Tests for resend_verification."""

    @pytest.mark.asyncio
    async def test_resend_sends_new_code(self, auth_service, notifier, registration, mock_db):
        await auth_service.register_school(mock_db, registration)
        sent_before = len(notifier.sent)

        await auth_service.resend_verification(mock_db, FOUNDER_EMAIL)

        assert len(notifier.sent) == sent_before + 1
        _, data = notifier.last(EmailKind.FOUNDER_VERIFICATION)
        result = await auth_service.verify_email(mock_db, FOUNDER_EMAIL, data["code"])
        assert result.school.status == "active"

    @pytest.mark.asyncio
    async def test_resend_for_unknown_email(self, auth_service, store, mock_db):
        with pytest.raises(NotFoundError):
            await auth_service.resend_verification(mock_db, "nobody@example.com")

    @pytest.mark.asyncio
    async def test_resend_after_verification(self, onboard, auth_service, mock_db):
        email, _, _ = await onboard()

        with pytest.raises(NotFoundError):
            await auth_service.resend_verification(mock_db, email)

    @pytest.mark.asyncio
    async def test_delivery_failure_is_reported(
        self, auth_service, notifier, registration, mock_db
    ):
        await auth_service.register_school(mock_db, registration)
        notifier.fail_sends = True

        with pytest.raises(DependencyError) as exc_info:
            await auth_service.resend_verification(mock_db, FOUNDER_EMAIL)

        assert exc_info.value.status_code == 503
        assert exc_info.value.error_code == "EMAIL_DELIVERY_FAILED"
        mock_db.rollback.assert_awaited()


class TestLogin:
    """Tests for login."""

    @pytest.mark.asyncio
    async def test_login_issues_tokens(self, onboard, auth_service, issuer, store, mock_db):
        email, password, school_id = await onboard()

        result = await auth_service.login(
            mock_db,
            email=email.upper(),
            password=password,
            remember_me=True,
            device=DeviceInfo(user_agent="pytest", ip_address="10.0.0.1"),
        )

        claims = issuer.verify(result.response.access_token, TokenKind.ACCESS)
        assert claims["school_id"] == school_id
        assert claims["role"] == "school_admin"
        assert result.response.expires_in == 15 * 60
        assert result.response.school.id == school_id
        assert result.remember_me is True

        (record,) = store.tokens
        assert record.user_agent == "pytest"
        assert record.token_hash != result.refresh_token
        assert store.user_by_email(email).last_login is not None

    @pytest.mark.asyncio
    async def test_unknown_email_and_wrong_password_look_the_same(
        self, onboard, auth_service, mock_db
    ):
        email, _, _ = await onboard()

        with pytest.raises(AuthenticationError) as unknown:
            await auth_service.login(mock_db, email="ghost@example.com", password="Secret123")
        with pytest.raises(AuthenticationError) as wrong:
            await auth_service.login(mock_db, email=email, password="Wrong1234")

        assert unknown.value.error_code == wrong.value.error_code == "INVALID_CREDENTIALS"
        assert unknown.value.message == wrong.value.message
        assert unknown.value.status_code == wrong.value.status_code == 401

    @pytest.mark.asyncio
    async def test_inactive_account_is_refused(self, onboard, auth_service, store, mock_db):
        email, password, _ = await onboard()
        store.user_by_email(email).is_active = False

        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.login(mock_db, email=email, password=password)

        assert exc_info.value.error_code == "INVALID_CREDENTIALS"

    @pytest.mark.asyncio
    async def test_inactive_school_is_refused(self, onboard, auth_service, store, mock_db):
        email, password, school_id = await onboard()
        store.schools[school_id].status = SchoolStatus.SUSPENDED

        with pytest.raises(SchoolInactiveError):
            await auth_service.login(mock_db, email=email, password=password)

    @pytest.mark.asyncio
    async def test_member_logs_into_their_school(
        self, onboard, auth_service, hasher, issuer, store, make_membership, mock_db
    ):
        _, _, school_id = await onboard()
        teacher = await create_user(
            mock_db, hasher, email="teacher@example.com", role=UserRole.TEACHER
        )
        make_membership(teacher.id, school_id)

        result = await auth_service.login(
            mock_db, email="teacher@example.com", password="Teacher123"
        )

        claims = issuer.verify(result.response.access_token, TokenKind.ACCESS)
        assert claims["role"] == "teacher"
        assert claims["school_id"] == school_id

    @pytest.mark.asyncio
    async def test_user_without_school_is_refused(self, auth_service, hasher, store, mock_db):
        await create_user(mock_db, hasher, email="loner@example.com", role=UserRole.TEACHER)

        with pytest.raises(SchoolInactiveError):
            await auth_service.login(mock_db, email="loner@example.com", password="Teacher123")

    @pytest.mark.asyncio
    async def test_platform_admin_has_no_school(
        self, auth_service, hasher, issuer, store, mock_db
    ):
        await create_user(mock_db, hasher, email="root@example.com", role=UserRole.SUPER_ADMIN)

        result = await auth_service.login(
            mock_db, email="root@example.com", password="Teacher123"
        )

        claims = issuer.verify(result.response.access_token, TokenKind.ACCESS)
        assert claims["school_id"] is None
        assert result.response.school is None


class TestSessions:
    """Tests for refresh, logout and logout-all."""

    @pytest.mark.asyncio
    async def test_refresh_returns_new_access_token(self, onboard, auth_service, store, mock_db):
        email, password, _ = await onboard()
        login = await auth_service.login(mock_db, email=email, password=password)

        result = await auth_service.refresh_access_token(mock_db, login.refresh_token)

        assert result.access_token
        assert result.expires_in == 15 * 60
        assert result.refresh_token is None
        assert store.tokens[0].last_used_at is not None

    @pytest.mark.asyncio
    async def test_refresh_without_token(self, auth_service, mock_db):
        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.refresh_access_token(mock_db, None)

        assert exc_info.value.error_code == "REFRESH_TOKEN_MISSING"

    @pytest.mark.asyncio
    async def test_access_token_cannot_refresh(self, onboard, auth_service, mock_db):
        email, password, _ = await onboard()
        login = await auth_service.login(mock_db, email=email, password=password)

        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.refresh_access_token(mock_db, login.response.access_token)

        assert exc_info.value.error_code == "INVALID_REFRESH_TOKEN"

    @pytest.mark.asyncio
    async def test_logout_revokes_refresh_token(self, onboard, auth_service, mock_db):
        email, password, _ = await onboard()
        login = await auth_service.login(mock_db, email=email, password=password)

        await auth_service.logout(mock_db, login.refresh_token)

        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.refresh_access_token(mock_db, login.refresh_token)
        assert exc_info.value.error_code == "INVALID_REFRESH_TOKEN"

    @pytest.mark.asyncio
    async def test_logout_without_token_is_a_no_op(self, auth_service, mock_db):
        await auth_service.logout(mock_db, None)

        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_logout_all_revokes_every_session(self, onboard, auth_service, store, mock_db):
        email, password, _ = await onboard()
        first = await auth_service.login(mock_db, email=email, password=password)
        second = await auth_service.login(mock_db, email=email, password=password)
        user = store.user_by_email(email)

        revoked = await auth_service.logout_all_devices(mock_db, user.id)

        assert revoked == 2
        for token in (first.refresh_token, second.refresh_token):
            with pytest.raises(AuthenticationError):
                await auth_service.refresh_access_token(mock_db, token)

    @pytest.mark.asyncio
    async def test_token_version_mismatch_revokes_all(self, onboard, auth_service, store, mock_db):
        email, password, _ = await onboard()
        first = await auth_service.login(mock_db, email=email, password=password)
        await auth_service.login(mock_db, email=email, password=password)
        store.user_by_email(email).token_version += 1

        with pytest.raises(AuthenticationError):
            await auth_service.refresh_access_token(mock_db, first.refresh_token)

        assert all(record.revoked for record in store.tokens)

    @pytest.fixture
    def rotating(self, services, test_settings):
        return AuthService(
            settings=test_settings.model_copy(update={"refresh_token_rotation": True}),
            hasher=services.hasher,
            issuer=services.issuer,
            registry=services.registry,
            codes=services.codes,
            notifier=services.notifier,
        )

    @pytest.mark.asyncio
    async def test_rotation_replaces_refresh_token(self, onboard, rotating, mock_db):
        email, password, _ = await onboard()
        login = await rotating.login(mock_db, email=email, password=password)

        result = await rotating.refresh_access_token(mock_db, login.refresh_token)

        assert result.refresh_token is not None
        assert result.refresh_token != login.refresh_token
        with pytest.raises(AuthenticationError):
            await rotating.refresh_access_token(mock_db, login.refresh_token)
        again = await rotating.refresh_access_token(mock_db, result.refresh_token)
        assert again.refresh_token is not None

    @pytest.mark.asyncio
    async def test_concurrent_rotation_redeems_token_once(
        self, onboard, rotating, services, store, mock_db, monkeypatch
    ):
        """Two refreshes racing on one token must not both get a new token."""
        email, password, _ = await onboard()
        login = await rotating.login(mock_db, email=email, password=password)
        lookup = services.registry.lookup

        async def interleaved_lookup(db, raw_token):
            record = await lookup(db, raw_token)
            await asyncio.sleep(0)
            return record

        monkeypatch.setattr(services.registry, "lookup", interleaved_lookup)

        outcomes = await asyncio.gather(
            rotating.refresh_access_token(mock_db, login.refresh_token),
            rotating.refresh_access_token(mock_db, login.refresh_token),
            return_exceptions=True,
        )

        failures = [o for o in outcomes if isinstance(o, AuthenticationError)]
        assert len(failures) == 1
        assert failures[0].error_code == "INVALID_REFRESH_TOKEN"
        assert all(record.revoked for record in store.tokens)


class TestCurrentUser:
    """Tests for get_current_user."""

    @pytest.mark.asyncio
    async def test_profile_includes_school_and_permissions(
        self, onboard, auth_service, store, mock_db
    ):
        email, password, school_id = await onboard()
        await auth_service.login(mock_db, email=email, password=password)
        user = store.user_by_email(email)

        profile = await auth_service.get_current_user(mock_db, user.id)

        assert profile.email == email
        assert profile.role == "school_admin"
        assert profile.school.id == school_id
        assert profile.school_role == "owner"
        assert "manage_school" in profile.permissions
        assert profile.last_login is not None
        assert "password_hash" not in profile.model_dump()

    @pytest.mark.asyncio
    async def test_unknown_user(self, auth_service, store, mock_db):
        with pytest.raises(NotFoundError):
            await auth_service.get_current_user(mock_db, "missing-id")


class TestPasswords:
    """Tests for password reset and change."""

    @pytest.mark.asyncio
    async def test_forgot_password_for_unknown_email_is_silent(
        self, auth_service, store, notifier, mock_db
    ):
        await auth_service.request_password_reset(mock_db, "ghost@example.com")

        assert notifier.sent == []
        assert store.codes == []

    @pytest.mark.asyncio
    async def test_reset_password_ends_sessions(
        self, onboard, auth_service, notifier, store, mock_db
    ):
        email, password, _ = await onboard()
        login = await auth_service.login(mock_db, email=email, password=password)
        version_before = store.user_by_email(email).token_version

        await auth_service.request_password_reset(mock_db, email)
        recipient, data = notifier.last(EmailKind.PASSWORD_RESET)
        assert recipient == email

        await auth_service.reset_password(
            mock_db, email=email, code=data["code"], new_password="NewSecret456"
        )

        assert store.user_by_email(email).token_version == version_before + 1
        with pytest.raises(AuthenticationError):
            await auth_service.refresh_access_token(mock_db, login.refresh_token)
        with pytest.raises(AuthenticationError):
            await auth_service.login(mock_db, email=email, password=password)
        await auth_service.login(mock_db, email=email, password="NewSecret456")

    @pytest.mark.asyncio
    async def test_reset_with_invalid_code(self, onboard, auth_service, mock_db):
        email, _, _ = await onboard()

        with pytest.raises(ValidationError) as exc_info:
            await auth_service.reset_password(
                mock_db, email=email, code="999999", new_password="NewSecret456"
            )

        assert exc_info.value.error_code == "INVALID_CODE"

    @pytest.mark.asyncio
    async def test_change_password(self, onboard, auth_service, store, mock_db):
        email, password, _ = await onboard()
        login = await auth_service.login(mock_db, email=email, password=password)
        user = store.user_by_email(email)

        await auth_service.change_password(
            mock_db, user_id=user.id, current_password=password, new_password="NewSecret456"
        )

        assert user.token_version == 2
        with pytest.raises(AuthenticationError):
            await auth_service.refresh_access_token(mock_db, login.refresh_token)

    @pytest.mark.asyncio
    async def test_change_password_wrong_current(self, onboard, auth_service, store, mock_db):
        email, _, _ = await onboard()
        user = store.user_by_email(email)

        with pytest.raises(AuthenticationError):
            await auth_service.change_password(
                mock_db, user_id=user.id, current_password="Wrong1234", new_password="NewSecret456"
            )

        assert user.token_version == 1

    @pytest.mark.asyncio
    async def test_change_password_to_same(self, onboard, auth_service, store, mock_db):
        email, password, _ = await onboard()
        user = store.user_by_email(email)

        with pytest.raises(ValidationError):
            await auth_service.change_password(
                mock_db, user_id=user.id, current_password=password, new_password=password
            )
