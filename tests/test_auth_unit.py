"""Unit tests for the authentication orchestrator."""

import re
from datetime import datetime, timedelta, timezone

import pytest

from eoty.service.activity import ActivityLog
from eoty.service.anomaly import AnomalyDetector
from eoty.service.auth import (
    ACCOUNT_DEACTIVATED,
    FEDERATED_ONLY,
    INVALID_CREDENTIALS,
    RESET_SENT,
    AuthService,
    RequestContext,
    canonical_picture_url,
    profile_completion,
    registration_password_error,
    relative_picture_path,
    reset_password_error,
)
from eoty.service.email import EmailService, RecordingTransport
from eoty.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InternalError,
    LockedError,
    NotFoundError,
    ValidationError,
)
from eoty.service.oauth import OAuthIdentity, OAuthProvider
from eoty.service.permissions import PermissionResolver
from eoty.service.schema_probe import SchemaProbe
from eoty.service.sessions import SessionIssuer
from eoty.service.tokens import TokenRegistry
from eoty.storage.common import event_from_row
from eoty.storage.memory import MemoryStore
from eoty.storage.models import Capability, User

CTX = RequestContext(ip_address="203.0.113.10", user_agent="pytest-agent")
PASSWORD = "Secret#123"


class _StubProvider(OAuthProvider):
    """Provider whose exchange returns a canned identity."""

    def __init__(self, name, display_name, identity=None):
        super().__init__("id", "secret", frontend_url="http://localhost:3000")
        self.name = name
        self.display_name = display_name
        self.identity = identity

    async def exchange(self, code, redirect_uri=None):
        return self.identity


def _build(settings, *, store=None, transport=None, providers=None):
    store = store or MemoryStore()
    if not store.chapters:
        store.create_chapter("Main Chapter", "Springfield")
    probe = SchemaProbe(store)
    transport = transport or RecordingTransport()
    activity = ActivityLog(store, probe, AnomalyDetector(store, settings, probe))
    service = AuthService(
        store,
        settings,
        probe=probe,
        tokens=TokenRegistry(store, settings),
        email=EmailService(transport, frontend_url="http://localhost:3000"),
        activity=activity,
        sessions=SessionIssuer(settings),
        permissions=PermissionResolver(store, probe),
        providers=providers or {},
    )
    return service, store, transport


def _kinds(store, user_id="__any__"):
    events = [event_from_row(row) for row in store.activity_rows]
    if user_id != "__any__":
        events = [e for e in events if e.user_id == user_id]
    return [e.kind for e in events]


def _last_code(transport):
    return re.search(r"code is: (\d{6})", transport.sent[-1].text).group(1)


def _last_token(transport):
    return re.search(r"token=([\w-]+)", transport.sent[-1].html).group(1)


async def _register(service, email="ana@example.com", **overrides):
    values = dict(
        first_name="Ana",
        last_name="Lee",
        email=email,
        password=PASSWORD,
        chapter=1,
        role="user",
        ctx=CTX,
    )
    values.update(overrides)
    return await service.register(**values)


class TestPasswordPolicy:
    def test_registration_floor(self):
        assert registration_password_error("12345") == "Password must be at least 6 characters long"
        assert registration_password_error("123456") is None

    @pytest.mark.parametrize(
        "password,message",
        [
            ("Ab1!", "Password must be at least 8 characters long"),
            ("abcdefg1!", "Password must contain at least one uppercase and one lowercase letter"),
            ("Abcdefgh!", "Password must contain at least one number"),
            ("Abcdefgh1", "Password must contain at least one special character"),
            ("Abcd efg1!", "Password cannot contain spaces"),
            ("Abcd efgh1", "Password cannot contain spaces"),
            ("Abcdefg1!", None),
        ],
    )
    def test_reset_policy(self, password, message):
        assert reset_password_error(password) == message


class TestRegistration:
    async def test_register_issues_combined_onboarding_mail(self, settings):
        service, store, transport = _build(settings)
        outcome = await _register(service)
        assert outcome.status_code == 201
        assert outcome.requires_2fa is True
        assert outcome.token is None
        assert outcome.extra["requires2FA"] is True
        assert outcome.extra["email"] == "ana@example.com"
        assert "user" not in outcome.extra
        assert transport.subjects() == ["EOTY Platform Account Verification"]
        assert store.count_otps(outcome.user.id) == 1
        assert _kinds(store, outcome.user.id) == ["register", "verification_email_sent"]

    async def test_password_is_stored_as_argon2id(self, settings):
        service, store, _ = _build(settings)
        outcome = await _register(service)
        stored = store.get_user(outcome.user.id)
        assert stored.password_algo == "argon2id"
        assert stored.password_hash.startswith("$argon2id$")
        assert PASSWORD not in stored.password_hash

    async def test_teacher_message_mentions_creator_tools(self, settings):
        service, _, _ = _build(settings)
        outcome = await _register(service, role="teacher")
        assert "creator tools" in outcome.message
        assert outcome.user.role == "teacher"

    async def test_without_two_factor_support_a_session_is_returned(self, settings):
        store = MemoryStore(missing_capabilities=[Capability.TWO_FACTOR])
        service, _, transport = _build(settings, store=store)
        outcome = await _register(service)
        assert outcome.requires_2fa is False
        assert outcome.extra["token"]
        assert outcome.extra["user"]["email"] == "ana@example.com"
        assert transport.subjects() == ["Verify Your EOTY Platform Account"]

    async def test_mail_failure_does_not_fail_registration(self, settings):
        service, store, _ = _build(settings, transport=RecordingTransport(fail=True))
        outcome = await _register(service)
        assert outcome.status_code == 201
        assert "verification_email_sent" not in _kinds(store)

    @pytest.mark.parametrize(
        "overrides,message",
        [
            ({"first_name": ""}, "All fields are required"),
            ({"chapter": None}, "All fields are required"),
            ({"email": "not-an-email"}, "Invalid email format"),
            ({"password": "123"}, "Password must be at least 6 characters long"),
            ({"role": "admin"}, "Invalid role specified"),
            ({"chapter": "abc"}, "Invalid chapter selection"),
            ({"chapter": 99}, "Selected chapter is not valid or active"),
        ],
    )
    async def test_validation(self, settings, overrides, message):
        service, _, _ = _build(settings)
        with pytest.raises(ValidationError) as excinfo:
            await _register(service, **overrides)
        assert excinfo.value.message == message

    async def test_inactive_chapter_is_rejected(self, settings):
        store = MemoryStore()
        store.create_chapter("Closed", is_active=False)
        service, _, _ = _build(settings, store=store)
        with pytest.raises(ValidationError):
            await _register(service)

    async def test_duplicate_email_conflicts(self, settings):
        service, _, _ = _build(settings)
        await _register(service)
        with pytest.raises(ConflictError) as excinfo:
            await _register(service, email="ANA@example.com")
        assert excinfo.value.status_code == 409


class TestPasswordLogin:
    async def test_unknown_email_is_indistinguishable(self, settings):
        service, store, _ = _build(settings)
        with pytest.raises(AuthenticationError) as excinfo:
            await service.login("ghost@example.com", PASSWORD, CTX)
        assert excinfo.value.message == INVALID_CREDENTIALS
        event = event_from_row(store.activity_rows[-1])
        assert event.kind == "failed_login"
        assert event.failure_reason == "User not found"
        assert event.user_id is None

    async def test_missing_fields(self, settings):
        service, _, _ = _build(settings)
        with pytest.raises(ValidationError):
            await service.login("", PASSWORD, CTX)

    async def test_wrong_password(self, settings):
        service, store, _ = _build(settings)
        user = (await _register(service)).user
        with pytest.raises(AuthenticationError) as excinfo:
            await service.login(user.email, "wrong-password", CTX)
        assert excinfo.value.message == INVALID_CREDENTIALS
        assert _kinds(store, user.id)[-1] == "failed_login"

    async def test_deactivated_account(self, settings):
        service, store, _ = _build(settings)
        user = (await _register(service)).user
        store.set_user_active(user.id, False)
        with pytest.raises(AuthenticationError) as excinfo:
            await service.login(user.email, PASSWORD, CTX)
        assert excinfo.value.message == ACCOUNT_DEACTIVATED

    async def test_federated_only_account_has_distinct_code(self, settings):
        service, store, _ = _build(settings)
        store.create_user("fed@example.com", first_name="Fed")
        with pytest.raises(AuthenticationError) as excinfo:
            await service.login("fed@example.com", "anything", CTX)
        assert excinfo.value.message == FEDERATED_ONLY
        assert excinfo.value.error_code == "GOOGLE_ACCOUNT_NO_PASSWORD"

    async def test_legacy_hash_algorithm_is_rejected(self, settings):
        service, store, _ = _build(settings)
        user = (await _register(service)).user
        stored = store.get_user(user.id)
        store.update_password(user.id, stored.password_hash, "bcrypt")
        with pytest.raises(AuthenticationError):
            await service.login(user.email, PASSWORD, CTX)

    async def test_two_factor_user_gets_a_challenge(self, settings):
        service, store, transport = _build(settings)
        user = (await _register(service)).user
        outcome = await service.login("ANA@example.com", PASSWORD, CTX)
        assert outcome.requires_2fa is True
        assert outcome.token is None
        assert outcome.message == "Verification code sent to your email"
        assert transport.subjects()[-1] == "Your EOTY Platform Verification Code"
        payload = service.outcome_payload(outcome)
        assert payload == {"requires2FA": True, "userId": user.id, "email": user.email}

    async def test_challenge_mail_failure_fails_login(self, settings):
        service, _, transport = _build(settings)
        user = (await _register(service)).user
        transport.fail = True
        with pytest.raises(InternalError) as excinfo:
            await service.login(user.email, PASSWORD, CTX)
        assert excinfo.value.message == "Failed to send verification code. Please try again."

    async def test_login_without_two_factor_mints_session(self, settings):
        store = MemoryStore(missing_capabilities=[Capability.TWO_FACTOR])
        service, store, _ = _build(settings, store=store)
        user = (await _register(service)).user
        outcome = await service.login(user.email, PASSWORD, CTX)
        assert outcome.token
        assert outcome.device_token is None
        claims = service.sessions.verify_session(outcome.token)
        assert claims.user_id == user.id
        assert store.get_user(user.id).last_login_at is not None
        assert _kinds(store, user.id)[-1] == "login"

    async def test_unexpected_error_becomes_internal_error(self, settings, monkeypatch):
        service, store, _ = _build(settings)

        def boom(email):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(store, "get_user_by_email", boom)
        with pytest.raises(InternalError) as excinfo:
            await service.login("ana@example.com", PASSWORD, CTX)
        assert excinfo.value.message == "Internal server error during login"
        assert event_from_row(store.activity_rows[-1]).failure_reason == "internal"


class TestTwoFactor:
    async def test_code_completes_login_and_trusts_device(self, settings):
        service, store, transport = _build(settings)
        user = (await _register(service)).user
        await service.login(user.email, PASSWORD, CTX)
        outcome = await service.verify_two_factor(user.id, _last_code(transport), CTX)
        assert outcome.token
        assert service.sessions.verify_device_token(outcome.device_token, user.id)
        assert _kinds(store, user.id)[-1] == "login_2fa"

    async def test_code_is_single_use(self, settings):
        service, _, transport = _build(settings)
        user = (await _register(service)).user
        await service.login(user.email, PASSWORD, CTX)
        code = _last_code(transport)
        await service.verify_two_factor(user.id, code, CTX)
        with pytest.raises(ValidationError) as excinfo:
            await service.verify_two_factor(user.id, code, CTX)
        assert excinfo.value.message == "Invalid or expired verification code"

    async def test_trusted_device_skips_the_challenge(self, settings):
        service, store, transport = _build(settings)
        user = (await _register(service)).user
        await service.login(user.email, PASSWORD, CTX)
        first = await service.verify_two_factor(user.id, _last_code(transport), CTX)
        sent_before = len(transport.sent)
        trusted = RequestContext(ip_address=CTX.ip_address, device_token=first.device_token)
        outcome = await service.login(user.email, PASSWORD, trusted)
        assert outcome.requires_2fa is False
        assert outcome.token
        assert outcome.device_token
        assert len(transport.sent) == sent_before
        event = service.activity.history_for(user.id, limit=1)[0]
        assert event.metadata == {"loginMethod": "password", "trustedDevice": True}

    async def test_device_token_for_another_user_is_ignored(self, settings):
        service, _, _ = _build(settings)
        user = (await _register(service)).user
        foreign = RequestContext(device_token=service.sessions.issue_device_token("someone-else"))
        outcome = await service.login(user.email, PASSWORD, foreign)
        assert outcome.requires_2fa is True

    async def test_argument_errors(self, settings):
        service, store, _ = _build(settings)
        with pytest.raises(ValidationError):
            await service.verify_two_factor("", "123456", CTX)
        with pytest.raises(NotFoundError):
            await service.verify_two_factor("missing", "123456", CTX)
        user = (await _register(service)).user
        store.set_user_active(user.id, False)
        with pytest.raises(NotFoundError):
            await service.verify_two_factor(user.id, "123456", CTX)
        event = event_from_row(store.activity_rows[-1])
        assert (event.kind, event.failure_reason) == ("failed_login", "Account deactivated")

    async def test_unexpected_error_is_audited(self, settings, monkeypatch):
        service, store, _ = _build(settings)
        user = (await _register(service)).user

        def boom(user_id, code):
            raise RuntimeError("db down")

        monkeypatch.setattr(service.tokens, "consume_otp", boom)
        with pytest.raises(InternalError):
            await service.verify_two_factor(user.id, "123456", CTX)
        event = event_from_row(store.activity_rows[-1])
        assert (event.kind, event.failure_reason) == ("failed_login", "internal")
        assert event.metadata == {"userId": user.id}


class TestLockout:
    async def test_repeated_failures_lock_the_account(self, settings):
        locked = settings.model_copy(
            update={"account_lockout_enabled": True, "account_lockout_threshold": 3}
        )
        service, store, _ = _build(locked)
        user = (await _register(service)).user
        for _ in range(3):
            with pytest.raises(AuthenticationError):
                await service.login(user.email, "nope", CTX)
        with pytest.raises(LockedError) as excinfo:
            await service.login(user.email, PASSWORD, CTX)
        assert excinfo.value.status_code == 423

    async def test_lock_expires(self, settings):
        locked = settings.model_copy(update={"account_lockout_enabled": True})
        service, store, _ = _build(locked)
        user = (await _register(service)).user
        store.lock_account(user.id, datetime.now(timezone.utc) - timedelta(minutes=1))
        outcome = await service.login(user.email, PASSWORD, CTX)
        assert outcome.requires_2fa is True

    async def test_disabled_by_default(self, settings):
        service, store, _ = _build(settings)
        user = (await _register(service)).user
        for _ in range(6):
            with pytest.raises(AuthenticationError):
                await service.login(user.email, "nope", CTX)
        assert store.get_user(user.id).failed_login_attempts == 0


class TestFederatedLogin:
    def _identity(self, **overrides):
        values = dict(
            provider="google",
            provider_id="g-1",
            email="fed@example.com",
            given_name="Fed",
            surname="Eral",
            picture="https://img.example.com/fed.png",
        )
        values.update(overrides)
        return OAuthIdentity(**values)

    def _service(self, settings, identity, **kwargs):
        provider = _StubProvider("google", "Google", identity)
        return _build(settings, providers={"google": provider}, **kwargs)

    async def test_new_user_is_created_and_challenged(self, settings):
        service, store, transport = self._service(settings, self._identity())
        outcome = await service.federated_login("google", "code", None, CTX)
        assert outcome.requires_2fa is True
        user = store.get_user_by_provider("google", "g-1")
        assert user.email == "fed@example.com"
        assert user.chapter_id is None
        assert user.password_hash is None
        assert user.is_2fa_enabled is True
        assert transport.subjects() == ["Your EOTY Platform Verification Code"]

    async def test_existing_email_is_linked(self, settings):
        service, store, _ = self._service(
            settings,
            self._identity(email="ana@example.com"),
            store=MemoryStore(missing_capabilities=[Capability.TWO_FACTOR]),
        )
        registered = (await _register(service)).user
        outcome = await service.federated_login("google", "code", None, CTX)
        assert outcome.user.id == registered.id
        assert outcome.message == "Google login successful"
        assert store.get_user_by_provider("google", "g-1").id == registered.id
        assert outcome.user.profile_picture == "https://img.example.com/fed.png"
        event = service.activity.history_for(registered.id, limit=1)[0]
        assert event.metadata == {"loginMethod": "google_oauth"}

    async def test_known_link_signs_in_without_duplicate(self, settings):
        service, store, _ = self._service(
            settings,
            self._identity(),
            store=MemoryStore(missing_capabilities=[Capability.TWO_FACTOR]),
        )
        first = await service.federated_login("google", "code", None, CTX)
        second = await service.federated_login("google", "code", None, CTX)
        assert first.user.id == second.user.id
        assert len(store.users) == 1
        assert second.token

    async def test_missing_email_is_rejected(self, settings):
        service, store, _ = self._service(settings, self._identity(email=None))
        with pytest.raises(ValidationError) as excinfo:
            await service.federated_login("google", "code", None, CTX)
        assert excinfo.value.message == "Email permission is required"
        assert store.users == {}

    async def test_deactivated_linked_user(self, settings):
        service, store, _ = self._service(settings, self._identity())
        user = store.create_user("fed@example.com")
        store.link_provider(user.id, "google", "g-1")
        store.set_user_active(user.id, False)
        with pytest.raises(AuthenticationError):
            await service.federated_login("google", "code", None, CTX)

    async def test_unexpected_error_is_audited(self, settings, monkeypatch):
        service, store, _ = self._service(settings, self._identity())

        def boom(provider, provider_user_id):
            raise RuntimeError("db down")

        monkeypatch.setattr(store, "get_user_by_provider", boom)
        with pytest.raises(InternalError) as excinfo:
            await service.federated_login("google", "code", None, CTX)
        assert excinfo.value.message == "Internal server error during Google authentication"
        event = event_from_row(store.activity_rows[-1])
        assert (event.kind, event.failure_reason) == ("failed_login", "internal")
        assert event.metadata == {"loginMethod": "google_oauth"}
        assert event.ip_address == CTX.ip_address

    async def test_unknown_provider(self, settings):
        service, _, _ = _build(settings)
        with pytest.raises(ValidationError):
            await service.federated_login("myspace", "code", None, CTX)


class TestPasswordReset:
    async def test_unknown_email_gets_same_answer(self, settings):
        service, store, transport = _build(settings)
        outcome = await service.forgot_password("ghost@example.com", CTX)
        assert outcome.message == RESET_SENT
        assert transport.sent == []
        assert store.reset_tokens == {}
        event = event_from_row(store.activity_rows[-1])
        assert (event.kind, event.success, event.user_id) == (
            "password_reset_request",
            False,
            None,
        )

    @pytest.mark.parametrize(
        "email,message",
        [("", "Email address is required"), ("nope", "Invalid email address format")],
    )
    async def test_email_is_validated(self, settings, email, message):
        service, _, _ = _build(settings)
        with pytest.raises(ValidationError) as excinfo:
            await service.forgot_password(email, CTX)
        assert excinfo.value.message == message

    async def test_full_reset_flow(self, settings):
        service, store, transport = _build(settings)
        user = (await _register(service)).user
        assert (await service.forgot_password(user.email, CTX)).message == RESET_SENT
        token = _last_token(transport)
        assert service.verify_reset_token(token).message == "Token is valid"

        with pytest.raises(ValidationError):
            await service.reset_password(token, "weak", CTX)
        outcome = await service.reset_password(token, "NewPass#2024", CTX)
        assert outcome.message == "Password has been reset successfully"

        with pytest.raises(ValidationError):
            await service.reset_password(token, "Another#2024", CTX)
        with pytest.raises(AuthenticationError):
            await service.login(user.email, PASSWORD, CTX)
        assert (await service.login(user.email, "NewPass#2024", CTX)).requires_2fa

    async def test_mail_failure_still_answers(self, settings):
        service, store, transport = _build(settings)
        user = (await _register(service)).user
        transport.fail = True
        outcome = await service.forgot_password(user.email, CTX)
        assert outcome.message == RESET_SENT
        assert len(store.reset_tokens) == 1

    async def test_deactivated_user_is_forbidden(self, settings):
        service, store, _ = _build(settings)
        user = (await _register(service)).user
        store.set_user_active(user.id, False)
        with pytest.raises(ForbiddenError):
            await service.forgot_password(user.email, CTX)

    async def test_unknown_reset_token(self, settings):
        service, _, _ = _build(settings)
        with pytest.raises(ValidationError):
            service.verify_reset_token("bogus")


class TestEmailVerification:
    async def test_verify_then_replay(self, settings):
        service, store, transport = _build(settings)
        user = (await _register(service)).user
        token = _last_token(transport)
        outcome = await service.verify_email(token, CTX)
        assert outcome.message == "Email verified successfully"
        assert outcome.extra == {"email": user.email}
        assert transport.subjects()[-1] == "Welcome to EOTY Platform!"
        assert store.has_verified_email(user.id)
        with pytest.raises(ValidationError):
            await service.verify_email(token, CTX)

    async def test_second_token_reports_already_verified(self, settings):
        service, store, transport = _build(settings)
        user = (await _register(service)).user
        await service.verify_email(_last_token(transport), CTX)
        extra = service.tokens.issue_verification_token(user.id, user.email)
        outcome = await service.verify_email(extra.token, CTX)
        assert outcome.message == "Email is already verified"

    async def test_resend(self, settings):
        service, store, transport = _build(settings)
        user = (await _register(service)).user
        assert (await service.resend_verification("ghost@example.com", CTX)).message.startswith(
            "If an account"
        )
        await service.resend_verification(user.email, CTX)
        assert transport.subjects()[-1] == "Verify Your EOTY Platform Account"
        await service.verify_email(_last_token(transport), CTX)
        outcome = await service.resend_verification(user.email, CTX)
        assert outcome.message == "Email is already verified."

    async def test_resend_mail_failure_is_a_server_error(self, settings):
        service, _, transport = _build(settings)
        user = (await _register(service)).user
        transport.fail = True
        with pytest.raises(InternalError):
            await service.resend_verification(user.email, CTX)


class TestProfile:
    async def test_profile_payload_and_completion(self, settings):
        service, _, _ = _build(settings)
        user = (await _register(service, role="teacher")).user
        profile = service.profile(user.id)
        assert profile["firstName"] == "Ana"
        assert profile["chapter"] == 1
        assert profile["specialties"] == []
        assert profile["profileCompletion"]["totalFields"] == 6
        assert profile["profileCompletion"]["percentage"] == 0

    async def test_update_profile(self, settings):
        service, store, _ = _build(settings)
        user = (await _register(service)).user
        updated = service.update_profile(
            user.id,
            {
                "bio": "Hello",
                "phone": "555",
                "location": "Springfield",
                "profilePicture": f"{settings.server_url}/uploads/a.png",
                "interests": ["music"],
            },
        )
        assert updated["bio"] == "Hello"
        assert updated["interests"] == ["music"]
        assert store.get_user(user.id).profile_picture == "/uploads/a.png"
        assert updated["profilePicture"] == f"{settings.server_url}/uploads/a.png"
        assert updated["profileCompletion"]["isComplete"] is True
        assert _kinds(store, user.id)[-1] == "profile_updated"

    async def test_update_profile_rejections(self, settings):
        service, _, _ = _build(settings)
        user = (await _register(service)).user
        with pytest.raises(ValidationError) as excinfo:
            service.update_profile(user.id, {"role": "admin"})
        assert excinfo.value.message == "Unknown profile field: role"
        with pytest.raises(ValidationError):
            service.update_profile(user.id, {"firstName": "  "})
        with pytest.raises(ValidationError):
            service.update_profile(user.id, {})

    async def test_extended_fields_need_capability(self, settings):
        store = MemoryStore(missing_capabilities=[Capability.EXTENDED_PROFILE])
        service, _, _ = _build(settings, store=store)
        user = (await _register(service)).user
        assert "specialties" not in service.profile(user.id)
        with pytest.raises(ValidationError):
            service.update_profile(user.id, {"education": "BA"})

    def test_completion_rules(self):
        user = User(id="u", email="e@x.org", role="user", bio="b", phone="1")
        completion = profile_completion(user)
        assert completion["percentage"] == 50
        assert completion["missingFields"] == ["profilePicture", "location"]

    def test_picture_urls(self):
        assert canonical_picture_url("/a.png", "http://s/") == "http://s/a.png"
        assert canonical_picture_url("a.png", "http://s") == "http://s/a.png"
        assert canonical_picture_url("https://cdn/a.png", "http://s") == "https://cdn/a.png"
        assert canonical_picture_url(None, "http://s") is None
        assert relative_picture_path("http://s/a.png", "http://s") == "/a.png"
        assert relative_picture_path("https://cdn/a.png", "http://s") == "https://cdn/a.png"


class TestQueries:
    async def test_permissions_follow_role(self, settings):
        service, store, _ = _build(settings)
        user = (await _register(service)).user
        learner = service.effective_permissions(user.id)
        store.update_user_role(user.id, "admin")
        admin = service.effective_permissions(user.id)
        assert learner.role == "user"
        assert set(learner.permissions) < set(admin.permissions)

    async def test_resolve_missing_alert(self, settings):
        service, _, _ = _build(settings)
        with pytest.raises(NotFoundError):
            service.resolve_alert("missing", "admin-1")

    async def test_logout_records_event_only_with_principal(self, settings):
        service, store, _ = _build(settings)
        user = (await _register(service)).user
        before = len(store.activity_rows)
        assert service.logout(None, CTX).message == "Logout successful"
        assert len(store.activity_rows) == before
        claims = service.sessions.verify_session(service.sessions.issue_session(user))
        service.logout(claims, CTX)
        assert _kinds(store, user.id)[-1] == "logout"
