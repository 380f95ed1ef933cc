"""Tests for destination resolution and the fallback identity scheme."""

import pytest

from callbridge.schemas.call import CallDirection
from callbridge.schemas.routing import ResolutionSource, RoutingRequest
from callbridge.services.routing import RoutingResolver, derive_fallback_identity

PROVIDER_NUMBER = "+15550123"
CALLER = "+15550100"


@pytest.fixture
def resolver(fake_db) -> RoutingResolver:
    return RoutingResolver(fake_db)


def inbound(to: str = PROVIDER_NUMBER, hint: str | None = None, from_: str = CALLER) -> RoutingRequest:
    return RoutingRequest(
        to_address=to,
        direction=CallDirection.INBOUND,
        from_address=from_,
        identity_hint=hint,
        dialed_number=None if to.startswith("client:") else to,
    )


class TestDeriveFallbackIdentity:
    def test_keeps_only_digits(self) -> None:
        assert derive_fallback_identity("+1 (555) 010-0199") == "user_15550100199"

    def test_custom_prefix(self) -> None:
        assert derive_fallback_identity("+15550199", prefix="u") == "u15550199"

    def test_no_digits(self) -> None:
        assert derive_fallback_identity("anonymous") is None
        assert derive_fallback_identity("") is None

    def test_unknown_scheme_version(self) -> None:
        with pytest.raises(ValueError):
            derive_fallback_identity("+15550199", version=2)


class TestOutboundResolution:
    async def test_literal_client(self, resolver, fake_db) -> None:
        decision = await resolver.resolve_destination(
            RoutingRequest(to_address="client:bob", from_address="client:alice")
        )

        assert decision.target == "bob"
        assert decision.is_client is True
        assert decision.play_greeting is False
        assert decision.source == ResolutionSource.LITERAL_CLIENT
        assert fake_db.calls == []

    async def test_bare_number_dials_pstn(self, resolver, fake_db) -> None:
        decision = await resolver.resolve_destination(
            RoutingRequest(to_address="+15550199", from_address="client:alice")
        )

        assert decision.target == "+15550199"
        assert decision.is_client is False
        assert decision.source == ResolutionSource.PSTN
        assert fake_db.calls == []


class TestInboundResolution:
    async def test_plain_identity_hint_wins(self, resolver, fake_db) -> None:
        fake_db.number_mappings[PROVIDER_NUMBER] = {"owner_identity": "owner"}

        decision = await resolver.resolve_destination(inbound(hint="carol"))

        assert decision.target == "carol"
        assert decision.source == ResolutionSource.IDENTITY_HINT

    async def test_number_mapping_owner_identity(self, resolver, fake_db) -> None:
        fake_db.number_mappings[PROVIDER_NUMBER] = {"owner_identity": "owner"}

        decision = await resolver.resolve_destination(inbound())

        assert decision.target == "owner"
        assert decision.source == ResolutionSource.NUMBER_MAPPING
        assert decision.play_greeting is False

    async def test_number_mapping_through_joined_user(self, resolver, fake_db) -> None:
        fake_db.number_mappings[PROVIDER_NUMBER] = {
            "users": {"id": 7, "email": "dana@example.com", "identity": None},
        }

        decision = await resolver.resolve_destination(inbound())

        assert decision.target == "dana"

    async def test_mapping_wins_over_literal_client_destination(self, resolver, fake_db) -> None:
        fake_db.number_mappings[PROVIDER_NUMBER] = {"owner_identity": "owner"}
        request = RoutingRequest(
            to_address="client:someone",
            direction=CallDirection.INBOUND,
            from_address=CALLER,
            dialed_number=PROVIDER_NUMBER,
        )

        decision = await resolver.resolve_destination(request)

        assert decision.target == "owner"

    async def test_email_hint_lookup(self, resolver, fake_db) -> None:
        fake_db.users.append({"id": 3, "email": "erin@example.com", "identity": "erin-app"})

        decision = await resolver.resolve_destination(inbound(hint="erin@example.com"))

        assert decision.target == "erin-app"
        assert decision.source == ResolutionSource.EMAIL_LOOKUP

    async def test_user_id_hint_lookup(self, resolver, fake_db) -> None:
        fake_db.users.append({"id": "42", "email": "frank@example.com"})

        decision = await resolver.resolve_destination(inbound(hint="user_42"))

        assert decision.target == "frank"
        assert decision.source == ResolutionSource.USER_ID_LOOKUP

    async def test_unknown_user_id_hint_used_as_is(self, resolver) -> None:
        decision = await resolver.resolve_destination(inbound(hint="user_99"))

        assert decision.target == "user_99"
        assert decision.source == ResolutionSource.USER_ID_LOOKUP

    async def test_fallback_to_number_digits(self, resolver) -> None:
        decision = await resolver.resolve_destination(inbound())

        assert decision.target == "user_15550123"
        assert decision.source == ResolutionSource.FALLBACK
        assert decision.play_greeting is True
        assert decision.degraded is False

    async def test_fallback_from_client_caller_has_no_greeting(self, resolver) -> None:
        decision = await resolver.resolve_destination(inbound(from_="client:alice"))

        assert decision.play_greeting is False

    async def test_fallback_greeting_can_be_disabled(self, fake_db) -> None:
        resolver = RoutingResolver(fake_db, greet_on_fallback=False)

        decision = await resolver.resolve_destination(inbound())

        assert decision.play_greeting is False

    async def test_default_identity_when_nothing_has_digits(self, fake_db) -> None:
        resolver = RoutingResolver(fake_db, default_identity="frontdesk")

        decision = await resolver.resolve_destination(inbound(to="anonymous", from_="anonymous"))

        assert decision.target == "frontdesk"


class TestStoreOutage:
    async def test_outage_falls_back_to_derived_identity(self, resolver, fake_db) -> None:
        fake_db.available = False

        decision = await resolver.resolve_destination(
            RoutingRequest(
                to_address="+15550199",
                direction=CallDirection.INBOUND,
                from_address=CALLER,
                dialed_number="+15550199",
            )
        )

        assert decision.target == "user_15550199"
        assert decision.is_client is True
        assert decision.source == ResolutionSource.FALLBACK
        assert decision.degraded is True

    async def test_outage_skips_remaining_lookups(self, resolver, fake_db) -> None:
        fake_db.available = False

        decision = await resolver.resolve_destination(inbound(hint="erin@example.com"))

        assert fake_db.calls == ["get_number_mapping"]
        assert decision.source == ResolutionSource.FALLBACK
        assert decision.degraded is True

    async def test_outage_with_user_id_hint_keeps_hint(self, resolver, fake_db) -> None:
        fake_db.available = False

        decision = await resolver.resolve_destination(inbound(hint="user_42"))

        assert decision.target == "user_42"
        assert decision.degraded is True
