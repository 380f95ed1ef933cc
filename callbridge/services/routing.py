"""
Routing Resolver.

Decides where a call leg goes: an application client identity (the mobile
app registered with the voice SDK) or a raw phone number. Rules are tried
in priority order, first match wins:

1. ``client:<identity>`` destination: that literal identity. For inbound
   calls that arrive on a provider number, the number's owner mapping
   decides instead.
2. Explicit identity hint: used as-is.
3. Owner mapping of the provider number that received the call.
4. Email-shaped hint: user lookup by email.
5. ``user_<id>``-shaped hint: user lookup by id.
6. Fallback: identity derived from the destination number's digits.

An unreachable relational store degrades resolution to rule 6 instead of
failing the call.
"""

from __future__ import annotations

import re
from typing import Any, Optional

from callbridge.errors import StoreUnavailableError
from callbridge.logging_config import get_logger
from callbridge.schemas.call import CLIENT_PREFIX, CallDirection
from callbridge.schemas.routing import ResolutionSource, RoutingDecision, RoutingRequest

logger = get_logger(__name__)

IDENTITY_SCHEME_VERSION = 1

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_USER_ID_RE = re.compile(r"^user_([A-Za-z0-9-]+)$")
_NON_DIGITS_RE = re.compile(r"\D")


def derive_fallback_identity(
    number: str,
    prefix: str = "user_",
    version: int = IDENTITY_SCHEME_VERSION,
) -> Optional[str]:
    """
    Derive the client identity the mobile app registers for a phone number.

    This is a contract shared with the app: version 1 keeps only the digits
    of the number and prepends ``prefix``, so ``+1 (555) 010-0`` becomes
    ``user_15550100``. Returns None when the number has no digits.
    """
    if version != 1:
        raise ValueError(f"Unsupported identity scheme version: {version}")
    digits = _NON_DIGITS_RE.sub("", number or "")
    if not digits:
        return None
    return f"{prefix}{digits}"


def _email_local_part(email: str | None) -> Optional[str]:
    if not email or "@" not in email:
        return None
    return email.split("@", 1)[0] or None


class RoutingResolver:
    """Resolves call destinations against the relational store."""

    def __init__(
        self,
        db: Any,
        fallback_prefix: str = "user_",
        greet_on_fallback: bool = True,
        default_identity: str = "user",
    ) -> None:
        self._db = db
        self._fallback_prefix = fallback_prefix
        self._greet_on_fallback = greet_on_fallback
        self._default_identity = default_identity

    async def resolve_destination(self, request: RoutingRequest) -> RoutingDecision:
        to_address = (request.to_address or "").strip()
        hint = (request.identity_hint or "").strip() or None
        is_inbound = request.direction == CallDirection.INBOUND

        # 1. Literal client identity
        if to_address.startswith(CLIENT_PREFIX) and not (is_inbound and request.dialed_number):
            return self._decision(to_address[len(CLIENT_PREFIX):], ResolutionSource.LITERAL_CLIENT)

        if not is_inbound:
            # Outbound to a bare number leaves the app: plain PSTN dial
            return RoutingDecision(
                target=to_address,
                is_client=False,
                play_greeting=False,
                source=ResolutionSource.PSTN,
            )

        # 2. Explicit identity hint
        if hint and not _EMAIL_RE.match(hint) and not _USER_ID_RE.match(hint):
            return self._decision(hint, ResolutionSource.IDENTITY_HINT)

        degraded = False

        # 3. Owner of the provider number that was dialed
        if request.dialed_number:
            try:
                mapping = await self._db.get_number_mapping(request.dialed_number)
            except StoreUnavailableError as e:
                degraded = self._degrade("number_mapping", e)
            else:
                identity = self._mapping_identity(mapping) if mapping else None
                if identity:
                    return self._decision(identity, ResolutionSource.NUMBER_MAPPING)

        # 4. Email hint
        if hint and _EMAIL_RE.match(hint) and not degraded:
            try:
                user = await self._db.get_user_by_email(hint)
            except StoreUnavailableError as e:
                degraded = self._degrade("email_lookup", e)
            else:
                identity = self._user_identity(user) if user else None
                if identity:
                    return self._decision(identity, ResolutionSource.EMAIL_LOOKUP)

        # 5. user_<id> hint
        match = _USER_ID_RE.match(hint) if hint else None
        if match:
            user = None
            if not degraded:
                try:
                    user = await self._db.get_user_by_id(match.group(1))
                except StoreUnavailableError as e:
                    degraded = self._degrade("user_id_lookup", e)
            identity = (self._user_identity(user) if user else None) or hint
            return self._decision(identity, ResolutionSource.USER_ID_LOOKUP, degraded=degraded)

        # 6. Deterministic fallback
        return self._fallback(request, to_address, degraded)

    def _fallback(self, request: RoutingRequest, to_address: str, degraded: bool) -> RoutingDecision:
        if to_address.startswith(CLIENT_PREFIX):
            identity = to_address[len(CLIENT_PREFIX):]
        else:
            identity = (
                derive_fallback_identity(to_address, self._fallback_prefix)
                or derive_fallback_identity(request.from_address or "", self._fallback_prefix)
                or self._default_identity
            )

        from_client = (request.from_address or "").startswith(CLIENT_PREFIX)
        logger.info(
            "routing_fallback_identity",
            identity=identity,
            degraded=degraded,
            scheme_version=IDENTITY_SCHEME_VERSION,
        )
        return RoutingDecision(
            target=identity,
            is_client=True,
            play_greeting=self._greet_on_fallback and not from_client,
            source=ResolutionSource.FALLBACK,
            degraded=degraded,
        )

    @staticmethod
    def _decision(
        identity: str,
        source: ResolutionSource,
        degraded: bool = False,
    ) -> RoutingDecision:
        # Client-to-client legs never get a prompt; the callee's app would
        # see it as a second call event.
        return RoutingDecision(
            target=identity,
            is_client=True,
            play_greeting=False,
            source=source,
            degraded=degraded,
        )

    @staticmethod
    def _degrade(step: str, error: Exception) -> bool:
        logger.warning("routing_degraded", step=step, error=str(error))
        return True

    def _mapping_identity(self, mapping: dict[str, Any]) -> Optional[str]:
        if mapping.get("owner_identity"):
            return mapping["owner_identity"]
        owner = mapping.get("users") or {}
        return self._user_identity(owner) or _email_local_part(mapping.get("owner_email"))

    def _user_identity(self, user: dict[str, Any]) -> Optional[str]:
        if user.get("identity"):
            return user["identity"]
        local_part = _email_local_part(user.get("email"))
        if local_part:
            return local_part
        if user.get("id") is not None:
            return f"{self._fallback_prefix}{user['id']}"
        return None
