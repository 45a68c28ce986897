"""Anonymous entitlement tokens — stateless, HMAC-signed capability grants.

A token carries ``{plan, expiresAt, features, sessionId}`` as a compact JWS
(base64url segments, HS256 signature). There is no ``exp``
claim: an expired token still decodes so callers can report ``is_expired``.
Nothing is stored server-side; a token stops granting access once
``expiresAt`` has passed.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from fixitflow.billing.clock import to_naive_utc, utcnow
from fixitflow.billing.errors import TokenDecodeError
from fixitflow.billing.plans import get_paid_plan
from fixitflow.config import settings

_ALGORITHM = "HS256"
_TOKEN_TYPE = "anon_entitlement"


@dataclass(frozen=True)
class AnonymousEntitlement:
    """Decoded content of an anonymous entitlement token."""

    plan: str
    expires_at: datetime  # naive UTC
    features: tuple[str, ...]
    session_id: str

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def allows(self, capability: str, now: datetime | None = None) -> bool:
        return not self.is_expired(now) and capability in self.features


def issue_token(
    plan_name: str,
    session_id: str,
    issued_at: datetime | None = None,
    duration: timedelta | None = None,
) -> str:
    """Mint a signed token for an anonymous purchase of ``plan_name``.

    Raises:
        ValueError: If the plan is not a purchasable tier.
    """
    plan = get_paid_plan(plan_name)
    if plan is None:
        raise ValueError(f"Cannot issue an anonymous token for plan {plan_name!r}")

    issued_at = to_naive_utc(issued_at or utcnow())
    expires_at = issued_at + (duration or plan.duration)
    claims = {
        "type": _TOKEN_TYPE,
        "plan": plan.name,
        "expiresAt": expires_at.isoformat(),
        "features": sorted(plan.capabilities),
        "sessionId": session_id,
        "iat": int(issued_at.replace(tzinfo=timezone.utc).timestamp()),
    }
    return jwt.encode(claims, settings.token_signing_secret, algorithm=_ALGORITHM)


def decode_token(token: str) -> AnonymousEntitlement:
    """Verify the signature and decode an anonymous token.

    Raises:
        TokenDecodeError: If the token is malformed, forged, or missing claims.
    """
    if not token:
        raise TokenDecodeError("Empty token")
    try:
        claims = jwt.decode(
            token,
            settings.token_signing_secret,
            algorithms=[_ALGORITHM],
            options={"verify_exp": False, "verify_iat": False},
        )
    except JWTError as e:
        raise TokenDecodeError(str(e)) from e

    if claims.get("type") != _TOKEN_TYPE:
        raise TokenDecodeError("Not an anonymous entitlement token")

    try:
        expires_at = to_naive_utc(datetime.fromisoformat(claims["expiresAt"]))
        features = tuple(str(f) for f in claims["features"])
        return AnonymousEntitlement(
            plan=str(claims["plan"]),
            expires_at=expires_at,
            features=features,
            session_id=str(claims.get("sessionId", "")),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise TokenDecodeError(f"Malformed token claims: {e}") from e


def try_decode_token(token: str | None) -> AnonymousEntitlement | None:
    """Decode, returning None instead of raising (fails closed)."""
    if not token:
        return None
    try:
        return decode_token(token)
    except TokenDecodeError:
        return None
