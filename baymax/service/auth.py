from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

import httpx
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError
from jose import jwt
from jose.exceptions import JWTError

from baymax.config import AuthMode, Settings
from baymax.logging import get_logger
from baymax.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    TooManyAttemptsError,
)
from baymax.storage.common import ChatStore, password_key

logger = get_logger(__name__)


@dataclass
class Identity:
    """Verified caller. ``user_id`` is namespaced by the strategy that produced it."""

    user_id: str
    subject: str
    email: Optional[str] = None
    username: Optional[str] = None
    refresh_token: Optional[str] = None


@dataclass
class IssuedToken:
    token: str
    expires_at: int


class CredentialVerifier(Protocol):
    async def verify(self, credential: str) -> Identity: ...


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class TokenSigner:
    """HS256 JWT encoding and validation with the shared ``JWT_SECRET``."""

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
        leeway_seconds: int = 30,
    ) -> None:
        if not settings.jwt_secret:
            raise RuntimeError("JWT_SECRET is required for self-issued tokens")
        self._secret = settings.jwt_secret.encode()
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.ttl_seconds = settings.token_ttl_seconds
        self._clock = clock
        self._leeway = leeway_seconds

    def now(self) -> float:
        return self._clock()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue(self, claims: dict[str, Any]) -> IssuedToken:
        now = int(self.now())
        expires_at = now + self.ttl_seconds
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": expires_at,
        }
        return IssuedToken(token=self.encode(payload), expires_at=expires_at)

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self.now() - self._leeway:
            return None
        return payload


class SignedTokenVerifier:
    """Verifies self-issued tokens and rotates them when close to expiry."""

    def __init__(
        self,
        signer: TokenSigner,
        settings: Settings,
        *,
        claim: str = "sid",
        namespace: str = "session",
    ) -> None:
        self.signer = signer
        self.claim = claim
        self.namespace = namespace
        self.refresh_threshold = settings.token_refresh_threshold_seconds

    def issue(self, subject: str) -> IssuedToken:
        return self.signer.issue({self.claim: subject})

    async def verify(self, credential: str) -> Identity:
        payload = self.signer.decode(credential)
        if payload is None:
            raise AuthenticationError("Unauthorized: Invalid token")
        subject = payload.get(self.claim)
        if not isinstance(subject, str) or not subject:
            logger.warning("token_missing_identity", claim=self.claim)
            raise AuthenticationError("Unauthorized: Invalid token")

        refresh_token = None
        remaining = float(payload["exp"]) - self.signer.now()
        if remaining < self.refresh_threshold:
            refresh_token = self.issue(subject).token
            logger.info("token_refreshed", namespace=self.namespace, remaining=int(remaining))

        return Identity(
            user_id=f"{self.namespace}:{subject}",
            subject=subject,
            username=subject if self.claim == "username" else None,
            refresh_token=refresh_token,
        )


class RemoteJWKSVerifier:
    """Validates identity-provider JWTs against the provider's published key set."""

    # Minimum spacing between forced key-set refetches on an unknown ``kid``
    REFETCH_COOLDOWN_SECONDS = 30

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not settings.auth0_domain or not settings.auth0_audience:
            raise RuntimeError("AUTH0_DOMAIN and AUTH0_AUDIENCE are required when AUTH_MODE=auth0")
        domain = settings.auth0_domain.strip().rstrip("/")
        if domain.startswith("https://"):
            domain = domain[len("https://"):]
        self.jwks_url = f"https://{domain}/.well-known/jwks.json"
        self.issuer = f"https://{domain}/"
        self.audience = settings.auth0_audience
        self.cache_seconds = settings.jwks_cache_seconds
        self.timeout = settings.jwks_timeout_seconds
        self.client = client
        self._clock = clock
        self._jwks: Optional[dict] = None
        self._fetched_at = 0.0

    async def _fetch_jwks(self) -> dict:
        response = await self.client.get(self.jwks_url, timeout=self.timeout)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict) or not isinstance(data.get("keys"), list):
            raise ValueError("key set has no 'keys' list")
        self._jwks = data
        self._fetched_at = self._clock()
        logger.info("jwks_fetched", url=self.jwks_url, key_count=len(data["keys"]))
        return data

    async def _get_jwks(self, *, force: bool = False) -> dict:
        fresh = self._jwks is not None and (self._clock() - self._fetched_at) < self.cache_seconds
        if fresh and not force:
            return self._jwks  # type: ignore[return-value]
        return await self._fetch_jwks()

    @staticmethod
    def _find_key(jwks: dict, kid: Optional[str]) -> Optional[dict]:
        keys = [k for k in jwks.get("keys", []) if isinstance(k, dict)]
        if kid is None:
            return keys[0] if len(keys) == 1 else None
        return next((k for k in keys if k.get("kid") == kid), None)

    async def _resolve_key(self, kid: Optional[str]) -> Optional[dict]:
        jwks = await self._get_jwks()
        key = self._find_key(jwks, kid)
        if key is None and (self._clock() - self._fetched_at) >= self.REFETCH_COOLDOWN_SECONDS:
            # Provider may have rotated keys since the last fetch
            jwks = await self._get_jwks(force=True)
            key = self._find_key(jwks, kid)
        return key

    async def verify(self, credential: str) -> Identity:
        try:
            header = jwt.get_unverified_header(credential)
        except JWTError as exc:
            logger.warning("jwt_header_invalid", error=str(exc))
            raise AuthenticationError("Unauthorized: Invalid token") from exc

        try:
            key = await self._resolve_key(header.get("kid"))
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("jwks_fetch_failed", url=self.jwks_url, error=str(exc))
            raise AuthenticationError("Unauthorized: Invalid token") from exc
        if key is None:
            logger.warning("jwks_key_not_found", kid=header.get("kid"))
            raise AuthenticationError("Unauthorized: Invalid token")

        try:
            claims = jwt.decode(
                credential,
                key,
                algorithms=["RS256"],
                audience=self.audience,
                issuer=self.issuer,
            )
        except JWTError as exc:
            logger.warning("jwt_verification_failed", error=str(exc))
            raise AuthenticationError("Unauthorized: Invalid token") from exc

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            logger.warning("jwt_missing_subject")
            raise AuthenticationError("Unauthorized: Invalid token")
        email = claims.get("email")
        return Identity(
            user_id=f"auth0:{subject}",
            subject=subject,
            email=email if isinstance(email, str) else None,
        )


class PasswordVerifier:
    """Username/password accounts with login lockout; sessions ride on self-issued tokens."""

    def __init__(self, store: ChatStore, signer: TokenSigner, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.tokens = SignedTokenVerifier(signer, settings, claim="username", namespace="user")
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    async def verify(self, credential: str) -> Identity:
        return await self.tokens.verify(credential)

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def _identity(self, username: str) -> Identity:
        return Identity(user_id=f"user:{username}", subject=username, username=username)

    async def create_user(self, username: str, password: str) -> Identity:
        """Store a new account; ignores ALLOW_SIGNUP so operators can provision users."""
        created = await self.store.set_if_absent(
            password_key(username), self._hash_password(password)
        )
        if not created:
            raise ConflictError("Username already exists")
        return self._identity(username)

    async def signup(self, username: str, password: str) -> tuple[Identity, IssuedToken]:
        if not self.settings.allow_signup:
            raise ForbiddenError("Signup disabled")
        identity = await self.create_user(username, password)
        logger.info("user_signed_up", username=username)
        return identity, self.tokens.issue(username)

    async def authenticate(self, username: str, password: str) -> Identity:
        # Lockout wins over credential correctness
        if await self.store.check_login_lockout(username):
            logger.warning("login_locked_out", username=username)
            raise TooManyAttemptsError("Too many failed login attempts; try again later")

        stored_hash = await self.store.get(password_key(username))
        if stored_hash is None or not self._verify_hash(stored_hash, password):
            locked, attempts = await self.store.record_login_failure(
                username,
                max_attempts=self.settings.login_max_attempts,
                window_seconds=self.settings.login_window_seconds,
                lockout_seconds=self.settings.login_lockout_seconds,
            )
            logger.warning(
                "login_failed",
                username=username,
                attempts=attempts,
                locked=locked,
                known_user=stored_hash is not None,
            )
            raise AuthenticationError("Invalid username or password")

        await self.store.clear_login_failures(username)
        return self._identity(username)

    async def login(self, username: str, password: str) -> tuple[Identity, IssuedToken]:
        identity = await self.authenticate(username, password)
        logger.info("user_logged_in", username=username)
        return identity, self.tokens.issue(username)


def build_verifier(
    settings: Settings, store: ChatStore, client: httpx.AsyncClient
) -> CredentialVerifier:
    """Select the one verification strategy configured for this deployment."""
    if settings.auth_mode == AuthMode.AUTH0:
        return RemoteJWKSVerifier(settings, client)
    signer = TokenSigner(settings)
    if settings.auth_mode == AuthMode.TOKEN:
        return SignedTokenVerifier(signer, settings, claim="sid", namespace="session")
    return PasswordVerifier(store, signer, settings)
