from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.request
from threading import Lock
from typing import Any, Callable, Mapping, Protocol

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError

logger = logging.getLogger(__name__)

VerificationKeys = Mapping[str, Mapping[str, Any]]


class AuthTokenError(ValueError):
    """Raised when a bearer token cannot be verified."""


class VerificationKeyProvider(Protocol):
    def get_verification_keys(self) -> VerificationKeys: ...


class StaticKeyProvider:
    def __init__(self, keys: VerificationKeys) -> None:
        self._keys = {str(kid): dict(jwk) for kid, jwk in keys.items()}

    def get_verification_keys(self) -> VerificationKeys:
        return self._keys


def _fetch_json(url: str, timeout_seconds: int) -> Any:
    request = urllib.request.Request(url, headers={"Accept": "application/json"}, method="GET")
    try:
        with urllib.request.urlopen(request, timeout=timeout_seconds) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        raise AuthTokenError(f"failed to fetch JWKS: HTTP {exc.code}") from exc
    except urllib.error.URLError as exc:
        raise AuthTokenError(f"failed to fetch JWKS: {exc.reason}") from exc
    except (socket.timeout, TimeoutError) as exc:
        raise AuthTokenError(f"failed to fetch JWKS: timed out ({exc})") from exc
    except ValueError as exc:
        raise AuthTokenError("failed to fetch JWKS: invalid JSON") from exc


class JwksKeyProvider:
    """Fetches the issuer's JWKS once and reuses it for the life of the process.

    A failed fetch leaves the cache empty so the next call retries the download.
    """

    def __init__(
        self,
        jwks_url: str,
        *,
        timeout_seconds: int = 10,
        fetch_json: Callable[[str, int], Any] = _fetch_json,
    ) -> None:
        if not jwks_url.strip():
            raise ValueError("jwks_url must not be empty")
        self._jwks_url = jwks_url.strip()
        self._timeout_seconds = timeout_seconds
        self._fetch_json = fetch_json
        self._lock = Lock()
        self._keys: dict[str, dict[str, Any]] | None = None

    def invalidate(self) -> None:
        with self._lock:
            self._keys = None

    def get_verification_keys(self) -> VerificationKeys:
        with self._lock:
            if self._keys is not None:
                return self._keys
            logger.info("fetching JWKS from %s", self._jwks_url)
            try:
                document = self._fetch_json(self._jwks_url, self._timeout_seconds)
                raw_keys = document.get("keys") if isinstance(document, dict) else None
                if not isinstance(raw_keys, list):
                    raise AuthTokenError("invalid JWKS format received")
                keys = {
                    str(item["kid"]): dict(item)
                    for item in raw_keys
                    if isinstance(item, dict) and item.get("kid")
                }
            except AuthTokenError:
                self._keys = None
                logger.exception("error fetching or processing JWKS from %s", self._jwks_url)
                raise
            self._keys = keys
            logger.info("cached %d verification keys", len(keys))
            return keys


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class TokenVerifier:
    def __init__(
        self,
        key_provider: VerificationKeyProvider,
        *,
        issuer: str,
        algorithms: tuple[str, ...] = ("RS256",),
        audience: str | None = None,
    ) -> None:
        self._key_provider = key_provider
        self._issuer = issuer
        self._algorithms = list(algorithms)
        self._audience = audience

    def verify(self, token: str) -> str:
        """Return the verified subject of ``token`` or raise AuthTokenError."""
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise AuthTokenError("unable to decode token") from exc

        kid = header.get("kid")
        keys = self._key_provider.get_verification_keys()
        key = keys.get(str(kid)) if kid else None
        if key is None:
            raise AuthTokenError(f'KID "{kid}" not found in JWKS')

        try:
            claims = jwt.decode(
                token,
                dict(key),
                algorithms=self._algorithms,
                issuer=self._issuer or None,
                audience=self._audience,
                options={"verify_aud": self._audience is not None, "verify_at_hash": False},
            )
        except ExpiredSignatureError as exc:
            raise AuthTokenError("token expired") from exc
        except JWTClaimsError as exc:
            raise AuthTokenError(f"token claims rejected: {exc}") from exc
        except JWTError as exc:
            raise AuthTokenError(f"token verification failed: {exc}") from exc

        subject = str(claims.get("sub", "")).strip()
        if not subject:
            raise AuthTokenError("token subject missing")
        return subject
