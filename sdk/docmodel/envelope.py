"""
Signed document envelopes.

JwsEnvelope signs a JSON payload with PyJWT and returns the signature in
JWS JSON-serialization form, {"protected": ..., "signature": ...}, so
the payload itself stays readable (and queryable) in the document.

SignedEntity is an entity whose document is a signed envelope:

    {"type": "JWS", "serialization": "document",
     "payload": {...}, "signatures": [{"protected": ..., "signature": ...}]}

Invariants:
    - Signatures cover the canonical JSON of the payload (sorted keys, no
      whitespace), so key order in the stored document does not matter
    - verify() never raises for a bad or malformed signature, it
      returns False
"""

from __future__ import annotations

import json
from typing import Any, ClassVar, Dict, Optional

import jwt
from jwt.utils import base64url_encode

from .capabilities import Envelope
from .entity import PersistentEntity
from .errors import OperationError
from .schema import BASE_SCHEMA, field


def canonical_json(payload: Any) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


class JwsEnvelope:
    """JWS signer/verifier.

    Args:
        key: Signing key (shared secret for HS*, private key for RS*/ES*)
        algorithm: JWS algorithm name
        verify_key: Verification key when it differs from key (public key)
        key_id: Optional "kid" header

    Example:
        >>> envelope = JwsEnvelope("a-shared-secret-of-at-least-32-bytes!")
        >>> signature = envelope.sign({"amount": 10})
        >>> envelope.verify({"amount": 10}, signature)
        True
    """

    def __init__(
        self,
        key: Any,
        algorithm: str = "HS256",
        verify_key: Any = None,
        key_id: Optional[str] = None,
    ) -> None:
        self.key = key
        self.algorithm = algorithm
        self.verify_key = verify_key if verify_key is not None else key
        self.key_id = key_id
        self._jws = jwt.PyJWS()

    def sign(self, payload: Any) -> Dict[str, str]:
        headers = {"kid": self.key_id} if self.key_id else None
        token = self._jws.encode(
            canonical_json(payload),
            self.key,
            algorithm=self.algorithm,
            headers=headers,
        )
        protected, _, signature = token.split(".")
        return {"protected": protected, "signature": signature}

    def verify(self, payload: Any, signature: Dict[str, Any]) -> bool:
        try:
            encoded_payload = base64url_encode(canonical_json(payload)).decode("ascii")
            token = f"{signature['protected']}.{encoded_payload}.{signature['signature']}"
            self._jws.decode(token, self.verify_key, algorithms=[self.algorithm])
        except (jwt.InvalidTokenError, KeyError, TypeError):
            return False
        return True


SIGNED_SCHEMA = BASE_SCHEMA.extend(
    field("type", "enum", required=True, enum_values=("JWS", "JWE")),
    field(
        "serialization",
        "enum",
        required=True,
        enum_values=("compact", "flattened", "json", "document"),
    ),
    field("payload", "object", required=True),
    field("signatures", "list"),
    name="signed",
)


class SignedEntity(PersistentEntity, abstract=True):
    """Entity stored as a signed envelope.

    Subclasses set a class-level ``envelope`` (any Envelope) and may
    extend ``schema`` from SIGNED_SCHEMA.
    """

    schema = SIGNED_SCHEMA
    envelope: ClassVar[Optional[Envelope]] = None

    def __init__(self, data: Optional[Dict[str, Any]] = None, **kwargs: Any) -> None:
        super().__init__(data, **kwargs)
        self.fields.setdefault("type", "JWS")
        self.fields.setdefault("serialization", "document")

    def _envelope(self) -> Envelope:
        if self.fields.get("type") == "JWE":
            raise OperationError("JWE envelopes are not supported")
        envelope = type(self).envelope
        if envelope is None:
            raise OperationError(f"{type(self).__name__} has no envelope configured")
        return envelope

    def sign(self) -> SignedEntity:
        """Replace signatures with a fresh signature over the payload."""
        envelope = self._envelope()
        self.fields["signatures"] = [envelope.sign(self.fields.get("payload"))]
        return self

    def verify(self) -> bool:
        """True if at least one signature verifies the current payload."""
        envelope = self._envelope()
        payload = self.fields.get("payload")
        return any(envelope.verify(payload, sig) for sig in self.fields.get("signatures") or [])
