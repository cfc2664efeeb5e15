"""Signature Codec — order-sensitive message authentication for provider messages.

Invariants:
    - sign() and verify() are PURE: no IO, no settings lookup, no logging
    - Field order comes from the scheme, never from the caller's mapping order
    - Digest algorithm is looked up in DIGESTS by name — no call site hard-codes one
    - verify() compares in constant time (hmac.compare_digest), case-insensitively
    - A missing field raises MalformedFieldSetError; a wrong token returns False

Design Decisions:
    - Scheme as frozen dataclass: one declarative row per provider message type,
      testable in isolation (ADR: table-driven over per-provider branching)
    - Secret spliced into the field list at a scheme-defined position: Robokassa
      and YooMoney both put the shared secret in the middle or end of the string
"""

import hashlib
import hmac
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from app.core.errors import MalformedFieldSetError


def _digest_factory(name: str) -> Callable[[bytes], "hashlib._Hash"]:
    def factory(data: bytes):
        return hashlib.new(name, data)
    return factory


DIGESTS: dict[str, Callable[[bytes], "hashlib._Hash"]] = {
    "md5": hashlib.md5,
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
    "sha384": hashlib.sha384,
    "sha512": hashlib.sha512,
}

# ripemd160 depends on the OpenSSL build (legacy provider)
try:
    hashlib.new("ripemd160")
except ValueError:
    pass
else:
    DIGESTS["ripemd160"] = _digest_factory("ripemd160")


# Marker for where the shared secret sits in the concatenated string
SECRET = "__secret__"


@dataclass(frozen=True)
class SignatureScheme:
    """Declarative description of one provider message signature."""
    name: str
    fields: tuple[str, ...]
    delimiter: str
    algorithm: str
    uppercase: bool = False

    def __post_init__(self) -> None:
        if self.algorithm not in DIGESTS:
            raise ValueError(
                f"Unsupported digest '{self.algorithm}' for scheme '{self.name}'",
            )
        if SECRET not in self.fields:
            raise ValueError(f"Scheme '{self.name}' has no secret position")

    @property
    def required_fields(self) -> tuple[str, ...]:
        return tuple(f for f in self.fields if f != SECRET)

    def with_algorithm(self, algorithm: str) -> "SignatureScheme":
        return SignatureScheme(
            self.name, self.fields, self.delimiter, algorithm, self.uppercase,
        )

    def with_fields(self, fields: tuple[str, ...]) -> "SignatureScheme":
        return SignatureScheme(
            self.name, fields, self.delimiter, self.algorithm, self.uppercase,
        )


def _payload(scheme: SignatureScheme, fields: Mapping[str, object], secret: str) -> str:
    missing = [
        name for name in scheme.required_fields if fields.get(name) is None
    ]
    if missing:
        raise MalformedFieldSetError(scheme.name, missing)
    parts = [
        secret if name == SECRET else str(fields[name])
        for name in scheme.fields
    ]
    return scheme.delimiter.join(parts)


def sign(scheme: SignatureScheme, fields: Mapping[str, object], secret: str) -> str:
    """Compute the hex token for `fields` under `scheme`."""
    payload = _payload(scheme, fields, secret)
    token = DIGESTS[scheme.algorithm](payload.encode("utf-8")).hexdigest()
    return token.upper() if scheme.uppercase else token


def verify(
    scheme: SignatureScheme,
    fields: Mapping[str, object],
    secret: str,
    received_token: str | None,
) -> bool:
    """Recompute and compare in constant time. Malformed fields raise, bad tokens return False."""
    expected = sign(scheme, fields, secret)
    if not received_token:
        return False
    return hmac.compare_digest(
        expected.lower().encode("ascii"),
        received_token.strip().lower().encode("ascii", errors="replace"),
    )


# ─── Provider schemes ────────────────────────────────────────────

ROBOKASSA_REDIRECT = SignatureScheme(
    name="robokassa.redirect",
    fields=("MerchantLogin", "OutSum", "InvId", SECRET),
    delimiter=":",
    algorithm="md5",
)

ROBOKASSA_RESULT = SignatureScheme(
    name="robokassa.result",
    fields=("OutSum", "InvId", SECRET),
    delimiter=":",
    algorithm="md5",
    uppercase=True,
)

ROBOKASSA_OP_STATE = SignatureScheme(
    name="robokassa.op_state",
    fields=("MerchantLogin", "InvoiceID", SECRET),
    delimiter=":",
    algorithm="md5",
)

YOOMONEY_NOTIFICATION = SignatureScheme(
    name="yoomoney.notification",
    fields=(
        "notification_type", "operation_id", "amount", "currency",
        "datetime", "sender", "codepro", SECRET, "label",
    ),
    delimiter="&",
    algorithm="sha1",
)
