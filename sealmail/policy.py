"""Policy construction and conjunction canonicalization.

Recipients are identified by their canonical email: lower-cased with any
display name stripped.  Email-typed attributes are always forced to the
canonical email of the identity they belong to, so capitalisation in an
override or a ciphertext hint can never redirect a policy.
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Iterable, Mapping

from .models import AttributeRequest, Conjunction, Policy, RecipientPolicy, SigningIdentity

EMAIL_ATTRIBUTE_TYPE = "pbdf.sidn-pbdf.email.email"

_DISPLAY_NAME_RE = re.compile(r"^(.*)<(.*)>$")


def to_email(identity: str) -> str:
    """``"Alice <Alice@Example.com>"`` -> ``"alice@example.com"``."""
    match = _DISPLAY_NAME_RE.match(identity.strip())
    email = match.group(2) if match else identity
    return email.strip().lower()


def canonical_conjunction(con: Iterable[AttributeRequest]) -> Conjunction:
    """Sort attributes by (type, value) so equal sets compare equal."""
    return sorted(con, key=lambda a: (a.type, a.value or ""))


def hash_conjunction(con: Iterable[AttributeRequest]) -> str:
    """SHA-256 hex digest of the canonical JSON form of *con*."""
    payload = [a.model_dump(by_alias=True, exclude_none=True) for a in canonical_conjunction(con)]
    encoded = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class PolicyBuilder:
    """Stateless builder: composed message -> per-recipient policies."""

    def __init__(self, email_attribute_type: str = EMAIL_ATTRIBUTE_TYPE) -> None:
        self.email_type = email_attribute_type

    def email_attribute(self, email: str) -> AttributeRequest:
        return AttributeRequest(type=self.email_type, value=to_email(email))

    def _pin_email(self, con: Iterable[AttributeRequest], email: str) -> Conjunction:
        return [
            self.email_attribute(email) if a.type == self.email_type else a
            for a in con
        ]

    def build_policy(
        self,
        recipients: Iterable[str],
        timestamp: int,
        overrides: Mapping[str, Conjunction] | None = None,
    ) -> Policy:
        """Build the encryption policy for every to/cc recipient.

        An override replaces the default email conjunction.  An empty
        override counts as no override, so a recipient is never left with
        an unrestricted policy.
        """
        overrides = {to_email(k): v for k, v in (overrides or {}).items()}
        policy: Policy = {}
        for recipient in recipients:
            rid = to_email(recipient)
            con = overrides.get(rid) or [self.email_attribute(rid)]
            policy[rid] = RecipientPolicy(timestamp=timestamp, conjunction=self._pin_email(con, rid))
        return policy

    def build_signing_identity(
        self,
        sender: str,
        private_overrides: Mapping[str, Conjunction] | None = None,
    ) -> SigningIdentity:
        """Public part is always the sender's email; private attributes are appended."""
        sender_id = to_email(sender)
        private = (private_overrides or {}).get(sender_id)
        private = [a for a in private or [] if a.type != self.email_type]
        return SigningIdentity(public=[self.email_attribute(sender_id)], private=private or None)

    def decryption_request(
        self, recipient_policy: RecipientPolicy, local_identity: str
    ) -> tuple[RecipientPolicy, Conjunction]:
        """Turn a hidden-policy entry into a key request and its display hints.

        Returns ``(key_request, hints)``.  Both have email attributes pinned
        to the verified *local_identity*.  The key request additionally
        drops values that are blanked or wildcarded in the header so the
        disclosure asks for the attribute type only.  The hints keep the
        values and key the credential cache.
        """
        local_id = to_email(local_identity)
        hints = self._pin_email(recipient_policy.conjunction, local_id)
        request_con: Conjunction = []
        for a in hints:
            if a.type != self.email_type and (not a.value or "*" in a.value):
                request_con.append(AttributeRequest(type=a.type))
            else:
                request_con.append(a)
        key_request = RecipientPolicy(timestamp=recipient_policy.timestamp, conjunction=request_con)
        return key_request, hints
