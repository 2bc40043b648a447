"""
Pseudonymization transformer.

Turns a CanonicalEvent into an AnonymizedRecord: the owner identity becomes a
keyed HMAC-SHA-256 digest and the payload is reduced to the field allowlist.
"""

import hashlib
import hmac
import json
from datetime import datetime
from typing import Callable

from src.core.errors import ConfigurationError, InvalidEventError
from src.core.models import AnonymizedRecord, CanonicalEvent, utcnow
from src.observability import metrics
from src.observability.logger import get_logger

from .field_policy import FieldPolicy

logger = get_logger(__name__)

MIN_KEY_BYTES = 16

_IDENTITY_DOMAIN = b"identity\x1f"
_RECORD_DOMAIN = b"record\x1f"


class PseudonymizationTransformer:
    """
    Pure identity-in / anonymized-record-out transform.

    The secret key is injected at construction and never read from ambient
    state. Same identity and key always produce the same hash.
    """

    def __init__(
        self,
        secret_key: bytes | str | None,
        field_policy: FieldPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the transformer.

        Args:
            secret_key: Process-wide pseudonymization key
            field_policy: Payload allowlist (defaults to the built-in policy)
            clock: Source of synced_at timestamps

        Raises:
            ConfigurationError: If the key is missing, empty or too short
        """
        if secret_key is None:
            raise ConfigurationError("Pseudonymization key is not configured")
        key = secret_key.encode("utf-8") if isinstance(secret_key, str) else bytes(secret_key)
        if not key.strip():
            raise ConfigurationError("Pseudonymization key is empty")
        if len(key) < MIN_KEY_BYTES:
            raise ConfigurationError(
                f"Pseudonymization key must be at least {MIN_KEY_BYTES} bytes, got {len(key)}"
            )

        self._key = key
        self.field_policy = field_policy or FieldPolicy()
        self.clock = clock

    def hash_identity(self, source_identity: str) -> str:
        """
        Keyed one-way hash of an owner identity.

        Args:
            source_identity: Owner reference

        Returns:
            64-character hexadecimal HMAC-SHA-256 digest

        Raises:
            InvalidEventError: If the identity is empty
        """
        if not source_identity or not source_identity.strip():
            raise InvalidEventError("source_identity must be non-empty")
        return self._digest(_IDENTITY_DOMAIN, source_identity)

    def record_key(self, record_id: str, revision: int) -> str:
        """Keyed hash of a record identity and its completion revision."""
        return self._digest(_RECORD_DOMAIN, f"{record_id}\x1f{revision}")

    def transform(self, event: CanonicalEvent) -> AnonymizedRecord:
        """
        Convert a canonical event into an anonymized record.

        Args:
            event: Canonical event from the transport

        Returns:
            AnonymizedRecord safe to write to the warehouse

        Raises:
            InvalidEventError: If the event cannot be pseudonymized
        """
        identity_hash = self.hash_identity(event.source_identity)
        payload, dropped = self.field_policy.apply(event.payload)

        if dropped:
            metrics.increment_counter(metrics.payload_fields_dropped_total, len(dropped))
            logger.debug(
                f"Dropped {len(dropped)} non-allowlisted field(s) from event {event.event_id}",
                extra={"event_id": event.event_id, "dropped_fields": dropped},
            )

        try:
            checksum = hashlib.sha256(
                json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
            ).hexdigest()
        except (TypeError, ValueError) as e:
            raise InvalidEventError(f"Payload of event {event.event_id} is not serializable: {e}") from e

        return AnonymizedRecord(
            event_id=event.event_id,
            identity_hash=identity_hash,
            record_key=self.record_key(event.record_id, event.revision),
            payload=payload,
            created_at=event.created_at,
            synced_at=self.clock(),
            checksum=checksum,
        )

    def _digest(self, domain: bytes, value: str) -> str:
        return hmac.new(self._key, domain + value.encode("utf-8"), hashlib.sha256).hexdigest()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(rules={len(self.field_policy.rules)})"
