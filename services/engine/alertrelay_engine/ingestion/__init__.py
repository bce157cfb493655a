"""Signal ingestion."""

from alertrelay_engine.ingestion.validator import (
    SignalValidator,
    compute_idempotency_key,
    parse_payload,
    verify_signature,
)

__all__ = ["SignalValidator", "compute_idempotency_key", "parse_payload", "verify_signature"]
