"""Canonical hashing utilities shared by the audit trail."""

from .canonical import canonical_json, digest, payload_digest

__all__ = ["canonical_json", "digest", "payload_digest"]
