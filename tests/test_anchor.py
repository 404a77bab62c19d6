"""Tests for audit anchoring helpers (no network access)."""

import pytest

from batchgate.crypto.anchor import (
    SEPOLIA_CHAIN_ID,
    audit_digest,
    build_anchor_tx,
    explorer_tx_url,
)
from batchgate.persistence.event_log import AuditEventEmitter, EventKind


class TestAuditDigest:
    def test_empty_log_cannot_be_anchored(self) -> None:
        with pytest.raises(ValueError):
            audit_digest(AuditEventEmitter())

    def test_digest_is_bare_head_hash(self) -> None:
        log = AuditEventEmitter()
        log.record(EventKind.BATCH_CREATED, "B1", "sup", message="Batch scheduled")
        digest = audit_digest(log)
        assert log.head_hash == f"sha256:{digest}"
        assert len(digest) == 64
        bytes.fromhex(digest)

    def test_digest_moves_with_head(self) -> None:
        log = AuditEventEmitter()
        log.record(EventKind.BATCH_CREATED, "B1", "sup", message="Batch scheduled")
        first = audit_digest(log)
        log.record(EventKind.MANAGER_OVERRIDE, "B1", "mgr", message="Manager override")
        assert audit_digest(log) != first


class TestExplorerUrl:
    def test_sepolia(self) -> None:
        url = explorer_tx_url(SEPOLIA_CHAIN_ID, "ab" * 32)
        assert url == f"https://sepolia.etherscan.io/tx/0x{'ab' * 32}"

    def test_mainnet_keeps_prefix(self) -> None:
        assert explorer_tx_url(1, "0x12") == "https://etherscan.io/tx/0x12"

    def test_unknown_chain_has_no_link(self) -> None:
        assert explorer_tx_url(31337, "0x12") is None


class TestBuildAnchorTx:
    def test_self_send_carries_digest(self) -> None:
        digest = "cd" * 32
        tx = build_anchor_tx("0xabc", nonce=7, digest=digest, chain_id=1,
                             gas=30_000, gas_price_wei=2)
        assert tx["to"] == tx["from"] == "0xabc"
        assert tx["value"] == 0
        assert tx["data"] == bytes.fromhex(digest)
        assert tx["chainId"] == 1
        assert tx["nonce"] == 7

    def test_short_digest_rejected(self) -> None:
        with pytest.raises(ValueError, match="32 bytes"):
            build_anchor_tx("0xabc", nonce=0, digest="abcd", chain_id=1,
                            gas=30_000, gas_price_wei=2)
