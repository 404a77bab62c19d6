"""Audit anchoring: embeds the audit chain head on Ethereum as tamper-evident proof.

Anchoring puts the hash of the newest audit event into a blockchain
transaction. Because every audit event hash covers its predecessor, one
anchored head commits to the entire trail up to that point: any later
edit to an earlier record breaks the chain and no longer matches.

This is NOT a smart contract and no consensus logic lives here. The
chain serves as an external witness for the batch audit trail.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from batchgate.persistence.event_log import AuditEventEmitter


logger = logging.getLogger(__name__)

SEPOLIA_CHAIN_ID = 11155111

# Block explorers by chain id; other networks get no explorer link
_EXPLORERS = {
    1: "https://etherscan.io",
    17000: "https://holesky.etherscan.io",
    SEPOLIA_CHAIN_ID: "https://sepolia.etherscan.io",
}


@dataclass(frozen=True)
class AnchorRecord:
    """A record of a successful blockchain anchor."""
    head_hash: str
    event_count: int
    tx_hash: str
    block_number: int
    chain_id: int
    timestamp_utc: str
    explorer_url: Optional[str]


def audit_digest(event_log: AuditEventEmitter) -> str:
    """Return the bare SHA-256 hex of the audit chain head.

    Raises ValueError if the log is empty: there is nothing to commit to.
    """
    if event_log.count == 0:
        raise ValueError("Cannot anchor an empty audit log")
    head = event_log.head_hash
    return head.split(":", 1)[1] if head.startswith("sha256:") else head


def explorer_tx_url(chain_id: int, tx_hash: str) -> Optional[str]:
    base = _EXPLORERS.get(chain_id)
    if base is None:
        return None
    return f"{base}/tx/{tx_hash if tx_hash.startswith('0x') else '0x' + tx_hash}"


def build_anchor_tx(
    sender: str,
    nonce: int,
    digest: str,
    chain_id: int,
    gas: int,
    gas_price_wei: int,
) -> dict[str, Any]:
    """Unsigned 0-value self-send whose data field is the digest bytes."""
    payload = bytes.fromhex(digest)
    if len(payload) != 32:
        raise ValueError(f"Anchor digest must be 32 bytes, got {len(payload)}")
    return {
        "chainId": chain_id,
        "nonce": nonce,
        "from": sender,
        "to": sender,
        "value": 0,
        "data": payload,
        "gas": gas,
        "gasPrice": gas_price_wei,
    }


def anchor_to_chain(
    digest: str,
    rpc_url: str,
    private_key: str,
    chain_id: int = SEPOLIA_CHAIN_ID,
    gas: int = 30_000,
    gas_price_gwei: str = "2",
    event_count: int = 0,
    receipt_timeout: int = 300,
) -> AnchorRecord:
    """Send the digest in a self-addressed transaction and wait for inclusion.

    The signing key only pays gas; no value moves. Blocks until the
    receipt arrives or receipt_timeout seconds pass.
    """
    from web3 import Web3, HTTPProvider
    from eth_account import Account

    w3 = Web3(HTTPProvider(rpc_url))
    signer = Account.from_key(private_key)
    tx = build_anchor_tx(
        sender=signer.address,
        nonce=w3.eth.get_transaction_count(signer.address),
        digest=digest,
        chain_id=chain_id,
        gas=gas,
        gas_price_wei=w3.to_wei(gas_price_gwei, "gwei"),
    )

    sent = w3.eth.send_raw_transaction(signer.sign_transaction(tx).raw_transaction)
    tx_hash = sent.hex()
    logger.info("anchor tx %s sent to chain %d", tx_hash, chain_id)
    receipt = w3.eth.wait_for_transaction_receipt(sent, timeout=receipt_timeout)
    logger.info("anchor tx %s included in block %s", tx_hash, receipt.blockNumber)

    return AnchorRecord(
        head_hash=f"sha256:{digest}",
        event_count=event_count,
        tx_hash=tx_hash,
        block_number=receipt.blockNumber,
        chain_id=chain_id,
        timestamp_utc=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        explorer_url=explorer_tx_url(chain_id, tx_hash),
    )


def anchor_audit_log(
    event_log: AuditEventEmitter,
    rpc_url: str,
    private_key: str,
    chain_id: int = SEPOLIA_CHAIN_ID,
) -> AnchorRecord:
    """Anchor the current head of an audit log."""
    digest = audit_digest(event_log)
    return anchor_to_chain(
        digest=digest,
        rpc_url=rpc_url,
        private_key=private_key,
        chain_id=chain_id,
        event_count=event_log.count,
    )
