"""Oracle-signed mirror market settlement against the ExternalMarketMirror contract."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from eth_abi import encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from loguru import logger
from sqlalchemy.orm import Session
from web3 import Web3
from web3.exceptions import TimeExhausted

from app.core.config import Settings, get_settings
from app.domain import MarketSource, MirrorMarket, ResolutionRecord
from app.models import MirrorResolution, ResolutionStatus, utcnow
from app.repositories import ResolutionClaimConflict, ResolutionRepository

RESOLVE_ACTION = "RESOLVE"

MIRROR_ABI: list[dict[str, Any]] = [
    {
        "name": "resolveMirror",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "mirrorKey", "type": "bytes32"},
            {"name": "yesWon", "type": "bool"},
            {"name": "oracleSignature", "type": "bytes"},
        ],
        "outputs": [],
    },
    {
        "name": "getMirrorMarket",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "mirrorKey", "type": "bytes32"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    {"name": "flowMarketId", "type": "uint256"},
                    {
                        "name": "externalLink",
                        "type": "tuple",
                        "components": [
                            {"name": "externalId", "type": "string"},
                            {"name": "source", "type": "uint8"},
                            {"name": "lastSyncPrice", "type": "uint256"},
                            {"name": "lastSyncTime", "type": "uint256"},
                            {"name": "isActive", "type": "bool"},
                        ],
                    },
                    {"name": "totalMirrorVolume", "type": "uint256"},
                    {"name": "createdAt", "type": "uint256"},
                    {"name": "creator", "type": "address"},
                ],
            }
        ],
    },
    {
        "name": "oracleAddress",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
]

_MIRROR_KEY_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")
_TIMEOUT_MARKERS = ("timeout", "timed out", "took too long")


# ----------------------------------------------------------------------
# Errors


class SettlementError(Exception):
    """Settlement failure surfaced to callers with the attempt count recorded so far."""

    code = "settlement_failed"

    def __init__(
        self,
        message: str,
        *,
        mirror_key: str | None = None,
        attempts: int = 0,
        tx_hash: str | None = None,
    ) -> None:
        super().__init__(message)
        self.mirror_key = mirror_key
        self.attempts = attempts
        self.tx_hash = tx_hash


class SettlementConfigurationError(SettlementError):
    """The oracle key or contract address is not configured."""

    code = "not_configured"


class InvalidMirrorKeyError(SettlementError):
    code = "invalid_mirror_key"


class OracleAuthorizationError(SettlementError):
    """The configured signer is not the contract's oracle."""

    code = "oracle_unauthorized"


class AlreadyResolvedError(SettlementError):
    code = "already_resolved"


class ResolutionInProgressError(SettlementError):
    code = "resolution_in_progress"


class MirrorMarketNotFoundError(SettlementError):
    code = "mirror_not_found"


class TransactionRevertedError(SettlementError):
    code = "transaction_reverted"


class TransactionPendingError(SettlementError):
    """A submitted resolveMirror transaction has no receipt yet."""

    code = "transaction_pending"


def is_timeout_error(exc: BaseException) -> bool:
    if isinstance(exc, (TimeExhausted, TimeoutError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _TIMEOUT_MARKERS)


# ----------------------------------------------------------------------
# Chain access


@dataclass(frozen=True, slots=True)
class Receipt:
    tx_hash: str
    block_number: int
    status: int

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class RpcClient:
    """web3.py wrapper bound to one JSON-RPC endpoint and the mirror contract."""

    def __init__(
        self,
        url: str,
        *,
        contract_address: str,
        timeout: float,
        web3: Web3 | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.w3 = web3 or Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": timeout}))
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address), abi=MIRROR_ABI
        )

    def oracle_address(self) -> str:
        return self.contract.functions.oracleAddress().call()

    def get_mirror_market(self, mirror_key: str) -> MirrorMarket:
        flow_market_id, link, total_volume, created_at, creator = (
            self.contract.functions.getMirrorMarket(Web3.to_bytes(hexstr=mirror_key)).call()
        )
        external_id, source, last_sync_price, last_sync_time, is_active = link
        return MirrorMarket(
            mirror_key=mirror_key,
            flow_market_id=flow_market_id,
            external_id=external_id,
            source=MarketSource.from_chain_index(source),
            last_sync_price=last_sync_price,
            last_sync_time=last_sync_time,
            is_active=is_active,
            total_mirror_volume=total_volume,
            created_at=created_at,
            creator=creator,
        )

    def send_resolve(
        self,
        mirror_key: str,
        yes_won: bool,
        signature: bytes,
        *,
        account: LocalAccount,
        chain_id: int,
    ) -> str:
        transaction = self.contract.functions.resolveMirror(
            Web3.to_bytes(hexstr=mirror_key), yes_won, signature
        ).build_transaction(
            {
                "from": account.address,
                "chainId": chain_id,
                "nonce": self.w3.eth.get_transaction_count(account.address, "pending"),
            }
        )
        signed = account.sign_transaction(transaction)
        return Web3.to_hex(self.w3.eth.send_raw_transaction(signed.raw_transaction))

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> Receipt:
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        return Receipt(
            tx_hash=tx_hash,
            block_number=int(receipt["blockNumber"]),
            status=int(receipt["status"]),
        )


RpcClientFactory = Callable[..., RpcClient]


class ChainContext:
    """Process-wide RPC clients and oracle signer for one settlement chain.

    Clients are built on first use and kept until :meth:`reset` is called.
    """

    def __init__(
        self,
        *,
        rpc_url: str,
        fallback_rpc_url: str,
        chain_id: int,
        contract_address: str,
        private_key: str | None,
        timeout: float,
        stale_claim_seconds: float | None = None,
        client_factory: RpcClientFactory = RpcClient,
    ) -> None:
        self.rpc_url = rpc_url
        self.fallback_rpc_url = fallback_rpc_url
        self.chain_id = chain_id
        self.contract_address = contract_address
        self.timeout = timeout
        # Covers the primary and fallback receipt waits of a live attempt.
        self.stale_claim_after = timedelta(seconds=stale_claim_seconds or timeout * 3)
        self._private_key = private_key
        self._client_factory = client_factory
        self._primary: RpcClient | None = None
        self._fallback: RpcClient | None = None
        self._account: LocalAccount | None = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs: Any) -> "ChainContext":
        settings = settings or get_settings()
        return cls(
            rpc_url=settings.rpc_url,
            fallback_rpc_url=settings.fallback_rpc_url,
            chain_id=settings.chain_id,
            contract_address=settings.mirror_contract_address,
            private_key=settings.oracle_private_key,
            timeout=settings.rpc_timeout_seconds,
            stale_claim_seconds=settings.settlement_stale_claim_seconds,
            **kwargs,
        )

    def ensure_configured(self) -> None:
        if not self._private_key:
            raise SettlementConfigurationError("Oracle private key not configured")
        if int(self.contract_address, 16) == 0:
            raise SettlementConfigurationError("ExternalMarketMirror contract not deployed")

    def _build_client(self, url: str) -> RpcClient:
        return self._client_factory(url, contract_address=self.contract_address, timeout=self.timeout)

    @property
    def primary(self) -> RpcClient:
        if self._primary is None:
            self._primary = self._build_client(self.rpc_url)
        return self._primary

    @property
    def fallback(self) -> RpcClient:
        if self._fallback is None:
            self._fallback = self._build_client(self.fallback_rpc_url)
        return self._fallback

    @property
    def account(self) -> LocalAccount:
        if self._account is None:
            self.ensure_configured()
            self._account = Account.from_key(self._private_key)
        return self._account

    def reset(self) -> None:
        """Drop cached RPC clients so the next call reconnects."""

        self._primary = None
        self._fallback = None


# ----------------------------------------------------------------------
# Signing


def normalize_mirror_key(mirror_key: str) -> str:
    candidate = mirror_key.strip()
    if not candidate.startswith("0x"):
        candidate = "0x" + candidate
    if not _MIRROR_KEY_PATTERN.match(candidate):
        raise InvalidMirrorKeyError(f"Mirror key must be 32 bytes of hex: {mirror_key!r}", mirror_key=mirror_key)
    return candidate.lower()


def resolution_message_hash(mirror_key: str, yes_won: bool, chain_id: int) -> bytes:
    payload = encode(
        ["bytes32", "bool", "string", "uint256"],
        [Web3.to_bytes(hexstr=mirror_key), yes_won, RESOLVE_ACTION, chain_id],
    )
    return bytes(Web3.keccak(payload))


def sign_resolution(account: LocalAccount, mirror_key: str, yes_won: bool, chain_id: int) -> bytes:
    """Sign the resolution hash as an EIP-191 personal message over the raw 32 bytes."""

    message = encode_defunct(primitive=resolution_message_hash(mirror_key, yes_won, chain_id))
    return bytes(account.sign_message(message).signature)


# ----------------------------------------------------------------------
# Executor


@dataclass(frozen=True, slots=True)
class _Submission:
    """A resolveMirror transaction recorded by an earlier attempt."""

    tx_hash: str
    yes_won: bool
    oracle_signature: str | None
    source: str | None

    @classmethod
    def from_entry(cls, entry: MirrorResolution | None) -> "_Submission | None":
        if entry is None or not entry.tx_hash:
            return None
        return cls(
            tx_hash=entry.tx_hash,
            yes_won=entry.yes_won,
            oracle_signature=entry.oracle_signature,
            source=entry.source,
        )


class MirrorSettlementExecutor:
    """Resolve one mirror market, guarded by the local resolution ledger.

    Ledger states: ``resolving`` while a claim is held, ``submitted`` once a
    transaction hash is known, then ``resolved`` or ``failed``. A new attempt
    on a key that already has a transaction hash checks that transaction's
    receipt before signing and sending another one.
    """

    def __init__(
        self,
        session: Session,
        chain: ChainContext,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session = session
        self._chain = chain
        self._clock = clock
        self._ledger = ResolutionRepository(session)

    def resolve(self, mirror_key: str, yes_won: bool) -> ResolutionRecord:
        key = normalize_mirror_key(mirror_key)
        self._chain.ensure_configured()
        stale_before = self._clock() - self._chain.stale_claim_after

        previous = self._ledger.get(key)
        if previous is not None and not self._ledger.is_claimable(previous, stale_before=stale_before):
            raise self._conflict(key, previous.status, previous.attempts)
        submission = _Submission.from_entry(previous)
        self._authorize(key, previous.attempts if previous else 0)

        try:
            entry = self._ledger.claim(key, yes_won=yes_won, stale_before=stale_before)
        except ResolutionClaimConflict as conflict:
            self._session.rollback()
            raise self._conflict(key, conflict.status, conflict.attempts) from conflict
        # Commit the claim so concurrent triggers see it before anything is sent.
        self._session.commit()
        attempts = entry.attempts

        try:
            record = self._confirm(key, submission) if submission else None
            if record is None:
                record = self._execute(entry, key, yes_won)
        except SettlementError as exc:
            exc.mirror_key = key
            exc.attempts = attempts
            self._ledger.mark_failed(entry, error=str(exc), tx_hash=exc.tx_hash)
            self._session.commit()
            logger.error("Settlement of {} failed after {} attempt(s): {}", key, attempts, exc)
            raise
        except Exception as exc:
            self._ledger.mark_failed(entry, error=str(exc))
            self._session.commit()
            self._chain.reset()
            logger.exception("Settlement of {} failed after {} attempt(s)", key, attempts)
            raise SettlementError(
                f"Settlement failed: {exc}", mirror_key=key, attempts=attempts, tx_hash=entry.tx_hash
            ) from exc

        self._ledger.mark_resolved(
            entry,
            tx_hash=record.tx_hash,
            block_number=record.block_number,
            oracle_signature=record.oracle_signature,
            source=record.source.value if record.source else None,
        )
        self._session.commit()
        logger.info(
            "Resolved mirror {} (yes_won={}) in tx {} at block {}",
            key,
            record.yes_won,
            record.tx_hash,
            record.block_number,
        )
        return record

    @staticmethod
    def _conflict(key: str, status: str, attempts: int) -> SettlementError:
        if status == ResolutionStatus.RESOLVED.value:
            return AlreadyResolvedError(
                f"Mirror {key} is already resolved", mirror_key=key, attempts=attempts
            )
        return ResolutionInProgressError(
            f"Mirror {key} is already being resolved", mirror_key=key, attempts=attempts
        )

    def _authorize(self, key: str, attempts: int) -> None:
        """Check the signer against the contract oracle before anything is written."""

        account = self._chain.account
        try:
            oracle = self._chain.primary.oracle_address()
        except Exception as exc:
            self._chain.reset()
            logger.exception("Oracle lookup for {} failed", key)
            raise SettlementError(
                f"Oracle lookup failed: {exc}", mirror_key=key, attempts=attempts
            ) from exc
        if str(oracle).lower() != account.address.lower():
            logger.error("Signer {} is not the oracle {} of the mirror contract", account.address, oracle)
            raise OracleAuthorizationError(
                f"Signer {account.address} is not the contract oracle {oracle}",
                mirror_key=key,
                attempts=attempts,
            )

    def _confirm(self, key: str, submission: _Submission) -> ResolutionRecord | None:
        """Settle from an earlier transaction, or return ``None`` when it reverted."""

        try:
            receipt = self._wait_for_receipt(submission.tx_hash)
        except Exception as exc:
            if not is_timeout_error(exc):
                raise
            raise TransactionPendingError(
                f"Earlier resolveMirror tx {submission.tx_hash} is still unconfirmed",
                tx_hash=submission.tx_hash,
            ) from exc

        if not receipt.succeeded:
            logger.warning("Earlier tx {} for {} reverted; sending a new one", submission.tx_hash, key)
            return None

        logger.info(
            "Earlier tx {} for {} confirmed at block {}", submission.tx_hash, key, receipt.block_number
        )
        return ResolutionRecord(
            mirror_key=key,
            yes_won=submission.yes_won,
            oracle_signature=submission.oracle_signature or "",
            tx_hash=submission.tx_hash,
            block_number=receipt.block_number,
            source=MarketSource(submission.source) if submission.source else None,
        )

    def _execute(self, entry: MirrorResolution, key: str, yes_won: bool) -> ResolutionRecord:
        primary = self._chain.primary
        account = self._chain.account

        mirror = primary.get_mirror_market(key)
        if not mirror.exists:
            raise MirrorMarketNotFoundError(f"Mirror market {key} does not exist")

        raw_signature = sign_resolution(account, key, yes_won, self._chain.chain_id)
        signature = Web3.to_hex(raw_signature)
        tx_hash = primary.send_resolve(
            key, yes_won, raw_signature, account=account, chain_id=self._chain.chain_id
        )
        self._ledger.mark_submitted(
            entry, tx_hash=tx_hash, oracle_signature=signature, source=mirror.source.value
        )
        self._session.commit()
        logger.info("Submitted resolveMirror for {} in tx {}", key, tx_hash)

        receipt = self._wait_for_receipt(tx_hash)
        if not receipt.succeeded:
            raise TransactionRevertedError(f"resolveMirror reverted in tx {tx_hash}", tx_hash=tx_hash)

        return ResolutionRecord(
            mirror_key=key,
            yes_won=yes_won,
            oracle_signature=signature,
            tx_hash=tx_hash,
            block_number=receipt.block_number,
            source=mirror.source,
        )

    def _wait_for_receipt(self, tx_hash: str) -> Receipt:
        try:
            return self._chain.primary.wait_for_receipt(tx_hash, self._chain.timeout)
        except Exception as exc:
            if not is_timeout_error(exc):
                raise
            logger.warning("Primary RPC timed out waiting for {}; retrying on fallback", tx_hash)
        return self._chain.fallback.wait_for_receipt(tx_hash, self._chain.timeout)
