# chain.py
"""
Chain Gateway: the only module that talks to Solana RPC.

  get_transaction(hash)          confirmed inbound transfer or TransactionValidationError
  list_inbound_transactions(n)   recent transfers that credited the receiving wallet
  send_payment(address, amount)  signed SOL transfer from the payout wallet; returns signature
  get_balance(address)           SOL balance

Amounts cross this boundary as Decimal SOL; lamports stay inside.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN
from typing import List, Optional, Union
import asyncio
import json

import base58 as _b58
from loguru import logger
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from config import settings
from errors import GatewayError, PayoutError, TransactionValidationError

LAMPORTS_PER_SOL = 10 ** 9


@dataclass
class ChainTransaction:
    hash: str
    from_address: str
    to_address: str
    value: Decimal
    timestamp: datetime
    slot: Optional[int] = None

    def as_dict(self) -> dict:
        return {
            "hash": self.hash,
            "from": self.from_address,
            "to": self.to_address,
            "value": str(self.value),
            "timestamp": self.timestamp.isoformat(),
            "slot": self.slot,
        }


# =========================================================
# Helpers
# =========================================================
def to_public_key(addr: Optional[Union[str, Pubkey, bytes, bytearray]]) -> Pubkey:
    if addr is None or addr == "":
        raise ValueError("Empty public key provided")
    if isinstance(addr, Pubkey):
        return addr
    if isinstance(addr, (bytes, bytearray)):
        return Pubkey.from_bytes(bytes(addr))
    raw = _b58.b58decode(str(addr).strip())
    if len(raw) != 32:
        raise ValueError(f"Decoded key length != 32 ({len(raw)})")
    return Pubkey.from_bytes(raw)


def kp_from_base58(b58: str) -> Keypair:
    """Payout signer from a base58 secret: 64-byte keypair or 32-byte seed."""
    if not b58:
        raise ValueError("Empty secret key provided")
    raw = _b58.b58decode(b58.strip())
    if len(raw) == 64:
        return Keypair.from_bytes(raw)
    if len(raw) == 32:
        return Keypair.from_seed(raw)
    raise ValueError(f"Invalid secret key length: {len(raw)} (expected 32 or 64 bytes)")


def sol_to_lamports(amount: Decimal) -> int:
    return int((Decimal(amount) * LAMPORTS_PER_SOL).to_integral_value(rounding=ROUND_DOWN))


def lamports_to_sol(lamports: int) -> Decimal:
    return (Decimal(int(lamports)) / LAMPORTS_PER_SOL).quantize(Decimal("0.000000001"))


def _as_dict(resp) -> dict:
    """RPC responses come back as solders objects; normalize to the JSON-RPC dict shape."""
    if isinstance(resp, dict):
        return resp
    to_json = getattr(resp, "to_json", None)
    if to_json is None:
        raise GatewayError(f"Unexpected RPC response type: {type(resp).__name__}")
    return json.loads(to_json())


def _account_keys(message: dict) -> List[str]:
    keys = []
    for k in message.get("accountKeys") or []:
        keys.append(k.get("pubkey") if isinstance(k, dict) else str(k))
    return keys


def parse_native_transfer(result: dict, tx_hash: str, receiving: str) -> ChainTransaction:
    """
    Reduce a jsonParsed getTransaction result to the SOL credited to `receiving`.
    Sender is the fee payer (first account key).
    """
    if not result:
        raise TransactionValidationError("Transaction not found on blockchain")
    meta = result.get("meta") or {}
    if meta.get("err") is not None:
        raise TransactionValidationError("Transaction failed on blockchain")
    message = ((result.get("transaction") or {}).get("message")) or {}
    keys = _account_keys(message)
    if receiving not in keys:
        raise TransactionValidationError(f"Transaction must be sent to {receiving}")
    idx = keys.index(receiving)
    pre = meta.get("preBalances") or []
    post = meta.get("postBalances") or []
    try:
        delta = int(post[idx]) - int(pre[idx])
    except (IndexError, TypeError, ValueError):
        raise GatewayError(f"Malformed balances for transaction {tx_hash}")
    block_time = result.get("blockTime")
    if block_time is None:
        raise TransactionValidationError("Transaction is still pending")
    return ChainTransaction(
        hash=tx_hash,
        from_address=keys[0] if keys else "",
        to_address=receiving,
        value=lamports_to_sol(max(delta, 0)),
        timestamp=datetime.fromtimestamp(int(block_time), tz=timezone.utc),
        slot=result.get("slot"),
    )


# =========================================================
# Gateway
# =========================================================
class SolanaGateway:
    def __init__(
        self,
        rpc_url: str = settings.RPC_URL,
        receiving_wallet: str = settings.RECEIVING_WALLET,
        payout_secret_b58: Optional[str] = settings.PAYOUT_WALLET_PK,
        min_amount: Decimal = settings.BET_AMOUNT - settings.PAYMENT_TOLERANCE,
        request_delay: float = 0.1,
    ):
        self.rpc_url = rpc_url
        self.receiving_wallet = receiving_wallet
        self.payout_secret_b58 = payout_secret_b58 or ""
        self.min_amount = min_amount
        self.request_delay = request_delay

    def _client(self) -> AsyncClient:
        return AsyncClient(self.rpc_url, commitment=Confirmed)

    # ---------------- reads ----------------
    async def _fetch_transfer(self, client: AsyncClient, tx_hash: str) -> ChainTransaction:
        try:
            sig = Signature.from_string(tx_hash)
        except ValueError:
            raise TransactionValidationError("Malformed transaction id")
        try:
            resp = await client.get_transaction(
                sig, encoding="jsonParsed", commitment=Confirmed, max_supported_transaction_version=0
            )
        except Exception as e:
            raise GatewayError(f"getTransaction failed for {tx_hash}: {e}") from e
        result = _as_dict(resp).get("result")
        return parse_native_transfer(result, tx_hash, self.receiving_wallet)

    async def get_transaction(self, tx_hash: str) -> ChainTransaction:
        """
        Confirmed transfer into the receiving wallet. Raises
        TransactionValidationError when the transaction is missing, unconfirmed,
        failed, sent elsewhere, or below the minimum bet amount.
        """
        if not self.receiving_wallet:
            raise GatewayError("RECEIVING_WALLET is not configured")
        async with self._client() as client:
            tx = await self._fetch_transfer(client, tx_hash)
        if tx.value < self.min_amount:
            raise TransactionValidationError(f"Transaction value must be at least {self.min_amount} SOL")
        return tx

    async def list_inbound_transactions(self, limit: int = 50) -> List[ChainTransaction]:
        """
        Recent successful transfers that credited the receiving wallet, newest first.
        A transaction that cannot be parsed is skipped; an RPC failure on the
        signature listing raises GatewayError.
        """
        if not self.receiving_wallet:
            raise GatewayError("RECEIVING_WALLET is not configured")
        out: List[ChainTransaction] = []
        async with self._client() as client:
            try:
                resp = await client.get_signatures_for_address(
                    to_public_key(self.receiving_wallet), limit=int(limit), commitment=Confirmed
                )
            except Exception as e:
                raise GatewayError(f"getSignaturesForAddress failed: {e}") from e
            entries = _as_dict(resp).get("result") or []
            for entry in entries:
                if entry.get("err") is not None:
                    continue
                tx_hash = entry.get("signature")
                try:
                    tx = await self._fetch_transfer(client, tx_hash)
                except (TransactionValidationError, GatewayError) as e:
                    logger.debug(f"[chain] skip {tx_hash}: {e}")
                    continue
                if tx.value > 0:
                    out.append(tx)
                # keep public RPC endpoints from rate limiting us
                if self.request_delay:
                    await asyncio.sleep(self.request_delay)
        logger.debug(f"[chain] {len(out)} inbound transaction(s) in last {limit} signatures")
        return out

    async def get_balance(self, address: Optional[str] = None) -> Decimal:
        addr = address or self.receiving_wallet
        try:
            async with self._client() as client:
                resp = await client.get_balance(to_public_key(addr), commitment=Confirmed)
        except Exception as e:
            raise GatewayError(f"getBalance failed for {addr}: {e}") from e
        value = (_as_dict(resp).get("result") or {}).get("value")
        return lamports_to_sol(int(value or 0))

    async def get_slot(self) -> int:
        async with self._client() as client:
            resp = await client.get_slot()
        return int(_as_dict(resp).get("result") or 0)

    # ---------------- writes ----------------
    def _payout_keypair(self) -> Keypair:
        if not self.payout_secret_b58:
            raise PayoutError("PAYOUT_WALLET_PK not set.")
        try:
            return kp_from_base58(self.payout_secret_b58)
        except ValueError as e:
            raise PayoutError(f"Invalid PAYOUT_WALLET_PK: {e}") from e

    async def send_payment(self, to_address: str, amount: Decimal) -> str:
        """Send `amount` SOL from the payout wallet; returns the transaction signature."""
        lamports = sol_to_lamports(amount)
        if lamports <= 0:
            raise PayoutError("amount must be > 0")
        kp = self._payout_keypair()
        try:
            recipient = to_public_key(to_address)
        except ValueError as e:
            raise PayoutError(f"Invalid recipient address {to_address!r}: {e}") from e

        async with self._client() as client:
            bal = await client.get_balance(kp.pubkey(), commitment=Confirmed)
            balance = int((_as_dict(bal).get("result") or {}).get("value") or 0)
            if balance < lamports:
                raise PayoutError("Insufficient balance for payout")

            ix = transfer(TransferParams(from_pubkey=kp.pubkey(), to_pubkey=recipient, lamports=lamports))
            blockhash = (await client.get_latest_blockhash(commitment=Confirmed)).value.blockhash
            msg = Message.new_with_blockhash([ix], kp.pubkey(), blockhash)
            raw = bytes(Transaction([kp], msg, blockhash))

            try:
                resp = await client.send_raw_transaction(
                    raw, opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed)
                )
            except Exception:
                # one retry with skip_preflight=True (network hiccup / compute jitter)
                try:
                    resp = await client.send_raw_transaction(
                        raw, opts=TxOpts(skip_preflight=True, preflight_commitment=Confirmed)
                    )
                except Exception as e:
                    raise PayoutError(f"send failed: {e}") from e

            sig = resp.value
            # best-effort confirm; the signature is returned either way so a
            # manual retry can check it instead of paying twice
            try:
                await client.confirm_transaction(sig, commitment=Confirmed)
            except Exception as e:
                logger.warning(f"[chain] confirmation pending for {sig}: {e}")
        logger.info(f"[chain] paid {amount} SOL to {to_address}: {sig}")
        return str(sig)
