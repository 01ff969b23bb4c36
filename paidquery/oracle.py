"""Payment lookups against the Pocket chain.

The watcher only depends on the PaymentOracle protocol. PocketdPaymentOracle
implements it by shelling out to the `pocketd` CLI and filtering the
returned transactions locally.
"""
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Protocol

from .commands import run_command
from .config import Settings
from .errors import OracleTransientError

logger = logging.getLogger(__name__)

MSG_SEND_TYPE = "/cosmos.bank.v1beta1.MsgSend"


class PaymentOracle(Protocol):
    async def has_qualifying_payment(
        self, payee: str, min_amount: int, payor: str, memo: str, since: datetime
    ) -> bool:
        """True once a matching transfer is on chain. May raise OracleTransientError."""


def parse_timestamp(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _sent_amount(message: Dict[str, Any], payee: str, payor: str, denom: str) -> int:
    if message.get("@type") != MSG_SEND_TYPE:
        return 0
    if message.get("from_address") != payor or message.get("to_address") != payee:
        return 0
    total = 0
    for coin in message.get("amount") or []:
        if coin.get("denom") == denom:
            total += int(coin.get("amount", "0"))
    return total


def find_qualifying_payment(
    txs: Iterable[Dict[str, Any]],
    payee: str,
    min_amount: int,
    payor: str,
    memo: str,
    since: datetime,
    denom: str = "upokt",
) -> Optional[Dict[str, Any]]:
    """Return the first transaction that pays for the job, or None.

    A transaction qualifies when it succeeded, is no older than `since`, its
    memo is exactly `memo`, and its MsgSend messages from `payor` to `payee`
    add up to at least `min_amount` of `denom`.
    """
    for tx in txs:
        try:
            if int(tx.get("code", 0)) != 0:
                continue
            if parse_timestamp(tx["timestamp"]) < since:
                continue
            body = (tx.get("tx") or {}).get("body") or {}
            if (body.get("memo") or "").strip() != memo:
                continue
            paid = sum(_sent_amount(m, payee, payor, denom) for m in body.get("messages") or [])
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            # one malformed entry must not hide payments further down the page
            logger.debug("oracle: skipping malformed transaction: %r", exc)
            continue
        if paid >= min_amount:
            return tx
    return None


class PocketdPaymentOracle:
    def __init__(self, settings: Settings, page_limit: int = 100):
        self.pocketd_bin = settings.pocketd_bin
        self.node = settings.pocketd_node
        self.chain_id = settings.chain_id
        self.denom = settings.payment_denom
        self.timeout = settings.command_timeout_seconds
        self.page_limit = page_limit

    def _argv(self, payee: str):
        # only the configured payee goes into the event query; the payor comes
        # from the client and is matched locally
        return [
            self.pocketd_bin, "query", "txs",
            "--query", f"transfer.recipient='{payee}'",
            "--order_by", "desc",
            "--limit", str(self.page_limit),
            f"--node={self.node}",
            f"--chain-id={self.chain_id}",
            "--output=json",
        ]

    async def has_qualifying_payment(
        self, payee: str, min_amount: int, payor: str, memo: str, since: datetime
    ) -> bool:
        try:
            result = await run_command(self._argv(payee), self.timeout)
        except asyncio.TimeoutError as exc:
            raise OracleTransientError(f"pocketd timed out after {self.timeout}s") from exc
        except OSError as exc:
            raise OracleTransientError(f"pocketd could not be started: {exc}") from exc
        if not result.ok:
            raise OracleTransientError(
                f"pocketd exited with {result.returncode}: {result.stderr.strip()[:200]}"
            )
        try:
            data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise OracleTransientError(f"pocketd returned invalid JSON: {exc}") from exc

        if not isinstance(data, dict):
            raise OracleTransientError("pocketd returned an unexpected JSON document")
        txs = data.get("txs") or []
        logger.debug("oracle: %d transfers to %s", len(txs), payee)
        tx = find_qualifying_payment(txs, payee, min_amount, payor, memo, since, self.denom)
        if tx is None:
            return False
        logger.info("oracle: payment %s from %s matched", tx.get("txhash"), payor)
        return True
