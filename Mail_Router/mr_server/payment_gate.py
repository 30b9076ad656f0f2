"""
Payment Verification Gate.

Checks run in a fixed order and stop at the first failure:

    1. reference format          -> malformed-reference
    2. burn ledger               -> already-used (no chain read happens)
    3. tier / asset / transition -> unknown-tier, unknown-asset, downgrade-not-allowed
    4. chain read                -> chain-unavailable, transaction-not-found
    5. recipient and amount      -> wrong-recipient, transaction-reverted,
                                    no-token-transfer, insufficient-payment
    6. confirmation depth        -> pending, insufficient-confirmations

``upgrade`` then applies the tier and only afterwards burns the reference.
If the burn does not land, the tier record is rolled back.
"""

import logging
import re
from typing import Optional

from Mail_Router.mr_shared import config, errors
from Mail_Router.mr_shared.types import AccountTierRecord, PaymentVerification
from Mail_Router.mr_db.blind_inbox import BlindInbox
from Mail_Router.mr_db.payment_ledger import PaymentLedger
from Mail_Router.mr_db.privacy import PrivacyStore
from Mail_Router.mr_db.tier_ledger import TierLedger
from Mail_Router.mr_server.chain_oracle import ChainOracle, hex_to_int

logger = logging.getLogger("mr_server.payment_gate")

_TX_HASH = re.compile(config.TX_HASH_PATTERN)


def _topic_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


def price_in_units(asset: str, tier: str) -> int:
    decimals = config.NATIVE_DECIMALS if asset == "native" else config.TOKEN_DECIMALS
    return config.TIER_PRICES[asset][tier] * 10 ** decimals


class PaymentGate:
    def __init__(
        self,
        ledger: PaymentLedger,
        chain: ChainOracle,
        tiers: TierLedger,
        inbox: BlindInbox,
        privacy: PrivacyStore,
        treasury: str,
        token_contract: str,
        min_confirmations: int = config.MIN_CONFIRMATIONS,
    ):
        self.ledger = ledger
        self.chain = chain
        self.tiers = tiers
        self.inbox = inbox
        self.privacy = privacy
        self.treasury = treasury.lower()
        self.token_contract = token_contract.lower()
        self.min_confirmations = min_confirmations

    async def _read(self, what: str, coro):
        try:
            return await coro
        except errors.ChainOracleError as e:
            logger.warning("chain_read_failed what=%s detail=%s", what, e.detail)
            raise errors.UpgradeDeniedError("chain-unavailable", what)

    async def _check_confirmations(self, block_number: Optional[str]) -> int:
        if block_number is None:
            raise errors.UpgradeDeniedError("pending", "transaction not yet mined")
        head = await self._read("block-number", self.chain.get_block_number())
        confirmations = head - hex_to_int(block_number)
        if confirmations < self.min_confirmations:
            raise errors.UpgradeDeniedError(
                "insufficient-confirmations",
                f"{confirmations}/{self.min_confirmations}",
            )
        return confirmations

    async def _verify_native(self, tx_hash: str, tier: str) -> PaymentVerification:
        tx = await self._read("transaction", self.chain.get_transaction(tx_hash))
        if tx is None:
            raise errors.UpgradeDeniedError("transaction-not-found")

        if (tx.get("to") or "").lower() != self.treasury:
            raise errors.UpgradeDeniedError("wrong-recipient", f"sent to {tx.get('to')}")

        value = hex_to_int(tx.get("value"))
        if value < price_in_units("native", tier):
            raise errors.UpgradeDeniedError("insufficient-payment", f"{value} < {price_in_units('native', tier)}")

        confirmations = await self._check_confirmations(tx.get("blockNumber"))
        return PaymentVerification(
            tx_hash=tx_hash.lower(),
            tier=tier,
            asset="native",
            payer=(tx.get("from") or "").lower() or None,
            amount=value,
            confirmations=confirmations,
        )

    async def _verify_token(self, tx_hash: str, tier: str) -> PaymentVerification:
        receipt = await self._read("receipt", self.chain.get_transaction_receipt(tx_hash))
        if receipt is None:
            raise errors.UpgradeDeniedError("transaction-not-found")
        if hex_to_int(receipt.get("status")) != 1:
            raise errors.UpgradeDeniedError("transaction-reverted")

        payer = None
        amount = None
        for log in receipt.get("logs", []):
            topics = log.get("topics", [])
            if (log.get("address") or "").lower() != self.token_contract:
                continue
            if len(topics) != 3 or topics[0].lower() != config.ERC20_TRANSFER_TOPIC:
                continue
            if _topic_address(topics[2]) != self.treasury:
                continue
            payer = _topic_address(topics[1])
            amount = hex_to_int(log.get("data"))
            break

        if amount is None:
            raise errors.UpgradeDeniedError("no-token-transfer")
        if amount < price_in_units("token", tier):
            raise errors.UpgradeDeniedError("insufficient-payment", f"{amount} < {price_in_units('token', tier)}")

        confirmations = await self._check_confirmations(receipt.get("blockNumber"))
        return PaymentVerification(
            tx_hash=tx_hash.lower(),
            tier=tier,
            asset="token",
            payer=payer,
            amount=amount,
            confirmations=confirmations,
        )

    async def verify(self, tx_hash: str, tier: str, identity: str, asset: str = "native") -> PaymentVerification:
        if not isinstance(tx_hash, str) or not _TX_HASH.match(tx_hash):
            raise errors.UpgradeDeniedError("malformed-reference")

        if await self.ledger.is_burned(tx_hash):
            raise errors.UpgradeDeniedError("already-used")

        if asset not in config.VALID_ASSETS:
            raise errors.UpgradeDeniedError("unknown-asset", asset)
        try:
            self.tiers.check_transition(identity, await self.tiers.get(identity), tier)
        except errors.InvalidTierError:
            raise errors.UpgradeDeniedError("unknown-tier", tier)
        except errors.DowngradeNotAllowedError as e:
            raise errors.UpgradeDeniedError("downgrade-not-allowed", f"current tier {e.current_tier}")

        if asset == "native":
            return await self._verify_native(tx_hash, tier)
        return await self._verify_token(tx_hash, tier)

    async def upgrade(
        self,
        tx_hash: str,
        tier: str,
        identity: str,
        asset: str = "native",
        linked_wallet: Optional[str] = None,
        release_hard_privacy: bool = False,
    ) -> AccountTierRecord:
        verification = await self.verify(tx_hash, tier, identity, asset)

        try:
            previous, updated = await self.tiers.apply_upgrade(identity, tier, linked_wallet)
        except errors.DowngradeNotAllowedError as e:
            raise errors.UpgradeDeniedError("downgrade-not-allowed", f"current tier {e.current_tier}")

        try:
            await self.ledger.burn(verification.tx_hash, identity, tier)
        except errors.PaymentAlreadyUsedError:
            await self.tiers.restore(identity, previous, expected=updated)
            raise errors.UpgradeDeniedError("already-used")
        except errors.StoreUnavailableError:
            await self.tiers.restore(identity, previous, expected=updated)
            raise

        try:
            await self.inbox.apply_retention(identity, config.TIER_DECAY_DAYS[tier])
        except errors.StoreUnavailableError as e:
            logger.warning("retention_update_failed identity=%s detail=%s", identity, e)

        if release_hard_privacy:
            await self.privacy.set_state(identity, "private", paid=True)

        logger.info(
            "upgrade_complete identity=%s tier=%s asset=%s amount=%d",
            identity, tier, verification.asset, verification.amount,
        )
        return updated
