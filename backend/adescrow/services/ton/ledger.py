"""Contract-level ledger operations for per-deal TON escrow contracts.

The escrow contract code is supplied by configuration
(``APP_ESCROW_CONTRACT_CODE_HEX``); this module builds its init data,
derives the deterministic address, deploys it from the platform wallet and
sends the release/refund trigger messages.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

import httpx
from pytoniq_core import Address as TonAddress
from pytoniq_core import Cell, StateInit, begin_cell
from tonsdk.boc import Cell as TonsdkCell

from adescrow.core.config import settings
from adescrow.core.errors import LedgerError
from adescrow.services.ton.client import TonClient
from adescrow.services.ton.wallet import PlatformWallet

logger = logging.getLogger(__name__)

# Contract message opcodes
RELEASE_OPCODE = 0x5642A0B8
REFUND_OPCODE = 0xAD7C3ADD

# Getter escrowState(): 0=init, 1=funded, 2=released, 3=refunded
CHAIN_STATE_MAP = {0: "init", 1: "funded", 2: "released", 3: "refunded"}

# Trigger message value (nanoTON); raised by STEP when the contract runs out of gas
TRIGGER_MSG_VALUE = 100_000_000
TRIGGER_MSG_STEP = 50_000_000
TRIGGER_MSG_MAX = 200_000_000


@dataclass(frozen=True)
class EscrowParams:
    deal_id: int
    advertiser_address: str
    owner_address: str
    platform_address: str
    amount: int
    platform_fee: int
    deadline: datetime


@dataclass(frozen=True)
class PaymentCheck:
    received: bool
    tx_hash: str | None = None
    amount: int = 0


class LedgerClient(Protocol):
    @property
    def platform_address(self) -> str: ...

    async def deploy_escrow(self, params: EscrowParams) -> str: ...

    def compute_escrow_address(self, params: EscrowParams) -> str: ...

    async def send_release(self, address: str) -> str: ...

    async def send_refund(self, address: str) -> str: ...

    async def check_incoming_payment(self, address: str, min_amount: int, since: datetime) -> PaymentCheck: ...


def _opcode_payload(opcode: int) -> TonsdkCell:
    """Message body holding only a 32-bit opcode."""
    cell = TonsdkCell()
    cell.bits.write_uint(opcode, 32)
    return cell


class TonLedgerClient:
    """LedgerClient over Toncenter and the platform wallet."""

    def __init__(
        self,
        client: TonClient | None = None,
        wallet: PlatformWallet | None = None,
        contract_code_hex: str | None = None,
        verify_delay: float = 10.0,
    ) -> None:
        self.client = client or TonClient()
        self.wallet = wallet or PlatformWallet()
        self._code_hex = settings.escrow_contract_code_hex if contract_code_hex is None else contract_code_hex
        self._verify_delay = verify_delay
        self._is_testnet = settings.ton_network == "testnet"

    @property
    def platform_address(self) -> str:
        address = self.wallet.address or settings.ton_platform_wallet_address
        if not address:
            raise LedgerError("Platform wallet address is not configured")
        return address

    # -- address derivation -------------------------------------------------

    def _build_state_init(self, params: EscrowParams) -> StateInit:
        """State init of the escrow contract.

        Data layout:
            b_0: uint(0,1) | int(dealId,257) | address(advertiser) | address(owner)
                 ref -> b_1: address(platform) | int(amount,257) | int(fee,257) | uint(deadline,32)
        """
        if not self._code_hex:
            raise LedgerError("Escrow contract code is not configured")
        try:
            code = Cell.one_from_boc(bytes.fromhex(self._code_hex))
            b_1 = (
                begin_cell()
                .store_address(TonAddress(params.platform_address))
                .store_int(params.amount, 257)
                .store_int(params.platform_fee, 257)
                .store_uint(int(params.deadline.timestamp()), 32)
                .end_cell()
            )
            data = (
                begin_cell()
                .store_uint(0, 1)
                .store_int(params.deal_id, 257)
                .store_address(TonAddress(params.advertiser_address))
                .store_address(TonAddress(params.owner_address))
                .store_ref(b_1)
                .end_cell()
            )
        except (ValueError, TypeError) as exc:
            raise LedgerError(f"Cannot build escrow state init for deal {params.deal_id}: {exc}") from exc
        return StateInit(code=code, data=data)

    def compute_escrow_address(self, params: EscrowParams) -> str:
        """Deterministic contract address derived from the state init hash."""
        si_cell = self._build_state_init(params).serialize()
        addr = TonAddress((0, si_cell.hash))
        return addr.to_str(is_bounceable=True, is_test_only=self._is_testnet)

    # -- wallet-signed messages ---------------------------------------------

    def _require_wallet(self) -> None:
        if not self.wallet.configured:
            raise LedgerError("Platform wallet not configured (TON_PLATFORM_MNEMONIC)")

    async def _send(self, to_address: str, amount: int, payload=None, state_init=None) -> str:
        seqno = await self.client.get_wallet_seqno(self.wallet.address)
        boc = self.wallet.create_transfer_boc(
            to_address=to_address,
            amount=amount,
            seqno=seqno,
            payload=payload,
            state_init=state_init,
        )
        resp = await self.client.send_boc(boc)
        return resp.get("message_hash") or hashlib.sha256(boc.encode()).hexdigest()

    async def deploy_escrow(self, params: EscrowParams) -> str:
        self._require_wallet()
        state_init = self._build_state_init(params)
        address = self.compute_escrow_address(params)
        try:
            si_cell = TonsdkCell.one_from_boc(state_init.serialize().to_boc())
            msg_hash = await self._send(address, settings.escrow_deploy_value, state_init=si_cell)
        except (httpx.HTTPError, RuntimeError, ValueError) as exc:
            raise LedgerError(f"Escrow deploy failed for deal {params.deal_id}: {exc}") from exc
        logger.info("Escrow deploy sent for deal %d: address=%s msg=%s", params.deal_id, address, msg_hash)
        return address

    async def get_on_chain_state(self, address: str) -> int | None:
        """Contract state from the ``escrowState`` getter, None if unavailable."""
        try:
            result = await self.client.run_get_method(address, "escrowState")
        except httpx.HTTPError:
            logger.debug("escrowState getter failed for %s", address)
            return None
        stack = result.get("stack", [])
        if stack:
            return int(stack[0].get("value", "0"), 0)
        return None

    async def _is_settled(self, address: str) -> bool:
        """True once the contract has paid out (destroyed, or getter state >= 2)."""
        account = await self.client.get_account_state(address)
        status = account.get("status", "")
        balance = int(account.get("balance", 0) or 0)
        if status in ("nonexist", "uninit") or (status != "active" and balance == 0):
            return True
        if status == "active":
            state = await self.get_on_chain_state(address)
            return state is not None and state >= 2
        return False

    async def _trigger(self, address: str, opcode: int, label: str) -> str:
        """Send a trigger message, raising the attached value until the contract settles."""
        self._require_wallet()
        try:
            account = await self.client.get_account_state(address)
            if account.get("status") != "active":
                raise LedgerError(f"Escrow contract {address} is not active")

            amount = TRIGGER_MSG_VALUE
            attempt = 0
            msg_hash = None
            while amount <= TRIGGER_MSG_MAX:
                attempt += 1
                msg_hash = await self._send(address, amount, payload=_opcode_payload(opcode))
                logger.info(
                    "%s sent to %s (attempt=%d, amount=%d nanoTON)", label, address, attempt, amount,
                )
                await asyncio.sleep(self._verify_delay)
                if await self._is_settled(address):
                    logger.info("%s confirmed for %s (attempt=%d)", label, address, attempt)
                    return msg_hash
                amount += TRIGGER_MSG_STEP
                logger.warning("%s not confirmed for %s, retrying with %d nanoTON", label, address, amount)
        except (httpx.HTTPError, RuntimeError, ValueError) as exc:
            raise LedgerError(f"{label} failed for {address}: {exc}") from exc

        raise LedgerError(f"{label} not confirmed for {address} after {attempt} attempts")

    async def send_release(self, address: str) -> str:
        return await self._trigger(address, RELEASE_OPCODE, "release")

    async def send_refund(self, address: str) -> str:
        return await self._trigger(address, REFUND_OPCODE, "refund")

    async def check_incoming_payment(self, address: str, min_amount: int, since: datetime) -> PaymentCheck:
        """Look for an inbound transfer covering ``min_amount`` since ``since``.

        Contract deployment consumes gas out of the first deposit, so the
        transfer only has to cover ``payment_amount_tolerance_percent`` of
        the expected amount.
        """
        threshold = min_amount * settings.payment_amount_tolerance_percent // 100
        try:
            txs = await self.client.get_transactions(address, limit=20, start_utime=int(since.timestamp()))
            for tx in txs:
                in_msg = tx.get("in_msg") or {}
                value = int(in_msg.get("value") or 0)
                if value >= threshold:
                    return PaymentCheck(received=True, tx_hash=tx.get("hash"), amount=value)

            account = await self.client.get_account_state(address)
        except httpx.HTTPError as exc:
            raise LedgerError(f"Payment check failed for {address}: {exc}") from exc

        balance = int(account.get("balance", 0) or 0)
        if account.get("status") == "active" and balance >= threshold:
            return PaymentCheck(received=True, amount=balance)
        return PaymentCheck(received=False)
