"""Platform wallet: derives the keypair from the mnemonic and signs outgoing messages."""

import logging

from tonsdk.boc import Cell
from tonsdk.contract.wallet import WalletVersionEnum, Wallets
from tonsdk.utils import bytes_to_b64str

from adescrow.core.config import settings

logger = logging.getLogger(__name__)


class PlatformWallet:
    """The platform's v4r2 wallet used to deploy escrows and trigger release/refund."""

    def __init__(self, mnemonic: str | None = None) -> None:
        words = (settings.ton_platform_mnemonic if mnemonic is None else mnemonic).split()
        if not words:
            logger.warning("TON platform mnemonic not configured")
            self._wallet = None
            return

        _mnemonics, _pub, _priv, wallet = Wallets.from_mnemonics(
            words, WalletVersionEnum.v4r2, workchain=0
        )
        self._wallet = wallet

    @property
    def configured(self) -> bool:
        return self._wallet is not None

    @property
    def address(self) -> str | None:
        if self._wallet is None:
            return None
        return self._wallet.address.to_string(True, True, False)

    def create_transfer_boc(
        self,
        to_address: str,
        amount: int,
        seqno: int,
        payload: Cell | None = None,
        state_init: Cell | None = None,
    ) -> str:
        """Signed transfer as a base64 BOC ready for ``send_boc``.

        ``state_init`` attaches contract code and data so the transfer deploys
        the destination contract.
        """
        if self._wallet is None:
            raise RuntimeError("Platform wallet not configured")

        query = self._wallet.create_transfer_message(
            to_addr=to_address,
            amount=amount,
            seqno=seqno,
            payload=payload,
            state_init=state_init,
        )
        return bytes_to_b64str(query["message"].to_boc(False))
