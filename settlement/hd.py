"""Deterministic per-user signers derived from the HD master mnemonic."""

import logging
from dataclasses import dataclass
from typing import Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_utils import ValidationError

from .config import Config
from .errors import ConfigError

logger = logging.getLogger(__name__)

Account.enable_unaudited_hdwallet_features()


@dataclass(frozen=True)
class DerivedSigner:
    index: int
    address: str
    account: LocalAccount


class HDKeyring:
    """Rebuilds signers on demand; no private material is ever persisted."""

    def __init__(self, mnemonic: Optional[str] = None, path_prefix: Optional[str] = None):
        self.mnemonic = (mnemonic if mnemonic is not None else Config.HD_WALLET_MNEMONIC).strip()
        self.path_prefix = (path_prefix or Config.DERIVATION_PATH_PREFIX).rstrip("/")
        if not self.mnemonic:
            raise ConfigError("HD_WALLET_MNEMONIC not set")
        try:
            Account.from_mnemonic(self.mnemonic, account_path=self.path_for(0))
        except (ValidationError, ValueError) as e:
            raise ConfigError(f"HD_WALLET_MNEMONIC is malformed: {e}")

    def path_for(self, index: int) -> str:
        if index < 0:
            raise ValueError(f"Derivation index must be non-negative, got {index}")
        return f"{self.path_prefix}/{index}"

    def derive_signer(self, index: int) -> DerivedSigner:
        account = Account.from_mnemonic(self.mnemonic, account_path=self.path_for(index))
        return DerivedSigner(index=index, address=account.address, account=account)

    def address_for(self, index: int) -> str:
        return self.derive_signer(index).address


def generate_mnemonic(num_words: int = 12) -> str:
    _, mnemonic = Account.create_with_mnemonic(num_words=num_words)
    return mnemonic
