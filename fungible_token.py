from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Tuple, Union
import logging

from chain_environment import (
    ChainEnvironment,
    Contract,
    ContractError,
    MAX_UINT256,
    ZERO_ADDRESS,
    is_null_address,
    is_uint256,
    to_address,
)
from ledger_config import DEFAULT_CONFIG, LedgerConfig


logger = logging.getLogger(__name__)

# Allowance value exempt from decrement in transfer_from
UNLIMITED_ALLOWANCE = MAX_UINT256


# ==================== Errors ====================

class TokenError(ContractError):
    """Base class for token failures"""


class InvalidRecipient(TokenError):
    def __init__(self, recipient: Optional[str]):
        super().__init__(f"Invalid recipient: {recipient}")
        self.recipient = recipient


class InvalidSpender(TokenError):
    def __init__(self, spender: Optional[str]):
        super().__init__(f"Invalid spender: {spender}")
        self.spender = spender


class InvalidTokenAmount(TokenError):
    def __init__(self, amount: Any):
        super().__init__(f"Invalid token amount: {amount!r}")
        self.amount = amount


class InsufficientBalance(TokenError):
    def __init__(self, account: str, available: int, needed: int):
        super().__init__(f"Insufficient balance for {account}: has {available}, needs {needed}")
        self.account = account
        self.available = available
        self.needed = needed


class InsufficientAllowance(TokenError):
    def __init__(self, spender: str, available: int, needed: int):
        super().__init__(f"Insufficient allowance for {spender}: has {available}, needs {needed}")
        self.spender = spender
        self.available = available
        self.needed = needed


class UnauthorizedMinter(TokenError):
    def __init__(self, sender: str):
        super().__init__(f"{sender} is not allowed to mint")
        self.sender = sender


# ==================== Unit Conversion ====================

def parse_units(value: Union[str, int, Decimal], decimals: int) -> int:
    """Convert a human amount like "100.5" into smallest units"""
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Not a decimal amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Not a decimal amount: {value!r}")

    scaled = amount.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"{value} has more than {decimals} decimal places")
    return int(scaled)


def format_units(amount: int, decimals: int) -> str:
    """Convert smallest units back into a plain decimal string"""
    sign = "-" if amount < 0 else ""
    whole, fraction = divmod(abs(amount), 10 ** decimals)
    if decimals == 0 or fraction == 0:
        return f"{sign}{whole}"
    digits = str(fraction).rjust(decimals, "0").rstrip("0")
    return f"{sign}{whole}.{digits}"


# ==================== Fungible Token ====================

class FungibleToken(Contract):
    """
    Mintable ERC-20 style token used to settle invoices.

    Minting is open unless a minter address is given, in which case only
    that address may mint.
    """

    def __init__(self, env: ChainEnvironment, address: str,
                 name: str = "Mock USDC", symbol: str = "USDC",
                 decimals: Optional[int] = None, minter: Optional[str] = None,
                 config: LedgerConfig = DEFAULT_CONFIG):
        super().__init__(env, address)
        self._name = name
        self._symbol = symbol
        self._decimals = config.token_decimals if decimals is None else decimals
        self._minter = to_address(minter) if minter is not None else None
        self._config = config

        self._balances: Dict[str, int] = {}
        self._allowances: Dict[Tuple[str, str], int] = {}
        self._total_supply = 0

    # ==================== Metadata ====================

    def get_name(self) -> str:
        return self._name

    def get_symbol(self) -> str:
        return self._symbol

    def get_decimals(self) -> int:
        return self._decimals

    def get_minter(self) -> Optional[str]:
        return self._minter

    def total_supply(self) -> int:
        with self._env.read():
            return self._total_supply

    # ==================== Reads ====================

    def balance_of(self, account: str) -> int:
        account = to_address(account)
        with self._env.read():
            return self._balances.get(account, 0)

    def allowance(self, owner: str, spender: str) -> int:
        key = (to_address(owner), to_address(spender))
        with self._env.read():
            return self._allowances.get(key, 0)

    # ==================== Mutations ====================

    def mint(self, sender: str, to: Optional[str], amount: int) -> None:
        """Create new tokens for `to`"""
        with self._env.transaction():
            sender = to_address(sender)
            if self._minter is not None and sender != self._minter:
                raise UnauthorizedMinter(sender)
            if is_null_address(to):
                raise InvalidRecipient(to)
            self._require_amount(amount)
            if self._total_supply + amount > MAX_UINT256:
                raise InvalidTokenAmount(amount)

            to = to_address(to)
            self._write(self._balances, to, self.balance_of(to) + amount)
            self._set("_total_supply", self._total_supply + amount)
            self._emit("Transfer", sender=ZERO_ADDRESS, recipient=to, value=amount)

        logger.info("Minted %s %s to %s",
                    format_units(amount, self._decimals), self._symbol, to)

    def faucet(self, sender: str) -> int:
        """Mint the configured faucet amount to the caller"""
        amount = parse_units(self._config.faucet_amount, self._decimals)
        self.mint(sender, sender, amount)
        return amount

    def transfer(self, sender: str, to: Optional[str], amount: int) -> bool:
        """Move tokens from the caller to `to`"""
        with self._env.transaction():
            sender = to_address(sender)
            if is_null_address(to):
                raise InvalidRecipient(to)
            self._require_amount(amount)
            self._move(sender, to_address(to), amount)
        return True

    def approve(self, sender: str, spender: Optional[str], amount: int) -> bool:
        """Set the caller's allowance for `spender` to exactly `amount`"""
        with self._env.transaction():
            sender = to_address(sender)
            if is_null_address(spender):
                raise InvalidSpender(spender)
            self._require_amount(amount)

            spender = to_address(spender)
            self._write(self._allowances, (sender, spender), amount)
            self._emit("Approval", owner=sender, spender=spender, value=amount)
        return True

    def transfer_from(self, sender: str, owner: str, to: Optional[str], amount: int) -> bool:
        """Spend `owner`'s tokens on their behalf, consuming the caller's allowance"""
        with self._env.transaction():
            sender = to_address(sender)
            owner = to_address(owner)
            self._require_amount(amount)

            current = self.allowance(owner, sender)
            if current < amount:
                raise InsufficientAllowance(sender, current, amount)
            if is_null_address(to):
                raise InvalidRecipient(to)

            self._move(owner, to_address(to), amount)
            if current != UNLIMITED_ALLOWANCE:
                self._write(self._allowances, (owner, sender), current - amount)
        return True

    # ==================== Internals ====================

    def _require_amount(self, amount: Any) -> None:
        if not is_uint256(amount):
            raise InvalidTokenAmount(amount)

    def _move(self, source: str, destination: str, amount: int) -> None:
        available = self.balance_of(source)
        if available < amount:
            raise InsufficientBalance(source, available, amount)

        self._write(self._balances, source, available - amount)
        self._write(self._balances, destination, self.balance_of(destination) + amount)
        self._emit("Transfer", sender=source, recipient=destination, value=amount)

    def __repr__(self) -> str:
        return (f"FungibleToken({self._symbol}, address={self._address}, "
                f"supply={format_units(self._total_supply, self._decimals)})")
