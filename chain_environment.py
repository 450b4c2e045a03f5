from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Callable, ContextManager, Dict, Iterator, List, Optional, Tuple
import hashlib
import logging
import re
import time


logger = logging.getLogger(__name__)


# ==================== Constants ====================

ADDRESS_BYTES = 20
ZERO_ADDRESS = "0x" + "00" * ADDRESS_BYTES
MAX_UINT256 = 2 ** 256 - 1
ALL_EVENTS = "*"

_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


# ==================== Errors ====================

class ContractError(Exception):
    """Base class for every failure that reverts a transaction"""


class InvalidAddress(ContractError):
    """Raised for values that are not 20-byte hex addresses"""

    def __init__(self, value: Any):
        super().__init__(f"Invalid address: {value!r}")
        self.value = value


class UnknownContract(ContractError):
    """Raised when no contract is deployed at an address"""

    def __init__(self, address: str):
        super().__init__(f"No contract deployed at {address}")
        self.address = address


# ==================== Address Helpers ====================

def to_address(value: Any) -> str:
    """Validate and normalize an address to lowercase hex"""
    if not isinstance(value, str) or not _ADDRESS_PATTERN.match(value):
        raise InvalidAddress(value)
    return value.lower()


def is_null_address(value: Optional[str]) -> bool:
    """None and the zero address both count as null"""
    if value is None:
        return True
    return to_address(value) == ZERO_ADDRESS


def is_uint256(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, int):
        return False
    return 0 <= value <= MAX_UINT256


def derive_address(*parts: Any) -> str:
    """Deterministic address from arbitrary seed parts"""
    seed = ":".join(str(part) for part in parts).encode("utf-8")
    return "0x" + hashlib.sha256(seed).hexdigest()[-2 * ADDRESS_BYTES:]


# ==================== Log Entries ====================

@dataclass(frozen=True)
class LogEntry:
    """A committed notification emitted by a contract"""
    block_number: int
    log_index: int
    address: str
    event: str
    args: Dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        return (f"LogEntry(block={self.block_number}, index={self.log_index}, "
                f"event={self.event}, args={self.args})")


# ==================== Contract Base ====================

class Contract:
    """
    Base class for state owned by the environment.
    Subclasses mutate state only through _write and _set, which journal the
    prior value so a failed call can be rolled back.
    """

    def __init__(self, env: 'ChainEnvironment', address: str):
        self._env = env
        self._address = to_address(address)

    def get_address(self) -> str:
        return self._address

    def get_environment(self) -> 'ChainEnvironment':
        return self._env

    def _emit(self, event: str, **args: Any) -> None:
        self._env.emit(self._address, event, **args)

    def _write(self, mapping: Dict[Any, Any], key: Any, value: Any) -> None:
        """Set mapping[key], journaling the previous entry"""
        if key in mapping:
            previous = mapping[key]
            self._env.record_undo(lambda: mapping.__setitem__(key, previous))
        else:
            self._env.record_undo(lambda: mapping.pop(key, None))
        mapping[key] = value

    def _set(self, name: str, value: Any) -> None:
        """Set an attribute, journaling the previous value"""
        previous = getattr(self, name)
        self._env.record_undo(lambda: setattr(self, name, previous))
        setattr(self, name, value)


# ==================== Execution Environment ====================

class ChainEnvironment:
    """
    Single globally ordered executor for accounts and contracts.

    Every mutating contract call runs inside transaction(): calls are
    serialized by one re-entrant lock, a failing call replays the undo
    journal of the keys it wrote, and notifications become visible only
    after the call commits. Reads take the same lock through read().
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._lock = RLock()
        self._clock = clock or time.time

        self._contracts: Dict[str, Contract] = {}
        self._labels: Dict[str, str] = {}
        self._nonces: Dict[str, int] = defaultdict(int)
        self._account_counter = 0

        self._logs: List[LogEntry] = []
        self._pending: List[Tuple[str, str, Dict[str, Any]]] = []
        self._undo_log: List[Callable[[], None]] = []
        self._depth = 0
        self._block_number = 0

        self._subscribers: Dict[str, List[Callable[[LogEntry], None]]] = defaultdict(list)

    # ==================== Accounts & Contracts ====================

    def create_account(self, label: str) -> str:
        """Create a new externally owned account address"""
        with self._lock:
            self._account_counter += 1
            address = derive_address("account", label, self._account_counter)
            self._labels[address] = label
            logger.debug("Created account %s (%s)", label, address)
            return address

    def deploy(self, factory: Callable[..., Contract], deployer: str,
               *args: Any, **kwargs: Any) -> Contract:
        """Instantiate a contract at an address derived from the deployer nonce"""
        with self._lock:
            deployer = to_address(deployer)
            nonce = self._nonces[deployer]
            self._nonces[deployer] += 1

            address = derive_address("contract", deployer, nonce)
            contract = factory(self, address, *args, **kwargs)
            self._contracts[address] = contract
            self._labels[address] = type(contract).__name__
            logger.info("Deployed %s at %s", type(contract).__name__, address)
            return contract

    def contract_at(self, address: str) -> Contract:
        address = to_address(address)
        with self._lock:
            contract = self._contracts.get(address)
            if contract is None:
                raise UnknownContract(address)
            return contract

    def is_contract(self, address: str) -> bool:
        with self._lock:
            return to_address(address) in self._contracts

    def get_label(self, address: str) -> Optional[str]:
        return self._labels.get(to_address(address))

    # ==================== Transactions ====================

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Run the enclosed calls as one all-or-nothing unit.
        Nested transactions join the outermost one.
        """
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            self._depth = 1
            try:
                yield
            except BaseException as e:
                self._rollback()
                logger.warning("Transaction reverted: %s: %s", type(e).__name__, e)
                raise
            finally:
                self._depth = 0

            self._undo_log.clear()
            entries = self._commit()
            self._dispatch(entries)

    def in_transaction(self) -> bool:
        return self._depth > 0

    def read(self) -> ContextManager[bool]:
        """Lock to hold while reading contract state, waits for running calls"""
        return self._lock

    def record_undo(self, undo: Callable[[], None]) -> None:
        """Journal the inverse of a write made by the running transaction"""
        if self._depth == 0:
            raise RuntimeError("state written outside a transaction")
        self._undo_log.append(undo)

    def journal_size(self) -> int:
        return len(self._undo_log)

    def _rollback(self) -> None:
        while self._undo_log:
            self._undo_log.pop()()
        self._pending.clear()

    def emit(self, address: str, event: str, **args: Any) -> None:
        """Buffer a notification in the running transaction"""
        if self._depth == 0:
            raise RuntimeError("emit() called outside a transaction")
        self._pending.append((address, event, args))

    def _commit(self) -> List[LogEntry]:
        self._block_number += 1
        entries = []
        for address, event, args in self._pending:
            entry = LogEntry(
                block_number=self._block_number,
                log_index=len(self._logs),
                address=address,
                event=event,
                args=dict(args)
            )
            self._logs.append(entry)
            entries.append(entry)
        self._pending.clear()
        return entries

    # ==================== Notifications ====================

    def subscribe(self, event: str, callback: Callable[[LogEntry], None]) -> None:
        """Subscribe to one event name, or to ALL_EVENTS"""
        with self._lock:
            self._subscribers[event].append(callback)

    def unsubscribe(self, event: str, callback: Callable[[LogEntry], None]) -> bool:
        with self._lock:
            callbacks = self._subscribers.get(event, [])
            if callback not in callbacks:
                return False
            callbacks.remove(callback)
            return True

    def _dispatch(self, entries: List[LogEntry]) -> None:
        """Notify subscribers of committed entries"""
        for entry in entries:
            callbacks = (list(self._subscribers.get(entry.event, [])) +
                         list(self._subscribers.get(ALL_EVENTS, [])))
            for callback in callbacks:
                try:
                    callback(entry)
                except Exception:
                    logger.exception("Error notifying subscriber of %s", entry.event)

    def get_logs(self, address: Optional[str] = None,
                 event: Optional[str] = None) -> List[LogEntry]:
        """Committed log entries in emission order, optionally filtered"""
        if address is not None:
            address = to_address(address)
        with self._lock:
            return [entry for entry in self._logs
                    if (address is None or entry.address == address)
                    and (event is None or entry.event == event)]

    # ==================== Chain State ====================

    def block_number(self) -> int:
        return self._block_number

    def timestamp(self) -> int:
        """Current time in unix seconds, from the injected clock"""
        return int(self._clock())
