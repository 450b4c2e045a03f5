from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

from chain_environment import (
    ChainEnvironment,
    Contract,
    ContractError,
    is_null_address,
    is_uint256,
    to_address,
)
from fungible_token import FungibleToken, format_units, parse_units
from ledger_config import DEFAULT_CONFIG, LedgerConfig, configure_logging


logger = logging.getLogger(__name__)


# ==================== Enums ====================

class InvoiceStatus(Enum):
    """Lifecycle of a stored invoice"""
    OPEN = "OPEN"
    PAID = "PAID"


# ==================== Errors ====================

class InvoiceError(ContractError):
    """Base class for invoice ledger failures"""


class InvalidAmount(InvoiceError):
    def __init__(self, amount: Any):
        super().__init__(f"Invoice amount must be a positive integer, got {amount!r}")
        self.amount = amount


class InvalidTokenAddress(InvoiceError):
    def __init__(self, token_address: Optional[str]):
        super().__init__(f"Invalid settlement token: {token_address}")
        self.token_address = token_address


class InvalidClientAddress(InvoiceError):
    def __init__(self, client: Optional[str], message: Optional[str] = None):
        super().__init__(message or f"Invalid client address: {client}")
        self.client = client


class SelfInvoice(InvalidClientAddress):
    def __init__(self, client: str):
        super().__init__(client, f"Seller {client} cannot invoice themselves")


class DescriptionTooLong(InvoiceError):
    def __init__(self, length: int, limit: int):
        super().__init__(f"Description has {length} characters, limit is {limit}")
        self.length = length
        self.limit = limit


class InvalidDueDate(InvoiceError):
    def __init__(self, due_date: Any):
        super().__init__(f"Invalid due date: {due_date!r}")
        self.due_date = due_date


class InvoiceNotFound(InvoiceError):
    def __init__(self, invoice_id: Any):
        super().__init__(f"Invoice {invoice_id} not found")
        self.invoice_id = invoice_id


class InvoiceAlreadyPaid(InvoiceError):
    def __init__(self, invoice_id: int):
        super().__init__(f"Invoice {invoice_id} is already paid")
        self.invoice_id = invoice_id


# ==================== Models ====================

def start_of_day(timestamp: int) -> int:
    """Unix timestamp of local midnight on the day containing `timestamp`"""
    moment = datetime.fromtimestamp(timestamp)
    return int(moment.replace(hour=0, minute=0, second=0, microsecond=0).timestamp())


@dataclass(frozen=True)
class Invoice:
    """Snapshot of a stored invoice"""
    invoice_id: int
    seller: str
    client: str
    token_address: str
    amount: int
    description: str
    due_date: int = 0  # unix seconds, 0 when there is no due date
    is_paid: bool = False

    @property
    def status(self) -> InvoiceStatus:
        return InvoiceStatus.PAID if self.is_paid else InvoiceStatus.OPEN

    def is_overdue(self, now: int) -> bool:
        """Unpaid with a due date before the start of `now`'s local day"""
        if self.is_paid or not self.due_date:
            return False
        return start_of_day(now) > self.due_date

    def __repr__(self) -> str:
        return (f"Invoice(id={self.invoice_id}, amount={self.amount}, "
                f"status={self.status.value}, description={self.description!r})")


@dataclass(frozen=True)
class AccountSummary:
    """Dashboard totals for one address"""
    account: str
    revenue: int
    sent_count: int
    pending_received_count: int


# ==================== Invoice Ledger ====================

class InvoiceLedger(Contract):
    """
    Registry of invoices settled in fungible tokens.

    Sellers create invoices naming a client and a token. Paying pulls the
    amount from the payer through the token's allowance mechanism straight
    to the seller, so the ledger itself never holds funds.
    """

    def __init__(self, env: ChainEnvironment, address: str,
                 config: LedgerConfig = DEFAULT_CONFIG):
        super().__init__(env, address)
        self._config = config

        # id -> invoice, kept in creation order
        self._invoices: Dict[int, Invoice] = {}
        self._invoice_counter = 0

    # ==================== Mutations ====================

    def create_invoice(self, sender: str, client: Optional[str], amount: int,
                       token_address: Optional[str], description: str,
                       due_date: int = 0) -> int:
        """Register a new open invoice and return its id"""
        with self._env.transaction():
            seller = to_address(sender)

            if not is_uint256(amount) or amount == 0:
                raise InvalidAmount(amount)
            if is_null_address(token_address):
                raise InvalidTokenAddress(token_address)
            if is_null_address(client):
                raise InvalidClientAddress(client)
            client = to_address(client)
            if self._config.reject_self_invoicing and client == seller:
                raise SelfInvoice(client)

            if not isinstance(description, str):
                raise TypeError("description must be a string")
            if len(description) > self._config.max_description_length:
                raise DescriptionTooLong(len(description), self._config.max_description_length)
            if not is_uint256(due_date):
                raise InvalidDueDate(due_date)

            new_id = self._invoice_counter + 1
            self._set("_invoice_counter", new_id)
            invoice = Invoice(
                invoice_id=new_id,
                seller=seller,
                client=client,
                token_address=to_address(token_address),
                amount=amount,
                description=description,
                due_date=due_date
            )
            self._write(self._invoices, new_id, invoice)

            self._emit("InvoiceCreated",
                       invoice_id=invoice.invoice_id,
                       seller=seller,
                       client=client,
                       amount=amount,
                       description=description)

        logger.info("Invoice %d created by %s for %s", invoice.invoice_id, seller, client)
        return invoice.invoice_id

    def pay_invoice(self, sender: str, invoice_id: int) -> Invoice:
        """
        Settle an open invoice.

        The token transfer runs before the paid flag is written and both
        share one transaction, so a failed transfer leaves the invoice open.
        Anyone holding enough allowance and balance may pay.
        """
        with self._env.transaction():
            payer = to_address(sender)
            invoice = self._lookup(invoice_id)
            if invoice is None:
                raise InvoiceNotFound(invoice_id)
            if invoice.is_paid:
                raise InvoiceAlreadyPaid(invoice_id)

            token = self._settlement_token(invoice.token_address)
            token.transfer_from(self._address, payer, invoice.seller, invoice.amount)

            paid = replace(invoice, is_paid=True)
            self._write(self._invoices, invoice_id, paid)
            self._emit("InvoicePaid", invoice_id=invoice_id, payer=payer)

        logger.info("Invoice %d paid by %s", invoice_id, payer)
        return paid

    # ==================== Reads ====================

    def invoice_id(self) -> int:
        """Id of the most recently created invoice, 0 if none"""
        with self._env.read():
            return self._invoice_counter

    def invoices(self, invoice_id: int) -> Optional[Invoice]:
        with self._env.read():
            return self._lookup(invoice_id)

    def get_all_invoices(self) -> List[Invoice]:
        """Every invoice ever created, paid ones included, in creation order"""
        with self._env.read():
            return list(self._invoices.values())

    def get_invoices_by_seller(self, seller: str, paid: Optional[bool] = None) -> List[Invoice]:
        seller = to_address(seller)
        return [invoice for invoice in self.get_all_invoices()
                if invoice.seller == seller and (paid is None or invoice.is_paid == paid)]

    def get_invoices_by_client(self, client: str, paid: Optional[bool] = None) -> List[Invoice]:
        client = to_address(client)
        return [invoice for invoice in self.get_all_invoices()
                if invoice.client == client and (paid is None or invoice.is_paid == paid)]

    def get_overdue_invoices(self, client: Optional[str] = None,
                             now: Optional[int] = None) -> List[Invoice]:
        now = self._env.timestamp() if now is None else now
        candidates = (self.get_invoices_by_client(client, paid=False)
                      if client is not None else self.get_all_invoices())
        return [invoice for invoice in candidates if invoice.is_overdue(now)]

    def get_account_summary(self, account: str) -> AccountSummary:
        """Revenue from paid sales plus outgoing and pending incoming counts"""
        account = to_address(account)
        revenue = 0
        sent_count = 0
        pending_received = 0

        for invoice in self.get_all_invoices():
            if invoice.seller == account:
                sent_count += 1
                if invoice.is_paid:
                    revenue += invoice.amount
            if invoice.client == account and not invoice.is_paid:
                pending_received += 1

        return AccountSummary(
            account=account,
            revenue=revenue,
            sent_count=sent_count,
            pending_received_count=pending_received
        )

    # ==================== Internals ====================

    def _settlement_token(self, token_address: str) -> FungibleToken:
        contract = self._env.contract_at(token_address)
        if not isinstance(contract, FungibleToken):
            raise InvalidTokenAddress(token_address)
        return contract

    def _lookup(self, invoice_id: Any) -> Optional[Invoice]:
        if not is_uint256(invoice_id) or invoice_id == 0:
            return None
        return self._invoices.get(invoice_id)

    def __repr__(self) -> str:
        return f"InvoiceLedger(address={self._address}, invoices={self._invoice_counter})"


# ==================== Demo ====================

def print_section(title: str) -> None:
    print("\n" + "=" * 60)
    print(f"  {title}")
    print("=" * 60)


def print_invoice(invoice: Invoice, decimals: int) -> None:
    print(f"  #{invoice.invoice_id} {invoice.description!r}: "
          f"{format_units(invoice.amount, decimals)} tokens "
          f"[{invoice.status.value}]")


def demo_invoice_ledger():
    """Create, approve and settle an invoice end to end"""
    configure_logging(logging.WARNING)

    env = ChainEnvironment()
    deployer = env.create_account("deployer")
    seller = env.create_account("seller")
    client = env.create_account("client")

    token = env.deploy(FungibleToken, deployer)
    ledger = env.deploy(InvoiceLedger, deployer)
    decimals = token.get_decimals()

    print_section("Funding Client")
    token.mint(deployer, client, parse_units("1000", decimals))
    print(f"Client balance: {format_units(token.balance_of(client), decimals)}")

    print_section("Creating Invoices")
    amount = parse_units("100", decimals)
    first = ledger.create_invoice(seller, client, amount, token.get_address(), "Design work")
    second = ledger.create_invoice(seller, client, parse_units("50", decimals),
                                   token.get_address(), "Hosting")
    for invoice in ledger.get_all_invoices():
        print_invoice(invoice, decimals)

    print_section("Paying Invoice")
    try:
        ledger.pay_invoice(client, first)
    except ContractError as e:
        print(f"Payment rejected before approval: {e}")

    token.approve(client, ledger.get_address(), amount)
    ledger.pay_invoice(client, first)
    print(f"Seller balance: {format_units(token.balance_of(seller), decimals)}")
    print(f"Client balance: {format_units(token.balance_of(client), decimals)}")

    try:
        ledger.pay_invoice(client, first)
    except InvoiceAlreadyPaid as e:
        print(f"Second payment rejected: {e}")

    print_section("Ledger State")
    for invoice in ledger.get_all_invoices():
        print_invoice(invoice, decimals)

    summary = ledger.get_account_summary(seller)
    print(f"Seller revenue: {format_units(summary.revenue, decimals)}, "
          f"sent: {summary.sent_count}")
    print(f"Client pending: {len(ledger.get_invoices_by_client(client, paid=False))} "
          f"(invoice #{second})")

    print_section("Notifications")
    for entry in env.get_logs(address=ledger.get_address()):
        print(f"  {entry}")


if __name__ == "__main__":
    demo_invoice_ledger()


# Invoice Ledger - Design Notes
#
# Components:
# ChainEnvironment: serializes calls and reads, rolls back failed calls, keeps the event log
# FungibleToken: balances and allowances, the only way funds move
# InvoiceLedger: id assignment, Open -> Paid lifecycle, settlement
#
# Settlement:
# The client approves the ledger address as spender, then pays.
# pay_invoice calls transfer_from(payer -> seller) and only afterwards marks
# the invoice paid. Both happen inside one environment transaction, so a
# revert in the token leaves the invoice open and balances untouched.
#
# Identity:
# Ids come from a pre-incremented counter, so the first invoice is 1 and
# 0 never refers to an invoice. Failed creates roll the counter back.
#
# Enumeration:
# get_all_invoices scans every invoice ever created. Invoices live in an
# insertion-ordered dict keyed by id, which doubles as the creation-order index.
#
# Rollback:
# Writes go through Contract._write/_set, which journal the prior value of
# each touched key. A revert replays only that journal, so a call costs the
# same no matter how many invoices or balances already exist.
#
# Overdue:
# An invoice counts as overdue once local midnight of the current day has
# passed its due date, so it stays current for the whole day it is due.
