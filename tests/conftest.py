import pytest

from chain_environment import ChainEnvironment
from fungible_token import FungibleToken, parse_units
from invoice_ledger import InvoiceLedger


class FakeClock:
    """Manually advanced clock in unix seconds"""

    def __init__(self, start: int = 1_700_000_000):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def env(clock: FakeClock) -> ChainEnvironment:
    return ChainEnvironment(clock=clock)


@pytest.fixture
def deployer(env: ChainEnvironment) -> str:
    return env.create_account("deployer")


@pytest.fixture
def seller(env: ChainEnvironment) -> str:
    return env.create_account("seller")


@pytest.fixture
def client(env: ChainEnvironment) -> str:
    return env.create_account("client")


@pytest.fixture
def token(env: ChainEnvironment, deployer: str) -> FungibleToken:
    return env.deploy(FungibleToken, deployer)


@pytest.fixture
def ledger(env: ChainEnvironment, deployer: str) -> InvoiceLedger:
    return env.deploy(InvoiceLedger, deployer)


@pytest.fixture
def amount() -> int:
    return parse_units("100", 18)


@pytest.fixture
def open_invoice(ledger: InvoiceLedger, token: FungibleToken, deployer: str,
                 seller: str, client: str, amount: int) -> int:
    """Invoice 1 for 100 tokens, with 1000 tokens minted to the client"""
    invoice_id = ledger.create_invoice(seller, client, amount, token.get_address(), "Design")
    token.mint(deployer, client, parse_units("1000", 18))
    return invoice_id
