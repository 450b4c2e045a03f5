import logging
import threading

import pytest

from chain_environment import (
    ALL_EVENTS,
    ChainEnvironment,
    InvalidAddress,
    UnknownContract,
    ZERO_ADDRESS,
    is_null_address,
    is_uint256,
    to_address,
)
from fungible_token import FungibleToken, InsufficientBalance
from invoice_ledger import InvoiceLedger


def test_accounts_are_distinct_even_for_same_label(env: ChainEnvironment) -> None:
    first = env.create_account("alice")
    second = env.create_account("alice")

    assert first != second
    assert to_address(first) == first
    assert env.get_label(first) == "alice"


def test_deploy_registers_contract(env, deployer) -> None:
    token = env.deploy(FungibleToken, deployer)
    other = env.deploy(FungibleToken, deployer)

    assert env.contract_at(token.get_address()) is token
    assert token.get_address() != other.get_address()
    assert env.is_contract(token.get_address())
    assert not env.is_contract(deployer)
    assert env.get_label(token.get_address()) == "FungibleToken"


def test_contract_at_unknown_address(env, deployer) -> None:
    with pytest.raises(UnknownContract):
        env.contract_at(deployer)


def test_address_helpers() -> None:
    mixed = "0x" + "AbCd" * 10
    assert to_address(mixed) == mixed.lower()
    assert is_null_address(None)
    assert is_null_address(ZERO_ADDRESS)
    assert not is_null_address(mixed)
    with pytest.raises(InvalidAddress):
        to_address("0x1234")
    with pytest.raises(InvalidAddress):
        to_address(42)


def test_is_uint256() -> None:
    assert is_uint256(0)
    assert is_uint256(2 ** 256 - 1)
    assert not is_uint256(2 ** 256)
    assert not is_uint256(-1)
    assert not is_uint256(False)
    assert not is_uint256(1.0)


def test_emit_outside_transaction_is_an_error(env, deployer) -> None:
    with pytest.raises(RuntimeError):
        env.emit(deployer, "Loose")


def test_failed_transaction_restores_state_and_drops_events(env, token, deployer, seller, client) -> None:
    token.mint(deployer, client, 10)
    logs_before = len(env.get_logs())
    block_before = env.block_number()

    with pytest.raises(InsufficientBalance):
        with env.transaction():
            token.transfer(client, seller, 10)
            token.transfer(client, seller, 1)

    assert token.balance_of(client) == 10
    assert token.balance_of(seller) == 0
    assert len(env.get_logs()) == logs_before
    assert env.block_number() == block_before


def test_nested_calls_commit_as_one_block(env, token, deployer, seller, client) -> None:
    with env.transaction():
        token.mint(deployer, client, 10)
        token.transfer(client, seller, 4)

    entries = env.get_logs(event="Transfer")
    assert [entry.block_number for entry in entries] == [1, 1]
    assert [entry.log_index for entry in entries] == [0, 1]


def test_subscribers_see_committed_events(env, token, deployer, client) -> None:
    seen = []
    everything = []
    env.subscribe("Transfer", seen.append)
    env.subscribe(ALL_EVENTS, everything.append)

    token.mint(deployer, client, 5)
    token.approve(client, deployer, 5)

    assert [entry.args["value"] for entry in seen] == [5]
    assert [entry.event for entry in everything] == ["Transfer", "Approval"]


def test_subscribers_not_called_for_reverted_calls(env, token, seller, client) -> None:
    seen = []
    env.subscribe("Transfer", seen.append)

    with pytest.raises(InsufficientBalance):
        token.transfer(client, seller, 1)

    assert seen == []


def test_failing_subscriber_does_not_revert(env, token, deployer, client, caplog) -> None:
    def broken(entry):
        raise RuntimeError("observer down")

    env.subscribe("Transfer", broken)
    with caplog.at_level(logging.ERROR, logger="chain_environment"):
        token.mint(deployer, client, 5)

    assert token.balance_of(client) == 5
    assert "Error notifying subscriber" in caplog.text


def test_unsubscribe(env, token, deployer, client) -> None:
    seen = []
    env.subscribe("Transfer", seen.append)

    assert env.unsubscribe("Transfer", seen.append) is True
    assert env.unsubscribe("Transfer", seen.append) is False
    token.mint(deployer, client, 5)

    assert seen == []


def test_get_logs_filters_by_address(env, deployer, client) -> None:
    first = env.deploy(FungibleToken, deployer)
    second = env.deploy(FungibleToken, deployer)
    first.mint(deployer, client, 1)
    second.mint(deployer, client, 2)

    values = [entry.args["value"] for entry in env.get_logs(address=second.get_address())]
    assert values == [2]


def test_timestamp_uses_injected_clock(env, clock) -> None:
    start = env.timestamp()
    clock.advance(60)
    assert env.timestamp() == start + 60


def test_interrupt_mid_transaction_rolls_back(env, token, deployer, seller, client) -> None:
    token.mint(deployer, client, 10)

    with pytest.raises(KeyboardInterrupt):
        with env.transaction():
            token.transfer(client, seller, 10)
            raise KeyboardInterrupt

    assert token.balance_of(client) == 10
    assert token.balance_of(seller) == 0
    assert not env.in_transaction()
    assert env.journal_size() == 0


def test_rollback_journal_only_covers_written_keys(env, token, deployer, seller, client) -> None:
    ledger = env.deploy(InvoiceLedger, deployer)
    for n in range(50):
        ledger.create_invoice(seller, client, 1, token.get_address(), f"#{n}")
        token.mint(deployer, env.create_account(f"holder-{n}"), 1)

    with pytest.raises(RuntimeError):
        with env.transaction():
            ledger.create_invoice(seller, client, 1, token.get_address(), "Extra")
            # counter plus the new invoice entry
            assert env.journal_size() == 2
            raise RuntimeError("abort")

    assert ledger.invoice_id() == 50
    assert ledger.invoices(51) is None
    assert len(ledger.get_all_invoices()) == 50
    assert env.journal_size() == 0


def test_state_write_outside_transaction_is_an_error(env) -> None:
    with pytest.raises(RuntimeError):
        env.record_undo(lambda: None)


def test_reads_wait_for_running_transaction(env, token, deployer, seller, client) -> None:
    token.mint(deployer, client, 100)
    entered = threading.Event()
    release = threading.Event()
    seen = []

    def failing_payment():
        try:
            with env.transaction():
                token.transfer(client, seller, 100)
                entered.set()
                release.wait(5)
                raise RuntimeError("abort")
        except RuntimeError:
            pass

    def reader():
        seen.append(token.balance_of(seller))

    writer_thread = threading.Thread(target=failing_payment)
    writer_thread.start()
    assert entered.wait(5)

    reader_thread = threading.Thread(target=reader)
    reader_thread.start()
    reader_thread.join(0.2)
    assert reader_thread.is_alive()

    release.set()
    writer_thread.join(5)
    reader_thread.join(5)

    assert seen == [0]
    assert token.balance_of(client) == 100
