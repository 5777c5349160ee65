"""Tests for rentchain/ledger.py: SimLedger rules and RpcLedger JSON-RPC handling."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import asyncio
from unittest.mock import MagicMock, patch

import pytest
import requests
import rlp
from eth_account import Account
from eth_utils import keccak, to_checksum_address

from rentchain import agreement
from rentchain.ledger import (
    ExecutionReverted, InsufficientFunds, LedgerError, NonceTooLow, RpcLedger,
    RpcUnavailable, SIM_CALL_GAS, SIM_DEPLOY_GAS, SimLedger, tx_hash_of,
)
from conftest import (
    SIGNER, SIGNER_KEY, RENTER, OUTSIDER_KEY, CONTENT_HASH, RENT, DEPOSIT, sign_raw,
)

GWEI = 1_000_000_000


def _deploy_data():
    return agreement.encode_deploy(agreement.SIM_BYTECODE, RENTER, CONTENT_HASH, RENT, DEPOSIT, 30)


def _deploy(sim, nonce=0):
    tx_hash = sim.send_raw_transaction(sign_raw(SIGNER_KEY, nonce, data=_deploy_data()))
    return sim.get_receipt(tx_hash)["contract_address"]


def _read(sim, address, field_name):
    signature, abi_type = agreement.READ_ACCESSORS[field_name]
    return agreement.decode_result(abi_type, sim.call(address, agreement.encode_call(signature)))


# --- SimLedger: accounts ---

def test_fund_credits_balance(sim):
    assert sim.get_balance(SIGNER) == 100 * 10**18
    assert sim.get_nonce(SIGNER) == 0


def test_unknown_account_is_empty(sim):
    outsider = Account.from_key(OUTSIDER_KEY).address
    assert sim.get_balance(outsider) == 0
    assert sim.get_nonce(outsider, "latest") == 0


# --- SimLedger: deploy ---

def test_deploy_creates_contract_at_create_address(sim):
    address = _deploy(sim)
    expected = to_checksum_address(keccak(rlp.encode([bytes.fromhex(SIGNER[2:]), 0]))[12:])
    assert address == expected
    assert sim.get_nonce(SIGNER, "latest") == 1


def test_deployed_contract_exposes_terms(sim):
    address = _deploy(sim)
    assert _read(sim, address, "landlord") == SIGNER
    assert _read(sim, address, "renter") == RENTER
    assert _read(sim, address, "content_hash") == CONTENT_HASH
    assert _read(sim, address, "rent_amount") == RENT
    assert _read(sim, address, "deposit_amount") == DEPOSIT
    assert _read(sim, address, "duration_days") == 30
    assert _read(sim, address, "is_active") is False
    assert _read(sim, address, "is_terminated") is False


def test_deploy_charges_gas(sim):
    _deploy(sim)
    assert sim.get_balance(SIGNER) == 100 * 10**18 - SIM_DEPLOY_GAS * GWEI


def test_deploy_with_foreign_bytecode_reverts(sim):
    data = agreement.encode_deploy("0x60016002", RENTER, CONTENT_HASH, RENT, DEPOSIT, 30)
    tx_hash = sim.send_raw_transaction(sign_raw(SIGNER_KEY, 0, data=data))
    receipt = sim.get_receipt(tx_hash)
    assert receipt["status"] == 0
    assert receipt["contract_address"] is None
    # A reverted transaction still consumes its nonce
    assert sim.get_nonce(SIGNER, "latest") == 1


# --- SimLedger: contract rules ---

def test_activate_requires_exact_payment(sim):
    address = _deploy(sim)
    call = {"from": SIGNER, "to": address, "value": RENT,
            "data": agreement.encode_call(agreement.ACTIVATE_SIGNATURE)}
    with pytest.raises(ExecutionReverted) as exc:
        sim.estimate_gas(call)
    assert exc.value.reason == "Incorrect payment amount"

    call["value"] = RENT + DEPOSIT
    assert sim.estimate_gas(call) == SIM_CALL_GAS


def test_activate_moves_value_and_sets_flag(sim):
    address = _deploy(sim)
    before = sim.get_balance(SIGNER)
    raw = sign_raw(SIGNER_KEY, 1, to=address, value=RENT + DEPOSIT,
                   data=agreement.encode_call(agreement.ACTIVATE_SIGNATURE))
    receipt = sim.get_receipt(sim.send_raw_transaction(raw))
    assert receipt["status"] == 1
    assert _read(sim, address, "is_active") is True
    assert sim.get_balance(SIGNER) == before - RENT - DEPOSIT - SIM_CALL_GAS * GWEI


def test_mined_revert_keeps_reason(sim):
    address = _deploy(sim)
    raw = sign_raw(SIGNER_KEY, 1, to=address, value=1,
                   data=agreement.encode_call(agreement.ACTIVATE_SIGNATURE))
    tx_hash = sim.send_raw_transaction(raw)
    receipt = sim.get_receipt(tx_hash)
    assert receipt["status"] == 0
    assert sim.revert_reason(tx_hash, receipt) == "Incorrect payment amount"
    assert _read(sim, address, "is_active") is False


def test_terminate_clears_active(sim):
    address = _deploy(sim)
    sim.set_flags(address, is_active=True)
    raw = sign_raw(SIGNER_KEY, 1, to=address,
                   data=agreement.encode_call(agreement.TERMINATE_SIGNATURE))
    assert sim.get_receipt(sim.send_raw_transaction(raw))["status"] == 1
    assert _read(sim, address, "is_terminated") is True
    assert _read(sim, address, "is_active") is False


def test_terminate_only_by_parties(sim):
    address = _deploy(sim)
    outsider = Account.from_key(OUTSIDER_KEY).address
    sim.fund(outsider, "1")
    call = {"from": outsider, "to": address,
            "data": agreement.encode_call(agreement.TERMINATE_SIGNATURE)}
    with pytest.raises(ExecutionReverted, match="Only landlord or renter"):
        sim.estimate_gas(call)


def test_terminated_agreement_cannot_activate(sim):
    address = _deploy(sim)
    sim.set_flags(address, is_terminated=True)
    call = {"from": SIGNER, "to": address, "value": RENT + DEPOSIT,
            "data": agreement.encode_call(agreement.ACTIVATE_SIGNATURE)}
    with pytest.raises(ExecutionReverted, match="Agreement terminated"):
        sim.estimate_gas(call)


def test_call_to_non_contract_returns_empty(sim):
    assert sim.call(RENTER, agreement.encode_call("isActive()")) == "0x"


# --- SimLedger: mempool and nonces ---

def test_held_transaction_counts_toward_pending_nonce(sim):
    sim.auto_mine = False
    tx_hash = sim.send_raw_transaction(sign_raw(SIGNER_KEY, 0, data=_deploy_data()))
    assert sim.get_nonce(SIGNER, "pending") == 1
    assert sim.get_nonce(SIGNER, "latest") == 0
    assert sim.get_receipt(tx_hash) is None
    assert sim.mine() == 1
    assert sim.get_receipt(tx_hash)["status"] == 1


def test_nonce_gap_waits(sim):
    sim.auto_mine = False
    later = sim.send_raw_transaction(sign_raw(SIGNER_KEY, 1, data=_deploy_data()))
    assert sim.mine() == 0
    sim.send_raw_transaction(sign_raw(SIGNER_KEY, 0, data=_deploy_data()))
    assert sim.mine() == 2
    assert sim.get_receipt(later)["status"] == 1


def test_nonce_too_low(sim):
    _deploy(sim)
    with pytest.raises(NonceTooLow):
        sim.send_raw_transaction(sign_raw(SIGNER_KEY, 0, data=_deploy_data(), gas=1_900_000))


def test_resending_same_bytes_is_idempotent(sim):
    sim.auto_mine = False
    raw = sign_raw(SIGNER_KEY, 0, data=_deploy_data())
    assert sim.send_raw_transaction(raw) == sim.send_raw_transaction(raw) == tx_hash_of(raw)


def test_replacement_needs_fee_bump(sim):
    sim.auto_mine = False
    original = sim.send_raw_transaction(sign_raw(SIGNER_KEY, 0, data=_deploy_data()))
    with pytest.raises(LedgerError, match="underpriced"):
        sim.send_raw_transaction(sign_raw(SIGNER_KEY, 0, data=_deploy_data(),
                                          gas_price=GWEI * 105 // 100))
    replacement = sim.send_raw_transaction(sign_raw(SIGNER_KEY, 0, data=_deploy_data(),
                                                    gas_price=GWEI * 125 // 100))
    sim.mine()
    assert sim.get_receipt(original) is None
    assert sim.get_receipt(replacement)["status"] == 1


def test_drop_pending_rewinds_pending_nonce(sim):
    sim.auto_mine = False
    tx_hash = sim.send_raw_transaction(sign_raw(SIGNER_KEY, 0, data=_deploy_data()))
    assert sim.drop_pending() == 1
    assert sim.get_nonce(SIGNER, "pending") == 0
    sim.mine()
    assert sim.get_receipt(tx_hash) is None


def test_transaction_known_tracks_pool_membership(sim):
    sim.auto_mine = False
    tx_hash = sim.send_raw_transaction(sign_raw(SIGNER_KEY, 0, data=_deploy_data()))
    assert sim.transaction_known(tx_hash)
    sim.drop_pending()
    assert not sim.transaction_known(tx_hash)

    mined = sim.send_raw_transaction(sign_raw(SIGNER_KEY, 0, data=_deploy_data(), gas_price=GWEI * 2))
    sim.mine()
    assert sim.transaction_known(mined)


def test_insufficient_funds(sim):
    with pytest.raises(InsufficientFunds):
        sim.send_raw_transaction(sign_raw(OUTSIDER_KEY, 0, data=_deploy_data()))


def test_rpc_outage(sim):
    sim.rpc_down = True
    with pytest.raises(RpcUnavailable):
        sim.chain_id()
    with pytest.raises(RpcUnavailable):
        sim.get_nonce(SIGNER)


def test_failing_read(sim):
    address = _deploy(sim)
    sim.failing_reads.add("isActive()")
    with pytest.raises(RpcUnavailable):
        sim.call(address, agreement.encode_call("isActive()"))
    assert _read(sim, address, "is_terminated") is False


def test_get_transactions_filters_by_method(sim):
    address = _deploy(sim)
    sim.send_raw_transaction(sign_raw(SIGNER_KEY, 1, to=address, value=RENT + DEPOSIT,
                                      data=agreement.encode_call(agreement.ACTIVATE_SIGNATURE)))
    assert len(sim.get_transactions()) == 2
    assert len(sim.get_transactions(to=address, signature=agreement.ACTIVATE_SIGNATURE)) == 1
    assert sim.get_transactions(to=address, signature=agreement.TERMINATE_SIGNATURE) == []


# --- wait_for_receipt ---

@pytest.mark.asyncio
async def test_wait_for_receipt_sees_late_inclusion(sim):
    sim.auto_mine = False
    tx_hash = sim.send_raw_transaction(sign_raw(SIGNER_KEY, 0, data=_deploy_data()))
    asyncio.get_running_loop().call_later(0.05, sim.mine)
    found = await sim.wait_for_receipt([tx_hash], timeout=2, poll_interval=0.01)
    assert found is not None
    assert found[0] == tx_hash
    assert found[1]["status"] == 1


@pytest.mark.asyncio
async def test_wait_for_receipt_times_out(sim):
    sim.auto_mine = False
    tx_hash = sim.send_raw_transaction(sign_raw(SIGNER_KEY, 0, data=_deploy_data()))
    assert await sim.wait_for_receipt([tx_hash], timeout=0.05, poll_interval=0.01) is None


@pytest.mark.asyncio
async def test_wait_for_receipt_survives_outage(sim):
    sim.auto_mine = False
    tx_hash = sim.send_raw_transaction(sign_raw(SIGNER_KEY, 0, data=_deploy_data()))
    sim.rpc_down = True

    def recover():
        sim.rpc_down = False
        sim.mine()

    asyncio.get_running_loop().call_later(0.05, recover)
    found = await sim.wait_for_receipt([tx_hash], timeout=2, poll_interval=0.01)
    assert found is not None


# --- RpcLedger ---

def _response(payload):
    resp = MagicMock()
    resp.json.return_value = payload
    resp.raise_for_status.return_value = None
    return resp


def _rpc_result(result):
    return _response({"jsonrpc": "2.0", "id": 1, "result": result})


def _rpc_error(code, message, data=None):
    error = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return _response({"jsonrpc": "2.0", "id": 1, "error": error})


@patch("rentchain.ledger.requests.post")
def test_rpc_parses_quantities(mock_post):
    mock_post.return_value = _rpc_result("0x7a69")
    ledger = RpcLedger("http://node")
    assert ledger.chain_id() == 31337
    body = mock_post.call_args.kwargs["json"]
    assert body["method"] == "eth_chainId"
    assert body["jsonrpc"] == "2.0"


@patch("rentchain.ledger.requests.post")
def test_rpc_nonce_uses_pending_block(mock_post):
    mock_post.return_value = _rpc_result("0x3")
    assert RpcLedger("http://node").get_nonce(SIGNER) == 3
    assert mock_post.call_args.kwargs["json"]["params"] == [SIGNER, "pending"]


@patch("rentchain.ledger.requests.post")
def test_rpc_estimate_gas_hexifies(mock_post):
    mock_post.return_value = _rpc_result("0x5208")
    gas = RpcLedger("http://node").estimate_gas(
        {"from": SIGNER, "to": None, "value": 5, "data": "0x"}
    )
    assert gas == 21000
    (tx,) = mock_post.call_args.kwargs["json"]["params"]
    assert tx == {"from": SIGNER, "value": "0x5", "data": "0x"}


@patch("rentchain.ledger.requests.post")
def test_rpc_transaction_known(mock_post):
    ledger = RpcLedger("http://node")
    mock_post.return_value = _rpc_result(None)
    assert not ledger.transaction_known("0xab")
    assert mock_post.call_args.kwargs["json"]["method"] == "eth_getTransactionByHash"
    mock_post.return_value = _rpc_result({"hash": "0xab", "blockNumber": None})
    assert ledger.transaction_known("0xab")


@patch("rentchain.ledger.requests.post")
def test_rpc_transport_failure_is_unavailable(mock_post):
    mock_post.side_effect = requests.ConnectionError("refused")
    with pytest.raises(RpcUnavailable):
        RpcLedger("http://node").gas_price()


@patch("rentchain.ledger.requests.post")
def test_rpc_classifies_nonce_too_low(mock_post):
    mock_post.return_value = _rpc_error(-32000, "nonce too low")
    with pytest.raises(NonceTooLow):
        RpcLedger("http://node").send_raw_transaction("0x01")


@patch("rentchain.ledger.requests.post")
def test_rpc_classifies_insufficient_funds(mock_post):
    mock_post.return_value = _rpc_error(-32000, "insufficient funds for gas * price + value")
    with pytest.raises(InsufficientFunds):
        RpcLedger("http://node").send_raw_transaction("0x01")


@patch("rentchain.ledger.requests.post")
def test_rpc_decodes_revert_reason(mock_post):
    mock_post.return_value = _rpc_error(
        3, "execution reverted: Agreement terminated",
        agreement.encode_revert("Agreement terminated"),
    )
    with pytest.raises(ExecutionReverted) as exc:
        RpcLedger("http://node").estimate_gas({"from": SIGNER, "to": RENTER, "data": "0x"})
    assert exc.value.reason == "Agreement terminated"


@patch("rentchain.ledger.requests.post")
def test_rpc_revert_reason_from_message(mock_post):
    mock_post.return_value = _rpc_error(-32000, "execution reverted: Only landlord or renter")
    with pytest.raises(ExecutionReverted) as exc:
        RpcLedger("http://node").call(RENTER, "0x")
    assert exc.value.reason == "Only landlord or renter"


@patch("rentchain.ledger.requests.post")
def test_rpc_already_known_returns_hash(mock_post):
    raw = sign_raw(SIGNER_KEY, 0, data=_deploy_data())
    mock_post.return_value = _rpc_error(-32000, "already known")
    assert RpcLedger("http://node").send_raw_transaction(raw) == tx_hash_of(raw)


@patch("rentchain.ledger.requests.post")
def test_rpc_receipt_pending(mock_post):
    mock_post.return_value = _rpc_result(None)
    assert RpcLedger("http://node").get_receipt("0xabc") is None


@patch("rentchain.ledger.requests.post")
def test_rpc_receipt_checksums_contract_address(mock_post):
    mock_post.return_value = _rpc_result({
        "status": "0x1",
        "contractAddress": RENTER.lower(),
        "blockNumber": "0x10",
        "transactionHash": "0xabc",
    })
    receipt = RpcLedger("http://node").get_receipt("0xabc")
    assert receipt == {"status": 1, "contract_address": RENTER, "block_number": 16, "tx_hash": "0xabc"}


@patch("rentchain.ledger.requests.post")
def test_rpc_revert_reason_replays_call(mock_post):
    mock_post.side_effect = [
        _rpc_result({"from": SIGNER, "to": RENTER, "input": "0x", "value": "0x0", "gas": "0x5208"}),
        _rpc_error(3, "execution reverted", agreement.encode_revert("Agreement already active")),
    ]
    reason = RpcLedger("http://node").revert_reason("0xabc", {"block_number": 16})
    assert reason == "Agreement already active"
    replay_params = mock_post.call_args.kwargs["json"]["params"]
    assert replay_params[1] == "0x10"
