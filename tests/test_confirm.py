"""Tests for the broadcast and receipt-polling state machine."""

from __future__ import annotations

import threading

import httpx
import pytest

from conftest import RECIPIENT, FakeNode, NodeFault, sequence
from kerykeion.errors import InvalidStateError, NonceConflict, ReceiptTimeout
from kerykeion.pneuma.confirm import Submission, TxState
from kerykeion.pneuma.models import Account, FeeEstimate, Receipt, SignedTx, TxPlan
from kerykeion.pneuma.rpc import RpcClient
from kerykeion.pneuma.tx import TransactionBuilder, sign_transaction
from kerykeion.utils import normalize_address


@pytest.fixture()
def signed(rpc: RpcClient, account: Account) -> SignedTx:
    plan = TxPlan(sender=account.address, nonce=5, fee=FeeEstimate(tip=10**9, fee_cap=2 * 10**9))
    unsigned = TransactionBuilder(rpc).build(plan, RECIPIENT, value=10**15, gas_limit=21000)
    return sign_transaction(unsigned, account, 1337)


@pytest.fixture()
def submission(rpc: RpcClient, node: FakeNode, signed: SignedTx) -> Submission:
    node.on("eth_sendRawTransaction", signed.hash)
    return Submission(rpc, signed, poll_interval=0.01)


def receipt_payload(tx_hash: str, **overrides: object) -> dict:
    payload = {
        "transactionHash": tx_hash,
        "status": "0x1",
        "blockNumber": "0x65",
        "blockHash": "0x" + "cd" * 32,
        "gasUsed": "0x5208",
        "effectiveGasPrice": hex(2 * 10**9),
        "contractAddress": None,
        "logs": [],
    }
    payload.update(overrides)
    return {k: v for k, v in payload.items() if v is not ...}


class TestBroadcast:

    def test_single_send(self, submission: Submission, node: FakeNode, signed: SignedTx) -> None:
        assert submission.broadcast() == signed.hash
        assert submission.state is TxState.BROADCAST
        assert node.params("eth_sendRawTransaction") == [[signed.raw_hex]]

    def test_second_broadcast_rejected(self, submission: Submission, node: FakeNode) -> None:
        submission.broadcast()
        with pytest.raises(InvalidStateError):
            submission.broadcast()
        assert node.count("eth_sendRawTransaction") == 1

    def test_already_known_is_nonce_conflict(self, submission: Submission, node: FakeNode) -> None:
        node.on("eth_sendRawTransaction", NodeFault("already known"))
        with pytest.raises(NonceConflict):
            submission.broadcast()
        with pytest.raises(InvalidStateError):
            submission.broadcast()
        assert node.count("eth_sendRawTransaction") == 1

    def test_wait_requires_broadcast(self, submission: Submission) -> None:
        with pytest.raises(InvalidStateError):
            submission.wait(timeout=1)


class TestConfirmation:

    def test_mined_success(self, submission: Submission, node: FakeNode, signed: SignedTx) -> None:
        node.on("eth_getTransactionReceipt", sequence(None, None, receipt_payload(signed.hash)))
        result = submission.submit(timeout=5)
        assert result.state is TxState.MINED_SUCCESS
        assert result.succeeded
        assert result.receipt.block_number == 0x65
        assert node.count("eth_getTransactionReceipt") == 3

    def test_mined_failure(self, submission: Submission, node: FakeNode, signed: SignedTx) -> None:
        node.on("eth_getTransactionReceipt", receipt_payload(signed.hash, status="0x0"))
        result = submission.submit(timeout=5)
        assert result.state is TxState.MINED_FAILURE
        assert not result.succeeded

    @pytest.mark.parametrize("status", [..., None, "0x2", True, "pending"])
    def test_unrecognised_status_never_success(
        self, submission: Submission, node: FakeNode, signed: SignedTx, status: object
    ) -> None:
        node.on("eth_getTransactionReceipt", receipt_payload(signed.hash, status=status))
        result = submission.submit(timeout=5)
        assert result.state is TxState.MINED_FAILURE
        assert result.receipt.status is None

    def test_timeout_is_not_a_verdict(self, submission: Submission, node: FakeNode) -> None:
        node.on("eth_getTransactionReceipt", None)
        result = submission.submit(timeout=0.05)
        assert result.state is TxState.TIMED_OUT
        assert result.receipt is None
        with pytest.raises(ReceiptTimeout):
            result.raise_for_timeout()

    def test_wait_again_after_timeout(self, submission: Submission, node: FakeNode, signed: SignedTx) -> None:
        node.on("eth_getTransactionReceipt", None)
        assert submission.submit(timeout=0.02).state is TxState.TIMED_OUT
        node.on("eth_getTransactionReceipt", receipt_payload(signed.hash))
        assert submission.wait(timeout=5).state is TxState.MINED_SUCCESS
        assert node.count("eth_sendRawTransaction") == 1

    def test_cancel_before_wait(self, submission: Submission, node: FakeNode) -> None:
        cancel = threading.Event()
        cancel.set()
        submission.broadcast()
        assert submission.wait(cancel=cancel).state is TxState.TIMED_OUT
        assert node.count("eth_getTransactionReceipt") == 0

    def test_cancel_from_another_thread(self, submission: Submission, node: FakeNode) -> None:
        node.on("eth_getTransactionReceipt", None)
        cancel = threading.Event()
        timer = threading.Timer(0.05, cancel.set)
        timer.start()
        try:
            assert submission.submit(cancel=cancel).state is TxState.TIMED_OUT
        finally:
            timer.cancel()

    def test_polling_survives_connectivity_errors(
        self, submission: Submission, node: FakeNode, signed: SignedTx
    ) -> None:
        refused = httpx.ConnectError("refused")
        node.on("eth_getTransactionReceipt", sequence(refused, refused, refused, receipt_payload(signed.hash)))
        assert submission.submit(timeout=5).state is TxState.MINED_SUCCESS

    def test_result_is_stable(self, submission: Submission, node: FakeNode, signed: SignedTx) -> None:
        node.on("eth_getTransactionReceipt", receipt_payload(signed.hash))
        first = submission.submit(timeout=5)
        second = submission.wait(timeout=5)
        assert first == second
        assert node.count("eth_getTransactionReceipt") == 1

    def test_contract_address(self, submission: Submission, node: FakeNode, signed: SignedTx) -> None:
        created = "0x" + "ef" * 20
        node.on("eth_getTransactionReceipt", receipt_payload(signed.hash, contractAddress=created))
        result = submission.submit(timeout=5)
        assert result.contract_address == normalize_address(created)


class TestReceiptLookup:

    def test_lookup_is_idempotent(self, rpc: RpcClient, node: FakeNode, signed: SignedTx) -> None:
        node.on("eth_getTransactionReceipt", receipt_payload(signed.hash))
        first = rpc.get_transaction_receipt(signed.hash)
        second = rpc.get_transaction_receipt(signed.hash)
        assert first == second
        assert Receipt.from_rpc(first) == Receipt.from_rpc(second)

    def test_receipt_logs_parsed(self, signed: SignedTx) -> None:
        log = {
            "address": "0x" + "01" * 20,
            "blockNumber": "0x65",
            "blockHash": "0x" + "CD" * 32,
            "transactionHash": signed.hash,
            "logIndex": "0x0",
            "topics": ["0x" + "aa" * 32],
            "data": "0x",
        }
        receipt = Receipt.from_rpc(receipt_payload(signed.hash, logs=[log]))
        assert receipt.logs[0].block_hash == "0x" + "cd" * 32
        assert receipt.logs[0].topics == (b"\xaa" * 32,)
