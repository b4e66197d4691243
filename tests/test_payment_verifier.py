"""
Tests for USDC payment verification (services/payment_verifier.py).
The web3 connection is replaced by MagicMocks; no chain is contacted.
"""
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from services.payment_verifier import PaymentVerifier

USDC = '0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913'
AGENT = '0x' + '42' * 20
BUYER = '0x' + '24' * 20
TX = '0x' + 'fe' * 32


def _verifier(tx=None, receipt=None, decoded=None, block_number=100, min_confirmations=0):
    verifier = PaymentVerifier(rpc_url='', usdc_address=USDC, min_confirmations=min_confirmations)
    w3 = MagicMock()
    w3.is_connected.return_value = True
    w3.eth.get_transaction.return_value = tx if tx is not None else {
        "to": USDC, "from": BUYER, "input": '0xa9059cbb',
    }
    w3.eth.get_transaction_receipt.return_value = receipt or {"status": 1, "blockNumber": 90}
    w3.eth.block_number = block_number
    contract = MagicMock()
    func = MagicMock()
    func.fn_name = 'transfer'
    contract.decode_function_input.return_value = decoded or (func, {"to": AGENT, "value": 10_000_000})
    verifier.w3 = w3
    verifier.usdc_contract = contract
    return verifier


class TestPaymentVerifier:
    def test_valid_transfer(self):
        result = _verifier().verify(TX, Decimal('10.00'), AGENT)
        assert result["valid"] is True
        assert result["amount"] == Decimal('10')
        assert result["from"] == BUYER
        assert result["block_number"] == 90

    def test_recipient_compared_case_insensitively(self):
        result = _verifier().verify(TX, '10', AGENT.upper().replace('0X', '0x'))
        assert result["valid"] is True

    def test_not_connected(self):
        verifier = PaymentVerifier(rpc_url='', usdc_address=USDC)
        result = verifier.verify(TX, '10', AGENT)
        assert result == {"valid": False, "error": "Chain not connected"}

    def test_reverted_transaction(self):
        result = _verifier(receipt={"status": 0, "blockNumber": 90}).verify(TX, '10', AGENT)
        assert result["valid"] is False
        assert 'reverted' in result["error"]

    def test_wrong_contract(self):
        tx = {"to": '0x' + '99' * 20, "from": BUYER, "input": '0x'}
        result = _verifier(tx=tx).verify(TX, '10', AGENT)
        assert result["valid"] is False
        assert 'USDC contract' in result["error"]

    def test_wrong_recipient(self):
        result = _verifier().verify(TX, '10', '0x' + '77' * 20)
        assert result["valid"] is False
        assert 'wrong address' in result["error"]

    def test_not_a_transfer(self):
        func = MagicMock()
        func.fn_name = 'approve'
        result = _verifier(decoded=(func, {"to": AGENT, "value": 10_000_000})).verify(TX, '10', AGENT)
        assert result["valid"] is False
        assert 'approve' in result["error"]

    @pytest.mark.parametrize("units,valid", [
        (10_000_000, True),
        (9_995_000, True),     # within 0.1%
        (10_010_000, True),
        (9_980_000, False),    # 0.2% short
        (5_000_000, False),
    ])
    def test_amount_tolerance(self, units, valid):
        func = MagicMock()
        func.fn_name = 'transfer'
        result = _verifier(decoded=(func, {"to": AGENT, "value": units})).verify(TX, Decimal('10'), AGENT)
        assert result["valid"] is valid

    def test_insufficient_confirmations(self):
        result = _verifier(block_number=92, min_confirmations=5).verify(TX, '10', AGENT)
        assert result["valid"] is False
        assert 'confirmations' in result["error"]

    def test_rpc_error_returns_invalid(self):
        verifier = _verifier()
        verifier.w3.eth.get_transaction.side_effect = Exception("rpc timeout")
        result = verifier.verify(TX, '10', AGENT)
        assert result == {"valid": False, "error": "rpc timeout"}

    def test_missing_recipient(self):
        result = _verifier().verify(TX, '10', None)
        assert result["valid"] is False
