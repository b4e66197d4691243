"""
Base L2 USDC payment verification.
Checks that a transaction is a successful USDC `transfer` of the expected
amount to the expected recipient. Never raises: every failure comes back as
{"valid": False, "error": ...}.
"""
import logging
import os
from decimal import Decimal

logger = logging.getLogger('relay.payments')

# Standard USDC ERC-20 ABI (transfer + decimals only)
USDC_ABI = [
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"}
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function"
    }
]

# 0.1% tolerance for rounding between quoted price and on-chain units
AMOUNT_TOLERANCE = Decimal('0.001')


class PaymentVerifier:
    def __init__(self, rpc_url=None, usdc_address=None, min_confirmations=None):
        self.rpc_url = rpc_url if rpc_url is not None else os.environ.get('RPC_URL', '')
        self.usdc_address = usdc_address or os.environ.get(
            'USDC_CONTRACT', '0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913')
        if min_confirmations is None:
            min_confirmations = int(os.environ.get('PAYMENT_MIN_CONFIRMATIONS', '0'))
        self.min_confirmations = min_confirmations

        self.w3 = None
        self.usdc_contract = None
        self.usdc_decimals = 6

        if self.rpc_url:
            try:
                from web3 import Web3
                self.w3 = Web3(Web3.HTTPProvider(self.rpc_url))
                self.usdc_contract = self.w3.eth.contract(
                    address=Web3.to_checksum_address(self.usdc_address),
                    abi=USDC_ABI,
                )
                logger.info("Payment verifier connected to %s", self.rpc_url)
            except Exception as e:
                logger.warning("Init failed: %s. Payment verification unavailable.", e)
                self.w3 = None

    def __repr__(self):
        return f"PaymentVerifier(rpc_url={self.rpc_url!r}, connected={self.w3 is not None})"

    def is_connected(self) -> bool:
        return self.w3 is not None and self.w3.is_connected()

    def verify(self, tx_ref: str, expected_amount, expected_recipient: str) -> dict:
        """Verify a USDC payment. Returns {valid, amount, from, to, block_number, error}."""
        if not self.is_connected():
            return {"valid": False, "error": "Chain not connected"}
        if not expected_recipient:
            return {"valid": False, "error": "No recipient address for this agent"}

        expected_amount = Decimal(str(expected_amount))
        try:
            tx = self.w3.eth.get_transaction(tx_ref)
            if tx is None:
                return {"valid": False, "error": "Transaction not found on blockchain"}
            receipt = self.w3.eth.get_transaction_receipt(tx_ref)

            if receipt['status'] != 1:
                return {"valid": False, "error": "Transaction failed (reverted on-chain)"}

            block_number = receipt.get('blockNumber', 0)
            if self.min_confirmations:
                confirmations = self.w3.eth.block_number - block_number
                if confirmations < self.min_confirmations:
                    return {
                        "valid": False,
                        "error": f"Insufficient confirmations: {confirmations}/{self.min_confirmations}",
                    }

            tx_to = tx.get('to') or ''
            if tx_to.lower() != self.usdc_address.lower():
                return {"valid": False, "error": f"Transaction not to USDC contract (sent to {tx_to})"}

            try:
                func, args = self.usdc_contract.decode_function_input(tx['input'])
            except ValueError:
                return {"valid": False, "error": "Could not decode transaction data"}
            if func.fn_name != 'transfer':
                return {"valid": False, "error": f"Transaction is not a transfer (method: {func.fn_name})"}

            to_addr = args['to']
            if to_addr.lower() != expected_recipient.lower():
                return {
                    "valid": False,
                    "error": f"Payment sent to wrong address: expected {expected_recipient}, got {to_addr}",
                }

            amount = Decimal(args['value']) / Decimal(10 ** self.usdc_decimals)
            if abs(amount - expected_amount) > expected_amount * AMOUNT_TOLERANCE:
                return {
                    "valid": False,
                    "error": f"Amount mismatch: expected {expected_amount} USDC, got {amount} USDC",
                }

            return {
                "valid": True,
                "amount": amount,
                "from": tx.get('from'),
                "to": to_addr,
                "block_number": block_number,
            }
        except Exception as e:
            logger.warning("Payment verification error for tx=%s: %s", tx_ref, e)
            return {"valid": False, "error": str(e)}


# Singleton
_payment_verifier = None


def get_payment_verifier() -> PaymentVerifier:
    global _payment_verifier
    if _payment_verifier is None:
        _payment_verifier = PaymentVerifier()
    return _payment_verifier
