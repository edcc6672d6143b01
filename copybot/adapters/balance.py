import asyncio
import logging
from web3 import Web3
from copybot.core.interfaces import BalanceChecker

logger = logging.getLogger(__name__)

# Minimal ERC-20 ABI: balanceOf + decimals
ERC20_ABI = [
    {"constant": True, "inputs": [{"name": "_owner", "type": "address"}], "name": "balanceOf",
     "outputs": [{"name": "balance", "type": "uint256"}], "payable": False, "type": "function"},
    {"constant": True, "inputs": [], "name": "decimals",
     "outputs": [{"name": "", "type": "uint8"}], "payable": False, "type": "function"},
]


class OnchainBalanceChecker(BalanceChecker):
    """USDC balance of an execution wallet read straight from the chain."""

    def __init__(self, rpc_url: str, token_address: str):
        self.w3 = Web3(Web3.HTTPProvider(rpc_url))
        self.token = self.w3.eth.contract(address=Web3.to_checksum_address(token_address), abi=ERC20_ABI)
        self._decimals = None

    async def get_balance(self, wallet: str) -> float:
        return await asyncio.to_thread(self._read_balance, wallet)

    def _read_balance(self, wallet: str) -> float:
        # Checksum address is required for Web3.py
        owner = Web3.to_checksum_address(wallet)
        if self._decimals is None:
            self._decimals = self.token.functions.decimals().call()
        raw_balance = self.token.functions.balanceOf(owner).call()
        balance = raw_balance / (10 ** self._decimals)
        logger.debug(f"💰 Balance of {wallet[:8]}...: ${balance:.2f}")
        return balance
